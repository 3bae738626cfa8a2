"""
监控 API 路由
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from ...models.clock import utcnow
from typing import Dict, Any
import logging

from ... import __version__
from ..models import HealthCheckResponse, StatsResponse
from ..dependencies import get_process_engine


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine = Depends(get_process_engine)
):
    """健康检查，存储不可用或调度通道停止时返回503"""
    health = engine.health()
    checks: Dict[str, Any] = {
        "dispatcher": health["dispatcher"]["alive"],
        "timers": health["timers"]["fault"] is None,
    }

    if engine.db_manager:
        checks["database"] = await engine.db_manager.ping()
        if not checks["database"]:
            logger.error("Database health check failed")

    healthy = health["alive"] and all(checks.values())
    response = HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )
    if not healthy:
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))
    return response


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    engine = Depends(get_process_engine)
) -> StatsResponse:
    """实例统计与调度通道状态"""
    return StatsResponse(**await engine.stats())


@router.get("/metrics")
async def get_metrics(
    engine = Depends(get_process_engine)
) -> Dict[str, Any]:
    """运行指标快照"""
    return engine.metrics.snapshot()
