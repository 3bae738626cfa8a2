"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, status
from typing import Dict, Any
import logging

from ..core.engine import ProcessEngine


logger = logging.getLogger(__name__)


# 全局实例
app_state: Dict[str, Any] = {}


def get_process_engine() -> ProcessEngine:
    """获取流程引擎实例"""
    engine = app_state.get("engine")

    if not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Process engine not initialized"
            }
        )

    return engine
