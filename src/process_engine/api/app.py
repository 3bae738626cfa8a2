"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Dict, Any, Optional

from .. import __version__
from .routers import definitions, instances, tasks, events, monitoring
from .middleware import RequestTracingMiddleware
from .dependencies import app_state
from ..config import EngineSettings
from ..core.engine import ProcessEngine
from ..core.error_handler import is_soft_error
from ..exceptions import (
    ProcessEngineError, NotFoundError, AlreadyTerminalError, ConcurrencyConflictError,
    DefinitionInvalidError, DefinitionParseError, StepConfigError,
    StoreUnavailableError, DispatcherError
)


logger = logging.getLogger(__name__)


# 异常类型 -> (HTTP状态码, 错误类型)，按顺序匹配
ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (AlreadyTerminalError, status.HTTP_409_CONFLICT, "already_terminal"),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT, "concurrency_conflict"),
    (DefinitionInvalidError, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_definition"),
    (DefinitionParseError, status.HTTP_400_BAD_REQUEST, "parse_error"),
    (StepConfigError, status.HTTP_422_UNPROCESSABLE_ENTITY, "step_config_error"),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable"),
    (DispatcherError, status.HTTP_503_SERVICE_UNAVAILABLE, "dispatcher_unavailable"),
]


def create_app(
    engine: Optional[ProcessEngine] = None,
    settings: Optional[EngineSettings] = None,
    run_timers: bool = True
) -> FastAPI:
    """
    创建FastAPI应用

    Args:
        engine: 预先构建的引擎（测试使用），为空时按配置创建
        run_timers: 是否启动后台定时扫描
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Process Engine API...")

        process_engine = engine or await ProcessEngine.from_settings(settings)
        await process_engine.start(run_timers=run_timers)
        app_state["engine"] = process_engine

        logger.info("Process Engine API started successfully")

        yield

        logger.info("Shutting down Process Engine API...")
        await process_engine.stop()
        app_state.pop("engine", None)
        logger.info("Process Engine API shut down successfully")

    app = FastAPI(
        title="Compliance Process Engine API",
        description="持久化、事件驱动的流程编排引擎 RESTful API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestTracingMiddleware)

    app.include_router(definitions.router, prefix="/api/v1/definitions", tags=["definitions"])
    app.include_router(instances.router, prefix="/api/v1/instances", tags=["instances"])
    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(events.router, prefix="/api/v1/events", tags=["events"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(ProcessEngineError)
    async def engine_exception_handler(request: Request, exc: ProcessEngineError):
        """引擎异常映射为HTTP错误"""
        status_code, error = status.HTTP_400_BAD_REQUEST, "process_engine_error"
        for error_type, code, name in ERROR_STATUS:
            if isinstance(exc, error_type):
                status_code, error = code, name
                break

        detail: Dict[str, Any] = {"error": error, "message": str(exc)}
        if isinstance(exc, DefinitionInvalidError):
            detail["errors"] = exc.errors
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        elif not is_soft_error(exc):
            logger.warning(f"{request.method} {request.url.path} rejected: {exc}")

        return JSONResponse(status_code=status_code, content={"detail": detail})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """全局异常处理器"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        """API根路径"""
        return {
            "name": "Compliance Process Engine API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app
