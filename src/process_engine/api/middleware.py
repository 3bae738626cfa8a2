"""
API 中间件
"""
import time
import uuid
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
ELAPSED_HEADER = "X-Process-Time"

# 监控与文档路径只在 debug 级别记录
QUIET_PREFIXES = ("/api/v1/monitoring", "/docs", "/openapi.json")


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    请求追踪中间件

    每个请求带一个请求ID：调用方在 X-Request-ID 中给出时原样沿用，否则新生成。
    请求ID写入 request.state 供异常处理器回显，并随响应头返回；
    响应头 X-Process-Time 给出服务端耗时（秒）。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[ELAPSED_HEADER] = f"{elapsed:.6f}"

        level = logging.DEBUG if request.url.path.startswith(QUIET_PREFIXES) else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {elapsed * 1000:.1f}ms (request {request_id})"
        )
        return response
