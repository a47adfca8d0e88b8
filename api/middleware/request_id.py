"""
Request ID 中间件
生成或透传追踪ID，绑定到structlog上下文，并记录请求耗时
"""
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog

from core.logging_config import get_logger


logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    request_id 写入 request.state（供异常处理器使用）与响应头；
    网关回调、交易操作的日志都会带上 request_id/method/path。
    """

    HEADER_NAME = "X-Request-ID"

    # 不记录耗时的路径
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers[self.HEADER_NAME] = request_id
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        if request.url.path not in self.SKIP_PATHS:
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )
        return response
