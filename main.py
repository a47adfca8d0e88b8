"""
FastAPI应用主入口
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.dependencies import create_plugin_service
from api.middleware import RequestIDMiddleware
from api.routes import payments as payments_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger
from core.settings import gateway_settings
from infrastructure.cache import shutdown_redis_idempotency_store


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    service = await create_plugin_service(settings, gateway_settings)
    app.state.plugin_service = service
    logger.info(
        "plugin_service_initialized",
        provider=service.gateway.provider,
        database=settings.database.enabled,
        redis=bool(settings.redis.url),
    )

    yield

    # 关闭时的清理工作
    await service.aclose()
    if settings.redis.url:
        await shutdown_redis_idempotency_store()
        logger.info("redis_shutdown", message="Redis idempotency store shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="支付网关插件：交易状态机与幂等回调对账",
)

# 添加中间件（注意顺序：从下往上执行）
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root(request: Request):
    """插件信息：当前网关与文档入口"""
    service = request.app.state.plugin_service
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "gateway": service.gateway.provider,
            "docs": "/docs",
        },
        message="Welcome"
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
