"""
API依赖项 - 组装网关插件服务
"""
from typing import Optional

from fastapi import Request

from application.dtos.payments import PluginConfig
from application.services.ledger import TransactionLedger
from application.services.payment_service import GatewayPluginService
from core.config import Settings, settings as app_settings
from core.logging_config import get_logger
from core.settings import GatewaySettings, gateway_settings as default_gateway_settings
from domain.services.gateway_client import GatewayClient
from domain.transaction.idempotency import IdempotencyStore
from domain.transaction.repository import TransactionRepository
from infrastructure.cache import InMemoryIdempotencyStore, init_redis_idempotency_store
from infrastructure.database import AsyncSessionLocal, create_tables
from infrastructure.external.payments import get_gateway_client
from infrastructure.repositories.inmemory import InMemoryTransactionRepository
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionRepository


logger = get_logger(__name__)


async def build_repository(cfg: Settings) -> TransactionRepository:
    if not cfg.database.enabled:
        logger.info("transaction_store_selected", store="memory")
        return InMemoryTransactionRepository()
    await create_tables()
    logger.info("transaction_store_selected", store="sqlalchemy")
    return SQLAlchemyTransactionRepository(AsyncSessionLocal)


async def build_idempotency_store(cfg: Settings) -> IdempotencyStore:
    if cfg.redis.url:
        logger.info("idempotency_store_selected", store="redis")
        return await init_redis_idempotency_store()
    logger.info("idempotency_store_selected", store="memory")
    return InMemoryIdempotencyStore()


def build_plugin_service(
    repository: TransactionRepository,
    idempotency: IdempotencyStore,
    gateway: GatewayClient,
    gw_settings: Optional[GatewaySettings] = None,
) -> GatewayPluginService:
    gw = gw_settings or default_gateway_settings
    ledger = TransactionLedger(
        repository,
        idempotency,
        gateway,
        hosted_page_url=gw.hosted_page_url,
        three_ds_url=gw.three_ds_url,
        pending_retry_seconds=gw.pending_retry_seconds,
        conflict_retry_attempts=gw.conflict_retry_attempts,
        in_flight_ttl=app_settings.redis.in_flight_ttl,
    )
    return GatewayPluginService(
        ledger,
        default_config=PluginConfig(enable_tokens=gw.enable_tokens, enable_3dsecure=gw.enable_3dsecure),
    )


async def create_plugin_service(
    cfg: Optional[Settings] = None,
    gw_settings: Optional[GatewaySettings] = None,
) -> GatewayPluginService:
    """按配置选择仓储、幂等存储与网关客户端"""
    cfg = cfg or app_settings
    gw = gw_settings or default_gateway_settings
    return build_plugin_service(
        await build_repository(cfg),
        await build_idempotency_store(cfg),
        get_gateway_client(settings=gw),
        gw,
    )


def get_plugin_service(request: Request) -> GatewayPluginService:
    """从应用状态获取插件服务（在 lifespan 中创建）"""
    return request.app.state.plugin_service
