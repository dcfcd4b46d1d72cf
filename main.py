"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.ports.webhooks import PaymentEventDispatcher, ReconcileScheduler, WebhookDedupStore
from application.services.payment_service import PaymentService
from application.services.webhook_service import WebhookPipeline
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import ReconcileSettings, WebhookSettings, payment_settings
from infrastructure.cache.redis_cache import init_redis_cache, shutdown_redis_cache
from infrastructure.config_source import SettingsConfigSource
from infrastructure.external.payments.registry import PaymentGatewayRegistry
from infrastructure.webhooks.dedup import InMemoryWebhookDedupStore, RedisWebhookDedupStore
from infrastructure.webhooks.dispatchers import InMemoryEventDispatcher


configure_logging()
logger = get_logger(__name__)


async def build_dedup_store(webhook: WebhookSettings) -> WebhookDedupStore:
    if webhook.dedup_backend == "redis":
        cache = await init_redis_cache()
        logger.info("webhook_dedup_store_selected", backend="redis")
        return RedisWebhookDedupStore(
            cache,
            processing_ttl=webhook.processing_ttl_seconds,
            retention=webhook.retention_seconds,
        )
    if settings.ENVIRONMENT == "production":
        logger.warning("webhook_dedup_store_in_memory", message="Deduplication is per-process only")
    return InMemoryWebhookDedupStore(
        processing_ttl=webhook.processing_ttl_seconds,
        retention=webhook.retention_seconds,
    )


def build_dispatcher(webhook: WebhookSettings) -> PaymentEventDispatcher:
    if webhook.dispatcher == "celery":
        from infrastructure.tasks.utils.dispatcher import CeleryEventDispatcher

        logger.info("payment_event_dispatcher_selected", backend="celery", task=webhook.dispatch_task)
        return CeleryEventDispatcher(webhook.dispatch_task)
    logger.info("payment_event_dispatcher_selected", backend="memory")
    return InMemoryEventDispatcher()


def build_reconcile_scheduler(reconcile: ReconcileSettings) -> Optional[ReconcileScheduler]:
    if reconcile.backend == "celery":
        from infrastructure.tasks.utils.dispatcher import TaskDispatcher

        logger.info("payment_reconcile_scheduler_selected", backend="celery", countdown=reconcile.countdown_seconds)
        return TaskDispatcher()
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：装配支付注册表、Webhook 管道与分发后端"""
    registry = PaymentGatewayRegistry(
        SettingsConfigSource(),
        ttl_seconds=payment_settings.enablement_ttl_seconds,
    )
    dedup_store = await build_dedup_store(payment_settings.webhook)
    dispatcher = build_dispatcher(payment_settings.webhook)

    app.state.payment_registry = registry
    app.state.payment_service = PaymentService(
        registry,
        timeout=payment_settings.timeouts.operation,
        reconcile_scheduler=build_reconcile_scheduler(payment_settings.reconcile),
        reconcile_countdown=payment_settings.reconcile.countdown_seconds,
    )
    app.state.webhook_pipeline = WebhookPipeline(registry, dedup_store, dispatcher)
    app.state.event_dispatcher = dispatcher
    logger.info(
        "payment_gateways_initialized",
        enabled=[g.provider_id for g in registry.list_enabled()],
        default_provider=registry.default_provider,
    )

    yield

    close = getattr(dispatcher, "aclose", None)
    if close is not None:
        await close()
    if payment_settings.webhook.dedup_backend == "redis":
        await shutdown_redis_cache()
        logger.info("redis_cache_shutdown", message="Redis cache shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="支付网关抽象层：统一的支付意图、退款与 Webhook 接入",
)

# 添加中间件（后添加者位于外层：RequestID 先于日志执行）
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
