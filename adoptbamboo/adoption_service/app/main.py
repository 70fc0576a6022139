from contextlib import asynccontextmanager

from fastapi import FastAPI
from httpx import AsyncClient

from adoptbamboo.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)
from adoptbamboo.common.kafka import KafkaProducerStub

from .api.admin import router as admin_router
from .api.adoptions import router as adoptions_router
from .api.catalog import router as catalog_router
from .api.growth import router as growth_router
from .api.health import router as health_router
from .api.payments import router as payments_router
from .dependencies import EmailAllowListAuthorizer
from .events import AdoptionEventPublisher
from .gateway import GatewayStatusCache, ToyyibPayGateway

SERVICE_NAME = "Adoption Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./adoption_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Adoption Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)
    redis_client = resolve_redis(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: AsyncClient | None = None
        kafka_producer: KafkaProducerStub | None = None
        app.state.session_factory = session_factory
        app.state.admin_authorizer = EmailAllowListAuthorizer(resolved_settings.admin_emails)
        try:
            http_client = AsyncClient(timeout=resolved_settings.gateway_timeout_seconds)
            gateway = ToyyibPayGateway(
                http_client,
                secret_key=resolved_settings.toyyibpay_secret_key,
                category_code=resolved_settings.toyyibpay_category_code,
                base_url=resolved_settings.toyyibpay_base_url,
            )
            app.state.gateway = gateway
            app.state.status_cache = GatewayStatusCache(
                gateway,
                redis_client,
                ttl_seconds=resolved_settings.gateway_status_cache_ttl_seconds,
            )
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            app.state.kafka_producer = kafka_producer
            app.state.event_publisher = AdoptionEventPublisher(kafka_producer)
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.admin_authorizer = None
            app.state.gateway = None
            app.state.status_cache = None
            app.state.event_publisher = None
            app.state.kafka_producer = None
            if kafka_producer is not None:
                await kafka_producer.close()
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(catalog_router)
    app.include_router(payments_router)
    app.include_router(adoptions_router)
    app.include_router(growth_router)
    app.include_router(admin_router)
    return app


app = create_app()
