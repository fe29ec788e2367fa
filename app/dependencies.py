from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.database import async_session
from app.integrations.base import MarketplaceGateway, StorefrontGateway
from app.integrations.circuit_breaker import MarketplaceCircuitBreaker
from app.integrations.platforms.bunjang import BunjangPlatform
from app.integrations.platforms.shopify import ShopifyPlatform
from app.services.activity_logger import ActivityLogger
from app.services.bunjang.client import BunjangClient
from app.services.job_queue import ReconciliationJobQueue
from app.services.listing_store import ListingRepository, SqlAlchemyListingRepository
from app.services.marketplace_poller import MarketplacePoller
from app.services.notification_service import OperatorAlertService
from app.services.reconciliation_engine import ReconciliationEngine
from app.services.remote_order_workflow import RemoteOrderWorkflow
from app.services.shopify.client import ShopifyGraphQLClient
from app.services.storefront_sync import StorefrontSync
from app.services.webhook_ingestion import WebhookIngestion


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


@dataclass
class ReconciliationServices:
    """Everything the reconciliation pipeline needs, built once per process."""
    settings: Settings
    repository: ListingRepository
    storefront_gateway: StorefrontGateway
    marketplace_gateway: MarketplaceGateway
    circuit: MarketplaceCircuitBreaker
    alerts: OperatorAlertService
    activity: ActivityLogger
    storefront: StorefrontSync
    workflow: RemoteOrderWorkflow
    engine: ReconciliationEngine
    queue: ReconciliationJobQueue
    poller: MarketplacePoller
    ingestion: WebhookIngestion


def build_storefront_gateway(settings: Settings) -> StorefrontGateway:
    client = ShopifyGraphQLClient(
        store_domain=settings.SHOPIFY_SHOP_URL or "",
        access_token=settings.SHOPIFY_ADMIN_API_ACCESS_TOKEN or "",
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    return ShopifyPlatform(
        client,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        backoff_base=settings.GATEWAY_BACKOFF_BASE_SECONDS,
        backoff_max=settings.GATEWAY_BACKOFF_MAX_SECONDS,
    )


def build_marketplace_gateway(settings: Settings) -> MarketplaceGateway:
    client = BunjangClient(
        base_url=settings.BUNJANG_API_URL,
        access_key=settings.BUNJANG_ACCESS_KEY,
        secret_key=settings.BUNJANG_SECRET_KEY,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    return BunjangPlatform(
        client,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        backoff_base=settings.GATEWAY_BACKOFF_BASE_SECONDS,
        backoff_max=settings.GATEWAY_BACKOFF_MAX_SECONDS,
    )


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker = async_session,
    storefront_gateway: Optional[StorefrontGateway] = None,
    marketplace_gateway: Optional[MarketplaceGateway] = None,
    alerts: Optional[OperatorAlertService] = None,
) -> ReconciliationServices:
    storefront_gateway = storefront_gateway or build_storefront_gateway(settings)
    marketplace_gateway = marketplace_gateway or build_marketplace_gateway(settings)
    alerts = alerts or OperatorAlertService(settings)

    repository = SqlAlchemyListingRepository(session_factory)
    activity = ActivityLogger(session_factory)
    circuit = MarketplaceCircuitBreaker(probe_interval_seconds=settings.CIRCUIT_PROBE_INTERVAL_SECONDS)
    storefront = StorefrontSync(
        storefront_gateway,
        location_id=settings.SHOPIFY_LOCATION_GID,
        order_prefix=settings.ORDER_IDENTIFIER_PREFIX,
    )
    workflow = RemoteOrderWorkflow(
        marketplace_gateway,
        storefront,
        circuit,
        alerts,
        price_drift_tolerance_percent=settings.PRICE_DRIFT_TOLERANCE_PERCENT,
        low_balance_threshold=settings.LOW_BALANCE_THRESHOLD,
    )
    engine = ReconciliationEngine(
        repository,
        storefront,
        workflow,
        alerts,
        activity=activity,
        not_found_confirm_minutes=settings.NOT_FOUND_CONFIRM_MINUTES,
        cas_max_retries=settings.CAS_MAX_RETRIES,
    )
    queue = ReconciliationJobQueue(
        session_factory,
        engine.handle,
        alerts=alerts,
        activity=activity,
        concurrency=settings.WORKER_CONCURRENCY,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        backoff_base=settings.JOB_BACKOFF_BASE_SECONDS,
        backoff_max=settings.JOB_BACKOFF_MAX_SECONDS,
    )
    poller = MarketplacePoller(
        repository,
        marketplace_gateway,
        record_observation=engine.record_marketplace_observation,
        enqueue=queue.enqueue,
    )
    ingestion = WebhookIngestion(repository, queue.enqueue)

    return ReconciliationServices(
        settings=settings,
        repository=repository,
        storefront_gateway=storefront_gateway,
        marketplace_gateway=marketplace_gateway,
        circuit=circuit,
        alerts=alerts,
        activity=activity,
        storefront=storefront,
        workflow=workflow,
        engine=engine,
        queue=queue,
        poller=poller,
        ingestion=ingestion,
    )


def get_services(request: Request) -> ReconciliationServices:
    return request.app.state.services
