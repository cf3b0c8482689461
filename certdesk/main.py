from contextlib import asynccontextmanager
from typing import Callable, Sequence

import asyncpg
import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from certdesk.api.routes import health, tickets
from certdesk.api_client import TicketStoreClient
from certdesk.core.config import Settings, get_settings
from certdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from certdesk.intake.bridge import IntakeBridge
from certdesk.notifications.attachments import AttachmentEncoder
from certdesk.notifications.dispatcher import NotificationDispatcher
from certdesk.notifications.email import SendPulseEmailProvider
from certdesk.notifications.messaging import MessagingConfig, MessagingFallbackChain
from certdesk.sync.cache import SqliteFallbackCache
from certdesk.sync.client import SyncClient
from certdesk.tickets.models import Ticket
from certdesk.tickets.repository import InMemoryTicketRepository, PostgresTicketRepository, TicketRepository
from certdesk.tickets.store import TicketStore


def build_encoder(settings: Settings) -> AttachmentEncoder:
    return AttachmentEncoder(
        max_bytes=settings.attachment_max_bytes,
        min_timeout=settings.attachment_min_timeout_seconds,
        max_timeout=settings.attachment_max_timeout_seconds,
        seconds_per_mb=settings.attachment_seconds_per_mb,
    )


def build_dispatcher(settings: Settings, http_client: httpx.AsyncClient | None = None) -> NotificationDispatcher:
    """Wire the configured channels; an unconfigured channel reports itself as skipped."""

    email_provider = None
    if settings.sendpulse_client_id and settings.sendpulse_client_secret:
        email_provider = SendPulseEmailProvider(
            client_id=settings.sendpulse_client_id,
            client_secret=settings.sendpulse_client_secret,
            sender_email=settings.sendpulse_sender_email,
            sender_name=settings.sendpulse_sender_name,
            api_url=settings.sendpulse_api_url,
            http_client=http_client,
            timeout=settings.provider_request_timeout_seconds,
        )

    messaging = None
    if settings.zap_api_url and settings.zap_api_key:
        messaging = MessagingFallbackChain(
            MessagingConfig(
                base_url=settings.zap_api_url,
                api_key=settings.zap_api_key,
                instance_id=settings.zap_instance_id,
                client_token=settings.zap_client_token,
            ),
            http_client=http_client,
            timeout=settings.provider_request_timeout_seconds,
        )

    return NotificationDispatcher(
        email_provider=email_provider,
        messaging=messaging,
        channel_timeout=settings.channel_timeout_seconds,
        messaging_priorities=settings.messaging_priorities,
    )


def build_store_client(settings: Settings, http_client: httpx.AsyncClient | None = None) -> TicketStoreClient:
    return TicketStoreClient(
        settings.api_base_url,
        settings.api_key,
        timeout=settings.sync_fetch_timeout_seconds,
        http_client=http_client,
    )


def build_fallback_cache(settings: Settings) -> SqliteFallbackCache:
    return SqliteFallbackCache(
        settings.cache_path,
        max_bytes=settings.cache_max_bytes,
        max_age=settings.cache_max_age_seconds,
    )


def build_sync_client(
    settings: Settings,
    api: TicketStoreClient | None = None,
    *,
    cache: SqliteFallbackCache | None = None,
    on_update: Callable[[Sequence[Ticket]], None] | None = None,
) -> SyncClient:
    """Console-side reconciliation client pointed at ``api_base_url``."""

    return SyncClient(
        api or build_store_client(settings),
        cache=cache if cache is not None else build_fallback_cache(settings),
        interval=settings.sync_interval_seconds,
        fetch_timeout=settings.sync_fetch_timeout_seconds,
        history_entries=settings.cache_history_entries,
        message_chars=settings.cache_message_chars,
        on_update=on_update,
    )


def build_intake_bridge(
    settings: Settings,
    api: TicketStoreClient | None = None,
    *,
    pending: SqliteFallbackCache | None = None,
) -> IntakeBridge:
    return IntakeBridge(
        api or build_store_client(settings),
        pending if pending is not None else build_fallback_cache(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    configure_logging(settings)
    tracer_provider = init_tracer(settings)

    pool: asyncpg.Pool | None = None
    repository: TicketRepository
    if settings.storage_backend == "postgres":
        pool = await asyncpg.create_pool(dsn=settings.postgres_dsn)
        repository = PostgresTicketRepository(pool)
    else:
        repository = InMemoryTicketRepository()

    http_client = httpx.AsyncClient()
    encoder = build_encoder(settings)
    store = TicketStore(
        repository,
        dispatcher=build_dispatcher(settings, http_client),
        encoder=encoder,
        storage_timeout=settings.storage_timeout_seconds,
        history_limit=settings.history_display_limit,
    )
    await store.ensure_schema()

    app.state.ticket_store = store
    app.state.attachment_encoder = encoder
    try:
        yield
    finally:
        await http_client.aclose()
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(health.router)
    app.include_router(tickets.router)
    return app


app = create_app()
