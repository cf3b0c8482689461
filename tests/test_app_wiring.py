from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest
from opentelemetry.sdk.trace import TracerProvider

from certdesk.core.config import Settings
from certdesk.core.logging import TraceContextFilter, init_tracer, parse_otlp_headers
from certdesk.main import (
    build_dispatcher,
    build_encoder,
    build_fallback_cache,
    build_intake_bridge,
    build_store_client,
    build_sync_client,
)
from certdesk.notifications.email import SendPulseEmailProvider
from certdesk.notifications.messaging import MessagingFallbackChain
from certdesk.notifications.templates import NotificationKind
from certdesk.sync.cache import SqliteFallbackCache
from certdesk.tickets.models import PersonType, Priority, Ticket


def test_parse_otlp_headers_skips_malformed_items():
    assert parse_otlp_headers("authorization=Bearer x, tenant = acme,broken,=empty") == {
        "authorization": "Bearer x",
        "tenant": "acme",
    }
    assert parse_otlp_headers(None) == {}


def test_parse_otlp_headers_decodes_percent_encoded_values():
    assert parse_otlp_headers("Authorization=Basic%20dXNlcjpwYXNz%3D") == {"authorization": "Basic dXNlcjpwYXNz="}


def _record() -> logging.LogRecord:
    return logging.LogRecord("certdesk.test", logging.INFO, __file__, 1, "delivery failed", None, None)


def test_log_records_carry_the_active_trace_id():
    record_filter = TraceContextFilter()

    outside = _record()
    assert record_filter.filter(outside)
    assert outside.trace_id == "-"

    tracer = TracerProvider().get_tracer("certdesk.test")
    with tracer.start_as_current_span("notification.email") as span:
        inside = _record()
        record_filter.filter(inside)

    assert inside.trace_id == format(span.get_span_context().trace_id, "032x")


def test_tracer_is_not_installed_when_disabled():
    assert init_tracer(Settings(otel_enabled=False)) is None


def test_encoder_follows_attachment_settings():
    encoder = build_encoder(Settings(attachment_max_bytes=1024, attachment_min_timeout_seconds=2.0))

    assert encoder.max_bytes == 1024
    assert encoder.compute_timeout(0) == 2.0


def test_dispatcher_only_wires_configured_channels():
    bare = build_dispatcher(Settings(sendpulse_client_id=None, zap_api_url=None))
    assert bare._email is None and bare._messaging is None

    wired = build_dispatcher(
        Settings(
            sendpulse_client_id="client",
            sendpulse_client_secret="secret",
            zap_api_url="https://gateway.example.com",
            zap_api_key="key",
        )
    )
    assert isinstance(wired._email, SendPulseEmailProvider)
    assert isinstance(wired._messaging, MessagingFallbackChain)


@pytest.mark.asyncio
async def test_unconfigured_dispatcher_reports_skips():
    dispatcher = build_dispatcher(Settings(sendpulse_client_id=None, zap_api_url=None))
    ticket = Ticket(
        id="t-1",
        code="TK-001",
        full_name="Maria da Silva",
        tax_id="12345678909",
        certificate_type="cnd",
        person_type=PersonType.INDIVIDUAL,
        priority=Priority.PREMIUM,
        created_at=datetime.now(timezone.utc),
        phone="11987654321",
        email="maria@example.com",
    )

    result = await dispatcher.dispatch(ticket, kind=NotificationKind.CONFIRMATION)

    assert result.email.detail == "email provider not configured"
    assert result.messaging.detail == "messaging gateway not configured"


def _client_settings(tmp_path) -> Settings:
    return Settings(
        api_base_url="https://desk.example.com/",
        api_key="operator-key",
        sync_interval_seconds=15.0,
        sync_fetch_timeout_seconds=4.0,
        cache_path=str(tmp_path / "cache" / "tickets.sqlite3"),
        cache_max_bytes=2048,
        cache_max_age_seconds=600.0,
        cache_history_entries=2,
        cache_message_chars=80,
    )


def test_store_client_and_cache_follow_client_settings(tmp_path):
    settings = _client_settings(tmp_path)

    api = build_store_client(settings)
    cache = build_fallback_cache(settings)

    assert api.base_url == "https://desk.example.com"
    assert api.api_key == "operator-key"
    assert api.timeout == 4.0
    assert (cache.max_bytes, cache.max_age) == (2048, 600.0)
    assert (tmp_path / "cache" / "tickets.sqlite3").exists()


def test_sync_client_uses_reconciliation_settings(tmp_path):
    settings = _client_settings(tmp_path)
    cache = SqliteFallbackCache()

    client = build_sync_client(settings, cache=cache)

    assert client.api.base_url == "https://desk.example.com"
    assert client.cache is cache
    assert client.scheduler.interval == 15.0
    assert client.fetch_timeout == 4.0
    assert (client.history_entries, client.message_chars) == (2, 80)


def test_intake_bridge_queues_into_configured_cache(tmp_path):
    settings = _client_settings(tmp_path)

    bridge = build_intake_bridge(settings)

    assert bridge.api.base_url == "https://desk.example.com"
    assert bridge.pending.max_bytes == 2048
