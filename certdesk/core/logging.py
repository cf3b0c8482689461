"""Logging and tracing setup for the ticket service.

Every log record carries ``trace_id``: the id of the active span (for example
``notification.email``) or ``-`` outside one, so a delivery failure in the logs
can be matched to its exported trace.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig
from urllib.parse import unquote

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from certdesk.core.config import Settings

_TRACER_INITIALISED = False

# Provider clients log every request at INFO; keep them out of operator logs.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")


class TraceContextFilter(logging.Filter):
    """Stamp records with the current span's trace id."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        return True


def parse_otlp_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers.

    Values are percent-decoded as in ``OTEL_EXPORTER_OTLP_HEADERS``; items
    without a key or ``=`` are skipped.
    """

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip().lower()] = unquote(value.strip())
    return headers


def configure_logging(settings: Settings) -> logging.Logger:
    """Configure root logging once from settings and return the package logger."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"trace_context": {"()": TraceContextFilter}},
            "formatters": {"default": {"format": settings.log_format}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["trace_context"],
                    "level": level,
                }
            },
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
            "root": {"handlers": ["default"], "level": level},
        }
    )

    logger = logging.getLogger("certdesk")
    logger.setLevel(level)
    logger.info("Logging configured for %s (%s)", settings.app_name, settings.environment)
    return logger


def _build_exporter(settings: Settings) -> OTLPSpanExporter:
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers)
    return OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=headers or None,
    )


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP tracer provider when tracing is enabled.

    Notification channel spans (``notification.email`` / ``notification.messaging``)
    are exported through it; without it they go to the no-op provider.
    """

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.namespace": "certdesk",
                "deployment.environment": settings.environment,
            }
        )
    )
    provider.add_span_processor(BatchSpanProcessor(_build_exporter(settings)))
    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush and shut down the tracer provider installed by :func:`init_tracer`."""

    global _TRACER_INITIALISED

    if provider is None:
        return
    provider.shutdown()
    _TRACER_INITIALISED = False
