"""Messaging (WhatsApp gateway) delivery with runtime wire-format discovery.

Several gateway products can sit behind one configured base URL and each
expects a different request shape. Every shape is modelled as one adapter of
the :class:`MessagingProvider` capability; :class:`MessagingFallbackChain`
tries them once each in priority order and remembers the first one that
worked for the configured endpoint.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

import httpx

from certdesk.errors import ChannelDeliveryError

from .attachments import EncodedAttachment
from .http import ClientScope, json_body

logger = logging.getLogger(__name__)

CHANNEL = "messaging"
COUNTRY_CODE = "55"

_ERROR_WORDS = ("error", "not found", "failed")


class ProviderResponseError(RuntimeError):
    """A gateway answered, but not with a success for this request shape."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class MessagingConfig:
    """Credentials shared by every candidate wire format."""

    base_url: str
    api_key: str
    instance_id: str | None = None
    client_token: str | None = None

    @property
    def normalized_base_url(self) -> str:
        return self.base_url.rstrip("/")


@dataclass(slots=True)
class MessagingReceipt:
    """Outcome of a successful messaging send."""

    variant: str
    message_id: str
    attempts: list[str] = field(default_factory=list)
    document_sent: bool = False


def normalize_phone(phone: str) -> str | None:
    """Digits only, leading zero dropped, country code prefixed."""

    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0"):
        digits = digits[1:]
    if not digits:
        return None
    if not digits.startswith(COUNTRY_CODE):
        digits = COUNTRY_CODE + digits
    return digits


def _check_response(response: httpx.Response) -> dict[str, Any]:
    body = json_body(response)
    if response.status_code >= 400:
        detail = body.get("message") or body.get("error") or response.text or "no detail"
        raise ProviderResponseError(f"HTTP {response.status_code}: {detail}", status_code=response.status_code)
    if body.get("success"):
        return body
    text = str(body.get("message") or "").lower()
    if body.get("error") or body.get("is_error") or any(word in text for word in _ERROR_WORDS):
        detail = body.get("message") or body.get("error") or "error flag set"
        raise ProviderResponseError(f"Gateway reported an error: {detail}", status_code=response.status_code)
    return body


def _extract_message_id(body: Mapping[str, Any]) -> str:
    for key in ("id", "message_id", "messageId", "zaapId"):
        if body.get(key):
            return str(body[key])
    for container in ("key", "result"):
        nested = body.get(container)
        if isinstance(nested, Mapping) and nested.get("id"):
            return str(nested["id"])
    return "N/A"


class MessagingProvider(Protocol):
    """One hypothesis about the gateway's wire contract."""

    variant: str
    supports_documents: bool

    async def send_text(self, client: httpx.AsyncClient, phone: str, text: str) -> dict[str, Any]:
        ...

    async def send_document(self, client: httpx.AsyncClient, phone: str, attachment: EncodedAttachment) -> dict[str, Any]:
        ...


class _HttpAdapter(ABC):
    variant = "base"
    supports_documents = False

    def __init__(self, config: MessagingConfig, *, timeout: float = 10.0) -> None:
        self.config = config
        self.timeout = timeout

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, client: httpx.AsyncClient, url: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        response = await client.post(url, json=dict(payload), headers=self.headers(), timeout=self.timeout)
        return _check_response(response)

    @abstractmethod
    async def send_text(self, client: httpx.AsyncClient, phone: str, text: str) -> dict[str, Any]:
        ...

    async def send_document(self, client: httpx.AsyncClient, phone: str, attachment: EncodedAttachment) -> dict[str, Any]:
        raise ProviderResponseError(f"{self.variant} does not deliver documents")


class ZApiAdapter(_HttpAdapter):
    """Credentials in the path (``instances/{id}/token/{token}``), optional Client-Token header."""

    variant = "z-api"
    supports_documents = True

    def _credentials(self) -> tuple[str, str]:
        parts = self.config.api_key.split(":")
        if len(parts) >= 2:
            return parts[0], parts[1]
        return self.config.instance_id or "default", self.config.api_key

    def _instance_url(self) -> str:
        base = self.config.normalized_base_url
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        if "/instances/" in base:
            return base
        instance, token = self._credentials()
        return f"{base}/instances/{instance}/token/{token}"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.config.client_token:
            headers["Client-Token"] = self.config.client_token
        return headers

    async def send_text(self, client: httpx.AsyncClient, phone: str, text: str) -> dict[str, Any]:
        return await self._post(client, f"{self._instance_url()}/send-text", {"phone": phone, "message": text})

    async def send_document(self, client: httpx.AsyncClient, phone: str, attachment: EncodedAttachment) -> dict[str, Any]:
        url = f"{self._instance_url()}/send-document/{attachment.extension}"
        payload = {"phone": phone, "document": attachment.data, "fileName": attachment.name}
        try:
            return await self._post(client, url, payload)
        except ProviderResponseError:
            # Some deployments only accept the document as a data URI.
            payload["document"] = attachment.as_data_uri()
            return await self._post(client, url, payload)


class EvolutionAdapter(_HttpAdapter):
    """``apikey`` header, ``number``/``text`` payload, instance in the path."""

    variant = "evolution"
    supports_documents = True

    def _instance(self) -> str:
        return self.config.instance_id or "default"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["apikey"] = self.config.api_key
        return headers

    async def send_text(self, client: httpx.AsyncClient, phone: str, text: str) -> dict[str, Any]:
        url = f"{self.config.normalized_base_url}/message/sendText/{self._instance()}"
        return await self._post(client, url, {"number": phone, "text": text})

    async def send_document(self, client: httpx.AsyncClient, phone: str, attachment: EncodedAttachment) -> dict[str, Any]:
        url = f"{self.config.normalized_base_url}/message/sendMedia/{self._instance()}"
        payload = {
            "number": phone,
            "mediatype": "document",
            "mimetype": attachment.content_type,
            "media": attachment.data,
            "fileName": attachment.name,
        }
        return await self._post(client, url, payload)


class BearerTokenAdapter(_HttpAdapter):
    """``Authorization: Bearer`` header, ``phone``/``message`` payload on ``/messages``."""

    variant = "bearer"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def send_text(self, client: httpx.AsyncClient, phone: str, text: str) -> dict[str, Any]:
        return await self._post(client, f"{self.config.normalized_base_url}/messages", {"phone": phone, "message": text})


class ApiKeyHeaderAdapter(BearerTokenAdapter):
    """``X-API-Key`` header, same payload as the bearer variant."""

    variant = "x-api-key"

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "X-API-Key": self.config.api_key}


def default_adapters(config: MessagingConfig, *, timeout: float = 10.0) -> list[MessagingProvider]:
    """Candidate wire formats in priority order."""

    return [
        ZApiAdapter(config, timeout=timeout),
        EvolutionAdapter(config, timeout=timeout),
        BearerTokenAdapter(config, timeout=timeout),
        ApiKeyHeaderAdapter(config, timeout=timeout),
    ]


class MessagingFallbackChain:
    """Try each adapter once, in order, until one accepts the message."""

    def __init__(
        self,
        config: MessagingConfig,
        *,
        adapters: Sequence[MessagingProvider] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not config.base_url or not config.api_key:
            raise ValueError("Messaging gateway requires both a base URL and an API key")
        self.config = config
        self._adapters = list(adapters) if adapters is not None else default_adapters(config, timeout=timeout)
        if not self._adapters:
            raise ValueError("At least one messaging adapter is required")
        self._http = http_client
        self._known_good: dict[str, str] = {}

    @property
    def known_good_variant(self) -> str | None:
        return self._known_good.get(self.config.normalized_base_url)

    def _ordered(self) -> list[MessagingProvider]:
        cached = self.known_good_variant
        if cached is None:
            return list(self._adapters)
        preferred = [adapter for adapter in self._adapters if adapter.variant == cached]
        return preferred + [adapter for adapter in self._adapters if adapter.variant != cached]

    async def send(self, phone: str, text: str, *, attachment: EncodedAttachment | None = None) -> MessagingReceipt:
        number = normalize_phone(phone)
        if number is None:
            raise ChannelDeliveryError(CHANNEL, f"Invalid phone number: {phone!r}")

        attempts: list[str] = []
        last_error: Exception | None = None
        endpoint = self.config.normalized_base_url
        async with ClientScope(self._http) as client:
            for adapter in self._ordered():
                attempts.append(adapter.variant)
                try:
                    body = await adapter.send_text(client, number, text)
                except (ProviderResponseError, httpx.HTTPError) as exc:
                    logger.warning("Messaging format %s rejected by %s: %s", adapter.variant, endpoint, exc)
                    last_error = exc
                    if self._known_good.get(endpoint) == adapter.variant:
                        del self._known_good[endpoint]
                    continue

                self._known_good[endpoint] = adapter.variant
                logger.info("Messaging delivered to %s using format %s", number, adapter.variant)
                receipt = MessagingReceipt(
                    variant=adapter.variant,
                    message_id=_extract_message_id(body),
                    attempts=attempts,
                )
                if attachment is not None:
                    receipt.document_sent = await self._send_document(client, adapter, number, attachment)
                return receipt

        last_variant = attempts[-1] if attempts else None
        raise ChannelDeliveryError(
            CHANNEL,
            f"All {len(attempts)} wire formats failed; last ({last_variant}): {last_error}",
            variant=last_variant,
            cause=last_error,
        )

    async def _send_document(
        self,
        client: httpx.AsyncClient,
        adapter: MessagingProvider,
        number: str,
        attachment: EncodedAttachment,
    ) -> bool:
        if not adapter.supports_documents:
            logger.warning("Messaging format %s cannot deliver documents; %s not sent", adapter.variant, attachment.name)
            return False
        try:
            await adapter.send_document(client, number, attachment)
        except (ProviderResponseError, httpx.HTTPError) as exc:
            raise ChannelDeliveryError(
                CHANNEL,
                f"Text delivered but document '{attachment.name}' was rejected: {exc}",
                variant=adapter.variant,
                cause=exc,
            ) from exc
        return True
