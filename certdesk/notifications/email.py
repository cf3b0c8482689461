from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from certdesk.errors import ChannelDeliveryError

from .attachments import EncodedAttachment
from .http import ClientScope, json_body

logger = logging.getLogger(__name__)

CHANNEL = "email"


@dataclass(frozen=True, slots=True)
class EmailMessage:
    """Single outgoing email with an optional attachment."""

    to_email: str
    to_name: str
    subject: str
    html: str
    text: str
    attachment: EncodedAttachment | None = None


class EmailProvider(Protocol):
    async def send(self, message: EmailMessage) -> str:
        """Deliver ``message`` and return the provider's message id."""
        ...


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, Mapping):
        for key in ("message", "error_description", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def _friendly_error(status_code: int, message: str) -> str:
    lowered = message.lower()
    if "sender" in lowered or "not valid" in lowered:
        return f"Sender address is not verified with the email provider ({message})"
    if status_code in (401, 403):
        return f"Email provider rejected the credentials ({message})"
    return message


class SendPulseEmailProvider:
    """Email delivery through the SendPulse SMTP REST API.

    An OAuth client-credentials token is requested on first use and cached until
    shortly before it expires; a 401 on send drops the cached token and retries once.
    """

    _TOKEN_PATH = "/oauth/access_token"
    _SEND_PATH = "/smtp/emails"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        sender_email: str,
        sender_name: str,
        api_url: str = "https://api.sendpulse.com",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._sender_email = sender_email
        self._sender_name = sender_name
        self._api_url = api_url.rstrip("/")
        self._http = http_client
        self._timeout = timeout
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def send(self, message: EmailMessage) -> str:
        payload = self._build_payload(message)
        async with ClientScope(self._http) as client:
            response = await self._post_email(client, payload)
            if response.status_code == 401:
                self._token = None
                response = await self._post_email(client, payload)

        if response.status_code >= 400:
            detail = _friendly_error(response.status_code, _extract_error_message(response))
            raise ChannelDeliveryError(CHANNEL, detail)

        body = json_body(response)
        if body.get("is_error") or (body.get("error_code") not in (None, 200)):
            detail = _friendly_error(response.status_code, str(body.get("message") or body.get("error") or "unknown error"))
            raise ChannelDeliveryError(CHANNEL, detail)

        message_id = str(body.get("id") or body.get("email_id") or "N/A")
        logger.info("Email delivered to %s (id=%s)", message.to_email, message_id)
        return message_id

    def _build_payload(self, message: EmailMessage) -> dict[str, Any]:
        email: dict[str, Any] = {
            "html": base64.b64encode(message.html.encode("utf-8")).decode("ascii"),
            "text": message.text,
            "subject": message.subject,
            "from": {"name": self._sender_name, "email": self._sender_email},
            "to": [{"name": message.to_name, "email": message.to_email}],
        }
        if message.attachment is not None:
            email["attachments_binary"] = {message.attachment.name: message.attachment.data}
        return {"email": email}

    async def _post_email(self, client: httpx.AsyncClient, payload: Mapping[str, Any]) -> httpx.Response:
        token = await self._access_token(client)
        try:
            return await client.post(
                f"{self._api_url}{self._SEND_PATH}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(CHANNEL, f"Email provider unreachable: {exc}", cause=exc) from exc

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self._client_id or not self._client_secret:
            raise ChannelDeliveryError(CHANNEL, "Email provider credentials are not configured")
        try:
            response = await client.post(
                f"{self._api_url}{self._TOKEN_PATH}",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(CHANNEL, f"Email provider unreachable: {exc}", cause=exc) from exc
        if response.status_code >= 400:
            raise ChannelDeliveryError(
                CHANNEL, _friendly_error(response.status_code, _extract_error_message(response))
            )
        body = json_body(response)
        token = body.get("access_token")
        if not token:
            raise ChannelDeliveryError(CHANNEL, "Email provider returned no access token")
        self._token = str(token)
        # Refresh a minute early so a token never expires mid-request.
        self._token_expires_at = time.monotonic() + max(0.0, float(body.get("expires_in", 3600)) - 60.0)
        return self._token

