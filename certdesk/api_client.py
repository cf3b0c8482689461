from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from certdesk.errors import (
    AuthenticationError,
    CertdeskError,
    InvalidTransitionError,
    StorageUnavailableError,
    TicketNotFoundError,
    TicketValidationError,
)
from certdesk.tickets.models import Ticket, TicketDraft
from certdesk.tickets.state import TicketStatus

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(data, Mapping):
        detail = data.get("detail")
        if isinstance(detail, str):
            return detail
        if isinstance(detail, list) and detail and isinstance(detail[0], Mapping) and "msg" in detail[0]:
            return str(detail[0]["msg"])
    return f"HTTP {response.status_code}"


def _error_for(status_code: int, message: str) -> CertdeskError:
    if status_code == 404:
        return TicketNotFoundError(message)
    if status_code == 409:
        return InvalidTransitionError(message)
    if status_code in (401, 403):
        return AuthenticationError(message)
    if status_code >= 500:
        return StorageUnavailableError(message)
    return TicketValidationError(message)


class TicketStoreClient:
    """Async client for the ticket store HTTP API, shared by sync clients and the intake bridge."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "TicketStoreClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers: dict[str, str] = {"Accept": "application/json", API_KEY_HEADER: self.api_key}
        headers.update(kwargs.pop("headers", {}))

        try:
            response = await self._http.request(
                method, self._build_url(path), headers=headers, timeout=self.timeout, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.warning("Ticket store unreachable (%s %s): %s", method, path, exc)
            raise StorageUnavailableError(f"Ticket store unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise _error_for(response.status_code, _extract_error_message(response))

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _build_url(self, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{normalized}"

    async def health(self) -> Mapping[str, Any]:
        return await self._request("GET", "/health")

    async def list_tickets(
        self, *, status: TicketStatus | None = None, operator: str | None = None
    ) -> list[Ticket]:
        params: dict[str, str] = {}
        if status is not None:
            params["status"] = status.value
        if operator:
            params["operator"] = operator
        data = await self._request("GET", "/tickets", params=params)
        return [Ticket.from_dict(item) for item in data or []]

    async def get_ticket(self, key: str) -> Ticket:
        return Ticket.from_dict(await self._request("GET", f"/tickets/{key}"))

    async def find_ticket(self, key: str) -> Ticket | None:
        try:
            return await self.get_ticket(key)
        except TicketNotFoundError:
            return None

    async def generate_code(self) -> str:
        data = await self._request("GET", "/tickets/generate-code")
        return str(data["code"])

    async def create_ticket(self, draft: TicketDraft) -> Ticket:
        return Ticket.from_dict(await self._request("POST", "/tickets", json=draft.to_dict()))

    async def apply_transition(
        self,
        ticket_id: str,
        status: TicketStatus,
        *,
        author: str,
        message: str = "",
        expected_status: TicketStatus | None = None,
        operator: str | None = None,
        attachment: Mapping[str, str] | None = None,
    ) -> tuple[Ticket, Mapping[str, Any] | None]:
        """Send one transition; returns the acknowledged ticket and the notification outcome."""

        payload: dict[str, Any] = {"status": status.value, "author": author, "message": message}
        if expected_status is not None:
            payload["expected_status"] = expected_status.value
        if operator:
            payload["operator"] = operator
        if attachment is not None:
            payload["attachment"] = dict(attachment)
        data = await self._request("PUT", f"/tickets/{ticket_id}", json=payload)
        return Ticket.from_dict(data["ticket"]), data.get("notification")

    async def send_completion(
        self, ticket_id: str, *, message: str = "", attachment: Mapping[str, str] | None = None
    ) -> Mapping[str, Any]:
        payload: dict[str, Any] = {"mensagemInteracao": message}
        if attachment is not None:
            payload["anexo"] = dict(attachment)
        return await self._request("POST", f"/tickets/{ticket_id}/send-completion", json=payload)

    async def history(self, key: str, *, limit: int | None = None) -> Mapping[str, Any]:
        params = {"limit": str(limit)} if limit else {}
        return await self._request("GET", f"/tickets/{key}/history", params=params)
