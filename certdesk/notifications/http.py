"""Small httpx helpers shared by the provider clients."""

from __future__ import annotations

from typing import Any

import httpx


class ClientScope:
    """Reuse an injected client, or open a short-lived one for a single send."""

    def __init__(self, client: httpx.AsyncClient | None) -> None:
        self._injected = client
        self._owned: httpx.AsyncClient | None = None

    async def __aenter__(self) -> httpx.AsyncClient:
        if self._injected is not None:
            return self._injected
        self._owned = httpx.AsyncClient()
        return self._owned

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._owned is not None:
            await self._owned.aclose()
            self._owned = None
        return False


def json_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; non-object or non-JSON bodies become ``{}`` / ``{"result": ...}``."""

    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"result": data}
