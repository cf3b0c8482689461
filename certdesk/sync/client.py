"""Pull-based reconciliation of a console session against the ticket store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Mapping, Sequence

from certdesk.api_client import TicketStoreClient
from certdesk.errors import CacheError, CacheQuotaExceededError, CertdeskError, StorageUnavailableError
from certdesk.tickets.models import Ticket
from certdesk.tickets.state import TicketStatus

from .cache import SqliteFallbackCache
from .scheduler import SchedulerHandle

logger = logging.getLogger(__name__)

CACHE_KEY = "tickets"

SOURCE_STORE = "store"
SOURCE_CACHE = "cache"
SOURCE_EMPTY = "empty"


def project_ticket(ticket: Ticket, *, history_entries: int, message_chars: int) -> dict[str, Any]:
    """Size-bounded snapshot of ``ticket`` for the fallback cache."""

    history = ticket.history[-history_entries:] if history_entries > 0 else []
    trimmed = [replace(entry, message=entry.message[:message_chars]).to_dict() for entry in history]
    return {
        "id": ticket.id,
        "code": ticket.code,
        "status": ticket.status.value,
        "priority": ticket.priority.value,
        "full_name": ticket.full_name,
        "certificate_type": ticket.certificate_type,
        "assigned_operator": ticket.assigned_operator,
        "created_at": ticket.created_at.isoformat(),
        "completed_at": ticket.completed_at.isoformat() if ticket.completed_at else None,
        "history": trimmed,
    }


class SyncClient:
    """Keep a local ticket list reconciled with the authoritative store.

    The list is refreshed every ``interval`` seconds. ``pause`` suspends the
    timer during interactive edits and discards any fetch still in flight;
    ``resume`` fetches once and re-arms it unless paused again meanwhile.
    When the store is unreachable the last cached projection is served.
    """

    def __init__(
        self,
        api: TicketStoreClient,
        *,
        cache: SqliteFallbackCache | None = None,
        interval: float = 10.0,
        fetch_timeout: float = 10.0,
        status: TicketStatus | None = None,
        operator: str | None = None,
        history_entries: int = 3,
        message_chars: int = 200,
        on_update: Callable[[Sequence[Ticket]], None] | None = None,
    ) -> None:
        self.api = api
        self.cache = cache
        self.fetch_timeout = fetch_timeout
        self.status = status
        self.operator = operator
        self.history_entries = history_entries
        self.message_chars = message_chars
        self.scheduler = SchedulerHandle(interval, self._on_tick)
        self.source = SOURCE_EMPTY
        self._on_update = on_update
        self._tickets: list[Ticket] = []
        self._inflight: asyncio.Task[list[Ticket]] | None = None
        self._paused = True
        # Bumped on every pause/stop; fetches started under an older value are stale.
        self._generation = 0

    @property
    def tickets(self) -> list[Ticket]:
        return list(self._tickets)

    def find(self, ticket_id: str) -> Ticket | None:
        return next((ticket for ticket in self._tickets if ticket.id == ticket_id), None)

    @property
    def paused(self) -> bool:
        return self._paused

    async def start(self) -> None:
        await self.resume()

    async def stop(self) -> None:
        self._suspend()
        if self._inflight is not None and not self._inflight.done():
            try:
                await self._inflight
            except asyncio.CancelledError:
                pass
        self._inflight = None

    def pause(self) -> None:
        """Suspend reconciliation; fetches still in flight are discarded."""

        self._suspend()

    async def resume(self) -> None:
        self._paused = False
        generation = self._generation
        await self.refresh()
        if generation == self._generation:
            self.scheduler.arm()

    async def refresh(self) -> list[Ticket]:
        """Fetch the authoritative list, falling back to the cache when unreachable.

        A result that arrives after ``pause`` or ``stop`` is dropped.
        """

        generation = self._generation
        try:
            tickets = await asyncio.wait_for(
                self.api.list_tickets(status=self.status, operator=self.operator),
                timeout=self.fetch_timeout,
            )
        except (StorageUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Ticket store unavailable, serving cached view: %s", str(exc) or "fetch timed out")
            cached = self._load_cache()
            if cached is not None and generation == self._generation:
                self._replace(cached, SOURCE_CACHE)
            return self.tickets

        if generation != self._generation:
            logger.debug("Discarding ticket list fetched before the client was paused")
            return self.tickets
        self._replace(tickets, SOURCE_STORE)
        self._write_cache(tickets)
        return self.tickets

    async def transition(
        self,
        ticket_id: str,
        status: TicketStatus,
        *,
        author: str,
        message: str = "",
        operator: str | None = None,
        attachment: Mapping[str, str] | None = None,
    ) -> tuple[Ticket, Mapping[str, Any] | None]:
        """Send a status change and merge the acknowledged ticket into the local view.

        The locally known status is sent as the precondition, so a change based
        on a stale view is rejected by the store instead of silently applied.
        """

        current = self.find(ticket_id)
        ticket, notification = await self.api.apply_transition(
            ticket_id,
            status,
            author=author,
            message=message,
            expected_status=current.status if current is not None else None,
            operator=operator,
            attachment=attachment,
        )
        self._merge(ticket)
        return ticket, notification

    def _suspend(self) -> None:
        self._paused = True
        self._generation += 1
        self.scheduler.disarm()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    def _on_tick(self) -> None:
        if self._paused:
            return
        if self._inflight is not None and not self._inflight.done():
            return
        self._inflight = asyncio.get_running_loop().create_task(self.refresh())
        self._inflight.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, CertdeskError):
            logger.error("Scheduled ticket refresh failed: %s", exc)
        elif exc is not None:
            logger.error("Scheduled ticket refresh crashed", exc_info=exc)

    def _replace(self, tickets: Sequence[Ticket], source: str) -> None:
        self._tickets = list(tickets)
        self.source = source
        if self._on_update is not None:
            self._on_update(self.tickets)

    def _merge(self, ticket: Ticket) -> None:
        merged = [ticket if existing.id == ticket.id else existing for existing in self._tickets]
        if not any(existing.id == ticket.id for existing in self._tickets):
            merged.append(ticket)
        self._replace(merged, self.source if self.source != SOURCE_EMPTY else SOURCE_STORE)

    def _projection_levels(self) -> list[tuple[int, int]]:
        return [
            (self.history_entries, self.message_chars),
            (min(self.history_entries, 1), min(self.message_chars, 50)),
            (0, 0),
        ]

    def _write_cache(self, tickets: Sequence[Ticket]) -> bool:
        """Best-effort projection write; shrinks the projection under quota pressure, never raises."""

        if self.cache is None:
            return False
        for history_entries, message_chars in self._projection_levels():
            projection = [
                project_ticket(ticket, history_entries=history_entries, message_chars=message_chars)
                for ticket in tickets
            ]
            try:
                self.cache.put(CACHE_KEY, projection)
                return True
            except CacheQuotaExceededError as exc:
                logger.warning(
                    "Cache quota exceeded with %d history entries per ticket, retrying smaller: %s",
                    history_entries,
                    exc,
                )
                try:
                    self.cache.clear()
                except CacheError as clear_exc:
                    logger.warning("Cache clear failed, serving store data only: %s", clear_exc)
                    return False
            except CacheError as exc:
                logger.warning("Cache write failed, serving store data only: %s", exc)
                return False
        logger.warning("Ticket projection does not fit the cache; serving store data only")
        return False

    def _load_cache(self) -> list[Ticket] | None:
        if self.cache is None:
            return None
        try:
            cached = self.cache.get(CACHE_KEY)
        except CacheError as exc:
            logger.warning("Cache read failed: %s", exc)
            return None
        if cached is None:
            return None
        return [Ticket.from_dict(item) for item in cached]
