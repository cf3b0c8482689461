from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from certdesk.errors import StorageUnavailableError
from certdesk.sync.cache import SqliteFallbackCache
from certdesk.sync.client import CACHE_KEY, SOURCE_CACHE, SOURCE_EMPTY, SOURCE_STORE, SyncClient
from certdesk.sync.scheduler import SchedulerHandle
from certdesk.tickets.ledger import apply_entry, new_entry
from certdesk.tickets.models import PersonType, Priority, Ticket
from certdesk.tickets.state import TicketStatus


def _ticket(ticket_id: str = "t-1", *, notes: int = 0) -> Ticket:
    ticket = Ticket(
        id=ticket_id,
        code=f"TK-{ticket_id[-1]}",
        full_name="Maria da Silva",
        tax_id="12345678909",
        certificate_type="criminal-federal",
        person_type=PersonType.INDIVIDUAL,
        priority=Priority.PREMIUM,
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    for index in range(notes):
        entry = new_entry(ticket, author="ana", new_status=TicketStatus.EM_ATENDIMENTO, message=f"{index} " + "x" * 300)
        ticket = apply_entry(ticket, entry)
    return ticket


@pytest.fixture
def api() -> AsyncMock:
    mock = AsyncMock()
    mock.list_tickets = AsyncMock(return_value=[_ticket()])
    return mock


@pytest.mark.asyncio
async def test_scheduler_arm_and_disarm_are_idempotent():
    fired = []
    scheduler = SchedulerHandle(0.01, lambda: fired.append(1))

    scheduler.arm()
    scheduler.arm()
    await asyncio.sleep(0.035)
    scheduler.disarm()
    scheduler.disarm()
    count = len(fired)
    await asyncio.sleep(0.03)

    assert 1 <= count <= 4
    assert len(fired) == count
    assert not scheduler.armed


@pytest.mark.asyncio
async def test_callback_that_disarms_is_not_rearmed():
    scheduler: SchedulerHandle

    def once():
        scheduler.disarm()

    scheduler = SchedulerHandle(0.01, once)
    scheduler.arm()
    await asyncio.sleep(0.03)

    assert not scheduler.armed


@pytest.mark.asyncio
async def test_repeated_pause_then_resume_fetches_once_and_rearms(api):
    client = SyncClient(api, interval=60)

    client.pause()
    client.pause()
    await client.resume()

    try:
        assert api.list_tickets.await_count == 1
        assert client.scheduler.armed
        assert client.source == SOURCE_STORE
    finally:
        await client.stop()
    assert not client.scheduler.armed


@pytest.mark.asyncio
async def test_scheduled_ticks_refresh_the_view(api):
    updates = []
    client = SyncClient(api, interval=0.01, on_update=updates.append)

    await client.start()
    await asyncio.sleep(0.05)
    await client.stop()

    assert api.list_tickets.await_count >= 2
    assert updates and updates[-1][0].id == "t-1"


@pytest.mark.asyncio
async def test_unreachable_store_serves_cached_projection(api):
    cache = SqliteFallbackCache()
    client = SyncClient(api, cache=cache, interval=60)
    await client.refresh()

    api.list_tickets = AsyncMock(side_effect=StorageUnavailableError("connection refused"))
    tickets = await client.refresh()

    assert client.source == SOURCE_CACHE
    assert [ticket.id for ticket in tickets] == ["t-1"]


@pytest.mark.asyncio
async def test_unreachable_store_without_cache_keeps_empty_view():
    api = AsyncMock()
    api.list_tickets = AsyncMock(side_effect=StorageUnavailableError("connection refused"))
    client = SyncClient(api, cache=SqliteFallbackCache(), interval=60)

    assert await client.refresh() == []
    assert client.source == SOURCE_EMPTY


@pytest.mark.asyncio
async def test_slow_store_times_out_to_cache(api):
    cache = SqliteFallbackCache()
    client = SyncClient(api, cache=cache, interval=60, fetch_timeout=0.05)
    await client.refresh()

    async def slow(**_):
        await asyncio.sleep(1)

    api.list_tickets = AsyncMock(side_effect=slow)
    await client.refresh()

    assert client.source == SOURCE_CACHE


@pytest.mark.asyncio
async def test_cache_projection_shrinks_under_quota_pressure(api):
    api.list_tickets = AsyncMock(return_value=[_ticket(notes=3)])
    cache = SqliteFallbackCache(max_bytes=700)
    client = SyncClient(api, cache=cache, interval=60, history_entries=3, message_chars=200)

    tickets = await client.refresh()

    assert len(tickets[0].history) == 3
    cached = cache.get(CACHE_KEY)
    assert cached is not None
    assert len(cached[0]["history"]) <= 1
    assert cache.total_bytes() <= 700


@pytest.mark.asyncio
async def test_projection_that_never_fits_leaves_store_data_intact(api):
    client = SyncClient(api, cache=SqliteFallbackCache(max_bytes=10), interval=60)

    tickets = await client.refresh()

    assert [ticket.id for ticket in tickets] == ["t-1"]
    assert client.source == SOURCE_STORE


@pytest.mark.asyncio
async def test_transition_sends_local_status_as_precondition(api):
    acknowledged = _ticket()
    acknowledged.status = TicketStatus.EM_ATENDIMENTO
    api.apply_transition = AsyncMock(return_value=(acknowledged, None))
    client = SyncClient(api, interval=60)
    await client.refresh()

    ticket, notification = await client.transition("t-1", TicketStatus.EM_ATENDIMENTO, author="ana")

    assert notification is None
    assert api.apply_transition.await_args.kwargs["expected_status"] == TicketStatus.GERAL
    assert client.find("t-1").status == TicketStatus.EM_ATENDIMENTO


def _blocked_fetch(gate: asyncio.Event, started: asyncio.Event):
    async def fetch(**_):
        started.set()
        await gate.wait()
        return [_ticket()]

    return AsyncMock(side_effect=fetch)


@pytest.mark.asyncio
async def test_pause_during_resume_fetch_keeps_timer_disarmed(api):
    gate, started = asyncio.Event(), asyncio.Event()
    api.list_tickets = _blocked_fetch(gate, started)
    updates = []
    client = SyncClient(api, interval=60, on_update=updates.append)

    resuming = asyncio.create_task(client.resume())
    await started.wait()
    client.pause()
    gate.set()
    await resuming

    assert client.paused
    assert not client.scheduler.armed
    assert updates == []
    assert client.source == SOURCE_EMPTY


@pytest.mark.asyncio
async def test_pause_discards_scheduled_fetch_in_flight(api):
    updates = []
    client = SyncClient(api, interval=0.01, on_update=updates.append)
    await client.start()
    updates.clear()

    gate, started = asyncio.Event(), asyncio.Event()
    api.list_tickets = _blocked_fetch(gate, started)
    await asyncio.wait_for(started.wait(), timeout=1)
    client.pause()
    gate.set()
    await asyncio.sleep(0.03)

    try:
        assert updates == []
        assert not client.scheduler.armed
        assert api.list_tickets.await_count == 1
    finally:
        await client.stop()
