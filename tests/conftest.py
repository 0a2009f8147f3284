"""
Shared pytest fixtures for the notepush test suite.

Timers are replaced by FakeTimerRegistry (records fire times, tests fire them
explicitly) and the webhook dispatcher by RecordingDispatcher.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.destinations import DestinationTable
from datamodel import Destination
from events import Bus
from scheduler.engine import ScheduleEngine
from scheduler.timers import TimerHandle, TimerRegistry
from storage.schedule import ScheduleStore


class FakeTimerRegistry(TimerRegistry):
    """Deterministic registry: nothing fires until the test calls fire()."""

    def __init__(self) -> None:
        super().__init__()
        self.started: list[TimerHandle] = []
        self.stopped: list[TimerHandle] = []

    def _start(self, handle: TimerHandle, delay: float) -> None:
        self.started.append(handle)

    def _stop(self, handle: TimerHandle) -> None:
        self.stopped.append(handle)

    def fire_times(self) -> dict[str, datetime]:
        return {note_id: h.fire_at for note_id, h in self._handles.items()}

    async def fire(self, note_id: str) -> bool:
        handle = self.get(note_id)
        if handle is None or not self._begin_fire(handle):
            return False
        try:
            await handle.callback()
        finally:
            self.disarm(note_id, handle)
        return True


class RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, bool]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def send(self, destination_id: str, message: str, mention_all: bool = False) -> None:
        self.calls.append((destination_id, message, mention_all))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        pass


def in_seconds(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


@pytest.fixture
def destinations():
    return DestinationTable([
        Destination(id="D1", name="Notificações", url="https://chat.example.com/v1/spaces/AAA/messages"),
        Destination(id="D2", name="Equipa", url="https://chat.example.com/v1/spaces/BBB/messages"),
    ])


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh database for each test."""
    store = ScheduleStore(str(tmp_path / "data" / "test.db"))
    yield store
    await store.close()


@pytest.fixture
def registry():
    return FakeTimerRegistry()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def bus():
    return Bus()


@pytest.fixture
def engine(store, registry, dispatcher, destinations, bus):
    return ScheduleEngine(
        store=store,
        registry=registry,
        dispatcher=dispatcher,
        destinations=destinations,
        bus=bus,
    )
