"""
Tests for the scheduling engine: submit / fire / cancel / boot reconciliation.

Run with: pytest -q
"""
import asyncio

import pytest

from conftest import FakeTimerRegistry, in_seconds
from datamodel import ScheduleRecord, ScheduleStatus
from errors import (
    MissingFieldsError,
    StoreUnavailableError,
    TransportFailureError,
    UnknownDestinationError,
    UnresolvedDestinationError,
    ValidationError,
)
from events import E
from metrics import RuntimeMetrics, register_metric_handlers
from scheduler.engine import ScheduleEngine
from storage.schedule import ScheduleStore


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_persists_pending_and_arms_timer(self, engine, store, registry):
        when = in_seconds(3600)

        record = await engine.submit("A", when, "D1", "hi")

        assert record.status == ScheduleStatus.PENDING
        assert record.revision == 1
        assert registry.has("A")
        assert registry.fire_times()["A"] == record.schedule_time

        stored = await store.get("A")
        assert stored.status == ScheduleStatus.PENDING
        assert stored.destination_id == "D1"
        assert stored.mention_all is False

    @pytest.mark.asyncio
    async def test_submit_accepts_iso_string_with_z(self, engine, store):
        await engine.submit(42, "2999-01-01T10:00:00.000Z", "D1", "hi", True)

        stored = await store.get("42")
        assert stored.schedule_time.isoformat() == "2999-01-01T10:00:00+00:00"
        assert stored.mention_all is True

    @pytest.mark.asyncio
    async def test_missing_fields_rejected_before_store(self, engine, store, registry):
        with pytest.raises(MissingFieldsError) as exc_info:
            await engine.submit("A", None, "D1", "")

        assert exc_info.value.fields == ["scheduleTime", "message"]
        assert await store.list_all() == []
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_invalid_time_rejected(self, engine, store):
        with pytest.raises(ValidationError):
            await engine.submit("A", "next tuesday", "D1", "hi")
        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_unknown_destination_rejected(self, engine, store, registry):
        with pytest.raises(UnknownDestinationError):
            await engine.submit("A", in_seconds(60), "nope", "hi")

        assert await store.list_all() == []
        assert not registry.has("A")

    @pytest.mark.asyncio
    async def test_resubmission_keeps_single_timer(self, engine, store, registry):
        first = await engine.submit("A", in_seconds(100), "D1", "v1")
        await engine.submit("A", in_seconds(200), "D1", "v2")
        last = await engine.submit("A", in_seconds(300), "D2", "v3")

        assert len(registry) == 1
        assert registry.fire_times()["A"] == last.schedule_time
        # the two superseded timers were stopped
        assert len(registry.stopped) == 2
        assert registry.started[0].fire_at == first.schedule_time

        stored = await store.get("A")
        assert stored.revision == 3
        assert stored.message == "v3"
        assert stored.destination_id == "D2"

    @pytest.mark.asyncio
    async def test_past_due_submission_marked_failed(self, engine, store, registry, dispatcher):
        record = await engine.submit("A", in_seconds(-5), "D1", "late")

        assert record.status == ScheduleStatus.FAILED
        assert not registry.has("A")
        assert (await store.get("A")).status == ScheduleStatus.FAILED
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_past_due_submission_survives_store_failure_on_mark(self, tmp_path, registry, dispatcher, destinations, bus):
        class FlakyStore(ScheduleStore):
            async def update_status(self, *args, **kwargs):
                raise StoreUnavailableError("disk went away")

        store = FlakyStore(str(tmp_path / "flaky.db"))
        engine = ScheduleEngine(store, registry, dispatcher, destinations, bus=bus)
        failed = []
        bus.add_listener(E.SCHEDULE_FAILED, lambda note_id, **_: failed.append(note_id))
        try:
            record = await engine.submit("A", in_seconds(-5), "D1", "late")

            # upsert committed, so the submission counts as accepted; boot marks it FAILED later
            assert record.status == ScheduleStatus.PENDING
            assert (await store.get("A")).status == ScheduleStatus.PENDING
            assert not registry.has("A")
            assert failed == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_resubmission_resets_terminal_status(self, engine, store, registry):
        await engine.submit("A", in_seconds(60), "D1", "hi")
        await registry.fire("A")
        assert (await store.get("A")).status == ScheduleStatus.SENT

        record = await engine.submit("A", in_seconds(120), "D1", "again")

        assert record.status == ScheduleStatus.PENDING
        assert (await store.get("A")).status == ScheduleStatus.PENDING
        assert registry.has("A")

    @pytest.mark.asyncio
    async def test_resubmission_after_cancel_rearms(self, engine, store, registry):
        await engine.submit("A", in_seconds(60), "D1", "hi")
        await engine.cancel("A")

        await engine.submit("A", in_seconds(60), "D1", "hi")

        assert (await store.get("A")).status == ScheduleStatus.PENDING
        assert registry.has("A")


class TestFire:
    @pytest.mark.asyncio
    async def test_fire_sends_and_marks_sent(self, engine, store, registry, dispatcher):
        await engine.submit("A", in_seconds(2), "D1", "hi")

        assert await registry.fire("A")

        assert dispatcher.calls == [("D1", "hi", False)]
        assert (await store.get("A")).status == ScheduleStatus.SENT
        assert not registry.has("A")

    @pytest.mark.asyncio
    async def test_transport_failure_marks_failed(self, engine, store, registry, dispatcher):
        dispatcher.error = TransportFailureError("boom", status_code=500)
        await engine.submit("A", in_seconds(2), "D1", "hi")

        await registry.fire("A")

        assert len(dispatcher.calls) == 1
        assert (await store.get("A")).status == ScheduleStatus.FAILED
        assert not registry.has("A")

    @pytest.mark.asyncio
    async def test_unresolved_destination_marks_failed(self, engine, store, registry, dispatcher):
        dispatcher.error = UnresolvedDestinationError("D1")
        await engine.submit("A", in_seconds(2), "D1", "hi")

        await registry.fire("A")

        assert (await store.get("A")).status == ScheduleStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_dispatch_error_marks_failed(self, engine, store, registry, dispatcher):
        dispatcher.error = RuntimeError("bug")
        await engine.submit("A", in_seconds(2), "D1", "hi")

        await registry.fire("A")

        assert (await store.get("A")).status == ScheduleStatus.FAILED
        assert not registry.has("A")

    @pytest.mark.asyncio
    async def test_resubmission_during_delivery_is_not_overwritten(self, engine, store, registry, dispatcher):
        dispatcher.gate = asyncio.Event()
        await engine.submit("A", in_seconds(2), "D1", "old")

        firing = asyncio.create_task(registry.fire("A"))
        await dispatcher.entered.wait()

        newer = await engine.submit("A", in_seconds(600), "D1", "new")
        dispatcher.gate.set()
        await firing

        stored = await store.get("A")
        assert stored.status == ScheduleStatus.PENDING
        assert stored.revision == newer.revision
        assert registry.fire_times()["A"] == newer.schedule_time


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, engine, store, registry, dispatcher):
        await engine.submit("B", in_seconds(10), "D1", "hi")

        assert await engine.cancel("B") is True

        assert (await store.get("B")).status == ScheduleStatus.CANCELLED
        assert not registry.has("B")
        assert not await registry.fire("B")
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine, store):
        await engine.submit("B", in_seconds(10), "D1", "hi")

        assert await engine.cancel("B") is True
        assert await engine.cancel("B") is False
        assert (await store.get("B")).status == ScheduleStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_id(self, engine, store):
        assert await engine.cancel("ghost") is False
        assert await store.get("ghost") is None

    @pytest.mark.asyncio
    async def test_cancel_after_fire_keeps_sent(self, engine, store, registry):
        await engine.submit("A", in_seconds(2), "D1", "hi")
        await registry.fire("A")

        assert await engine.cancel("A") is False

        assert (await store.get("A")).status == ScheduleStatus.SENT

    @pytest.mark.asyncio
    async def test_cancel_during_delivery_lets_delivery_decide(self, engine, store, registry, dispatcher):
        dispatcher.gate = asyncio.Event()
        await engine.submit("A", in_seconds(2), "D1", "hi")

        firing = asyncio.create_task(registry.fire("A"))
        await dispatcher.entered.wait()

        assert await engine.cancel("A") is False
        dispatcher.gate.set()
        await firing

        assert (await store.get("A")).status == ScheduleStatus.SENT
        assert not registry.has("A")


class TestReconcile:
    @pytest.mark.asyncio
    async def test_past_due_pending_marked_failed_without_dispatch(self, engine, store, registry, dispatcher):
        await store.upsert(ScheduleRecord(id="C", schedule_time=in_seconds(-5), destination_id="D1", message="hi"))

        summary = await engine.reconcile()

        assert summary == {"pending": 1, "armed": 0, "expired": 1}
        assert (await store.get("C")).status == ScheduleStatus.FAILED
        assert len(registry) == 0
        assert registry.started == []
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_future_pending_rearmed(self, engine, store, registry):
        future = in_seconds(3600)
        await store.upsert(ScheduleRecord(id="F", schedule_time=future, destination_id="D1", message="hi"))
        await store.upsert(ScheduleRecord(id="S", schedule_time=future, destination_id="D1", message="hi"))
        await store.update_status("S", ScheduleStatus.SENT)

        summary = await engine.reconcile()

        assert summary["armed"] == 1
        assert registry.fire_times() == {"F": (await store.get("F")).schedule_time}
        assert engine.reconciled is True

    @pytest.mark.asyncio
    async def test_rearmed_timer_fires_normally(self, engine, store, registry, dispatcher):
        await store.upsert(ScheduleRecord(id="F", schedule_time=in_seconds(60), destination_id="D2", message="hi", mention_all=True))
        await engine.reconcile()

        await registry.fire("F")

        assert dispatcher.calls == [("D2", "hi", True)]
        assert (await store.get("F")).status == ScheduleStatus.SENT

    @pytest.mark.asyncio
    async def test_store_unavailable_leaves_engine_running(self, tmp_path, dispatcher, destinations, bus):
        # a directory cannot be opened as a database file
        broken = ScheduleStore(str(tmp_path))
        registry = FakeTimerRegistry()
        engine = ScheduleEngine(broken, registry, dispatcher, destinations, bus=bus)

        assert await engine.reconcile() is None
        assert engine.reconciled is False
        assert len(registry) == 0

        with pytest.raises(StoreUnavailableError):
            await engine.submit("A", in_seconds(60), "D1", "hi")
        assert not registry.has("A")


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_feed_metrics(self, engine, registry, dispatcher, bus):
        metrics = RuntimeMetrics()
        register_metric_handlers(bus, metrics)

        await engine.submit("A", in_seconds(60), "D1", "hi")
        await registry.fire("A")
        await engine.submit("B", in_seconds(60), "D1", "hi")
        await engine.cancel("B")
        dispatcher.error = TransportFailureError("down")
        await engine.submit("C", in_seconds(60), "D1", "hi")
        await registry.fire("C")

        snapshot = metrics.snapshot()
        assert snapshot["submitted_count"] == 3
        assert snapshot["sent_count"] == 1
        assert snapshot["cancelled_count"] == 1
        assert snapshot["failed_count"] == 1
        assert snapshot["dispatch_count"] == 2

    @pytest.mark.asyncio
    async def test_sent_event_emitted_once(self, engine, registry, bus):
        seen = []

        @bus.on(E.SCHEDULE_SENT)
        def _on_sent(note_id, **_):
            seen.append(note_id)

        await engine.submit("A", in_seconds(60), "D1", "hi")
        await registry.fire("A")
        await registry.fire("A")

        assert seen == ["A"]


class TestLocks:
    @pytest.mark.asyncio
    async def test_lock_table_drains_after_submit_and_cancel(self, engine):
        for i in range(50):
            await engine.submit(f"note-{i}", in_seconds(60), "D1", "hi")
            await engine.cancel(f"note-{i}")

        assert engine._locks == {}

    @pytest.mark.asyncio
    async def test_lock_table_drains_after_fire(self, engine, registry):
        await engine.submit("A", in_seconds(60), "D1", "hi")
        await registry.fire("A")

        assert engine._locks == {}

    @pytest.mark.asyncio
    async def test_lock_table_drains_after_contention(self, engine, store, registry, dispatcher):
        dispatcher.gate = asyncio.Event()
        await engine.submit("A", in_seconds(60), "D1", "v1")
        firing = asyncio.create_task(registry.fire("A"))
        await dispatcher.entered.wait()

        await asyncio.gather(*(engine.submit("A", in_seconds(60), "D1", f"v{i}") for i in range(2, 6)))
        dispatcher.gate.set()
        await firing

        assert engine._locks == {}
        assert (await store.get("A")).revision == 5
        assert (await store.get("A")).status == ScheduleStatus.PENDING
