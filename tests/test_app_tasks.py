"""
Tests for the polling orchestrator and interval task handles.
"""

import asyncio
from typing import Dict, List, Tuple

import pytest

from social.graze.notify.app.counts import DiffEngine
from social.graze.notify.app.tasks import IntervalTaskHandle, PollingOrchestrator
from social.graze.notify.atproto.errors import (
    FeedNotImplementedError,
    RevokedError,
    TransientError,
)
from social.graze.notify.model.feed import FeedKind, FeedResult
from social.graze.notify.model.health import HealthGauge
from social.graze.notify.model.poll import PollState
from social.graze.notify.store.accounts import AccountRegistry

from .conftest import ALICE, HandleRecorder, MockMetrics, make_account
from .test_app_counts import Sinks, conversations, unread_notifications

BOB = "did:plc:bob"


class ScriptedFeeds:
    """Stands in for FeedClient. Each (account, kind) pops a scripted outcome."""

    def __init__(self) -> None:
        self.outcomes: Dict[Tuple[str, FeedKind], List[object]] = {}
        self.fetches: List[Tuple[str, FeedKind]] = []

    def script(self, account_id: str, kind: FeedKind, *outcomes: object) -> None:
        self.outcomes.setdefault((account_id, kind), []).extend(outcomes)

    async def fetch(self, account, kind: FeedKind) -> FeedResult:
        self.fetches.append((account.id, kind))
        queue = self.outcomes.get((account.id, kind)) or [FeedResult(kind=kind, items=[])]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(outcome):
            outcome = await outcome()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome  # type: ignore[return-value]


@pytest.fixture
def feeds() -> ScriptedFeeds:
    return ScriptedFeeds()


@pytest.fixture
def handles() -> HandleRecorder:
    return HandleRecorder()


@pytest.fixture
def sinks() -> Sinks:
    return Sinks()


@pytest.fixture
def engine(sinks) -> DiffEngine:
    return DiffEngine(counts_sink=sinks.on_counts, items_sink=sinks.on_items)


@pytest.fixture
def health_gauge() -> HealthGauge:
    return HealthGauge()


@pytest.fixture
def orchestrator(registry, feeds, engine, handles, health_gauge) -> PollingOrchestrator:
    orchestrator = PollingOrchestrator(
        registry,
        feeds,  # type: ignore[arg-type]
        engine,
        intervals={FeedKind.notifications: 1.0, FeedKind.messages: 60.0},
        metrics_client=MockMetrics(),
        health_gauge=health_gauge,
        handle_factory=handles,
    )
    registry.add_listener(orchestrator.on_registry_event)
    return orchestrator


def live_handle(handles: HandleRecorder, account_id: str, kind: FeedKind):
    (handle,) = handles.live(f"poll:{account_id}:{kind.value}")
    return handle


class TestStartStop:
    """Test task lifecycle."""

    async def test_start_is_idempotent(self, orchestrator, handles):
        orchestrator.start(ALICE, FeedKind.notifications)
        orchestrator.start(ALICE, FeedKind.notifications)

        assert orchestrator.running() == {(ALICE, FeedKind.notifications)}
        assert len(handles.handles) == 2
        assert handles.handles[0].cancelled
        assert len(handles.live()) == 1

    async def test_intervals(self, orchestrator, handles):
        orchestrator.start(ALICE, FeedKind.notifications)
        orchestrator.start(ALICE, FeedKind.messages)

        assert live_handle(handles, ALICE, FeedKind.notifications).interval == 1.0
        assert live_handle(handles, ALICE, FeedKind.messages).interval == 60.0

    async def test_restart_keeps_last_count(self, orchestrator, registry, feeds, handles):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.notifications, unread_notifications(3))
        await live_handle(handles, ALICE, FeedKind.notifications).fire()

        orchestrator.stop(ALICE, FeedKind.notifications)
        orchestrator.start(ALICE, FeedKind.notifications)

        task = orchestrator.get_task(ALICE, FeedKind.notifications)
        assert task.last_unread_count == 3
        assert task.state == PollState.running

    async def test_stop(self, orchestrator, handles):
        orchestrator.start(ALICE, FeedKind.notifications)
        orchestrator.stop(ALICE, FeedKind.notifications)

        assert orchestrator.running() == set()
        assert handles.handles[0].cancelled
        assert orchestrator.get_task(ALICE, FeedKind.notifications).state == (
            PollState.stopped
        )

    async def test_close(self, orchestrator, handles):
        orchestrator.start(ALICE, FeedKind.notifications)
        orchestrator.start(BOB, FeedKind.messages)

        await orchestrator.close()

        assert orchestrator.running() == set()
        assert all(handle.cancelled for handle in handles.handles)


class TestReconcile:
    """Test that running tasks follow the registry."""

    async def test_saving_an_account_starts_both_feeds(self, orchestrator, registry):
        await registry.save(make_account())

        assert orchestrator.running() == {
            (ALICE, FeedKind.notifications),
            (ALICE, FeedKind.messages),
        }

    async def test_reconcile_is_idempotent(self, orchestrator, registry, handles):
        await registry.save(make_account())
        await orchestrator.reconcile()
        await orchestrator.reconcile()

        assert len(handles.handles) == 2

    async def test_token_rotation_does_not_restart(
        self, orchestrator, registry, handles
    ):
        account = make_account()
        await registry.save(account)
        await registry.update(account.model_copy(update={"access_token": "rotated"}))

        assert len(handles.handles) == 2

    async def test_startup_restores_persisted_accounts(self, orchestrator, storage):
        await AccountRegistry(storage).save(make_account())
        await AccountRegistry(storage).save(make_account(account_id=BOB))

        await orchestrator.reconcile()

        assert len(orchestrator.running()) == 4

    async def test_removal_stops_tasks_and_counts(
        self, orchestrator, registry, feeds, handles, engine
    ):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.notifications, unread_notifications(2))
        await live_handle(handles, ALICE, FeedKind.notifications).fire()
        assert (await engine.snapshot()).total == 2

        await registry.remove(ALICE)

        assert orchestrator.running() == set()
        assert orchestrator.tasks() == []
        assert (await engine.snapshot()).total == 0


class TestTick:
    """Test one fetch and its failure handling."""

    async def test_tick_updates_counts(self, orchestrator, registry, feeds, handles, engine):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.messages, conversations(1, 2))

        await live_handle(handles, ALICE, FeedKind.messages).fire()

        counts = await engine.snapshot()
        assert counts.per_account[ALICE].messages == 3
        assert orchestrator.get_task(ALICE, FeedKind.messages).last_unread_count == 3

    async def test_not_implemented_downgrades(
        self, orchestrator, registry, feeds, handles, engine
    ):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.messages, conversations(4))
        messages = live_handle(handles, ALICE, FeedKind.messages)
        await messages.fire()
        assert (await engine.snapshot()).per_account[ALICE].messages == 4

        feeds.script(ALICE, FeedKind.messages, FeedNotImplementedError("no chat"))
        feeds.outcomes[(ALICE, FeedKind.messages)].pop(0)
        await messages.fire()

        assert messages.cancelled
        task = orchestrator.get_task(ALICE, FeedKind.messages)
        assert task.state == PollState.unsupported
        assert (await engine.snapshot()).per_account[ALICE].messages == 0
        assert (ALICE, FeedKind.notifications) in orchestrator.running()

        fetches = len(feeds.fetches)
        await orchestrator.reconcile()
        assert orchestrator.start(ALICE, FeedKind.messages) is False
        assert (ALICE, FeedKind.messages) not in orchestrator.running()
        await messages.fire()
        assert len(feeds.fetches) == fetches

    async def test_revoked_stops_account(
        self, orchestrator, registry, feeds, handles
    ):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.notifications, RevokedError(ALICE, "gone"))

        await live_handle(handles, ALICE, FeedKind.notifications).fire()

        assert orchestrator.running() == set()
        assert all(handle.cancelled for handle in handles.handles)

    async def test_transient_error_keeps_polling(
        self, orchestrator, registry, feeds, handles, engine
    ):
        await registry.save(make_account())
        feeds.script(
            ALICE,
            FeedKind.notifications,
            unread_notifications(2),
            TransientError("timeout"),
        )
        notifications = live_handle(handles, ALICE, FeedKind.notifications)

        await notifications.fire()
        await notifications.fire()

        assert not notifications.cancelled
        assert (ALICE, FeedKind.notifications) in orchestrator.running()
        assert (await engine.snapshot()).per_account[ALICE].notifications == 2

    async def test_unexpected_error_is_contained(
        self, orchestrator, registry, feeds, handles, health_gauge
    ):
        await registry.save(make_account())
        feeds.script(ALICE, FeedKind.notifications, KeyError("surprise"))

        await live_handle(handles, ALICE, FeedKind.notifications).fire()

        report = await health_gauge.report()
        assert report["failures"] == {"poll": 1}
        assert (ALICE, FeedKind.notifications) in orchestrator.running()

    async def test_result_after_stop_is_discarded(
        self, orchestrator, registry, feeds, handles, engine
    ):
        await registry.save(make_account())

        async def stop_while_fetching():
            orchestrator.stop(ALICE, FeedKind.notifications)
            return unread_notifications(5)

        feeds.script(ALICE, FeedKind.notifications, stop_while_fetching)
        await live_handle(handles, ALICE, FeedKind.notifications).fire()

        assert (await engine.snapshot()).total == 0
        assert orchestrator.get_task(ALICE, FeedKind.notifications).last_unread_count == 0

    async def test_result_after_removal_is_discarded(
        self, orchestrator, registry, feeds, handles, engine
    ):
        await registry.save(make_account())

        async def remove_while_fetching():
            await registry.remove(ALICE)
            return unread_notifications(5)

        feeds.script(ALICE, FeedKind.notifications, remove_while_fetching)
        await live_handle(handles, ALICE, FeedKind.notifications).fire()

        assert (await engine.snapshot()).per_account == {}

    async def test_cancelled_handle_does_not_fetch(
        self, orchestrator, registry, feeds, handles
    ):
        await registry.save(make_account())
        handle = live_handle(handles, ALICE, FeedKind.notifications)
        orchestrator.stop(ALICE, FeedKind.notifications)

        await handle.fire()
        assert (ALICE, FeedKind.notifications) not in feeds.fetches

    async def test_mark_viewed(
        self, orchestrator, registry, feeds, handles, engine, sinks
    ):
        await registry.save(make_account())
        feeds.script(
            ALICE,
            FeedKind.notifications,
            unread_notifications(3),
            unread_notifications(3),
            unread_notifications(4),
        )
        notifications = live_handle(handles, ALICE, FeedKind.notifications)
        await notifications.fire()

        await orchestrator.mark_viewed(ALICE, FeedKind.notifications)

        assert (await engine.snapshot()).total == 0
        task = orchestrator.get_task(ALICE, FeedKind.notifications)
        assert task.last_unread_count == 0

        # The server still reports the same three as unread.
        await notifications.fire()
        assert [len(items) for (_, _, items) in sinks.items] == [3]
        assert (await engine.snapshot()).total == 0

        await notifications.fire()
        assert [len(items) for (_, _, items) in sinks.items] == [3, 1]
        assert (await engine.snapshot()).total == 1


class TestIntervalTaskHandle:
    """Test the event loop backed handle."""

    async def test_runs_immediately_and_repeats(self):
        calls = []

        async def func():
            calls.append(1)

        handle = IntervalTaskHandle()
        handle.start("test", 0.01, func)
        await asyncio.sleep(0.05)
        handle.cancel()
        await handle.wait()

        assert len(calls) >= 2

    async def test_ticks_never_overlap(self):
        active = 0
        peak = 0

        async def func():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        handle = IntervalTaskHandle()
        handle.start("test", 0.005, func)
        await asyncio.sleep(0.08)
        handle.cancel()
        await handle.wait()

        assert peak == 1

    async def test_cancel_lets_running_tick_finish(self):
        finished = asyncio.Event()
        started = asyncio.Event()

        async def func():
            started.set()
            await asyncio.sleep(0.02)
            finished.set()

        handle = IntervalTaskHandle()
        handle.start("test", 10.0, func)
        await started.wait()
        handle.cancel()
        await handle.wait()

        assert finished.is_set()

    async def test_cancel_wakes_a_sleeping_handle(self):
        async def func():
            pass

        handle = IntervalTaskHandle()
        handle.start("test", 3600.0, func)
        await asyncio.sleep(0)
        handle.cancel()
        await asyncio.wait_for(handle.wait(), timeout=1.0)


class TestRestartWithIntervalHandles:
    """Test that a key never has two fetches in flight across restarts."""

    @pytest.fixture
    def interval_orchestrator(self, registry, feeds, engine) -> PollingOrchestrator:
        return PollingOrchestrator(
            registry,
            feeds,  # type: ignore[arg-type]
            engine,
            intervals={FeedKind.notifications: 3600.0, FeedKind.messages: 3600.0},
            handle_factory=IntervalTaskHandle,
        )

    @staticmethod
    def blocking_fetch(feeds: ScriptedFeeds):
        release = asyncio.Event()
        state = {"active": 0, "peak": 0}

        async def fetch():
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await release.wait()
            state["active"] -= 1
            return unread_notifications(1)

        feeds.script(ALICE, FeedKind.notifications, fetch)
        return release, state

    @staticmethod
    async def wait_for_fetches(feeds: ScriptedFeeds, count: int) -> None:
        for _ in range(200):
            if len(feeds.fetches) >= count:
                return
            await asyncio.sleep(0.005)

    async def test_restart_waits_for_in_flight_fetch(
        self, interval_orchestrator, registry, feeds
    ):
        await registry.save(make_account())
        release, state = self.blocking_fetch(feeds)

        interval_orchestrator.start(ALICE, FeedKind.notifications)
        await self.wait_for_fetches(feeds, 1)
        interval_orchestrator.start(ALICE, FeedKind.notifications)
        await asyncio.sleep(0.02)

        assert len(feeds.fetches) == 1

        release.set()
        await self.wait_for_fetches(feeds, 2)
        await interval_orchestrator.close()

        assert len(feeds.fetches) == 2
        assert state["peak"] == 1

    async def test_stop_then_start_waits_for_in_flight_fetch(
        self, interval_orchestrator, registry, feeds
    ):
        await registry.save(make_account())
        release, state = self.blocking_fetch(feeds)

        interval_orchestrator.start(ALICE, FeedKind.notifications)
        await self.wait_for_fetches(feeds, 1)
        interval_orchestrator.stop(ALICE, FeedKind.notifications)
        interval_orchestrator.start(ALICE, FeedKind.notifications)
        await asyncio.sleep(0.02)

        assert len(feeds.fetches) == 1

        release.set()
        await self.wait_for_fetches(feeds, 2)
        await interval_orchestrator.close()

        assert state["peak"] == 1
