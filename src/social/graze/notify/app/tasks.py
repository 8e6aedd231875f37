"""
Polling Orchestrator and background tasks.

The orchestrator owns one recurring task per (account, feed kind). Each task issues a
fetch immediately and then one fetch per interval until it is stopped. Ticks of one task
never overlap: the next fetch is scheduled only after the previous tick, including the
diff step, has finished.

Task handles are created through a factory so the start/stop/reconcile logic can be
exercised without real timers.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from time import time
from typing import Awaitable, Callable, Dict, List, NoReturn, Optional, Set, Tuple

import sentry_sdk

from social.graze.notify.app.counts import DiffEngine
from social.graze.notify.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.notify.atproto.errors import (
    FeedNotImplementedError,
    NotifyError,
    RevokedError,
)
from social.graze.notify.atproto.feeds import FeedClient
from social.graze.notify.model.feed import FeedKind
from social.graze.notify.model.health import HealthGauge
from social.graze.notify.model.poll import PollState, PollTask
from social.graze.notify.store.accounts import AccountRegistry, RegistryEvent

logger = logging.getLogger(__name__)

TaskKey = Tuple[str, FeedKind]
TickFunc = Callable[[], Awaitable[None]]


class TaskHandle(ABC):
    """A cancellable recurring unit of work."""

    cancelled: bool = False

    @abstractmethod
    def start(self, name: str, interval: float, func: TickFunc) -> None:
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Stop scheduling further ticks. A tick already running is left to finish."""
        pass

    @abstractmethod
    async def wait(self) -> None:
        pass


class IntervalTaskHandle(TaskHandle):
    """Runs `func` immediately and then at a fixed rate on the event loop."""

    def __init__(self) -> None:
        self.cancelled = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    def start(self, name: str, interval: float, func: TickFunc) -> None:
        self._task = asyncio.create_task(self._run(interval, func), name=name)

    async def _run(self, interval: float, func: TickFunc) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while not self.cancelled:
            await func()

            next_at += interval
            delay = next_at - loop.time()
            if delay < 0:
                # Fell behind, skip the missed ticks.
                next_at = loop.time()
                delay = 0

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def cancel(self) -> None:
        self.cancelled = True
        self._wake.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task


HandleFactory = Callable[[], TaskHandle]


class PollingOrchestrator:
    def __init__(
        self,
        registry: AccountRegistry,
        feeds: FeedClient,
        engine: DiffEngine,
        intervals: Dict[FeedKind, float],
        metrics_client: Optional[MetricsClient] = None,
        health_gauge: Optional[HealthGauge] = None,
        handle_factory: HandleFactory = IntervalTaskHandle,
    ) -> None:
        self.registry = registry
        self.feeds = feeds
        self.engine = engine
        self.intervals = intervals
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.health_gauge = health_gauge
        self.handle_factory = handle_factory

        self._tasks: Dict[TaskKey, PollTask] = {}
        self._handles: Dict[TaskKey, TaskHandle] = {}
        # Stopped handles whose last tick may still be in flight.
        self._draining: Dict[TaskKey, TaskHandle] = {}
        self._reconcile_lock = asyncio.Lock()

    def running(self) -> Set[TaskKey]:
        return set(self._handles.keys())

    def tasks(self) -> List[PollTask]:
        return list(self._tasks.values())

    def get_task(self, account_id: str, kind: FeedKind) -> Optional[PollTask]:
        return self._tasks.get((account_id, kind))

    def _report_running(self) -> None:
        self.metrics_client.gauge("notify.poll.running", len(self._handles))

    def start(self, account_id: str, kind: FeedKind) -> bool:
        """
        Start polling one feed for an account.

        Starting a key that is already running replaces its timer, so there is never more
        than one recurring task per key. The replacement waits for the previous handle to
        finish before its first tick. Feeds marked unsupported are not started again.
        Returns whether a task is now running.
        """
        key = (account_id, kind)
        task = self._tasks.get(key)
        if task is not None and task.state == PollState.unsupported:
            return False

        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        draining = self._draining.pop(key, None)
        if previous is None:
            previous = draining

        if task is None:
            task = PollTask(
                account_id=account_id, feed_kind=kind, interval=self.intervals[kind]
            )
            self._tasks[key] = task
        task.state = PollState.running

        handle = self.handle_factory()
        pending = previous

        async def tick() -> None:
            nonlocal pending
            if pending is not None:
                await pending.wait()
                pending = None
            await self.tick(account_id, kind, handle)

        self._handles[key] = handle
        handle.start(f"poll:{account_id}:{kind.value}", task.interval, tick)

        logger.debug("Started polling %s for %s", kind.value, account_id)
        self._report_running()
        return True

    def stop(self, account_id: str, kind: FeedKind, unsupported: bool = False) -> None:
        key = (account_id, kind)
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
            self._draining[key] = handle

        task = self._tasks.get(key)
        if task is not None:
            task.state = PollState.unsupported if unsupported else PollState.stopped

        self._report_running()

    async def stop_account(self, account_id: str) -> None:
        """Stop every task for an account and drop its state and counts."""
        for kind in FeedKind:
            self.stop(account_id, kind)
            self._tasks.pop((account_id, kind), None)
        await self.engine.forget(account_id)

    async def reconcile(self) -> None:
        """Make the running task set match the accounts in the registry."""
        async with self._reconcile_lock:
            accounts = await self.registry.load_all()

            known = {account_id for (account_id, _) in self._tasks}
            for account_id in known - set(accounts):
                logger.info("Stopping polling for removed account %s", account_id)
                await self.stop_account(account_id)

            for account_id in accounts:
                for kind in FeedKind:
                    if (account_id, kind) not in self._handles:
                        self.start(account_id, kind)

    async def on_registry_event(self, event: RegistryEvent) -> None:
        if event.action == "removed" or event.created:
            await self.reconcile()

    async def mark_viewed(self, account_id: str, kind: FeedKind) -> None:
        """The user looked at a feed: its unread count goes back to zero."""
        await self.engine.reset(account_id, kind, task=self._tasks.get((account_id, kind)))

    async def tick(self, account_id: str, kind: FeedKind, handle: TaskHandle) -> None:
        """
        One fetch and diff for a task.

        Failures never escape: transient and protocol errors are logged and the task keeps
        its interval, an unsupported feed stops its task for good, and a revoked account
        stops all of its tasks.
        """
        key = (account_id, kind)
        task = self._tasks.get(key)
        if task is None or handle.cancelled:
            return

        def is_current() -> bool:
            return not handle.cancelled and self._handles.get(key) is handle

        tags = {"feed": kind.value}
        start_time = time()
        try:
            account = await self.registry.get(account_id)
            if account is None:
                logger.debug("Account %s is gone, skipping tick", account_id)
                return

            result = await self.feeds.fetch(account, kind)
            await self.engine.apply(
                task, result, account_handle=account.display_name, is_current=is_current
            )
        except FeedNotImplementedError:
            logger.info(
                "%s is not implemented for %s, polling stopped", kind.value, account_id
            )
            self.metrics_client.increment("notify.poll.downgrade", 1, tag_dict=tags)
            if is_current():
                self.stop(account_id, kind, unsupported=True)
                await self.engine.reset(account_id, kind, task=task)
        except RevokedError:
            logger.warning("Account %s was revoked, polling stopped", account_id)
            await self.stop_account(account_id)
        except NotifyError as e:
            logger.warning("Polling %s for %s failed: %s", kind.value, account_id, e)
            self.metrics_client.increment(
                "notify.poll.tick.exception",
                1,
                tag_dict={**tags, "exception": type(e).__name__},
            )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error polling %s for %s", kind.value, account_id)
            self.metrics_client.increment(
                "notify.poll.tick.exception",
                1,
                tag_dict={**tags, "exception": type(e).__name__},
            )
            if self.health_gauge is not None:
                await self.health_gauge.womp(source="poll")
        finally:
            self.metrics_client.timer(
                "notify.poll.tick.time", time() - start_time, tag_dict=tags
            )
            self.metrics_client.increment("notify.poll.tick.count", 1, tag_dict=tags)

    async def close(self) -> None:
        """Cancel every task and wait for in-flight ticks to finish."""
        handles = list(self._handles.values()) + list(self._draining.values())
        self._handles.clear()
        self._draining.clear()
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*(handle.wait() for handle in handles))
        self._report_running()


async def tick_health_task(health_gauge: HealthGauge) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)
