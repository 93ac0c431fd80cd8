"""
Poll Scheduler
==============

Drives the fetch -> parse -> reconcile -> emit cycle for every subscribed feed.

Each feed has an explicit FeedSchedule owned by the scheduler instance.
A dispatcher task enqueues due feeds and a fixed pool of workers runs the
cycles; a feed is claimed (``in_flight``) before it is queued, so no two
cycles for the same feed ever overlap. Store calls run in worker threads
behind ``asyncio.shield`` and are awaited on shutdown, so cancelling a worker
aborts its fetch but never a transaction.

Failure policy:
- network errors, 429/5xx and store failures back off exponentially
- malformed documents and other 4xx answers keep the normal cadence
- every failure increments the consecutive-failure counter; success resets it
"""

import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set

from ..config.settings import PollingSettings, get_settings
from ..database.models import (
    CanonicalItem,
    FeedDescriptor,
    FeedFormat,
    FetchToken,
    NewItemsEvent,
    Weekday,
)
from ..delivery.event_sink import EventSink
from ..ingestion.fetcher import FeedFetcher, NotModified
from ..ingestion.parsers import parse_feed
from ..recovery.retry_logic import BackoffPolicy
from ..storage.feed_store import FeedStore
from ..utils.exceptions import (
    FeedPulseError,
    HttpStatusError,
    StoreError,
    SubscriptionError,
    handle_exception,
    is_retryable_error,
)
from ..utils.logging import PerformanceLogger, get_logger_for_component
from .cadence import blackout_deferral, is_permanent_blackout, next_regular_poll


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PollState(str, Enum):
    """Where a feed is in its poll cycle."""
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    RECONCILING = "reconciling"
    EMITTING = "emitting"
    BACKOFF = "backoff"
    SUSPENDED = "suspended"


class CycleStatus(str, Enum):
    """How a single poll cycle ended."""
    SUCCESS = "success"
    NOT_MODIFIED = "not_modified"
    SUSPENDED = "suspended"
    FAILED = "failed"
    SKIPPED = "skipped"          # another cycle for the feed was in flight
    REMOVED = "removed"          # feed was unsubscribed mid-cycle


@dataclass
class CycleOutcome:
    """Result of one poll cycle."""
    feed_id: int
    status: CycleStatus
    new_items: int = 0
    error: Optional[str] = None
    next_poll_at: Optional[datetime] = None


@dataclass
class FeedSchedule:
    """Per-feed polling state."""
    feed_id: int
    url: str
    format: FeedFormat
    title: str = ""
    custom_title: Optional[str] = None
    ttl: Optional[int] = None
    skip_hours: Set[int] = field(default_factory=set)
    skip_days: Set[Weekday] = field(default_factory=set)
    token: FetchToken = field(default_factory=FetchToken)
    next_poll_at: datetime = field(default_factory=utc_now)
    consecutive_failures: int = 0
    state: PollState = PollState.IDLE
    in_flight: bool = False
    last_error: Optional[str] = None
    last_status: Optional[int] = None
    last_success_at: Optional[datetime] = None

    @classmethod
    def from_descriptor(cls, descriptor: FeedDescriptor, due_at: datetime) -> "FeedSchedule":
        schedule = cls(feed_id=descriptor.id, url=descriptor.url, format=descriptor.format)
        schedule.apply_descriptor(descriptor)
        schedule.next_poll_at = due_at
        schedule.last_success_at = descriptor.last_success_at
        return schedule

    def apply_descriptor(self, descriptor: FeedDescriptor) -> None:
        """Take over registry fields; polling counters are kept."""
        self.url = descriptor.url
        self.format = descriptor.format
        self.title = descriptor.title
        self.custom_title = descriptor.custom_title
        self.ttl = descriptor.ttl
        self.skip_hours = set(descriptor.skip_hours)
        self.skip_days = set(descriptor.skip_days)
        self.token = descriptor.token

    @property
    def display_title(self) -> str:
        return self.custom_title or self.title or self.url

    def is_due(self, now: datetime) -> bool:
        return not self.in_flight and self.next_poll_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "url": self.url,
            "title": self.display_title,
            "format": self.format.value,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "next_poll_at": self.next_poll_at.isoformat(),
            "consecutive_failures": self.consecutive_failures,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class PollScheduler:
    """Schedules and runs poll cycles for all registered feeds."""

    def __init__(
        self,
        store: FeedStore,
        fetcher: FeedFetcher,
        sink: EventSink,
        settings: Optional[PollingSettings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize scheduler.

        Args:
            store: Feed store
            fetcher: Feed fetcher
            sink: Receiver of new-item events
            settings: Polling settings (default from config)
            clock: Returns the current aware UTC time
            rng: Random source for backoff jitter
        """
        self.store = store
        self.fetcher = fetcher
        self.sink = sink
        self.settings = settings or get_settings().polling
        self.clock = clock or utc_now
        self.rng = rng or random.Random()
        self.backoff = BackoffPolicy.from_settings(self.settings)
        self.logger = get_logger_for_component("scheduler")

        self._schedules: Dict[int, FeedSchedule] = {}
        self._store_calls: Set[asyncio.Future] = set()
        self._session = None
        self._wakeup: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self, descriptor: FeedDescriptor, due_at: Optional[datetime] = None
    ) -> FeedSchedule:
        """Start scheduling a feed, or refresh an existing schedule.

        Args:
            descriptor: Persisted feed
            due_at: First poll time (now if omitted for a new feed)
        """
        schedule = self._schedules.get(descriptor.id)
        if schedule is None:
            schedule = FeedSchedule.from_descriptor(descriptor, due_at or self.clock())
            self._schedules[descriptor.id] = schedule
            self.logger.info(f"Scheduled feed {descriptor.id}: {descriptor.url}")
        else:
            schedule.apply_descriptor(descriptor)
            if due_at is not None:
                schedule.next_poll_at = due_at
        self._wake()
        return schedule

    def unregister(self, feed_id: int) -> bool:
        """Stop scheduling a feed. A cycle already in flight finishes quietly."""
        removed = self._schedules.pop(feed_id, None)
        if removed is not None:
            self.logger.info(f"Unscheduled feed {feed_id}")
        return removed is not None

    def get_schedule(self, feed_id: int) -> Optional[FeedSchedule]:
        return self._schedules.get(feed_id)

    async def load_from_store(self) -> int:
        """Register every stored feed; returns the number loaded."""
        descriptors = await self._store_call(self.store.list_feeds)
        now = self.clock()
        for descriptor in descriptors:
            due_at = now
            if descriptor.last_success_at is not None:
                due_at = next_regular_poll(
                    descriptor.last_success_at, descriptor.ttl, self.settings
                )
            self.register(descriptor, due_at=due_at)
        self.logger.info(f"Loaded {len(descriptors)} feeds from store")
        return len(descriptors)

    def trigger(self, feed_id: Optional[int] = None) -> int:
        """Make one feed, or every feed, due immediately.

        Returns:
            Number of feeds made due

        Raises:
            SubscriptionError: If ``feed_id`` is not scheduled
        """
        now = self.clock()
        if feed_id is not None:
            schedule = self._schedules.get(feed_id)
            if schedule is None:
                raise SubscriptionError(f"Feed {feed_id} is not scheduled", feed_id=feed_id)
            targets = [schedule]
        else:
            targets = list(self._schedules.values())

        for schedule in targets:
            schedule.next_poll_at = now
        self._wake()
        return len(targets)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Current polling state of every feed, ordered by feed ID."""
        return [self._schedules[key].to_dict() for key in sorted(self._schedules)]

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def poll_feed(self, feed_id: int) -> CycleOutcome:
        """Run one cycle for a feed now, unless one is already in flight.

        Raises:
            SubscriptionError: If the feed is not scheduled
        """
        schedule = self._schedules.get(feed_id)
        if schedule is None:
            raise SubscriptionError(f"Feed {feed_id} is not scheduled", feed_id=feed_id)
        if schedule.in_flight:
            self.logger.debug(f"Feed {feed_id} already in flight, skipping")
            return CycleOutcome(feed_id, CycleStatus.SKIPPED, next_poll_at=schedule.next_poll_at)

        schedule.in_flight = True
        return await self._execute(schedule)

    async def run_once(self) -> List[CycleOutcome]:
        """Poll every due feed once, bounded by the worker count, and wait."""
        now = self.clock()
        due = [schedule for schedule in self._schedules.values() if schedule.is_due(now)]
        if not due:
            return []

        semaphore = asyncio.Semaphore(self.settings.workers)

        async def guarded(schedule: FeedSchedule) -> CycleOutcome:
            async with semaphore:
                return await self._execute(schedule)

        for schedule in due:
            schedule.in_flight = True

        owns_session = self._session is None
        try:
            if owns_session:
                async with self.fetcher.get_session() as session:
                    self._session = session
                    outcomes = await asyncio.gather(*(guarded(s) for s in due))
            else:
                outcomes = await asyncio.gather(*(guarded(s) for s in due))
        finally:
            if owns_session:
                self._session = None
            await self._drain_store_calls()

        return list(outcomes)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll feeds until ``stop_event`` is set, then shut down cleanly."""
        self._wakeup = asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()

        await self.sink.start()
        try:
            async with self.fetcher.get_session() as session:
                self._session = session
                workers = [
                    asyncio.create_task(self._worker(queue), name=f"poll-worker-{index}")
                    for index in range(self.settings.workers)
                ]
                dispatcher = asyncio.create_task(
                    self._dispatch(queue, stop_event), name="poll-dispatcher"
                )
                self.logger.info(
                    f"Scheduler running with {len(workers)} workers "
                    f"for {len(self._schedules)} feeds"
                )

                try:
                    await stop_event.wait()
                finally:
                    self.logger.info("Stopping scheduler")
                    dispatcher.cancel()
                    for worker in workers:
                        worker.cancel()
                    await asyncio.gather(dispatcher, *workers, return_exceptions=True)
                    await self._drain_store_calls()
                    self._session = None
                    self._release_claims()
        finally:
            self._wakeup = None
            await self.sink.close()
            self.logger.info("Scheduler stopped")

    async def _dispatch(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            self._wakeup.clear()
            now = self.clock()
            for schedule in sorted(self._schedules.values(), key=lambda s: s.next_poll_at):
                if schedule.is_due(now):
                    schedule.in_flight = True
                    queue.put_nowait(schedule.feed_id)

            await self._wait(stop_event, self._seconds_until_next_due(now))

    async def _wait(self, stop_event: asyncio.Event, timeout: float) -> None:
        waiters = [
            asyncio.ensure_future(stop_event.wait()),
            asyncio.ensure_future(self._wakeup.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def _seconds_until_next_due(self, now: datetime) -> float:
        pending = [s.next_poll_at for s in self._schedules.values() if not s.in_flight]
        timeout = self.settings.tick_seconds
        if pending:
            timeout = min(timeout, (min(pending) - now).total_seconds())
        return max(timeout, 0.0)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            feed_id = await queue.get()
            try:
                schedule = self._schedules.get(feed_id)
                if schedule is not None:
                    await self._execute(schedule)
            finally:
                queue.task_done()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _release_claims(self) -> None:
        for schedule in self._schedules.values():
            schedule.in_flight = False
            if schedule.state not in (PollState.BACKOFF, PollState.SUSPENDED):
                schedule.state = PollState.IDLE

    async def _store_call(self, fn: Callable, *args):
        """Run a blocking store call in a thread; cancellation cannot interrupt it."""
        call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        self._store_calls.add(call)
        call.add_done_callback(self._store_calls.discard)
        return await asyncio.shield(call)

    async def _drain_store_calls(self) -> None:
        if self._store_calls:
            self.logger.debug(f"Waiting for {len(self._store_calls)} store calls")
            await asyncio.gather(*list(self._store_calls), return_exceptions=True)

    @asynccontextmanager
    async def _session_scope(self) -> AsyncGenerator[Any, None]:
        if self._session is not None:
            yield self._session
        else:
            async with self.fetcher.get_session() as session:
                yield session

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def _execute(self, schedule: FeedSchedule) -> CycleOutcome:
        try:
            return await self._run_cycle(schedule)
        finally:
            schedule.in_flight = False
            self._wake()

    async def _run_cycle(self, schedule: FeedSchedule) -> CycleOutcome:
        now = self.clock()
        log = self.logger.bind(feed_id=schedule.feed_id, feed_url=schedule.url)

        if schedule.skip_hours or schedule.skip_days:
            deferral = blackout_deferral(now, schedule.skip_hours, schedule.skip_days)
            if deferral is not None:
                schedule.state = PollState.SUSPENDED
                schedule.next_poll_at = deferral
                log.info(f"In blackout window, deferring poll to {deferral.isoformat()}")
                return CycleOutcome(
                    schedule.feed_id, CycleStatus.SUSPENDED, next_poll_at=deferral
                )
            if is_permanent_blackout(schedule.skip_hours, schedule.skip_days):
                log.warning("skipHours/skipDays block every hour; ignoring them")

        try:
            with PerformanceLogger(log, "poll cycle", feed_id=schedule.feed_id):
                return await self._fetch_and_reconcile(schedule, now, log)
        except StoreError as e:
            log.error(f"Store failure while polling feed {schedule.feed_id}: {e}")
            return await self._handle_failure(schedule, now, e)
        except FeedPulseError as e:
            log.warning(f"Poll of feed {schedule.feed_id} failed: {e}")
            return await self._handle_failure(schedule, now, e)
        except Exception as e:
            error = handle_exception(e, log, "poll cycle", {"feed_id": schedule.feed_id})
            return await self._handle_failure(schedule, now, error)

    async def _fetch_and_reconcile(self, schedule: FeedSchedule, now: datetime, log) -> CycleOutcome:
        feed_id = schedule.feed_id

        schedule.state = PollState.FETCHING
        async with self._session_scope() as session:
            fetched = await self.fetcher.fetch(schedule.url, schedule.token, session)

        if isinstance(fetched, NotModified):
            await self._store_call(self.store.mark_not_modified, feed_id, now)
            self._record_success(schedule, now, fetched.status)
            log.debug("Feed not modified")
            return CycleOutcome(
                feed_id, CycleStatus.NOT_MODIFIED, next_poll_at=schedule.next_poll_at
            )

        schedule.state = PollState.PARSING
        parsed = parse_feed(schedule.format, fetched.body, schedule.url, now)

        schedule.state = PollState.RECONCILING
        result = await self._store_call(
            self.store.apply_cycle, feed_id, parsed, fetched.token, now
        )
        if result is None or self._schedules.get(feed_id) is not schedule:
            self.unregister(feed_id)
            log.info("Feed was unsubscribed during its poll cycle")
            return CycleOutcome(feed_id, CycleStatus.REMOVED)

        schedule.token = fetched.token
        schedule.title = parsed.feed.title
        schedule.ttl = parsed.feed.ttl
        schedule.skip_hours = set(parsed.feed.skip_hours)
        schedule.skip_days = set(parsed.feed.skip_days)
        self._record_success(schedule, now, fetched.status)

        if result.new_items:
            schedule.state = PollState.EMITTING
            await self._emit(schedule, result.new_items, log)
            schedule.state = PollState.IDLE

        log.info(
            f"Polled feed {feed_id}: {len(result.new_items)} new of {len(parsed.items)} items"
        )
        return CycleOutcome(
            feed_id,
            CycleStatus.SUCCESS,
            new_items=len(result.new_items),
            next_poll_at=schedule.next_poll_at,
        )

    async def _emit(self, schedule: FeedSchedule, items: List[CanonicalItem], log) -> None:
        event = NewItemsEvent(
            feed_id=schedule.feed_id,
            feed_url=schedule.url,
            feed_title=schedule.display_title,
            items=items,
        )
        try:
            delivered = await self.sink.emit(event)
        except Exception:
            log.exception(f"Event sink raised for {len(items)} items of feed {schedule.feed_id}")
            delivered = False

        if not delivered:
            # Items stay persisted and are not offered again
            log.warning(f"{len(items)} new items of feed {schedule.feed_id} were not delivered")

    def _record_success(self, schedule: FeedSchedule, now: datetime, status: int) -> None:
        schedule.consecutive_failures = 0
        schedule.last_error = None
        schedule.last_status = status
        schedule.last_success_at = now
        schedule.state = PollState.IDLE
        schedule.next_poll_at = next_regular_poll(now, schedule.ttl, self.settings)

    async def _handle_failure(
        self, schedule: FeedSchedule, now: datetime, error: FeedPulseError
    ) -> CycleOutcome:
        schedule.consecutive_failures += 1
        schedule.last_error = str(error)
        if isinstance(error, HttpStatusError):
            schedule.last_status = error.status_code

        use_backoff = is_retryable_error(error)

        if use_backoff:
            delay = self.backoff.calculate_delay(
                schedule.consecutive_failures,
                retry_after=getattr(error, "retry_after", None),
                rng=self.rng,
            )
            schedule.next_poll_at = now + timedelta(seconds=delay)
            schedule.state = PollState.BACKOFF
        else:
            schedule.next_poll_at = next_regular_poll(now, schedule.ttl, self.settings)
            schedule.state = PollState.IDLE

        self.logger.info(
            f"Feed {schedule.feed_id} failure #{schedule.consecutive_failures}, "
            f"next poll at {schedule.next_poll_at.isoformat()}",
            extra={"backoff": use_backoff},
        )

        if self._schedules.get(schedule.feed_id) is schedule:
            try:
                await self._store_call(self.store.record_poll_attempt, schedule.feed_id, now)
            except StoreError as e:
                self.logger.warning(f"Could not record failed poll of feed {schedule.feed_id}: {e}")

        return CycleOutcome(
            schedule.feed_id,
            CycleStatus.FAILED,
            error=str(error),
            next_poll_at=schedule.next_poll_at,
        )
