"""Decides when sync cycles run: interval, mutation and user triggers, backoff."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailmirror.utils.errors import ValidationError
from mailmirror.utils.logging import get_logger, log_event

from .engine import CycleOutcome, CycleReport, SyncEngine
from .events import EventSink, SyncEvent, SyncEventKind

logger = get_logger(__name__)

INTERVAL_JOB_ID = "sync_interval"
BACKOFF_JOB_ID = "sync_backoff"


class SchedulerState(Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"
    BLOCKED = "blocked"


class TriggerReason(Enum):
    STARTUP = "startup"
    INTERVAL = "interval"
    MUTATION = "mutation"
    USER = "user"
    BACKOFF_EXPIRED = "backoff_expired"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``min(cap, base * factor ** (failures - 1))``."""

    base: float = 2.0
    factor: float = 2.0
    cap: float = 300.0

    def __post_init__(self):
        if self.base <= 0 or self.factor < 1 or self.cap < self.base:
            raise ValidationError(
                "Invalid backoff policy",
                details={"base": self.base, "factor": self.factor, "cap": self.cap},
            )

    def delay(self, failures: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after ``failures`` consecutive failed cycles.

        A server ``retry_after`` hint raises the delay, never lowers it.
        """
        if failures < 1:
            return 0.0
        delay = min(self.cap, self.base * self.factor ** (failures - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


class SyncScheduler:
    """Runs at most one sync cycle at a time.

    Triggers arriving while a cycle runs collapse into a single re-run. After
    a failed cycle the next one waits for an APScheduler ``date`` job; only an
    explicit user request cuts that wait short.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: int = 300,
        backoff: Optional[BackoffPolicy] = None,
        auto_sync: bool = True,
        notify: Optional[EventSink] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        if interval_seconds <= 0:
            raise ValidationError(
                f"Invalid sync interval: {interval_seconds} (must be positive)"
            )

        self._engine = engine
        self.interval_seconds = interval_seconds
        self.backoff = backoff or BackoffPolicy()
        self.auto_sync = auto_sync
        self._notify = notify
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

        self._state = SchedulerState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._cancel: Optional[asyncio.Event] = None
        self._rerun = False
        self.failures = 0
        self.last_report: Optional[CycleReport] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running_cycle(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_wakeup(self) -> Optional[datetime]:
        """When the pending backoff timer fires, if one is set."""
        job = self._scheduler.get_job(BACKOFF_JOB_ID)
        return job.next_run_time if job else None

    ## Lifecycle

    async def start(self, sync_now: bool = True) -> None:
        if self._state is not SchedulerState.STOPPED:
            return

        if not self._scheduler.running:
            self._scheduler.start()

        if self.auto_sync:
            self._scheduler.add_job(
                self._on_interval,
                "interval",
                seconds=self.interval_seconds,
                id=INTERVAL_JOB_ID,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.info(f"Added job: auto sync (interval: {self.interval_seconds} seconds)")

        self._state = SchedulerState.IDLE
        logger.info("Sync scheduler started")

        if sync_now:
            self.trigger(TriggerReason.STARTUP)

    async def stop(self) -> None:
        """Cancel timers and wait for a running cycle to reach a safe point."""
        if self._state is SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPED
        self._remove_job(INTERVAL_JOB_ID)
        self._remove_job(BACKOFF_JOB_ID)

        if self._cancel is not None:
            self._cancel.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    def resume(self) -> None:
        """Leave the blocked state after the user has signed in again."""
        if self._state is not SchedulerState.BLOCKED:
            return

        self.failures = 0
        self._state = SchedulerState.IDLE
        logger.info("Sync scheduler resumed")
        self.trigger(TriggerReason.USER)

    async def wait_idle(self) -> Optional[CycleReport]:
        """Wait for the running cycle (and any re-run it owes) to finish."""
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
        return self.last_report

    ## Triggers

    def notify_mutation(self) -> None:
        self.trigger(TriggerReason.MUTATION)

    def request_sync_now(self) -> None:
        self.trigger(TriggerReason.USER)

    def trigger(self, reason: TriggerReason) -> None:
        """Ask for a cycle. Must be called on the event loop."""
        if self._state is SchedulerState.STOPPED:
            logger.debug(f"Ignoring {reason.value} trigger: scheduler stopped")
            return

        if self._state is SchedulerState.BLOCKED:
            logger.debug(f"Ignoring {reason.value} trigger: sign-in required")
            return

        if self._state is SchedulerState.BACKOFF:
            if reason not in (TriggerReason.USER, TriggerReason.BACKOFF_EXPIRED):
                logger.debug(f"Deferring {reason.value} trigger until backoff ends")
                return
            self._remove_job(BACKOFF_JOB_ID)
            self._state = SchedulerState.IDLE

        if self.is_running_cycle:
            self._rerun = True
            return

        logger.debug(f"Starting sync cycle ({reason.value})")
        self._task = asyncio.ensure_future(self._run())

    async def _on_interval(self) -> None:
        self.trigger(TriggerReason.INTERVAL)

    async def _on_backoff_expired(self) -> None:
        self.trigger(TriggerReason.BACKOFF_EXPIRED)

    ## Cycle loop

    async def _run(self) -> None:
        while True:
            self._state = SchedulerState.RUNNING
            self._rerun = False
            self._cancel = asyncio.Event()

            try:
                report = await self._engine.run_cycle(self._cancel)
            except Exception as e:
                logger.exception(f"Unexpected error in sync cycle: {e}")
                report = CycleReport(outcome=CycleOutcome.BACKOFF, error=e)

            self.last_report = report
            self._handle_report(report)

            if self._state is not SchedulerState.RUNNING:
                return
            if not self._rerun:
                self._state = SchedulerState.IDLE
                return

    def _handle_report(self, report: CycleReport) -> None:
        if self._state is SchedulerState.STOPPED:
            return

        if report.outcome is CycleOutcome.OK:
            if self.failures:
                logger.info(f"Sync recovered after {self.failures} failed cycle(s)")
            self.failures = 0
            return

        if report.outcome is CycleOutcome.AUTH_REQUIRED:
            self._remove_job(BACKOFF_JOB_ID)
            self._state = SchedulerState.BLOCKED
            return

        if report.outcome is CycleOutcome.BACKOFF:
            self.failures += 1
            delay = self.backoff.delay(self.failures, report.retry_after)
            self._schedule_backoff(delay)

    def _schedule_backoff(self, delay: float) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._scheduler.add_job(
            self._on_backoff_expired,
            "date",
            run_date=run_date,
            id=BACKOFF_JOB_ID,
            replace_existing=True,
        )
        self._state = SchedulerState.BACKOFF

        log_event(
            "sync.backoff",
            f"Sync backing off for {delay:.1f}s after {self.failures} failure(s)",
            level="WARNING",
            delay=delay,
            failures=self.failures,
        )
        if self._notify is not None:
            try:
                self._notify(
                    SyncEvent(
                        SyncEventKind.BACKOFF,
                        f"Sync failed, retrying in {delay:.0f}s",
                        details={"delay": delay, "failures": self.failures},
                    )
                )
            except Exception as e:
                logger.error(f"Sync event subscriber failed: {e}")

    def _remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass
