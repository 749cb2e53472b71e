import asyncio
import datetime as dt
from collections.abc import Callable
from typing import Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-not-found]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-not-found]
from loguru import logger

from clinicflow.domain.models import (
    REMINDER_INACTIVE_STATUSES,
    Message,
    SweepOutcome,
    SweepResult,
    utcnow,
)
from clinicflow.store.guard import guarded
from clinicflow.store.ports import Store

SWEEP_JOB_ID = "reminder_sweep"


class ReminderSender(Protocol):
    async def dispatch_due_reminder(
        self, appointment_id: str, now: dt.datetime
    ) -> Message | None: ...


class ReminderScheduler:
    """Periodic scan for reminders whose trigger time has passed.

    Each sweep puts one task per due appointment on a bounded queue drained
    by a fixed pool of workers.  An appointment appears at most once per
    sweep, so it gets at most one reminder per sweep even when several of
    its reminders are overdue.  Sweeps never overlap: a sweep requested
    while another is running is skipped, not queued.
    """

    def __init__(
        self,
        store: Store,
        sender: ReminderSender,
        *,
        interval_seconds: float = 60.0,
        workers: int = 4,
        queue_size: int = 100,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._store = store
        self._sender = sender
        self._interval = interval_seconds
        self._workers = max(1, workers)
        self._queue_size = max(1, queue_size)
        self._clock = clock
        self._sweep_lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def sweep(self, now: dt.datetime | None = None) -> SweepResult:
        """Dispatch at most one due reminder per appointment."""
        now = now or self._clock()
        if self._sweep_lock.locked():
            logger.warning("Reminder sweep still running; skipping this tick")
            return SweepResult(started_at=now, skipped=True)

        async with self._sweep_lock:
            appointment_ids = await self._due_appointments(now)
            if not appointment_ids:
                return SweepResult(started_at=now)

            logger.info("Reminder sweep: {} appointment(s) due", len(appointment_ids))
            outcomes = await self._dispatch_all(appointment_ids, now)

        dispatched = sum(1 for o in outcomes if o.status == "success")
        errors = sum(1 for o in outcomes if o.status == "error")
        logger.info("Reminder sweep finished: {} sent, {} failed", dispatched, errors)
        return SweepResult(
            started_at=now,
            dispatched=dispatched,
            errors=errors,
            details=outcomes,
        )

    async def _tick(self) -> None:
        try:
            await self.sweep()
        except Exception:
            logger.exception("Reminder sweep failed")

    def start(self) -> None:
        """Schedule ``sweep`` every ``interval_seconds``, starting now.

        Must be called from within the running event loop.
        """
        if self.is_running:
            logger.warning("Reminder scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=self._interval, timezone="UTC"),
            id=SWEEP_JOB_ID,
            name="Appointment reminder sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=dt.datetime.now(dt.timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Reminder scheduler started (interval={}s)", self._interval)

    async def stop(self) -> None:
        """Stop scheduling sweeps and wait for the current one to finish."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is None or not scheduler.running:
            return
        scheduler.pause()
        async with self._sweep_lock:
            scheduler.shutdown(wait=True)
        logger.info("Reminder scheduler stopped")

    async def _due_appointments(self, now: dt.datetime) -> list[str]:
        candidates = await guarded(self._store.due_reminders(now), "Due reminder scan")
        due: list[str] = []
        for appointment_id in dict.fromkeys(candidates):
            appointment = await guarded(
                self._store.get_appointment(appointment_id), "Appointment lookup"
            )
            if appointment is not None and appointment.status not in REMINDER_INACTIVE_STATUSES:
                due.append(appointment_id)
        return due

    async def _dispatch_all(self, appointment_ids: list[str], now: dt.datetime) -> list[SweepOutcome]:
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self._queue_size)
        outcomes: list[SweepOutcome] = []
        worker_count = min(self._workers, len(appointment_ids))

        async def worker() -> None:
            while True:
                appointment_id = await queue.get()
                try:
                    if appointment_id is None:
                        return
                    outcome = await self._dispatch_one(appointment_id, now)
                    if outcome is not None:
                        outcomes.append(outcome)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(worker_count)]
        for appointment_id in appointment_ids:
            await queue.put(appointment_id)
        for _ in workers:
            await queue.put(None)
        await asyncio.gather(*workers)
        return outcomes

    async def _dispatch_one(self, appointment_id: str, now: dt.datetime) -> SweepOutcome | None:
        try:
            message = await self._sender.dispatch_due_reminder(appointment_id, now)
        except Exception as exc:
            logger.error("Reminder for appointment {} failed: {}", appointment_id, exc)
            return SweepOutcome(appointment_id=appointment_id, status="error", message=str(exc))
        if message is None:
            return None
        return SweepOutcome(
            appointment_id=appointment_id, status="success", message_id=message.message_id
        )
