import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from delivery import DeliveryGateway
from errors import CircuitOpenError, PermanentDeliveryError, TransientDeliveryError, ValidationError
from models import Clock, HistoryEntry, Reminder, now_utc
from recurrence import successor_of
from store import ReminderStore, UserDirectory
from timers import ReminderTimers


logger = logging.getLogger("reminder-bot.scheduler")

SENT = "sent"
FAILED = "failed"
ABANDONED = "abandoned"
DROPPED = "dropped"
SKIPPED = "skipped"
DEFERRED = "deferred"
BUSY = "busy"
STALE = "stale"


class SchedulerCore:
    """Turns due reminders into deliveries.

    Two triggers feed `dispatch`: a per-reminder timer armed at the due instant
    and a periodic poll of the store. A reminder already being dispatched in
    this process is not dispatched again, and completion in the store is
    guarded, so the two paths never deliver the same occurrence twice.
    """

    def __init__(
        self,
        store: ReminderStore,
        directory: UserDirectory,
        gateway: DeliveryGateway,
        scheduler: Optional[Any] = None,
        clock: Clock = now_utc,
        poll_seconds: int = 60,
        batch_size: int = 10,
        max_attempts: int = 10,
        cleanup_days: int = 30,
        stats_minutes: int = 5,
    ) -> None:
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.timers = ReminderTimers(self.scheduler)
        self.clock = clock
        self.poll_seconds = poll_seconds
        self.batch_size = max(1, batch_size)
        self.max_attempts = max_attempts
        self.cleanup_days = cleanup_days
        self.stats_minutes = stats_minutes
        self._in_flight: Set[int] = set()
        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.total_executed = 0
        self.success_count = 0
        self.failure_count = 0
        self.skipped_count = 0
        self.last_execution_time: Optional[datetime] = None

    # --- lifecycle ---

    async def start(self) -> None:
        if self.is_running:
            return
        self.scheduler.start()
        self.scheduler.add_job(
            self.poll_once,
            trigger=IntervalTrigger(seconds=self.poll_seconds, timezone=timezone.utc),
            id="poll",
            max_instances=1,
            coalesce=True,
            next_run_time=self.clock(),
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.log_store_stats,
            trigger=CronTrigger(minute=f"*/{self.stats_minutes}", timezone=timezone.utc),
            id="stats",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup,
            trigger=CronTrigger(hour=2, minute=0, timezone=timezone.utc),
            id="cleanup",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.is_running = True
        self.started_at = self.clock()
        armed = await self.rearm_pending()
        logger.info("Scheduler started: poll every %ss, batch %s, %s timers re-armed",
                    self.poll_seconds, self.batch_size, armed)

    def shutdown(self) -> None:
        if not self.is_running:
            return
        self.timers.clear()
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Scheduler stopped")

    # --- timers ---

    def _arm(self, reminder: Reminder) -> None:
        when = max(reminder.due_at, self.clock())
        self.timers.arm(reminder.id, when, self._on_timer)

    async def _on_timer(self, reminder_id: int) -> None:
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            return
        # dispatch re-checks that it is still due
        await self.dispatch(reminder)

    async def rearm_pending(self) -> int:
        pending = await self.store.find_pending()
        for reminder in pending:
            self._arm(reminder)
        return len(pending)

    # --- user-facing operations ---

    async def schedule(self, reminder: Reminder) -> int:
        rid = reminder.id
        if rid is None:
            rid = await self.store.insert(reminder)
        stored = await self.store.get(rid)
        if stored is None:
            raise ValidationError("id", f"reminder {rid} does not exist")
        self._arm(stored)
        logger.info("Scheduled reminder id=%s at %s UTC", rid, stored.scheduled_time.isoformat())
        return rid

    def cancel(self, reminder_id: int) -> bool:
        return self.timers.cancel(reminder_id)

    async def delete(self, reminder_id: int) -> bool:
        deleted = await self.store.soft_delete(reminder_id)
        self.timers.cancel(reminder_id)
        if deleted:
            logger.info("Deleted reminder id=%s", reminder_id)
        return deleted

    async def reschedule(self, reminder_id: int, new_time: datetime) -> bool:
        if not await self.store.reschedule(reminder_id, new_time):
            return False
        self._arm(await self.store.get(reminder_id))
        return True

    async def snooze(self, reminder_id: int, minutes: int) -> Optional[datetime]:
        if minutes <= 0:
            raise ValidationError("minutes", "snooze must be at least one minute")
        now = self.clock()
        until = now + timedelta(minutes=minutes)
        if not await self.store.mark_snoozed(reminder_id, until, requested_at=now):
            return None
        self._arm(await self.store.get(reminder_id))
        logger.info("Snoozed reminder id=%s until %s UTC", reminder_id, until.isoformat())
        return until

    async def complete(self, reminder_id: int) -> bool:
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            return False
        done = await self.store.mark_completed(reminder_id)
        self.timers.cancel(reminder_id)
        if done:
            await self._spawn_successor(reminder)
        return done

    # --- dispatch ---

    async def poll_once(self) -> int:
        due = await self.store.find_due(self.clock())
        for start in range(0, len(due), self.batch_size):
            batch = due[start:start + self.batch_size]
            results = await asyncio.gather(*(self.dispatch(r) for r in batch), return_exceptions=True)
            for reminder, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("Dispatch of reminder id=%s crashed", reminder.id, exc_info=result)
        if due:
            logger.debug("Poll tick handled %s due reminders", len(due))
        return len(due)

    async def dispatch(self, reminder: Reminder) -> str:
        if reminder.id in self._in_flight:
            logger.debug("Reminder id=%s is already being dispatched", reminder.id)
            return BUSY
        self._in_flight.add(reminder.id)
        try:
            current = await self.store.get(reminder.id)
            if current is None or not current.is_due(self.clock()):
                logger.debug("Reminder id=%s is no longer due, not dispatching", reminder.id)
                return STALE
            return await self._dispatch(current)
        finally:
            self._in_flight.discard(reminder.id)

    def _count_execution(self, ok: bool) -> None:
        self.total_executed += 1
        if ok:
            self.success_count += 1
        else:
            self.failure_count += 1
        self.last_execution_time = self.clock()

    async def _dispatch(self, reminder: Reminder) -> str:
        rid = reminder.id
        user = await self.directory.get(reminder.user_id)
        if user is None or not user.can_receive:
            await self.store.soft_delete(rid)
            self.timers.cancel(rid)
            self.skipped_count += 1
            logger.warning("Skipped reminder id=%s: user %s is missing, inactive or banned", rid, reminder.user_id)
            return SKIPPED

        try:
            receipt = await self.gateway.deliver(reminder, user)
        except CircuitOpenError as exc:
            # nothing was attempted; the next tick tries again
            logger.warning("Reminder id=%s deferred: %s", rid, exc)
            return DEFERRED
        except TransientDeliveryError as exc:
            self._count_execution(False)
            failures = await self.store.mark_failed(rid, str(exc))
            if failures >= self.max_attempts:
                await self.store.abandon(rid)
                self.timers.cancel(rid)
                logger.error("Reminder id=%s abandoned after %s failed attempts, last error: %s", rid, failures, exc)
                return ABANDONED
            logger.warning("Reminder id=%s delivery failed (%s/%s): %s", rid, failures, self.max_attempts, exc)
            return FAILED
        except PermanentDeliveryError as exc:
            self._count_execution(False)
            await self.store.mark_failed(rid, str(exc))
            await self.store.soft_delete(rid)
            self.timers.cancel(rid)
            logger.error("Reminder id=%s dropped after a permanent delivery failure: %s", rid, exc)
            return DROPPED

        self._count_execution(True)
        successor = successor_of(reminder)
        entry = HistoryEntry(
            timestamp=self.clock(),
            outcome="sent",
            next_execution=successor.scheduled_time if successor else None,
        )
        completed = await self.store.mark_completed(rid, entry)
        self.timers.cancel(rid)
        if not completed:
            logger.info("Reminder id=%s changed while sending, not completing it again", rid)
            return SENT
        logger.info("Delivered reminder id=%s as message %s", rid, receipt.message_id)
        if successor is not None:
            await self._insert_successor(rid, successor)
        return SENT

    async def _spawn_successor(self, reminder: Reminder) -> Optional[int]:
        successor = successor_of(reminder)
        if successor is None:
            return None
        return await self._insert_successor(reminder.id, successor)

    async def _insert_successor(self, parent_id: int, successor: Reminder) -> Optional[int]:
        new_id = await self.store.insert_successor(parent_id, successor)
        if new_id is None:
            logger.debug("Reminder id=%s already has its next occurrence", parent_id)
            return None
        self._arm(await self.store.get(new_id))
        logger.info("Reminder id=%s recurs as id=%s at %s UTC", parent_id, new_id, successor.scheduled_time.isoformat())
        return new_id

    # --- stats and housekeeping ---

    def get_stats(self) -> Dict[str, Any]:
        uptime = (self.clock() - self.started_at).total_seconds() if self.started_at and self.is_running else 0.0
        return {
            "total_executed": self.total_executed,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "active_timer_count": self.timers.count(),
            "last_execution_time": self.last_execution_time,
            "is_running": self.is_running,
            "uptime_seconds": uptime,
        }

    async def log_store_stats(self) -> Dict[str, int]:
        summary = await self.store.count_summary(self.clock())
        pruned = self.gateway.cache.prune()
        logger.info(
            "Store: total=%s active=%s completed=%s overdue=%s abandoned=%s; timers=%s; executed=%s ok=%s failed=%s; "
            "cache pruned=%s",
            summary["total"], summary["active"], summary["completed"], summary["overdue"], summary["abandoned"],
            self.timers.count(), self.total_executed, self.success_count, self.failure_count, pruned,
        )
        return summary

    async def cleanup(self) -> int:
        before = self.clock() - timedelta(days=self.cleanup_days)
        removed = await self.store.cleanup_completed(before)
        logger.info("Purged %s completed reminders older than %s days", removed, self.cleanup_days)
        return removed
