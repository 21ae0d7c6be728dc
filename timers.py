import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from models import as_utc


logger = logging.getLogger("reminder-bot.timers")

TimerCallback = Callable[[int], Awaitable[Any]]


class ReminderTimers:
    """One in-process DateTrigger job per reminder id.

    Nothing here is persisted: after a restart the core re-arms pending
    reminders and the poll job picks up whatever a lost timer would have fired.
    """

    def __init__(self, scheduler: Any, misfire_grace_time: int = 60 * 60 * 24) -> None:
        self.scheduler = scheduler
        self.misfire_grace_time = misfire_grace_time
        self._jobs: Dict[int, Any] = {}

    def arm(self, reminder_id: int, when: datetime, callback: TimerCallback) -> None:
        self.cancel(reminder_id)
        when = as_utc(when)
        job = self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=when, timezone=timezone.utc),
            id=f"reminder:{reminder_id}",
            kwargs={"reminder_id": reminder_id, "callback": callback},
            misfire_grace_time=self.misfire_grace_time,
            coalesce=True,
            replace_existing=True,
        )
        self._jobs[reminder_id] = job
        logger.debug("Armed timer for reminder id=%s at %s UTC", reminder_id, when.isoformat())

    async def _fire(self, reminder_id: int, callback: TimerCallback) -> None:
        self._jobs.pop(reminder_id, None)
        await callback(reminder_id)

    def cancel(self, reminder_id: int) -> bool:
        job = self._jobs.pop(reminder_id, None)
        if job is None:
            return False
        try:
            job.remove()
        except JobLookupError:
            # already ran or was removed with the scheduler
            logger.debug("Timer for reminder id=%s was already gone", reminder_id)
        return True

    def armed(self, reminder_id: int) -> bool:
        return reminder_id in self._jobs

    def count(self) -> int:
        return len(self._jobs)

    def clear(self) -> None:
        for reminder_id in list(self._jobs):
            self.cancel(reminder_id)
