"""
Reminder scheduling.

The repository only answers "what is due" and records "this was sent".
ReminderScheduler is the timer: it polls for due reminders, claims each by
marking it sent, hands it to a notify callback and books the next
occurrence of recurring reminders.
"""

import asyncio
import calendar
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .errors import IdeaStoreError
from .protocol import IdeaRepository
from .types import RECURRING_REMINDER_TYPES, Reminder, ReminderInput, ensure_utc, utc_now

logger = logging.getLogger(__name__)

Notify = Callable[[Reminder], Awaitable[None]]


def add_months(dt: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped to the end of short months."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_occurrence(reminder: Reminder) -> Optional[datetime]:
    """When a recurring reminder fires next, or None for one-shot types."""
    if reminder.type not in RECURRING_REMINDER_TYPES:
        return None
    scheduled = ensure_utc(reminder.scheduled_for)
    if reminder.type == "daily":
        return scheduled + timedelta(days=1)
    if reminder.type == "weekly":
        return scheduled + timedelta(weeks=1)
    return add_months(scheduled, 1)


class ReminderScheduler:
    """
    Polls a repository for due reminders and delivers them.

    Example:
        async def notify(reminder):
            await bot.send(reminder.message)

        scheduler = ReminderScheduler(store, notify, interval=60)
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run(stop))
    """

    def __init__(self, repository: IdeaRepository, notify: Notify, *, interval: float = 60.0):
        if interval <= 0:
            raise ValueError(f"interval must be positive: {interval}")
        self._repository = repository
        self._notify = notify
        self._interval = interval

    async def poll_once(self, now: Optional[datetime] = None) -> list[Reminder]:
        """
        Deliver everything due at ``now``.

        Each reminder is claimed by marking it sent before notify runs, so
        of several pollers only the one whose claim lands delivers it and
        books its next occurrence. A failed notify books a replacement at
        the original time, which the next poll picks up. Returns the
        reminders that were delivered.
        """
        due = await self._repository.get_due_reminders(now)
        delivered: list[Reminder] = []
        for reminder in due:
            if not await self._repository.mark_reminder_sent(reminder.id):
                logger.debug("Reminder %s claimed by another poller", reminder.id)
                continue
            try:
                await self._notify(reminder)
            except Exception as e:
                logger.warning("Notify failed for reminder %s: %s", reminder.id, e)
                await self._book(reminder, reminder.scheduled_for)
                continue
            delivered.append(reminder)
            next_time = next_occurrence(reminder)
            if next_time is not None:
                await self._book(reminder, next_time)
        if due:
            logger.info("Delivered %d of %d due reminders", len(delivered), len(due))
        return delivered

    async def _book(self, reminder: Reminder, when: datetime) -> None:
        created = await self._repository.add_reminder(
            reminder.idea_id,
            ReminderInput(type=reminder.type, scheduled_for=when, message=reminder.message),
        )
        if created is None:
            logger.debug("Idea %s gone, %s reminder not booked", reminder.idea_id, reminder.type)

    async def run(self, stop: asyncio.Event) -> None:
        """Poll every ``interval`` seconds until ``stop`` is set."""
        logger.info("Reminder scheduler started (interval=%ss)", self._interval)
        while not stop.is_set():
            try:
                await self.poll_once(utc_now())
            except IdeaStoreError as e:
                logger.error("Reminder poll failed: %s", e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reminder scheduler stopped")
