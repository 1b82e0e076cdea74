import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from loguru import logger

from circlepay.messaging.notifier import Notifier
from circlepay.services.ledger import LedgerService, format_yen


def next_fire_time(now: datetime, hour: int) -> datetime:
    """Next occurrence of `hour`:00 strictly after `now`."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


def reminder_text(event_name: str, amount: int) -> str:
    return (
        "⏰ Payment reminder\n\n"
        f"Event: {event_name}\nAmount: {format_yen(amount)}\n\n"
        "We haven't seen your payment yet.\n"
        "If you've already paid, report it with \"💰 I paid\"."
    )


class ReminderScheduler:
    """Daily nudge for every participant who has neither paid nor been approved."""

    def __init__(
        self,
        ledger: LedgerService,
        notifier: Notifier,
        hour: int = 12,
        pacing_seconds: float = 0.1,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.notifier = notifier
        self.hour = hour
        self.pacing_seconds = pacing_seconds
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    async def run_once(self) -> int:
        """Queue one reminder per unpaid participant. Returns how many were queued."""
        participants = self.ledger.unpaid_participants()
        if not participants:
            logger.info("[reminders] No unpaid participants")
            return 0

        logger.info("[reminders] Sending reminders to {} unpaid participants", len(participants))
        for i, p in enumerate(participants):
            if i:
                await self._sleep(self.pacing_seconds)
            self.notifier.notify(p.user_id, reminder_text(p.event_name, p.split_amount))
        logger.info("[reminders] Reminder run finished")
        return len(participants)

    async def run(self) -> None:
        logger.info("[reminders] Scheduler started (daily at {}:00)", self.hour)
        while True:
            now = self._clock()
            fire_at = next_fire_time(now, self.hour)
            delay = (fire_at - now).total_seconds()
            logger.info("[reminders] Next run at {} (in {:.0f}s)", fire_at.isoformat(" "), delay)
            await self._sleep(delay)
            try:
                await self.run_once()
            except Exception:
                logger.exception("[reminders] Reminder run failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("[reminders] Scheduler stopped")
