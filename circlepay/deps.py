from functools import lru_cache

from circlepay.bot.conversation import ConversationStateMachine
from circlepay.bot.recent import RecentMessages
from circlepay.config import get_settings
from circlepay.db.repository import LedgerRepository
from circlepay.messaging.notifier import TelegramNotifier
from circlepay.models.schemas import STEP_COMPLETE
from circlepay.scheduler.reminders import ReminderScheduler
from circlepay.services.circles import CircleService
from circlepay.services.ledger import LedgerService


@lru_cache
def get_repo() -> LedgerRepository:
    return LedgerRepository(get_settings().db_path)


@lru_cache
def get_notifier() -> TelegramNotifier:
    repo = get_repo()
    return TelegramNotifier(
        recipients=lambda: [u.user_id for u in repo.get_all_users() if u.step == STEP_COMPLETE]
    )


@lru_cache
def get_circle_service() -> CircleService:
    service = CircleService(get_repo())
    service.migrate_legacy_circles()
    return service


@lru_cache
def get_ledger() -> LedgerService:
    return LedgerService(get_repo(), get_notifier())


@lru_cache
def get_conversation() -> ConversationStateMachine:
    return ConversationStateMachine(
        get_repo(), get_circle_service(), get_ledger(), get_settings().mini_app_url
    )


@lru_cache
def get_recent_messages() -> RecentMessages:
    return RecentMessages(get_settings().recent_messages_max)


@lru_cache
def get_reminder_scheduler() -> ReminderScheduler:
    settings = get_settings()
    return ReminderScheduler(
        get_ledger(),
        get_notifier(),
        hour=settings.reminder_hour,
        pacing_seconds=settings.reminder_pacing_seconds,
    )
