from fastapi import APIRouter, Depends
from loguru import logger

from circlepay.api.auth import require_admin
from circlepay.bot.recent import RecentMessages
from circlepay.db.repository import LedgerRepository
from circlepay.deps import get_notifier, get_recent_messages, get_reminder_scheduler, get_repo
from circlepay.errors import InvalidRequest
from circlepay.messaging.notifier import Notifier
from circlepay.models.schemas import ReceivedMessage, SendRequest, User
from circlepay.scheduler.reminders import ReminderScheduler

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@router.get("/users", response_model=list[User])
def list_users(repo: LedgerRepository = Depends(get_repo)):
    return repo.get_all_users()


@router.get("/messages", response_model=list[ReceivedMessage])
def list_messages(recent: RecentMessages = Depends(get_recent_messages)):
    return recent.snapshot()


@router.post("/send")
async def send_message(request: SendRequest, notifier: Notifier = Depends(get_notifier)):
    if not request.user_id or not request.text.strip():
        raise InvalidRequest("user_id and text are required")
    logger.info("Admin push to {}", request.user_id)
    await notifier.push_text(request.user_id, request.text)
    return {"detail": "Message sent"}


@router.post("/test/send-reminders")
async def send_reminders(scheduler: ReminderScheduler = Depends(get_reminder_scheduler)):
    logger.info("[reminders] Manual run requested")
    queued = await scheduler.run_once()
    return {"queued": queued}
