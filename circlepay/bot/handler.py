from datetime import datetime

from loguru import logger
from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from circlepay.config import get_settings
from circlepay.deps import get_conversation, get_notifier, get_recent_messages
from circlepay.errors import Transient
from circlepay.messaging.notifier import Content
from circlepay.models.schemas import ReceivedMessage


async def _send_reply(chat_id: int, content: Content) -> None:
    try:
        await get_notifier().reply(chat_id, content)
    except Transient as e:
        logger.error("Reply to chat {} failed: {}", chat_id, e.message)


def _record(user_id: str, text: str) -> None:
    get_recent_messages().add(
        ReceivedMessage(timestamp=datetime.now(), user_id=user_id, text=text)
    )


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start: re-issue the prompt for the user's current step."""
    user_id = str(update.effective_user.id)
    _record(user_id, "/start")
    content = get_conversation().start(user_id)
    await _send_reply(update.effective_chat.id, content)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle incoming text messages."""
    user_id = str(update.effective_user.id)
    text = update.message.text or ""
    logger.info("Telegram message from {}: {}", user_id, text)
    _record(user_id, text)

    content = get_conversation().handle(user_id, text)
    await _send_reply(update.effective_chat.id, content)


async def handle_choice(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Inline keyboard presses carry the choice text as callback data."""
    query = update.callback_query
    await query.answer()

    user_id = str(query.from_user.id)
    text = query.data or ""
    logger.info("Telegram choice from {}: {}", user_id, text)
    _record(user_id, text)

    content = get_conversation().handle(user_id, text)
    await _send_reply(query.message.chat_id, content)


def build_bot_app() -> Application:
    """Build and return the Telegram bot application."""
    settings = get_settings()
    app = Application.builder().token(settings.telegram_bot_token).build()

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CallbackQueryHandler(handle_choice))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    return app
