"""Outbound messages.

What is sent (``TextContent`` / ``ChoicesContent``) and where it goes
(``ReplyDelivery`` / ``PushDelivery`` / ``MulticastDelivery`` /
``BroadcastDelivery``) are two closed sets combined by ``Notifier.send``.
Anything that is not the synchronous reply goes through ``notify`` /
``spawn``: fire-and-forget, failures logged and dropped.
"""

import asyncio
from collections.abc import Callable, Coroutine

from loguru import logger
from pydantic import BaseModel
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

from circlepay.errors import Transient


class Choice(BaseModel):
    """A selectable action: either sends `text` back or opens `url`."""

    label: str
    text: str | None = None
    url: str | None = None


class TextContent(BaseModel):
    text: str


class ChoicesContent(BaseModel):
    text: str
    choices: list[Choice]


Content = TextContent | ChoicesContent


class ReplyDelivery(BaseModel):
    chat_id: int | str


class PushDelivery(BaseModel):
    user_id: str


class MulticastDelivery(BaseModel):
    user_ids: list[str]


class BroadcastDelivery(BaseModel):
    pass


Delivery = ReplyDelivery | PushDelivery | MulticastDelivery | BroadcastDelivery


def plain_text(content: Content) -> TextContent:
    """Degrade a choices message to text, listing link targets inline."""
    if isinstance(content, TextContent):
        return content
    links = [f"{c.label}: {c.url}" for c in content.choices if c.url]
    options = [c.text for c in content.choices if c.text]
    text = content.text
    if options:
        text += "\n\nSend one of:\n" + "\n".join(f"• {o}" for o in options)
    if links:
        text += "\n\n" + "\n".join(links)
    return TextContent(text=text)


class Notifier:
    """Base sink. Subclasses implement `_deliver` for one recipient."""

    def __init__(self, recipients: Callable[[], list[str]] | None = None):
        self._recipients = recipients or (lambda: [])
        self._tasks: set[asyncio.Task] = set()

    def _targets(self, delivery: Delivery) -> list[int | str]:
        if isinstance(delivery, ReplyDelivery):
            return [delivery.chat_id]
        if isinstance(delivery, PushDelivery):
            return [delivery.user_id]
        if isinstance(delivery, MulticastDelivery):
            return list(delivery.user_ids)
        if isinstance(delivery, BroadcastDelivery):
            return list(self._recipients())
        raise TypeError(f"unknown delivery: {delivery!r}")

    async def _deliver(self, target: int | str, content: Content) -> None:
        raise NotImplementedError

    async def send(self, delivery: Delivery, content: Content) -> None:
        """Send `content` to every target of `delivery`. Raises Transient on failure."""
        failed = []
        for target in self._targets(delivery):
            try:
                await self._deliver(target, content)
            except Transient as e:
                logger.warning("Delivery to {} failed: {}", target, e.message)
                failed.append(target)
        if failed:
            raise Transient(f"delivery failed for {len(failed)} recipient(s)")

    async def push_text(self, user_id: str, text: str) -> None:
        await self.send(PushDelivery(user_id=user_id), TextContent(text=text))

    async def push_choices(self, user_id: str, text: str, choices: list[Choice]) -> None:
        await self.send(PushDelivery(user_id=user_id), ChoicesContent(text=text, choices=choices))

    async def multicast_text(self, user_ids: list[str], text: str) -> None:
        await self.send(MulticastDelivery(user_ids=user_ids), TextContent(text=text))

    async def broadcast_text(self, text: str) -> None:
        await self.send(BroadcastDelivery(), TextContent(text=text))

    async def reply(self, chat_id: int | str, content: Content) -> None:
        """Synchronous-path reply; a failed choices message falls back to plain text."""
        try:
            await self.send(ReplyDelivery(chat_id=chat_id), content)
        except Transient:
            if isinstance(content, TextContent):
                raise
            logger.warning("Choices reply to {} failed, sending plain text", chat_id)
            await self.send(ReplyDelivery(chat_id=chat_id), plain_text(content))

    # ── fire-and-forget ────────────────────────────────────────────

    async def _guard(self, coro: Coroutine, what: str) -> None:
        try:
            await coro
        except Transient as e:
            logger.error("Notification '{}' failed: {}", what, e.message)
        except Exception:
            logger.exception("Notification '{}' crashed", what)

    def spawn(self, coro: Coroutine, what: str = "notification") -> None:
        """Run `coro` on its own task; nothing waits for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, dropped '{}'", what)
            return
        task = loop.create_task(self._guard(coro, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def notify(self, user_id: str, text: str) -> None:
        self.spawn(self.push_text(user_id, text), f"push to {user_id}")


class TelegramNotifier(Notifier):
    """Delivers through the Telegram Bot API; choices become inline keyboards."""

    def __init__(self, bot: Bot | None = None, recipients: Callable[[], list[str]] | None = None):
        super().__init__(recipients)
        self.bot = bot

    def attach(self, bot: Bot) -> None:
        self.bot = bot

    @staticmethod
    def _markup(content: Content) -> InlineKeyboardMarkup | None:
        if not isinstance(content, ChoicesContent) or not content.choices:
            return None
        rows = []
        for choice in content.choices:
            if choice.url:
                rows.append([InlineKeyboardButton(choice.label, url=choice.url)])
            else:
                rows.append([InlineKeyboardButton(choice.label, callback_data=choice.text)])
        return InlineKeyboardMarkup(rows)

    async def _deliver(self, target: int | str, content: Content) -> None:
        if self.bot is None:
            raise Transient("no Telegram bot attached")
        try:
            await self.bot.send_message(
                chat_id=target, text=content.text, reply_markup=self._markup(content)
            )
        except TelegramError as e:
            raise Transient(f"Telegram API error: {e}") from e
