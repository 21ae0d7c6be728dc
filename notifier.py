import logging
from datetime import timedelta
from typing import Any, Optional, Protocol

from telegram import Bot, InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError, TimedOut

from errors import NotifierError
from models import Attachment


logger = logging.getLogger("reminder-bot.notifier")

EDIT_OK = "ok"
EDIT_NOT_MODIFIED = "not_modified"


class Notifier(Protocol):
    async def send_message(self, target: str, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> int: ...

    async def edit_message(self, target: str, message_id: int, text: str,
                           keyboard: Optional[InlineKeyboardMarkup] = None) -> str: ...

    async def send_attachment(self, target: str, attachment: Attachment) -> None: ...


def _retry_after_seconds(exc: RetryAfter) -> float:
    value: Any = exc.retry_after
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def translate_error(exc: TelegramError) -> NotifierError:
    """Map python-telegram-bot exceptions onto NotifierError codes."""
    if isinstance(exc, RetryAfter):
        return NotifierError(NotifierError.RATE_LIMIT, exc.message, retry_after=_retry_after_seconds(exc))
    if isinstance(exc, Forbidden):
        return NotifierError(NotifierError.FORBIDDEN, exc.message)
    # BadRequest and TimedOut are NetworkError subclasses, so they go first
    if isinstance(exc, BadRequest):
        return NotifierError(NotifierError.BAD_REQUEST, exc.message)
    if isinstance(exc, TimedOut):
        return NotifierError(NotifierError.TIMEOUT, exc.message)
    if isinstance(exc, NetworkError):
        return NotifierError(NotifierError.NETWORK, exc.message)
    return NotifierError(NotifierError.SERVER_ERROR, exc.message)


class TelegramNotifier:
    _SENDERS = {
        "photo": ("send_photo", "photo"),
        "document": ("send_document", "document"),
        "audio": ("send_audio", "audio"),
        "video": ("send_video", "video"),
        "voice": ("send_voice", "voice"),
        "sticker": ("send_sticker", "sticker"),
    }

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_message(self, target: str, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> int:
        try:
            msg = await self.bot.send_message(chat_id=target, text=text, reply_markup=keyboard)
        except TelegramError as exc:
            raise translate_error(exc) from exc
        return int(msg.message_id)

    async def edit_message(self, target: str, message_id: int, text: str,
                           keyboard: Optional[InlineKeyboardMarkup] = None) -> str:
        try:
            await self.bot.edit_message_text(text=text, chat_id=target, message_id=message_id, reply_markup=keyboard)
        except TelegramError as exc:
            err = translate_error(exc)
            if err.is_not_modified:
                return EDIT_NOT_MODIFIED
            raise err from exc
        return EDIT_OK

    async def send_attachment(self, target: str, attachment: Attachment) -> None:
        sender = self._SENDERS.get(attachment.kind)
        if sender is None:
            logger.warning("Unknown attachment kind %s for chat %s", attachment.kind, target)
            return
        method, arg = sender
        try:
            await getattr(self.bot, method)(chat_id=target, **{arg: attachment.file_id})
        except TelegramError as exc:
            raise translate_error(exc) from exc
