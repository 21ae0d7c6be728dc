import json
import logging
import os
from datetime import datetime
from typing import Iterable, Optional, Set, Tuple

from telegram import BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, ApplicationBuilder, CallbackQueryHandler, CommandHandler, ContextTypes

from delivery import CircuitBreaker, DeliveryGateway
from errors import ValidationError
from i18n import t
from keyboards import parse_callback, reminder_card, snooze_options
from messages import format_timedelta_brief_localized, local_stamp, with_status
from models import LANGUAGES, PATTERNS, Reminder, UserProfile, is_valid_tz, now_utc
from notifier import TelegramNotifier
from scheduler import SchedulerCore
from store import Database, ReminderStore, UserDirectory
from time_parser import TimeParser, parse_duration_prefix


# =============================
# Config and logging
# =============================

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def parse_admin_ids(raw: str) -> Set[int]:
    return {int(part) for part in (raw or "").replace(" ", "").split(",") if part.lstrip("-").isdigit()}


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("reminder-bot")
audit_logger = logging.getLogger("audit")

BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TOKEN_FILE = os.getenv("TELEGRAM_BOT_TOKEN_FILE", ".telegram_token")
if not BOT_TOKEN and os.path.exists(TOKEN_FILE):
    try:
        with open(TOKEN_FILE, "r", encoding="utf-8") as _tf:
            BOT_TOKEN = _tf.read().strip()
    except OSError:
        logger.exception("Could not read bot token from %s", TOKEN_FILE)

DEFAULT_TZ = os.getenv("REMIND_BOT_TZ", "Asia/Damascus")
DEFAULT_LANG = os.getenv("REMIND_BOT_LANG", "ar").lower()
DB_PATH = os.getenv("REMIND_DB_PATH", "reminders.db")
AUDIT_LOG_PATH = os.getenv("REMIND_AUDIT_LOG_PATH", "audit.log")
ADMIN_IDS = parse_admin_ids(os.getenv("REMIND_ADMIN_IDS", ""))

POLL_SECONDS = _env_int("REMIND_POLL_SECONDS", 60)
BATCH_SIZE = _env_int("REMIND_BATCH_SIZE", 10)
MAX_ATTEMPTS = _env_int("REMIND_MAX_ATTEMPTS", 10)
SEND_RETRIES = _env_int("REMIND_SEND_RETRIES", 3)
SEND_TIMEOUT = _env_float("REMIND_SEND_TIMEOUT", 15.0)
BREAKER_THRESHOLD = _env_int("REMIND_BREAKER_THRESHOLD", 5)
BREAKER_COOLDOWN = _env_float("REMIND_BREAKER_COOLDOWN", 30.0)
CLEANUP_DAYS = _env_int("REMIND_CLEANUP_DAYS", 30)


def audit_event(chat_id: int, user_id: int, action: str, **fields: object) -> None:
    """One JSON line per user action in the audit log."""
    if not audit_logger.handlers:
        try:
            fh = logging.FileHandler(AUDIT_LOG_PATH, encoding="utf-8")
        except OSError:
            logger.warning("Audit log %s is not writable, audit goes to the main log", AUDIT_LOG_PATH)
        else:
            fh.setLevel(logging.INFO)
            fh.setFormatter(logging.Formatter("%(message)s"))
            audit_logger.addHandler(fh)
            audit_logger.propagate = False
        audit_logger.setLevel(logging.INFO)
    payload = {
        "ts": now_utc().isoformat(),
        "chat_id": chat_id,
        "user_id": user_id,
        "action": action,
    }
    if fields:
        payload.update(fields)
    audit_logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def parse_repeat(text: str) -> Tuple[Optional[str], int, Optional[int]]:
    """'weekly' / 'weekly 2' / 'monthly x3' -> (pattern, interval, max_recurrences)."""
    tokens = (text or "").lower().split()
    if not tokens:
        return None, 1, None
    pattern = tokens[0]
    if pattern not in PATTERNS:
        raise ValidationError("pattern", f"unknown recurrence pattern {tokens[0]!r}")
    interval, max_recurrences = 1, None
    for tok in tokens[1:]:
        if tok.isdigit():
            interval = int(tok)
        elif tok.startswith("x") and tok[1:].isdigit():
            max_recurrences = int(tok[1:])
        else:
            raise ValidationError("pattern", f"unexpected {tok!r}")
    return pattern, interval, max_recurrences


def _target_type(chat_type: Optional[str]) -> str:
    if chat_type in ("group", "supergroup"):
        return "group"
    if chat_type == "channel":
        return "channel"
    return "private"


# =============================
# Bot commands
# =============================

class BotHandlers:
    def __init__(self, store: ReminderStore, directory: UserDirectory, core: SchedulerCore,
                 gateway: DeliveryGateway, parser: Optional[TimeParser] = None,
                 admin_ids: Iterable[int] = ()) -> None:
        self.store = store
        self.directory = directory
        self.core = core
        self.gateway = gateway
        self.parser = parser or TimeParser()
        self.admin_ids = set(admin_ids)

    def _now(self) -> datetime:
        return self.core.clock()

    async def _profile(self, update: Update) -> UserProfile:
        user = update.effective_user
        lang_hint = (getattr(user, "language_code", None) or "")[:2].lower()
        return await self.directory.ensure(user.id, language=lang_hint if lang_hint in LANGUAGES else None)

    async def _gate(self, update: Update) -> Optional[UserProfile]:
        """Profile of an allowed user; banned users get a refusal and None."""
        profile = await self._profile(update)
        if profile.is_banned:
            await update.effective_message.reply_text(t(profile.language, "banned"))
            return None
        return profile

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        try:
            profile = await self._profile(update)
            audit_event(update.effective_chat.id, profile.user_id, "cmd:/start")
            await msg.reply_text(t(profile.language, "help", tz=profile.timezone, lang=profile.language))
        except Exception:
            logger.exception("Error in /start")
            await msg.reply_text(t(DEFAULT_LANG, "error"))

    async def cmd_remind(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        chat = update.effective_chat
        lang = DEFAULT_LANG
        try:
            profile = await self._gate(update)
            if profile is None:
                return
            lang = profile.language
            parts = (msg.text or "").split(maxsplit=1)
            body = parts[1] if len(parts) > 1 else ""
            if "|" not in body:
                await msg.reply_text(t(lang, "remind_need"))
                return
            segments = [s.strip() for s in body.split("|")]
            when_text, title = segments[0], segments[1]
            repeat_text = segments[2] if len(segments) > 2 else ""
            now = self._now()
            parsed = self.parser.parse(when_text, profile.timezone, now=now)
            if parsed is None:
                await msg.reply_text(t(lang, "remind_unparsed"))
                return
            if parsed.when_utc <= now:
                await msg.reply_text(t(lang, "remind_past"))
                return
            try:
                pattern, interval, max_recurrences = parse_repeat(repeat_text)
                reminder = Reminder(
                    user_id=profile.user_id,
                    title=title,
                    scheduled_time=parsed.when_utc,
                    target_id=str(chat.id),
                    target_type=_target_type(getattr(chat, "type", None)),
                    timezone=profile.timezone,
                    is_recurring=pattern is not None,
                    pattern=pattern,
                    interval=interval,
                    max_recurrences=max_recurrences,
                )
                rid = await self.core.schedule(reminder)
            except ValidationError as exc:
                await msg.reply_text(t(lang, "remind_invalid", reason=exc.message))
                return
            audit_event(chat.id, profile.user_id, "create:reminder", rid=rid, repeat=pattern)
            await msg.reply_text(t(
                lang, "remind_ok",
                when_local=local_stamp(parsed.when_utc, profile.timezone),
                tz=profile.timezone,
                delta=format_timedelta_brief_localized(lang, parsed.when_utc - now),
                rid=rid,
            ))
        except Exception:
            logger.exception("Error in /remind")
            await msg.reply_text(t(lang, "error"))

    async def cmd_list(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._gate(update)
            if profile is None:
                return
            lang = profile.language
            rows = await self.store.find_for_user(profile.user_id, limit=50)
            if not rows:
                await msg.reply_text(t(lang, "list_empty"))
                return
            now = self._now()
            lines = [t(lang, "list_header", tz=profile.timezone)]
            for r in rows:
                mark = " 🔁" if r.is_recurring else ""
                lines.append(
                    f"ID {r.id}: {local_stamp(r.due_at, profile.timezone)} — "
                    f"{format_timedelta_brief_localized(lang, r.due_at - now)} — {r.title}{mark}"
                )
            audit_event(update.effective_chat.id, profile.user_id, "cmd:/list", count=len(rows))
            await msg.reply_text("\n".join(lines))
        except Exception:
            logger.exception("Error in /list")
            await msg.reply_text(t(lang, "error"))

    async def _own_reminder(self, rid: int, user_id: int) -> Optional[Reminder]:
        r = await self.store.get(rid)
        if r is None or r.user_id != user_id or r.is_deleted or r.is_abandoned:
            return None
        return r

    async def cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        args = (msg.text or "").split(maxsplit=1)
        lang = DEFAULT_LANG
        try:
            profile = await self._gate(update)
            if profile is None:
                return
            lang = profile.language
            if len(args) < 2:
                await msg.reply_text(t(lang, "cancel_need"))
                return
            try:
                rid = int(args[1].strip())
            except ValueError:
                await msg.reply_text(t(lang, "cancel_nan"))
                return
            audit_event(update.effective_chat.id, profile.user_id, "cmd:/cancel", rid=rid)
            if await self._own_reminder(rid, profile.user_id) is None or not await self.core.delete(rid):
                await msg.reply_text(t(lang, "cancel_not_found"))
                return
            await msg.reply_text(t(lang, "cancel_ok", rid=rid))
        except Exception:
            logger.exception("Error in /cancel")
            await msg.reply_text(t(lang, "error"))

    async def cmd_snooze(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._gate(update)
            if profile is None:
                return
            lang = profile.language
            parts = (msg.text or "").split(maxsplit=2)
            if len(parts) < 3 or not parts[1].isdigit():
                await msg.reply_text(t(lang, "snooze_need"))
                return
            rid = int(parts[1])
            amount = parts[2].strip()
            if amount.isdigit():
                minutes = int(amount)
            else:
                delta, _ = parse_duration_prefix(amount)
                if delta is None:
                    await msg.reply_text(t(lang, "snooze_need"))
                    return
                now = self._now()
                minutes = int(((now + delta) - now).total_seconds() // 60)
            if minutes <= 0:
                await msg.reply_text(t(lang, "snooze_need"))
                return
            if await self._own_reminder(rid, profile.user_id) is None:
                await msg.reply_text(t(lang, "cancel_not_found"))
                return
            until = await self.core.snooze(rid, minutes)
            if until is None:
                await msg.reply_text(t(lang, "cancel_not_found"))
                return
            audit_event(update.effective_chat.id, profile.user_id, "cmd:/snooze", rid=rid, minutes=minutes)
            await msg.reply_text(t(lang, "snooze_ok", when_local=local_stamp(until, profile.timezone),
                                   tz=profile.timezone, rid=rid))
        except Exception:
            logger.exception("Error in /snooze")
            await msg.reply_text(t(lang, "error"))

    async def cmd_lang(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._profile(update)
            lang = profile.language
            arg = (context.args[0].strip().lower() if context.args else "")
            if not arg:
                await msg.reply_text(t(lang, "lang_show", lang=lang))
                return
            if arg not in LANGUAGES:
                audit_event(update.effective_chat.id, profile.user_id, "cmd:/lang", invalid=arg)
                await msg.reply_text(t(lang, "lang_bad"))
                return
            await self.directory.set_language(profile.user_id, arg)
            audit_event(update.effective_chat.id, profile.user_id, "set:lang", lang=arg)
            await msg.reply_text(t(arg, "lang_ok", lang=arg))
        except Exception:
            logger.exception("Error in /lang")
            await msg.reply_text(t(lang, "error"))

    async def cmd_tz(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._profile(update)
            lang = profile.language
            arg = " ".join(context.args).strip() if context.args else ""
            if not arg:
                await msg.reply_text(t(lang, "tz_show", tz=profile.timezone))
                return
            if not is_valid_tz(arg):
                audit_event(update.effective_chat.id, profile.user_id, "cmd:/tz", invalid=arg)
                await msg.reply_text(t(lang, "tz_bad"))
                return
            await self.directory.set_timezone(profile.user_id, arg)
            audit_event(update.effective_chat.id, profile.user_id, "set:tz", tz=arg)
            await msg.reply_text(t(lang, "tz_ok", tz=arg))
        except Exception:
            logger.exception("Error in /tz")
            await msg.reply_text(t(lang, "error"))

    # --- admin ---

    async def _admin(self, update: Update) -> Optional[UserProfile]:
        profile = await self._profile(update)
        if profile.user_id not in self.admin_ids:
            await update.effective_message.reply_text(t(profile.language, "admin_only"))
            return None
        return profile

    async def cmd_stats(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._admin(update)
            if profile is None:
                return
            lang = profile.language
            stats = self.core.get_stats()
            summary = await self.store.count_summary(self._now())
            last = stats["last_execution_time"]
            lines = [t(
                lang, "stats",
                last_execution_time=local_stamp(last, profile.timezone) if last else "—",
                **{k: v for k, v in stats.items() if k != "last_execution_time"},
                **summary,
            )]
            for r in await self.store.find_abandoned(limit=10):
                lines.append(f"⚠️ ID {r.id} (user {r.user_id}): {r.title}")
            audit_event(update.effective_chat.id, profile.user_id, "cmd:/stats")
            await msg.reply_text("\n".join(lines))
        except Exception:
            logger.exception("Error in /stats")
            await msg.reply_text(t(lang, "error"))

    async def _set_ban(self, update: Update, context: ContextTypes.DEFAULT_TYPE, banned: bool) -> None:
        msg = update.effective_message
        lang = DEFAULT_LANG
        try:
            profile = await self._admin(update)
            if profile is None:
                return
            lang = profile.language
            if not context.args or not context.args[0].isdigit():
                await msg.reply_text(t(lang, "ban_need"))
                return
            target = int(context.args[0])
            await self.directory.set_banned(target, banned)
            audit_event(update.effective_chat.id, profile.user_id, "admin:ban" if banned else "admin:unban", target=target)
            await msg.reply_text(t(lang, "ban_ok" if banned else "unban_ok", user_id=target))
        except Exception:
            logger.exception("Error in /ban")
            await msg.reply_text(t(lang, "error"))

    async def cmd_ban(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._set_ban(update, context, True)

    async def cmd_unban(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._set_ban(update, context, False)

    # --- reminder card buttons ---

    async def on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        q = update.callback_query
        if not q:
            return
        await q.answer()
        chat_id = q.message.chat.id
        user_id = q.from_user.id
        action, rid, arg = parse_callback(q.data or "")
        audit_event(chat_id, user_id, "cb", data=(q.data or ""))
        if action is None:
            return
        profile = await self.directory.ensure(user_id)
        lang = profile.language
        target = str(chat_id)
        card = q.message.text or ""
        try:
            r = await self.store.get(rid)
            if (r is None or r.target_id != target or r.user_id != user_id or profile.is_banned
                    or r.is_deleted or r.is_abandoned):
                await self.gateway.edit(target, q.message.message_id, with_status(card, t(lang, "status_missing")))
                return
            if action == "done":
                await self.core.complete(rid)
                audit_event(chat_id, user_id, "cb:done", rid=rid)
                await self.gateway.edit(target, q.message.message_id, with_status(card, t(lang, "status_done")))
            elif action == "snz" and arg is None:
                await self.gateway.edit(target, q.message.message_id, card, snooze_options(lang, rid))
            elif action == "snz":
                until = await self.core.snooze(rid, arg)
                if until is None:
                    await self.gateway.edit(target, q.message.message_id, with_status(card, t(lang, "status_missing")))
                    return
                audit_event(chat_id, user_id, "cb:snooze", rid=rid, minutes=arg)
                status = t(lang, "status_snoozed", when_local=local_stamp(until, profile.timezone))
                await self.gateway.edit(target, q.message.message_id, with_status(card, status))
            elif action == "back":
                await self.gateway.edit(target, q.message.message_id, card, reminder_card(lang, rid))
        except Exception:
            logger.exception("Error in callback %s", q.data)


# =============================
# Application wiring
# =============================

def build_application() -> Application:
    if not BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN is not set in the environment or in %s", TOKEN_FILE)
        raise SystemExit(1)

    application = ApplicationBuilder().token(BOT_TOKEN).build()

    db = Database(DB_PATH)
    store = ReminderStore(db)
    directory = UserDirectory(db, default_lang=DEFAULT_LANG, default_tz=DEFAULT_TZ)
    gateway = DeliveryGateway(
        TelegramNotifier(application.bot),
        CircuitBreaker("telegram", threshold=BREAKER_THRESHOLD, cooldown=BREAKER_COOLDOWN),
        max_attempts=SEND_RETRIES,
        timeout=SEND_TIMEOUT,
    )
    core = SchedulerCore(
        store, directory, gateway,
        poll_seconds=POLL_SECONDS,
        batch_size=BATCH_SIZE,
        max_attempts=MAX_ATTEMPTS,
        cleanup_days=CLEANUP_DAYS,
    )
    handlers = BotHandlers(store, directory, core, gateway, admin_ids=ADMIN_IDS)

    application.add_handler(CommandHandler("start", handlers.start))
    application.add_handler(CommandHandler("help", handlers.start))
    application.add_handler(CommandHandler("remind", handlers.cmd_remind))
    application.add_handler(CommandHandler("list", handlers.cmd_list))
    application.add_handler(CommandHandler("cancel", handlers.cmd_cancel))
    application.add_handler(CommandHandler("snooze", handlers.cmd_snooze))
    application.add_handler(CommandHandler("lang", handlers.cmd_lang))
    application.add_handler(CommandHandler("tz", handlers.cmd_tz))
    application.add_handler(CommandHandler("stats", handlers.cmd_stats))
    application.add_handler(CommandHandler("ban", handlers.cmd_ban))
    application.add_handler(CommandHandler("unban", handlers.cmd_unban))
    application.add_handler(CallbackQueryHandler(handlers.on_callback))

    async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled exception in handler", exc_info=context.error)
        if isinstance(update, Update) and update.effective_message:
            lang = DEFAULT_LANG
            if update.effective_user:
                profile = await directory.get(update.effective_user.id)
                lang = profile.language if profile else DEFAULT_LANG
            await update.effective_message.reply_text(t(lang, "error"))

    application.add_error_handler(error_handler)

    async def on_post_init(app: Application) -> None:
        try:
            await app.bot.set_my_commands([
                BotCommand("start", "Start / Help"),
                BotCommand("remind", "Create a reminder: /remind <when> | <title>"),
                BotCommand("list", "List reminders"),
                BotCommand("snooze", "Postpone reminder"),
                BotCommand("cancel", "Delete reminder by id"),
                BotCommand("tz", "Show/Set timezone"),
                BotCommand("lang", "Show/Set language"),
            ])
        except TelegramError:
            logger.exception("Could not set the command menu")
        await core.start()

    async def on_post_shutdown(app: Application) -> None:
        logger.info("Stopping scheduler...")
        core.shutdown()
        db.close()

    application.post_init = on_post_init
    application.post_shutdown = on_post_shutdown
    return application


def main() -> None:
    app = build_application()
    logger.info("Starting polling")
    app.run_polling(close_loop=False, allowed_updates=Update.ALL_TYPES, drop_pending_updates=True)


if __name__ == "__main__":
    main()
