from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from zoneinfo import ZoneInfo

from i18n import t
from models import Reminder, UserProfile, as_utc, is_valid_tz, now_utc


PRIORITY_EMOJI = {
    "low": "🟢",
    "normal": "🟡",
    "high": "🟠",
    "urgent": "🔴",
}

SEPARATOR = "━━━━━━━━━━━━━━━━━━━━"


def get_tz(tz_name: Optional[str]) -> ZoneInfo:
    if tz_name and is_valid_tz(tz_name):
        return ZoneInfo(tz_name)
    return ZoneInfo("UTC")


def local_stamp(dt: datetime, tz_name: Optional[str]) -> str:
    return as_utc(dt).astimezone(get_tz(tz_name)).strftime("%Y-%m-%d %H:%M")


def _split_delta(delta: timedelta) -> Tuple[int, int, int, int]:
    total_seconds = int(delta.total_seconds())
    if total_seconds < 0:
        total_seconds = -total_seconds
    days, rem = divmod(total_seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    return days, hours, minutes, seconds


def format_timedelta_brief_localized(user_lang: str, delta: timedelta) -> str:
    days, hours, minutes, seconds = _split_delta(delta)
    parts: List[str] = []
    if days:
        parts.append(f"{days}{t(user_lang, 'unit_day')}")
    if hours:
        parts.append(f"{hours}{t(user_lang, 'unit_hour')}")
    if minutes:
        parts.append(f"{minutes}{t(user_lang, 'unit_minute')}")
    if not parts:
        parts.append(f"{seconds}{t(user_lang, 'unit_second')}")
    return " ".join(parts)


def format_notification(reminder: Reminder, user: UserProfile, now: Optional[datetime] = None) -> str:
    lang = user.language
    tz_name = user.timezone or reminder.timezone
    emoji = PRIORITY_EMOJI.get(reminder.priority, PRIORITY_EMOJI["normal"])
    lines = [
        f"{emoji} {t(lang, 'notification_title')}",
        SEPARATOR,
        f"📋 {reminder.title}",
    ]
    if reminder.message:
        lines.append("")
        lines.append(f"💬 {reminder.message}")
    lines.append("")
    lines.append(f"📅 {local_stamp(reminder.scheduled_time, tz_name)}")
    if reminder.priority != "normal":
        lines.append(f"{emoji} {t(lang, 'priority_' + reminder.priority)}")
    if reminder.category:
        lines.append(f"📂 {reminder.category}")
    if reminder.tags:
        lines.append(f"🏷️ {', '.join(reminder.tags)}")
    lines.append("")
    sent_at = as_utc(now or now_utc()).astimezone(get_tz(tz_name)).strftime("%H:%M")
    lines.append(t(lang, "notification_footer", time=sent_at))
    return "\n".join(lines)


def with_status(card_text: str, status_line: str) -> str:
    """Card text with its trailing status line replaced."""
    body = card_text.split("\n\n» ", 1)[0]
    return f"{body}\n\n» {status_line}"
