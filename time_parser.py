import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from dateparser import parse as dp_parse
from dateparser.search import search_dates
from dateutil.relativedelta import relativedelta

from messages import get_tz
from models import as_utc, now_utc


logger = logging.getLogger("reminder-bot.time")

LANGUAGES = ["ar", "en"]

_ARABIC_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩", "0123456789")
_LEAD = re.compile(r"(?iu)^(in|after|بعد|خلال)\s+")
_CONNECTORS = {"and", "و", ",", "،"}
_TOKEN = re.compile(r"(?iu)(\d+)\s*([a-z؀-ۿ\.]+)")
_TIME_ONLY = re.compile(r"(?iu)^\s*(?:at\s+|الساعة\s+)?\d{1,2}(?::\d{2})?\s*(?:am|pm|ص|م)?\s*$")

_UNITS = {
    # seconds
    "s": "seconds", "sec": "seconds", "secs": "seconds", "second": "seconds", "seconds": "seconds",
    "ث": "seconds", "ثانية": "seconds", "ثواني": "seconds", "ثوان": "seconds",
    # minutes
    "m": "minutes", "min": "minutes", "mins": "minutes", "minute": "minutes", "minutes": "minutes",
    "د": "minutes", "دقيقة": "minutes", "دقائق": "minutes", "دقايق": "minutes",
    # hours
    "h": "hours", "hr": "hours", "hrs": "hours", "hour": "hours", "hours": "hours",
    "س": "hours", "ساعة": "hours", "ساعات": "hours",
    # days
    "d": "days", "day": "days", "days": "days",
    "ي": "days", "يوم": "days", "أيام": "days", "ايام": "days",
    # weeks
    "w": "weeks", "wk": "weeks", "week": "weeks", "weeks": "weeks",
    "أسبوع": "weeks", "اسبوع": "weeks", "أسابيع": "weeks", "اسابيع": "weeks",
    # months / years are calendar steps, not fixed lengths
    "mo": "months", "mon": "months", "month": "months", "months": "months",
    "شهر": "months", "أشهر": "months", "اشهر": "months", "شهور": "months",
    "y": "years", "yr": "years", "year": "years", "years": "years",
    "سنة": "years", "سنوات": "years", "عام": "years", "أعوام": "years",
}


@dataclass
class ParsedWhen:
    when_utc: datetime
    source_text: str


def normalize_digits(text: str) -> str:
    return (text or "").translate(_ARABIC_DIGITS)


def parse_duration_prefix(text: str) -> Tuple[Optional[relativedelta], str]:
    """Leading duration ('2h 30m', 'in 3 days', 'بعد 10 دقائق') and the rest of the text."""
    s = _LEAD.sub("", normalize_digits(text).strip())
    if not s:
        return None, ""

    tokens = s.split()
    parts: List[Tuple[int, str]] = []
    idx = 0
    while idx < len(tokens):
        tok = tokens[idx]
        if tok.lower() in _CONNECTORS:
            idx += 1
            continue
        m = _TOKEN.fullmatch(tok)
        step = 1
        if m is None and idx + 1 < len(tokens) and tok.isdigit():
            # "10 minutes" split over two tokens
            m = _TOKEN.fullmatch(tok + tokens[idx + 1])
            step = 2
        if m is None or m.group(2).lower().strip(".") not in _UNITS:
            break
        parts.append((int(m.group(1)), m.group(2).lower().strip(".")))
        idx += step

    if not parts:
        # glued form: "1h30m"
        m0 = re.match(r"(?iu)^(?:\d+[a-z؀-ۿ]+)+", s)
        if m0 is None:
            return None, text.strip()
        parts = [(int(v), u.lower()) for v, u in _TOKEN.findall(m0.group(0))]
        if any(u not in _UNITS for _, u in parts):
            return None, text.strip()
        remainder = s[len(m0.group(0)):].strip()
    else:
        remainder = " ".join(tokens[idx:]).strip()

    delta = relativedelta()
    for value, unit in parts:
        delta += relativedelta(**{_UNITS[unit]: value})
    if not any((delta.years, delta.months, delta.weeks, delta.days, delta.hours, delta.minutes, delta.seconds)):
        return None, text.strip()
    return delta, remainder


class TimeParser:
    """Free text to an absolute UTC instant, read in the user's timezone."""

    def __init__(self, languages: Optional[List[str]] = None) -> None:
        self.languages = languages or LANGUAGES

    def parse(self, text: str, tz_name: str, now: Optional[datetime] = None) -> Optional[ParsedWhen]:
        now = as_utc(now or now_utc())
        text = normalize_digits(text).strip()
        if not text:
            return None

        delta, rest = parse_duration_prefix(text)
        if delta is not None and not rest:
            return ParsedWhen(when_utc=now + delta, source_text=text)

        tz = get_tz(tz_name)
        base = now.astimezone(tz)
        settings = {
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": base.replace(tzinfo=None),
            "RETURN_AS_TIMEZONE_AWARE": True,
            "TIMEZONE": tz.key,
            "TO_TIMEZONE": tz.key,
        }
        matched = text
        dt = dp_parse(text, languages=self.languages, settings=settings)
        if dt is None:
            found = search_dates(text, languages=self.languages, settings=settings) or []
            for match_text, match_dt in found:
                if match_dt is not None:
                    matched, dt = match_text, match_dt
                    break
        if dt is None:
            logger.debug("Could not parse time from %r", text)
            return None

        local = dt.replace(tzinfo=tz) if dt.tzinfo is None else dt.astimezone(tz)
        when = local.astimezone(timezone.utc)
        if when <= now and _TIME_ONLY.match(matched):
            # a bare clock time that already passed today means tomorrow
            when = (local.replace(tzinfo=None) + timedelta(days=1)).replace(tzinfo=tz).astimezone(timezone.utc)
        return ParsedWhen(when_utc=when, source_text=matched)
