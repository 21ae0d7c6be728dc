from typing import Iterable

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from i18n import t


SNOOZE_CHOICES = (10, 30, 60)


def reminder_card(lang: str, rid: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton(t(lang, "btn_done"), callback_data=f"done:{rid}"),
            InlineKeyboardButton(t(lang, "btn_snooze"), callback_data=f"snz:{rid}"),
        ]
    ])


def snooze_options(lang: str, rid: int, choices: Iterable[int] = SNOOZE_CHOICES) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(t(lang, f"snooze_{m}"), callback_data=f"snz:{rid}:{m}") for m in choices],
        [InlineKeyboardButton(t(lang, "btn_back"), callback_data=f"back:{rid}")],
    ])


def parse_callback(data: str):
    """'snz:12:30' -> ('snz', 12, 30); malformed data -> (None, None, None)."""
    parts = (data or "").split(":")
    if len(parts) < 2 or not parts[1].isdigit():
        return None, None, None
    arg = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else None
    return parts[0], int(parts[1]), arg
