import unittest
from datetime import datetime, timedelta, timezone

from telegram import InlineKeyboardMarkup

from i18n import I18N, t
from keyboards import SNOOZE_CHOICES, parse_callback, reminder_card, snooze_options
from messages import format_notification, format_timedelta_brief_localized, with_status
from models import Reminder, UserProfile


T0 = datetime(2025, 6, 1, 6, 0, tzinfo=timezone.utc)


class KeyboardLabelsTests(unittest.TestCase):
    def test_card_buttons_ar_and_en(self):
        for lang in ("ar", "en"):
            mk: InlineKeyboardMarkup = reminder_card(lang, 12)
            row = mk.inline_keyboard[0]
            self.assertTrue(row[0].text.startswith("✅ "))
            self.assertTrue(row[1].text.startswith("⏰ "))
            self.assertEqual([b.callback_data for b in row], ["done:12", "snz:12"])
        self.assertEqual(reminder_card("ar", 1).inline_keyboard[0][0].text, "✅ تم")

    def test_snooze_options_then_back(self):
        mk = snooze_options("en", 7)
        data = [b.callback_data for b in mk.inline_keyboard[0]]
        self.assertEqual(data, [f"snz:7:{m}" for m in SNOOZE_CHOICES])
        self.assertEqual([b.text for b in mk.inline_keyboard[0]], ["10 min", "30 min", "1 hour"])
        self.assertEqual(mk.inline_keyboard[1][0].callback_data, "back:7")

    def test_parse_callback(self):
        self.assertEqual(parse_callback("done:3"), ("done", 3, None))
        self.assertEqual(parse_callback("snz:3:30"), ("snz", 3, 30))
        self.assertEqual(parse_callback("snz:x"), (None, None, None))
        self.assertEqual(parse_callback(""), (None, None, None))

    def test_bundles_have_same_keys(self):
        self.assertEqual(set(I18N["ar"]), set(I18N["en"]))

    def test_unknown_language_and_missing_kwargs_fall_back(self):
        self.assertEqual(t("fr", "btn_done"), I18N["ar"]["btn_done"])
        self.assertEqual(t("en", "tz_ok"), I18N["en"]["tz_ok"])
        self.assertEqual(t("en", "no_such_key"), "no_such_key")


class NotificationTextTests(unittest.TestCase):
    def reminder(self, **kw):
        base = dict(id=4, user_id=1, title="Pay bills", message="Before Friday", scheduled_time=T0,
                    target_id="100", priority="urgent", category="home", tags=["money", "monthly"])
        base.update(kw)
        return Reminder(**base)

    def test_card_shows_fields_in_user_timezone(self):
        user = UserProfile(user_id=1, language="en", timezone="Asia/Damascus")
        text = format_notification(self.reminder(), user, now=T0)
        lines = text.split("\n")
        self.assertEqual(lines[0], "🔴 Reminder")
        self.assertIn("📋 Pay bills", text)
        self.assertIn("💬 Before Friday", text)
        self.assertIn("📅 2025-06-01 09:00", text)
        self.assertIn("🔴 Urgent", text)
        self.assertIn("📂 home", text)
        self.assertIn("🏷️ money, monthly", text)
        self.assertEqual(lines[-1], "Sent at 09:00")

    def test_normal_priority_has_no_label(self):
        user = UserProfile(user_id=1, language="ar", timezone="UTC")
        text = format_notification(self.reminder(priority="normal", message=None, category=None, tags=[]), user, now=T0)
        self.assertTrue(text.startswith("🟡 تذكير"))
        self.assertNotIn(I18N["ar"]["priority_normal"], text)
        self.assertNotIn("💬", text)

    def test_status_line_replaces_previous(self):
        card = "🟡 Reminder\n📋 Tea"
        once = with_status(card, "✅ Done")
        self.assertEqual(once, "🟡 Reminder\n📋 Tea\n\n» ✅ Done")
        self.assertEqual(with_status(once, "⏰ Snoozed"), "🟡 Reminder\n📋 Tea\n\n» ⏰ Snoozed")

    def test_brief_delta(self):
        self.assertEqual(format_timedelta_brief_localized("en", timedelta(days=1, hours=2, minutes=5)), "1d 2h 5m")
        self.assertEqual(format_timedelta_brief_localized("en", timedelta(seconds=42)), "42s")
        self.assertEqual(format_timedelta_brief_localized("ar", timedelta(minutes=20)), "20د")


if __name__ == "__main__":
    unittest.main()
