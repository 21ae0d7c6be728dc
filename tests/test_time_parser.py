import unittest
from datetime import datetime, timedelta, timezone

from time_parser import TimeParser, normalize_digits, parse_duration_prefix


NOW = datetime(2030, 6, 10, 8, 0, tzinfo=timezone.utc)


def seconds(delta):
    return ((NOW + delta) - NOW).total_seconds()


class DurationPrefixTests(unittest.TestCase):
    def test_basic_units(self):
        delta, rest = parse_duration_prefix("10m water")
        self.assertEqual(seconds(delta), 600)
        self.assertEqual(rest, "water")

    def test_glued_units(self):
        delta, rest = parse_duration_prefix("1h30m coffee")
        self.assertEqual(seconds(delta), 5400)
        self.assertEqual(rest, "coffee")

    def test_spaced_units_with_lead_word(self):
        delta, rest = parse_duration_prefix("in 2 hours and 15 min report")
        self.assertEqual(seconds(delta), 2 * 3600 + 15 * 60)
        self.assertEqual(rest, "report")

    def test_arabic_units_and_digits(self):
        delta, rest = parse_duration_prefix("بعد ١٠ دقائق اجتماع")
        self.assertEqual(seconds(delta), 600)
        self.assertEqual(rest, "اجتماع")
        delta, _ = parse_duration_prefix("2 ساعة")
        self.assertEqual(seconds(delta), 7200)

    def test_months_are_calendar_steps(self):
        delta, _ = parse_duration_prefix("1mo")
        self.assertEqual(NOW + delta, datetime(2030, 7, 10, 8, 0, tzinfo=timezone.utc))

    def test_not_a_duration(self):
        self.assertEqual(parse_duration_prefix("tomorrow 9:00"), (None, "tomorrow 9:00"))
        self.assertEqual(parse_duration_prefix("5 pm"), (None, "5 pm"))
        self.assertEqual(parse_duration_prefix("9:30"), (None, "9:30"))
        self.assertEqual(parse_duration_prefix(""), (None, ""))

    def test_normalize_digits(self):
        self.assertEqual(normalize_digits("٢٠٢٥-٠١-٠٢"), "2025-01-02")


class TimeParserTests(unittest.TestCase):
    def setUp(self):
        self.parser = TimeParser()

    def test_duration_only(self):
        parsed = self.parser.parse("20m", "Europe/Berlin", now=NOW)
        self.assertEqual(parsed.when_utc, NOW + timedelta(minutes=20))

    def test_absolute_datetime_in_user_timezone(self):
        parsed = self.parser.parse("2030-12-31 23:00", "Europe/Berlin", now=NOW)
        self.assertIsNotNone(parsed)
        self.assertEqual(parsed.when_utc, datetime(2030, 12, 31, 22, 0, tzinfo=timezone.utc))

    def test_tomorrow_is_in_the_future(self):
        parsed = self.parser.parse("tomorrow 9:30", "Europe/Berlin", now=NOW)
        self.assertIsNotNone(parsed)
        local = parsed.when_utc.astimezone(timezone(timedelta(hours=2)))
        self.assertEqual((local.year, local.month, local.day, local.hour, local.minute), (2030, 6, 11, 9, 30))

    def test_bare_time_that_passed_rolls_to_tomorrow(self):
        # 08:00Z is 10:00 in Berlin (summer time)
        parsed = self.parser.parse("9:00", "Europe/Berlin", now=NOW)
        self.assertIsNotNone(parsed)
        self.assertEqual(parsed.when_utc, datetime(2030, 6, 11, 7, 0, tzinfo=timezone.utc))

    def test_unknown_timezone_falls_back_to_utc(self):
        parsed = self.parser.parse("2030-12-31 23:00", "Nowhere/Special", now=NOW)
        self.assertEqual(parsed.when_utc, datetime(2030, 12, 31, 23, 0, tzinfo=timezone.utc))

    def test_garbage_is_rejected(self):
        self.assertIsNone(self.parser.parse("blah blah", "UTC", now=NOW))
        self.assertIsNone(self.parser.parse("   ", "UTC", now=NOW))


if __name__ == "__main__":
    unittest.main()
