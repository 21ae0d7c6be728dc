import asyncio
import unittest
from datetime import datetime, timezone

from delivery import (
    EDITED,
    NOT_MODIFIED,
    RESENT,
    UNCHANGED,
    CircuitBreaker,
    DeliveryGateway,
    MessageCache,
)
from errors import CircuitOpenError, NotifierError, PermanentDeliveryError, TransientDeliveryError
from keyboards import reminder_card, snooze_options
from models import Attachment, Reminder, UserProfile
from notifier import EDIT_NOT_MODIFIED, EDIT_OK


T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


class FakeNotifier:
    """Records calls; pops scripted exceptions (or results) per call kind."""

    def __init__(self) -> None:
        self.sent = []
        self.edits = []
        self.attachments = []
        self.send_script = []
        self.edit_script = []
        self.attachment_script = []
        self.next_id = 500

    @staticmethod
    def _next(script):
        if script:
            item = script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return None

    async def send_message(self, target, text, keyboard=None):
        self._next(self.send_script)
        self.next_id += 1
        self.sent.append((target, text, keyboard))
        return self.next_id

    async def edit_message(self, target, message_id, text, keyboard=None):
        result = self._next(self.edit_script)
        self.edits.append((target, message_id, text, keyboard))
        return result or EDIT_OK

    async def send_attachment(self, target, attachment):
        self._next(self.attachment_script)
        self.attachments.append((target, attachment.kind, attachment.file_id))


class HangingNotifier(FakeNotifier):
    async def send_message(self, target, text, keyboard=None):
        await asyncio.sleep(5)
        return 1


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def net_error():
    return NotifierError(NotifierError.NETWORK, "connection reset")


def make_reminder(**kw):
    base = dict(id=5, user_id=1, title="Pay bills", message="Electricity and water", scheduled_time=T0,
                target_id="100", priority="high", tags=["home"])
    base.update(kw)
    return Reminder(**base)


USER = UserProfile(user_id=1, language="en", timezone="UTC")


class CircuitBreakerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeMonotonic()
        self.breaker = CircuitBreaker("test", threshold=3, cooldown=30, clock=self.clock)

    def test_opens_after_threshold_and_fails_fast(self):
        for _ in range(2):
            self.breaker.before_call()
            self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitBreaker.CLOSED)
        self.breaker.before_call()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitBreaker.OPEN)
        with self.assertRaises(CircuitOpenError) as cm:
            self.breaker.before_call()
        self.assertAlmostEqual(cm.exception.retry_in, 30)

    def test_success_resets_consecutive_count(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitBreaker.CLOSED)

    def test_half_open_allows_exactly_one_trial(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.clock.now += 30
        self.breaker.before_call()
        self.assertEqual(self.breaker.state, CircuitBreaker.HALF_OPEN)
        with self.assertRaises(CircuitOpenError):
            self.breaker.before_call()
        self.breaker.record_success()
        self.assertEqual(self.breaker.state, CircuitBreaker.CLOSED)
        self.breaker.before_call()

    def test_failed_trial_reopens_and_restarts_cooldown(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.clock.now += 31
        self.breaker.before_call()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitBreaker.OPEN)
        self.clock.now += 10
        with self.assertRaises(CircuitOpenError):
            self.breaker.before_call()


class MessageCacheTests(unittest.TestCase):
    def test_match_requires_same_text_and_keyboard_within_ttl(self):
        clock = FakeMonotonic()
        cache = MessageCache(ttl=60, clock=clock)
        cache.remember("100", 7, "hello", reminder_card("en", 1))
        self.assertTrue(cache.matches("100", 7, "hello", reminder_card("en", 1)))
        self.assertFalse(cache.matches("100", 7, "hello", snooze_options("en", 1)))
        self.assertFalse(cache.matches("100", 7, "hello!", reminder_card("en", 1)))
        self.assertFalse(cache.matches("100", 8, "hello", reminder_card("en", 1)))
        clock.now += 61
        self.assertFalse(cache.matches("100", 7, "hello", reminder_card("en", 1)))

    def test_prune_drops_expired(self):
        clock = FakeMonotonic()
        cache = MessageCache(ttl=60, clock=clock)
        cache.remember("100", 1, "a")
        clock.now += 30
        cache.remember("100", 2, "b")
        clock.now += 45
        self.assertEqual(cache.prune(), 1)
        self.assertEqual(len(cache), 1)


class DeliveryGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.notifier = FakeNotifier()
        self.sleeps = []
        self.monotonic = FakeMonotonic()
        self.breaker = CircuitBreaker("telegram", threshold=5, cooldown=30, clock=self.monotonic)
        self.gateway = self.make_gateway()

    def make_gateway(self, **kw):
        async def fake_sleep(delay):
            self.sleeps.append(delay)

        opts = dict(breaker=self.breaker, max_attempts=3, sleep=fake_sleep, clock=lambda: T0)
        opts.update(kw)
        return DeliveryGateway(self.notifier, **opts)

    async def test_deliver_sends_card_with_buttons(self):
        receipt = await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(receipt.message_id, 501)
        target, text, keyboard = self.notifier.sent[0]
        self.assertEqual(target, "100")
        self.assertIn("Pay bills", text)
        self.assertIn("Electricity and water", text)
        self.assertIn("🟠", text)
        self.assertIn("home", text)
        data = [b.callback_data for b in keyboard.inline_keyboard[0]]
        self.assertEqual(data, ["done:5", "snz:5"])

    async def test_transient_errors_are_retried_with_backoff(self):
        self.notifier.send_script = [net_error(), NotifierError(NotifierError.SERVER_ERROR, "502")]
        receipt = await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(receipt.message_id, 501)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(self.breaker.state, CircuitBreaker.CLOSED)
        self.assertEqual(self.breaker.failures, 0)

    async def test_rate_limit_waits_at_least_retry_after(self):
        self.notifier.send_script = [NotifierError(NotifierError.RATE_LIMIT, "Too Many Requests", retry_after=7)]
        await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(self.sleeps, [7.0])

    async def test_long_rate_limit_fails_fast_without_sleeping(self):
        self.notifier.send_script = [
            NotifierError(NotifierError.RATE_LIMIT, "Too Many Requests", retry_after=3600),
            NotifierError(NotifierError.RATE_LIMIT, "Too Many Requests", retry_after=3600),
        ]
        with self.assertRaises(TransientDeliveryError) as cm:
            await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(cm.exception.code, NotifierError.RATE_LIMIT)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self.notifier.sent, [])

    async def test_backoff_is_capped(self):
        gateway = self.make_gateway(max_attempts=4, base_delay=10, max_delay=15)
        self.notifier.send_script = [net_error(), net_error(), net_error()]
        await gateway.deliver(make_reminder(), USER)
        self.assertEqual(self.sleeps, [10, 15, 15])

    async def test_gives_up_after_max_attempts(self):
        self.notifier.send_script = [net_error(), net_error(), net_error()]
        with self.assertRaises(TransientDeliveryError) as cm:
            await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(cm.exception.code, NotifierError.NETWORK)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(self.notifier.sent, [])

    async def test_permanent_error_is_not_retried(self):
        self.notifier.send_script = [NotifierError(NotifierError.FORBIDDEN, "bot was blocked by the user")]
        with self.assertRaises(PermanentDeliveryError):
            await self.gateway.deliver(make_reminder(), USER)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self.breaker.failures, 0)

    async def test_timeout_is_transient(self):
        self.notifier = HangingNotifier()
        gateway = self.make_gateway(max_attempts=1, timeout=0.01)
        with self.assertRaises(TransientDeliveryError) as cm:
            await gateway.deliver(make_reminder(), USER)
        self.assertEqual(cm.exception.code, NotifierError.TIMEOUT)

    async def test_breaker_opens_and_short_circuits(self):
        gateway = self.make_gateway(max_attempts=1)
        self.notifier.send_script = [net_error() for _ in range(5)]
        for _ in range(5):
            with self.assertRaises(TransientDeliveryError):
                await gateway.deliver(make_reminder(), USER)
        self.assertEqual(self.breaker.state, CircuitBreaker.OPEN)
        with self.assertRaises(CircuitOpenError):
            await gateway.deliver(make_reminder(), USER)
        self.assertEqual(self.notifier.sent, [])
        self.assertEqual(self.notifier.send_script, [])

        self.monotonic.now += 30
        receipt = await gateway.deliver(make_reminder(), USER)
        self.assertEqual(receipt.message_id, 501)
        self.assertEqual(self.breaker.state, CircuitBreaker.CLOSED)

    async def test_attachments_follow_and_never_fail_delivery(self):
        r = make_reminder(attachments=[Attachment("photo", "AgAD1"), Attachment("document", "BQAD2")])
        self.notifier.attachment_script = [None, NotifierError(NotifierError.BAD_REQUEST, "wrong file identifier")]
        receipt = await self.gateway.deliver(r, USER)
        self.assertEqual(receipt.message_id, 501)
        self.assertEqual(self.notifier.attachments, [("100", "photo", "AgAD1")])

    async def test_edit_skips_unchanged_content(self):
        kb = reminder_card("en", 5)
        self.assertEqual(await self.gateway.edit("100", 9, "text", kb), EDITED)
        self.assertEqual(await self.gateway.edit("100", 9, "text", kb), UNCHANGED)
        self.assertEqual(len(self.notifier.edits), 1)
        self.assertEqual(await self.gateway.edit("100", 9, "text", snooze_options("en", 5)), EDITED)
        self.assertEqual(len(self.notifier.edits), 2)

    async def test_edit_not_modified_is_success(self):
        self.notifier.edit_script = [EDIT_NOT_MODIFIED]
        self.assertEqual(await self.gateway.edit("100", 9, "same"), NOT_MODIFIED)
        self.notifier.edit_script = [NotifierError(NotifierError.BAD_REQUEST, "Bad Request: message is not modified")]
        self.assertEqual(await self.gateway.edit("100", 10, "same"), NOT_MODIFIED)
        self.assertEqual(self.notifier.sent, [])

    async def test_failed_edit_falls_back_to_new_message(self):
        self.notifier.edit_script = [NotifierError(NotifierError.BAD_REQUEST, "message to edit not found")]
        with self.assertLogs("reminder-bot.delivery", level="WARNING") as logs:
            self.assertEqual(await self.gateway.edit("100", 9, "new text"), RESENT)
        self.assertEqual(self.notifier.sent, [("100", "new text", None)])
        self.assertIn("message is gone", logs.output[0])


if __name__ == "__main__":
    unittest.main()
