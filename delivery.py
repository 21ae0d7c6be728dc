import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from telegram import InlineKeyboardMarkup

from errors import (
    CircuitOpenError,
    DeliveryError,
    NotifierError,
    NotModifiedError,
    TransientDeliveryError,
    classify_notifier_error,
)
from keyboards import reminder_card
from messages import format_notification
from models import Clock, Reminder, UserProfile, now_utc
from notifier import EDIT_NOT_MODIFIED, Notifier


logger = logging.getLogger("reminder-bot.delivery")

EDITED = "edited"
UNCHANGED = "unchanged"
NOT_MODIFIED = "not_modified"
RESENT = "resent"


@dataclass
class DeliveryReceipt:
    message_id: int
    text: str


# =============================
# Circuit breaker
# =============================

class CircuitBreaker:
    """Closed -> open after `threshold` consecutive transient failures.

    While open every call fails fast with CircuitOpenError. After `cooldown`
    seconds one trial call is let through (half-open); its success closes the
    circuit, its failure reopens it and restarts the cool-down.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, name: str, threshold: int = 5, cooldown: float = 30.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self.clock = clock
        self.state = self.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None
        self._trial_running = False

    def _open(self) -> None:
        self.state = self.OPEN
        self.opened_at = self.clock()
        self._trial_running = False
        logger.error("Circuit %s opened after %s consecutive failures, cooling down %.0fs",
                     self.name, self.failures, self.cooldown)

    def before_call(self) -> None:
        if self.state == self.OPEN:
            elapsed = self.clock() - (self.opened_at or 0.0)
            if elapsed < self.cooldown:
                raise CircuitOpenError(self.name, self.cooldown - elapsed)
            self.state = self.HALF_OPEN
            self._trial_running = False
            logger.info("Circuit %s half-open, letting one trial call through", self.name)
        if self.state == self.HALF_OPEN:
            if self._trial_running:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_running = True

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info("Circuit %s closed", self.name)
        self.state = self.CLOSED
        self.failures = 0
        self.opened_at = None
        self._trial_running = False

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or (self.state == self.CLOSED and self.failures >= self.threshold):
            self._open()

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        self.before_call()
        try:
            result = await func()
        except TransientDeliveryError:
            self.record_failure()
            raise
        except DeliveryError:
            # the API answered, even if it refused: the transport is healthy
            self.record_success()
            raise
        except BaseException:
            self._trial_running = False
            raise
        self.record_success()
        return result


# =============================
# Last-sent content cache (edit dedupe)
# =============================

def _keyboard_fingerprint(keyboard: Optional[InlineKeyboardMarkup]) -> str:
    if keyboard is None:
        return ""
    return json.dumps(keyboard.to_dict(), sort_keys=True, ensure_ascii=False)


class MessageCache:
    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[Tuple[str, int], Tuple[str, str, float]] = {}

    @staticmethod
    def _key(target: str, message_id: int) -> Tuple[str, int]:
        return str(target), int(message_id)

    def remember(self, target: str, message_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> None:
        self._entries[self._key(target, message_id)] = (text, _keyboard_fingerprint(keyboard), self.clock())

    def matches(self, target: str, message_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> bool:
        key = self._key(target, message_id)
        entry = self._entries.get(key)
        if entry is None:
            return False
        cached_text, cached_kb, stamp = entry
        if self.clock() - stamp > self.ttl:
            del self._entries[key]
            return False
        return cached_text == text and cached_kb == _keyboard_fingerprint(keyboard)

    def prune(self) -> int:
        cutoff = self.clock() - self.ttl
        stale = [k for k, (_, _, stamp) in self._entries.items() if stamp < cutoff]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


# =============================
# Gateway
# =============================

class DeliveryGateway:
    def __init__(
        self,
        notifier: Notifier,
        breaker: Optional[CircuitBreaker] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 15.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        cache: Optional[MessageCache] = None,
        clock: Clock = now_utc,
    ) -> None:
        self.notifier = notifier
        self.breaker = breaker or CircuitBreaker("telegram")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.sleep = sleep
        self.cache = cache or MessageCache()
        self.clock = clock

    def _backoff(self, attempt: int, exc: DeliveryError) -> Optional[float]:
        """Seconds to wait before the next attempt, None when the wait would exceed max_delay."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        retry_after = getattr(exc.cause, "retry_after", None)
        if retry_after:
            if float(retry_after) > self.max_delay:
                return None
            delay = max(delay, float(retry_after))
        return delay

    async def _attempt(self, op: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        async def _guarded() -> Any:
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                cause = NotifierError(NotifierError.TIMEOUT, f"{op} exceeded {self.timeout}s")
                raise TransientDeliveryError(str(cause), cause) from exc
            except NotifierError as exc:
                raise classify_notifier_error(exc) from exc
        return await self.breaker.call(_guarded)

    async def _with_retry(self, op: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(op, factory)
            except CircuitOpenError:
                raise
            except TransientDeliveryError as exc:
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %s attempts: %s", op, attempt, exc)
                    raise
                delay = self._backoff(attempt, exc)
                if delay is None:
                    # the poll tick retries it later
                    logger.warning("%s rate limited for %ss, giving up this tick: %s",
                                   op, exc.cause.retry_after, exc)
                    raise
                logger.info("%s attempt %s failed (%s), retrying in %.1fs", op, attempt, exc, delay)
                await self.sleep(delay)

    async def deliver(self, reminder: Reminder, user: UserProfile) -> DeliveryReceipt:
        text = format_notification(reminder, user, now=self.clock())
        keyboard = reminder_card(user.language, reminder.id)
        target = reminder.target_id
        message_id = await self._with_retry(
            "send_message", lambda: self.notifier.send_message(target, text, keyboard)
        )
        self.cache.remember(target, message_id, text, keyboard)
        for attachment in reminder.attachments:
            try:
                await self._with_retry(
                    "send_attachment", lambda a=attachment: self.notifier.send_attachment(target, a)
                )
            except DeliveryError as exc:
                logger.warning("Attachment %s of reminder %s not sent: %s", attachment.kind, reminder.id, exc)
        return DeliveryReceipt(message_id=message_id, text=text)

    async def edit(self, target: str, message_id: int, text: str,
                   keyboard: Optional[InlineKeyboardMarkup] = None) -> str:
        """Edit a sent message in place; returns edited/unchanged/not_modified/resent."""
        if self.cache.matches(target, message_id, text, keyboard):
            return UNCHANGED
        try:
            result = await self._with_retry(
                "edit_message", lambda: self.notifier.edit_message(target, message_id, text, keyboard)
            )
        except NotModifiedError:
            result = EDIT_NOT_MODIFIED
        except CircuitOpenError:
            raise
        except DeliveryError as exc:
            reason = "message is gone" if getattr(exc.cause, "is_message_missing", False) else str(exc)
            logger.warning("Edit of message %s in %s failed (%s), sending a new one", message_id, target, reason)
            new_id = await self._with_retry(
                "send_message", lambda: self.notifier.send_message(target, text, keyboard)
            )
            self.cache.remember(target, new_id, text, keyboard)
            return RESENT
        self.cache.remember(target, message_id, text, keyboard)
        if result == EDIT_NOT_MODIFIED:
            return NOT_MODIFIED
        return EDITED
