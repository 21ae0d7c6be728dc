from typing import Optional


class ValidationError(ValueError):
    """Bad reminder input, rejected before anything is persisted."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


# =============================
# Transport errors (Notifier)
# =============================

class NotifierError(Exception):
    RATE_LIMIT = "rate_limit"
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    TIMEOUT = "timeout"

    TRANSIENT_CODES = (RATE_LIMIT, SERVER_ERROR, NETWORK, TIMEOUT)

    def __init__(self, code: str, description: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(f"[{code}] {description}".strip())
        self.code = code
        self.description = description or ""
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES

    @property
    def is_not_modified(self) -> bool:
        return self.code == self.BAD_REQUEST and "not modified" in self.description.lower()

    @property
    def is_message_missing(self) -> bool:
        return self.code == self.BAD_REQUEST and "not found" in self.description.lower()


# =============================
# Delivery errors (DeliveryGateway)
# =============================

class DeliveryError(Exception):
    transient = False

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause

    @property
    def code(self) -> Optional[str]:
        return getattr(self.cause, "code", None)


class TransientDeliveryError(DeliveryError):
    transient = True


class CircuitOpenError(TransientDeliveryError):
    """Raised without touching the network while the breaker is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"circuit {name} is open, retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class PermanentDeliveryError(DeliveryError):
    transient = False


class NotModifiedError(DeliveryError):
    """An edit that changes nothing; callers treat it as success."""


def classify_notifier_error(exc: NotifierError) -> DeliveryError:
    if exc.is_not_modified:
        return NotModifiedError(str(exc), exc)
    if exc.is_transient:
        return TransientDeliveryError(str(exc), exc)
    return PermanentDeliveryError(str(exc), exc)
