from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from zoneinfo import ZoneInfo

from errors import ValidationError


Clock = Callable[[], datetime]

PATTERNS = ("daily", "weekly", "monthly", "yearly")
PRIORITIES = ("low", "normal", "high", "urgent")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}
TARGET_TYPES = ("private", "group", "channel")
OUTCOMES = ("sent", "failed", "snoozed")
ATTACHMENT_KINDS = ("photo", "document", "audio", "video", "voice", "sticker")
LANGUAGES = ("ar", "en")

TITLE_MAX = 200
MESSAGE_MAX = 1000
CATEGORY_MAX = 50
TAG_MAX = 30
HISTORY_CAP = 10


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_valid_tz(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
        return True
    except Exception:
        return False


@dataclass
class HistoryEntry:
    timestamp: datetime
    outcome: str
    error: Optional[str] = None
    next_execution: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": as_utc(self.timestamp).isoformat(),
            "outcome": self.outcome,
            "error": self.error,
            "next_execution": as_utc(self.next_execution).isoformat() if self.next_execution else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        nxt = data.get("next_execution")
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            outcome=data["outcome"],
            error=data.get("error"),
            next_execution=datetime.fromisoformat(nxt) if nxt else None,
        )


@dataclass
class Attachment:
    kind: str
    file_id: str
    file_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "file_id": self.file_id, "file_name": self.file_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(kind=data["kind"], file_id=data["file_id"], file_name=data.get("file_name"))


@dataclass
class UserProfile:
    user_id: int
    language: str = "ar"
    timezone: str = "Asia/Damascus"
    is_active: bool = True
    is_banned: bool = False

    @property
    def can_receive(self) -> bool:
        return self.is_active and not self.is_banned


@dataclass
class Reminder:
    user_id: int
    title: str
    scheduled_time: datetime
    target_id: str
    timezone: str = "UTC"
    message: Optional[str] = None
    id: Optional[int] = None
    original_scheduled_time: Optional[datetime] = None
    is_recurring: bool = False
    pattern: Optional[str] = None
    interval: int = 1
    max_recurrences: Optional[int] = None
    recurrence_count: int = 0
    is_active: bool = True
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    is_snoozed: bool = False
    snooze_until: Optional[datetime] = None
    snooze_count: int = 0
    priority: str = "normal"
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    target_type: str = "private"
    attachments: List[Attachment] = field(default_factory=list)
    execution_history: List[HistoryEntry] = field(default_factory=list)
    failure_count: int = 0
    successor_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_abandoned(self) -> bool:
        return self.abandoned_at is not None

    @property
    def due_at(self) -> datetime:
        """Instant from which the reminder may fire (snooze pushes it later)."""
        if self.is_snoozed and self.snooze_until and self.snooze_until > self.scheduled_time:
            return self.snooze_until
        return self.scheduled_time

    def is_due(self, now: datetime) -> bool:
        if not self.is_active or self.is_completed:
            return False
        if self.scheduled_time > now:
            return False
        if self.is_snoozed and (self.snooze_until is None or self.snooze_until > now):
            return False
        return True

    def normalized(self) -> "Reminder":
        """Trimmed, deduplicated copy with UTC instants; raises ValidationError."""
        title = (self.title or "").strip()
        message = (self.message or "").strip() or None
        category = (self.category or "").strip() or None
        tags: List[str] = []
        for tag in self.tags or []:
            tag = (tag or "").strip()
            if tag and tag not in tags:
                tags.append(tag)
        r = replace(self, title=title, message=message, category=category, tags=tags)
        if not title:
            raise ValidationError("title", "must not be empty")
        if len(title) > TITLE_MAX:
            raise ValidationError("title", f"longer than {TITLE_MAX} characters")
        if message and len(message) > MESSAGE_MAX:
            raise ValidationError("message", f"longer than {MESSAGE_MAX} characters")
        if not str(self.target_id or "").strip():
            raise ValidationError("target_id", "delivery target is required")
        if self.target_type not in TARGET_TYPES:
            raise ValidationError("target_type", f"unknown target type {self.target_type!r}")
        if self.priority not in PRIORITY_RANK:
            raise ValidationError("priority", f"unknown priority {self.priority!r}")
        if category and len(category) > CATEGORY_MAX:
            raise ValidationError("category", f"longer than {CATEGORY_MAX} characters")
        for tag in tags:
            if len(tag) > TAG_MAX:
                raise ValidationError("tags", f"tag {tag!r} longer than {TAG_MAX} characters")
        if self.scheduled_time is None:
            raise ValidationError("scheduled_time", "is required")
        if not is_valid_tz(self.timezone):
            raise ValidationError("timezone", f"unknown timezone {self.timezone!r}")
        if self.is_recurring:
            if self.pattern not in PATTERNS:
                raise ValidationError("pattern", f"unknown recurrence pattern {self.pattern!r}")
            if int(self.interval) < 1:
                raise ValidationError("interval", "must be at least 1")
            if self.max_recurrences is not None and int(self.max_recurrences) < 1:
                raise ValidationError("max_recurrences", "must be at least 1")
        for att in self.attachments:
            if att.kind not in ATTACHMENT_KINDS:
                raise ValidationError("attachments", f"unknown attachment kind {att.kind!r}")
        r.target_id = str(self.target_id).strip()
        r.scheduled_time = as_utc(self.scheduled_time)
        r.original_scheduled_time = as_utc(self.original_scheduled_time or self.scheduled_time)
        return r
