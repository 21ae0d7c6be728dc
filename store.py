import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from errors import ValidationError
from models import (
    HISTORY_CAP,
    Attachment,
    Clock,
    HistoryEntry,
    Reminder,
    UserProfile,
    as_utc,
    now_utc,
)


logger = logging.getLogger("reminder-bot.store")

# Fixed-width UTC stamps so that text comparison in SQL equals time comparison.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

_PRIORITY_ORDER = (
    "CASE priority WHEN 'urgent' THEN 3 WHEN 'high' THEN 2 WHEN 'normal' THEN 1 ELSE 0 END"
)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).strftime(_TS_FORMAT)


def _dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw).astimezone(timezone.utc)


# =============================
# Connection (sqlite)
# =============================

class Database:
    def __init__(self, path: str) -> None:
        self.path = path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        # one statement group at a time: row-level updates stay atomic across to_thread workers
        self.lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS reminders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                message TEXT,
                scheduled_time TEXT NOT NULL,
                original_scheduled_time TEXT NOT NULL,
                timezone TEXT NOT NULL,
                is_recurring INTEGER NOT NULL DEFAULT 0,
                pattern TEXT,
                recurring_interval INTEGER NOT NULL DEFAULT 1,
                max_recurrences INTEGER,
                recurrence_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_completed INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                is_snoozed INTEGER NOT NULL DEFAULT 0,
                snooze_until TEXT,
                snooze_count INTEGER NOT NULL DEFAULT 0,
                priority TEXT NOT NULL DEFAULT 'normal',
                category TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                target_id TEXT NOT NULL,
                target_type TEXT NOT NULL DEFAULT 'private',
                attachments TEXT NOT NULL DEFAULT '[]',
                execution_history TEXT NOT NULL DEFAULT '[]',
                failure_count INTEGER NOT NULL DEFAULT 0,
                successor_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                abandoned_at TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_reminders_active_time ON reminders(is_active, scheduled_time);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_reminders_user_time ON reminders(user_id, scheduled_time);")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY,
                language TEXT NOT NULL DEFAULT 'ar',
                timezone TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_banned INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    async def run(self, op: Callable[[sqlite3.Cursor], Any]) -> Any:
        def _op() -> Any:
            with self.lock:
                cur = self.conn.cursor()
                try:
                    result = op(cur)
                    self.conn.commit()
                    return result
                except Exception:
                    self.conn.rollback()
                    raise
        return await asyncio.to_thread(_op)

    def close(self) -> None:
        with self.lock:
            self.conn.close()


# =============================
# Reminders
# =============================

def _row_to_reminder(row: sqlite3.Row) -> Reminder:
    return Reminder(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        title=row["title"],
        message=row["message"],
        scheduled_time=_dt(row["scheduled_time"]),
        original_scheduled_time=_dt(row["original_scheduled_time"]),
        timezone=row["timezone"],
        is_recurring=bool(row["is_recurring"]),
        pattern=row["pattern"],
        interval=int(row["recurring_interval"]),
        max_recurrences=row["max_recurrences"],
        recurrence_count=int(row["recurrence_count"]),
        is_active=bool(row["is_active"]),
        is_completed=bool(row["is_completed"]),
        completed_at=_dt(row["completed_at"]),
        is_snoozed=bool(row["is_snoozed"]),
        snooze_until=_dt(row["snooze_until"]),
        snooze_count=int(row["snooze_count"]),
        priority=row["priority"],
        category=row["category"],
        tags=json.loads(row["tags"] or "[]"),
        target_id=row["target_id"],
        target_type=row["target_type"],
        attachments=[Attachment.from_dict(a) for a in json.loads(row["attachments"] or "[]")],
        execution_history=[HistoryEntry.from_dict(h) for h in json.loads(row["execution_history"] or "[]")],
        failure_count=int(row["failure_count"]),
        successor_id=row["successor_id"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
        deleted_at=_dt(row["deleted_at"]),
        abandoned_at=_dt(row["abandoned_at"]),
    )


class ReminderStore:
    """Persistent reminders and their lifecycle flags.

    Every mutating call is a single locked statement group, and the state
    transitions are guarded in the WHERE clause, so a second writer racing the
    first (timer vs. poll) finds nothing to change and reports False.
    """

    def __init__(self, db: Database, clock: Clock = now_utc) -> None:
        self.db = db
        self.clock = clock

    # --- writes ---

    def _insert_row(self, cur: sqlite3.Cursor, r: Reminder) -> int:
        stamp = _ts(self.clock())
        cur.execute(
            "INSERT INTO reminders(user_id, title, message, scheduled_time, original_scheduled_time, timezone, "
            "is_recurring, pattern, recurring_interval, max_recurrences, recurrence_count, priority, category, tags, "
            "target_id, target_type, attachments, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                r.user_id, r.title, r.message, _ts(r.scheduled_time), _ts(r.original_scheduled_time), r.timezone,
                1 if r.is_recurring else 0, r.pattern, int(r.interval), r.max_recurrences, int(r.recurrence_count),
                r.priority, r.category, json.dumps(r.tags, ensure_ascii=False),
                r.target_id, r.target_type, json.dumps([a.to_dict() for a in r.attachments], ensure_ascii=False),
                stamp, stamp,
            ),
        )
        return int(cur.lastrowid)

    async def insert(self, reminder: Reminder) -> int:
        r = reminder.normalized()
        rid = await self.db.run(lambda cur: self._insert_row(cur, r))
        logger.debug("Inserted reminder id=%s user=%s at %s", rid, r.user_id, r.scheduled_time.isoformat())
        return rid

    async def insert_successor(self, parent_id: int, successor: Reminder) -> Optional[int]:
        """Insert the next occurrence once; None if the parent already has one."""
        r = successor.normalized()

        def _op(cur: sqlite3.Cursor) -> Optional[int]:
            cur.execute("SELECT successor_id FROM reminders WHERE id=?", (parent_id,))
            row = cur.fetchone()
            if row is None or row["successor_id"] is not None:
                return None
            new_id = self._insert_row(cur, r)
            cur.execute(
                "UPDATE reminders SET successor_id=?, updated_at=? WHERE id=?",
                (new_id, _ts(self.clock()), parent_id),
            )
            return new_id
        return await self.db.run(_op)

    def _append_history(self, cur: sqlite3.Cursor, reminder_id: int, entry: HistoryEntry) -> bool:
        cur.execute("SELECT execution_history FROM reminders WHERE id=?", (reminder_id,))
        row = cur.fetchone()
        if row is None:
            return False
        history = json.loads(row["execution_history"] or "[]")
        history.append(entry.to_dict())
        history = history[-HISTORY_CAP:]
        cur.execute(
            "UPDATE reminders SET execution_history=?, updated_at=? WHERE id=?",
            (json.dumps(history, ensure_ascii=False), _ts(self.clock()), reminder_id),
        )
        return True

    async def append_history(self, reminder_id: int, entry: HistoryEntry) -> bool:
        return await self.db.run(lambda cur: self._append_history(cur, reminder_id, entry))

    async def mark_completed(self, reminder_id: int, entry: Optional[HistoryEntry] = None) -> bool:
        def _op(cur: sqlite3.Cursor) -> bool:
            stamp = _ts(self.clock())
            cur.execute(
                "UPDATE reminders SET is_completed=1, completed_at=?, is_active=0, is_snoozed=0, snooze_until=NULL, "
                "updated_at=? WHERE id=? AND is_completed=0 AND deleted_at IS NULL AND abandoned_at IS NULL",
                (stamp, stamp, reminder_id),
            )
            if cur.rowcount == 0:
                return False
            if entry is not None:
                self._append_history(cur, reminder_id, entry)
            return True
        return await self.db.run(_op)

    async def mark_snoozed(self, reminder_id: int, until: datetime, requested_at: Optional[datetime] = None) -> bool:
        requested_at = requested_at or self.clock()
        if as_utc(until) < as_utc(requested_at):
            raise ValidationError("snooze_until", "must not be earlier than the snooze request")

        def _op(cur: sqlite3.Cursor) -> bool:
            # a delivered card may be snoozed: the reminder is reopened until snooze_until
            cur.execute(
                "UPDATE reminders SET is_snoozed=1, snooze_until=?, snooze_count=snooze_count+1, is_active=1, "
                "is_completed=0, completed_at=NULL, updated_at=? "
                "WHERE id=? AND deleted_at IS NULL AND abandoned_at IS NULL",
                (_ts(until), _ts(self.clock()), reminder_id),
            )
            if cur.rowcount == 0:
                return False
            self._append_history(cur, reminder_id, HistoryEntry(self.clock(), "snoozed", next_execution=until))
            return True
        return await self.db.run(_op)

    async def mark_failed(self, reminder_id: int, error: str) -> int:
        """Record a failed attempt; returns the new failure count (0 if not pending)."""
        def _op(cur: sqlite3.Cursor) -> int:
            cur.execute(
                "UPDATE reminders SET failure_count=failure_count+1, updated_at=? "
                "WHERE id=? AND is_active=1 AND is_completed=0",
                (_ts(self.clock()), reminder_id),
            )
            if cur.rowcount == 0:
                return 0
            self._append_history(cur, reminder_id, HistoryEntry(self.clock(), "failed", error=error))
            cur.execute("SELECT failure_count FROM reminders WHERE id=?", (reminder_id,))
            return int(cur.fetchone()["failure_count"])
        return await self.db.run(_op)

    async def soft_delete(self, reminder_id: int) -> bool:
        def _op(cur: sqlite3.Cursor) -> bool:
            stamp = _ts(self.clock())
            cur.execute(
                "UPDATE reminders SET is_active=0, deleted_at=?, updated_at=? WHERE id=? AND deleted_at IS NULL",
                (stamp, stamp, reminder_id),
            )
            return cur.rowcount > 0
        return await self.db.run(_op)

    async def abandon(self, reminder_id: int) -> bool:
        def _op(cur: sqlite3.Cursor) -> bool:
            stamp = _ts(self.clock())
            cur.execute(
                "UPDATE reminders SET is_active=0, abandoned_at=?, updated_at=? "
                "WHERE id=? AND is_active=1 AND is_completed=0",
                (stamp, stamp, reminder_id),
            )
            return cur.rowcount > 0
        return await self.db.run(_op)

    async def reschedule(self, reminder_id: int, new_time: datetime) -> bool:
        def _op(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "UPDATE reminders SET scheduled_time=?, is_snoozed=0, snooze_until=NULL, updated_at=? "
                "WHERE id=? AND is_active=1 AND is_completed=0",
                (_ts(new_time), _ts(self.clock()), reminder_id),
            )
            return cur.rowcount > 0
        return await self.db.run(_op)

    async def cleanup_completed(self, before: datetime) -> int:
        def _op(cur: sqlite3.Cursor) -> int:
            cur.execute(
                "DELETE FROM reminders WHERE is_completed=1 AND completed_at < ?",
                (_ts(before),),
            )
            return cur.rowcount
        return await self.db.run(_op)

    # --- reads ---

    async def _select(self, sql: str, params: tuple = ()) -> List[Reminder]:
        def _op(cur: sqlite3.Cursor) -> List[Reminder]:
            cur.execute(sql, params)
            return [_row_to_reminder(row) for row in cur.fetchall()]
        return await self.db.run(_op)

    async def get(self, reminder_id: int) -> Optional[Reminder]:
        rows = await self._select("SELECT * FROM reminders WHERE id=?", (reminder_id,))
        return rows[0] if rows else None

    async def find_due(self, now: datetime) -> List[Reminder]:
        stamp = _ts(now)
        return await self._select(
            "SELECT * FROM reminders WHERE is_active=1 AND is_completed=0 AND scheduled_time<=? "
            "AND (is_snoozed=0 OR (snooze_until IS NOT NULL AND snooze_until<=?)) "
            f"ORDER BY {_PRIORITY_ORDER} DESC, scheduled_time ASC, id ASC",
            (stamp, stamp),
        )

    async def find_pending(self) -> List[Reminder]:
        return await self._select(
            "SELECT * FROM reminders WHERE is_active=1 AND is_completed=0 ORDER BY scheduled_time ASC"
        )

    async def find_for_user(self, user_id: int, limit: int = 50) -> List[Reminder]:
        return await self._select(
            "SELECT * FROM reminders WHERE user_id=? AND is_active=1 AND is_completed=0 "
            "ORDER BY scheduled_time ASC LIMIT ?",
            (user_id, limit),
        )

    async def find_abandoned(self, limit: int = 50) -> List[Reminder]:
        return await self._select(
            "SELECT * FROM reminders WHERE abandoned_at IS NOT NULL ORDER BY abandoned_at DESC LIMIT ?",
            (limit,),
        )

    async def count_summary(self, now: Optional[datetime] = None) -> Dict[str, int]:
        stamp = _ts(now or self.clock())

        def _op(cur: sqlite3.Cursor) -> Dict[str, int]:
            cur.execute(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(is_active), 0) AS active, "
                "COALESCE(SUM(is_completed), 0) AS completed, "
                "COALESCE(SUM(CASE WHEN is_active=1 AND is_completed=0 AND scheduled_time<? THEN 1 ELSE 0 END), 0) AS overdue, "
                "COALESCE(SUM(CASE WHEN abandoned_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS abandoned "
                "FROM reminders",
                (stamp,),
            )
            row = cur.fetchone()
            return {k: int(row[k]) for k in ("total", "active", "completed", "overdue", "abandoned")}
        return await self.db.run(_op)


# =============================
# Users (language / timezone / flags)
# =============================

def _row_to_user(row: sqlite3.Row) -> UserProfile:
    return UserProfile(
        user_id=int(row["user_id"]),
        language=row["language"],
        timezone=row["timezone"],
        is_active=bool(row["is_active"]),
        is_banned=bool(row["is_banned"]),
    )


class UserDirectory:
    def __init__(self, db: Database, default_lang: str = "ar", default_tz: str = "Asia/Damascus",
                 clock: Clock = now_utc) -> None:
        self.db = db
        self.default_lang = default_lang
        self.default_tz = default_tz
        self.clock = clock

    async def get(self, user_id: int) -> Optional[UserProfile]:
        def _op(cur: sqlite3.Cursor) -> Optional[UserProfile]:
            cur.execute("SELECT * FROM users WHERE user_id=?", (user_id,))
            row = cur.fetchone()
            return _row_to_user(row) if row else None
        return await self.db.run(_op)

    async def ensure(self, user_id: int, language: Optional[str] = None) -> UserProfile:
        def _op(cur: sqlite3.Cursor) -> UserProfile:
            stamp = _ts(self.clock())
            cur.execute(
                "INSERT OR IGNORE INTO users(user_id, language, timezone, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, language or self.default_lang, self.default_tz, stamp, stamp),
            )
            cur.execute("SELECT * FROM users WHERE user_id=?", (user_id,))
            return _row_to_user(cur.fetchone())
        return await self.db.run(_op)

    async def _set(self, user_id: int, column: str, value: Any) -> None:
        values = {"language": self.default_lang, "timezone": self.default_tz, "is_active": 1, "is_banned": 0}
        values[column] = value

        def _op(cur: sqlite3.Cursor) -> None:
            stamp = _ts(self.clock())
            cur.execute(
                "INSERT INTO users(user_id, language, timezone, is_active, is_banned, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                f"ON CONFLICT(user_id) DO UPDATE SET {column}=excluded.{column}, updated_at=excluded.updated_at",
                (user_id, values["language"], values["timezone"], values["is_active"], values["is_banned"], stamp, stamp),
            )
        await self.db.run(_op)

    async def set_language(self, user_id: int, lang: str) -> None:
        await self._set(user_id, "language", lang)

    async def set_timezone(self, user_id: int, tz_name: str) -> None:
        await self._set(user_id, "timezone", tz_name)

    async def set_banned(self, user_id: int, banned: bool) -> None:
        await self._set(user_id, "is_banned", 1 if banned else 0)

    async def set_active(self, user_id: int, active: bool) -> None:
        await self._set(user_id, "is_active", 1 if active else 0)
