"""
Repository pattern for data access.

Handles database operations and data persistence logic for the quota
ledger, schedule definitions, effectiveness history, cache entries and
the item ids already announced per target.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CacheEntry,
    EffectivenessRecord,
    OperationUsage,
    QuotaSnapshot,
    ScheduleDefinition,
    ScheduleSlot,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    The effectiveness_record table is an append-only history: rows are only
    ever inserted, or deleted once they fall outside the retention window.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS quota_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                window_start TEXT NOT NULL,
                used INTEGER NOT NULL DEFAULT 0 CHECK (used >= 0),
                locked_until TEXT
            );

            CREATE TABLE IF NOT EXISTS quota_operation_usage (
                operation TEXT PRIMARY KEY,
                count INTEGER NOT NULL DEFAULT 0,
                units INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS schedules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
                timezone TEXT NOT NULL DEFAULT 'UTC',
                active INTEGER NOT NULL DEFAULT 1,
                content_type TEXT NOT NULL DEFAULT 'video',
                operation TEXT
            );

            CREATE TABLE IF NOT EXISTS schedule_slots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER NOT NULL,
                day_of_week TEXT NOT NULL,
                check_time TEXT NOT NULL,
                FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS effectiveness_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                quota_spent INTEGER NOT NULL,
                content_found INTEGER NOT NULL,
                result_type TEXT NOT NULL DEFAULT 'scheduled'
            );

            CREATE INDEX IF NOT EXISTS idx_effectiveness_schedule_time
                ON effectiveness_record (schedule_id, timestamp);

            CREATE TABLE IF NOT EXISTS cache_entry (
                platform TEXT NOT NULL,
                content_type TEXT NOT NULL,
                cache_key TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                PRIMARY KEY (platform, content_type, cache_key)
            );

            CREATE TABLE IF NOT EXISTS seen_item (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                platform TEXT NOT NULL,
                content_type TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                seen_at TEXT NOT NULL,
                UNIQUE (platform, content_type, channel_id, item_id)
            );
        """)
        conn.commit()
    finally:
        conn.close()


class StateRepository:
    """Repository for the core's persisted state.

    Every call opens its own connection so the repository can be shared by
    worker threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Quota ledger

    def load_quota_snapshot(self) -> Optional[QuotaSnapshot]:
        """Load the last saved ledger state, or None if never saved."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT window_start, used, locked_until FROM quota_state WHERE id = 1"
            ).fetchone()
            if row is None:
                return None
            operations = {
                op: OperationUsage(count=count, units=units)
                for op, count, units in conn.execute(
                    "SELECT operation, count, units FROM quota_operation_usage"
                )
            }
            return QuotaSnapshot(
                window_start=datetime.fromisoformat(row[0]),
                used=row[1],
                locked_until=datetime.fromisoformat(row[2]) if row[2] else None,
                operations=operations,
            )
        finally:
            conn.close()

    def save_quota_snapshot(self, snapshot: QuotaSnapshot) -> None:
        """Replace the stored ledger state in a single transaction."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                INSERT INTO quota_state (id, window_start, used, locked_until)
                VALUES (1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    window_start = excluded.window_start,
                    used = excluded.used,
                    locked_until = excluded.locked_until
            """, (
                snapshot.window_start.isoformat(),
                snapshot.used,
                snapshot.locked_until.isoformat() if snapshot.locked_until else None,
            ))
            conn.execute("DELETE FROM quota_operation_usage")
            conn.executemany(
                "INSERT INTO quota_operation_usage (operation, count, units) VALUES (?, ?, ?)",
                [(op, usage.count, usage.units) for op, usage in snapshot.operations.items()],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Schedule definitions

    def insert_schedule(self, schedule: ScheduleDefinition) -> int:
        """Insert a schedule with its slots.

        Schedules are owned by the admin collaborator; this is the write
        path it (and seeding from configuration) uses.

        Returns:
            The new schedule id
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            cursor = conn.execute("""
                INSERT INTO schedules
                (channel_id, platform, priority, timezone, active, content_type, operation)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                schedule.channel_id,
                schedule.platform,
                schedule.priority,
                schedule.timezone,
                1 if schedule.active else 0,
                schedule.content_type,
                schedule.operation,
            ))
            schedule_id = cursor.lastrowid
            conn.executemany(
                "INSERT INTO schedule_slots (schedule_id, day_of_week, check_time) VALUES (?, ?, ?)",
                [
                    (schedule_id, slot.weekday.value, slot.at.strftime("%H:%M"))
                    for slot in schedule.slots
                ],
            )
            conn.commit()
            return schedule_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_schedules(self, active_only: bool = True) -> List[ScheduleDefinition]:
        """Load schedule definitions with their slots, ordered by id."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, channel_id, platform, priority, timezone, active,
                       content_type, operation
                FROM schedules
            """
            if active_only:
                query += " WHERE active = 1"
            query += " ORDER BY id"

            slots_by_schedule: Dict[int, List[ScheduleSlot]] = {}
            for schedule_id, day, check_time in conn.execute(
                "SELECT schedule_id, day_of_week, check_time FROM schedule_slots"
            ):
                slots_by_schedule.setdefault(schedule_id, []).append(
                    ScheduleSlot.parse(day, check_time)
                )

            schedules = []
            for row in conn.execute(query):
                schedules.append(ScheduleDefinition(
                    id=row[0],
                    channel_id=row[1],
                    platform=row[2],
                    priority=row[3],
                    timezone=row[4],
                    active=bool(row[5]),
                    content_type=row[6],
                    operation=row[7],
                    slots=tuple(slots_by_schedule.get(row[0], [])),
                ))
            return schedules
        finally:
            conn.close()

    # Effectiveness history

    def append_effectiveness_record(self, record: EffectivenessRecord) -> None:
        """Append a single record to the history."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO effectiveness_record
                (schedule_id, timestamp, quota_spent, content_found, result_type)
                VALUES (?, ?, ?, ?, ?)
            """, (
                record.schedule_id,
                record.timestamp.isoformat(),
                record.quota_spent,
                record.content_found,
                record.result_type,
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_effectiveness_records(
        self,
        schedule_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[EffectivenessRecord]:
        """Fetch history records, oldest first.

        Args:
            schedule_id: Optional filter for a specific schedule
            since: Optional lower bound on the record timestamp

        Returns:
            List of records ordered by insertion
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT schedule_id, timestamp, quota_spent, content_found, result_type
                FROM effectiveness_record
            """
            params: List[Any] = []
            conditions = []
            if schedule_id is not None:
                conditions.append("schedule_id = ?")
                params.append(schedule_id)
            if since is not None:
                conditions.append("timestamp >= ?")
                params.append(since.isoformat())
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY id"

            return [
                EffectivenessRecord(
                    schedule_id=row[0],
                    timestamp=datetime.fromisoformat(row[1]),
                    quota_spent=row[2],
                    content_found=row[3],
                    result_type=row[4],
                )
                for row in conn.execute(query, params)
            ]
        finally:
            conn.close()

    def prune_effectiveness_records(self, before: datetime) -> int:
        """Delete records older than the retention cutoff.

        Returns:
            Number of rows removed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM effectiveness_record WHERE timestamp < ?",
                (before.isoformat(),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Cache entries

    def save_cache_entry(self, entry: CacheEntry) -> None:
        """Insert or overwrite a cache entry."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO cache_entry
                (platform, content_type, cache_key, payload, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                entry.platform,
                entry.content_type,
                entry.key,
                json.dumps(entry.payload),
                entry.created_at.isoformat(),
                entry.expires_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()

    def load_cache_entries(self, now: datetime) -> List[CacheEntry]:
        """Load entries that are still fresh at ``now``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT platform, content_type, cache_key, payload, created_at, expires_at
                FROM cache_entry
                WHERE expires_at > ?
            """, (now.isoformat(),))
            return [
                CacheEntry(
                    platform=row[0],
                    content_type=row[1],
                    key=row[2],
                    payload=json.loads(row[3]),
                    created_at=datetime.fromisoformat(row[4]),
                    expires_at=datetime.fromisoformat(row[5]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def delete_cache_entries(
        self,
        platform: Optional[str] = None,
        content_type: Optional[str] = None,
        key: Optional[str] = None,
        expired_before: Optional[datetime] = None,
    ) -> int:
        """Delete cache entries matching all given filters.

        With no filters every entry is removed.

        Returns:
            Number of rows removed
        """
        conn = get_connection(self.db_path)
        try:
            query = "DELETE FROM cache_entry"
            params: List[Any] = []
            conditions = []
            if platform is not None:
                conditions.append("platform = ?")
                params.append(platform)
            if content_type is not None:
                conditions.append("content_type = ?")
                params.append(content_type)
            if key is not None:
                conditions.append("cache_key = ?")
                params.append(key)
            if expired_before is not None:
                conditions.append("expires_at <= ?")
                params.append(expired_before.isoformat())
            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Seen items

    def load_seen_item_ids(self, platform: str, content_type: str, channel_id: str) -> List[str]:
        """Item ids already announced for a target, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT item_id FROM seen_item
                WHERE platform = ? AND content_type = ? AND channel_id = ?
                ORDER BY id
            """, (platform, content_type, channel_id))
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def add_seen_item_ids(
        self,
        platform: str,
        content_type: str,
        channel_id: str,
        item_ids: List[str],
        seen_at: datetime,
        keep: int,
    ) -> None:
        """Remember item ids for a target, keeping only the newest ``keep``."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany("""
                INSERT OR IGNORE INTO seen_item
                (platform, content_type, channel_id, item_id, seen_at)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (platform, content_type, channel_id, item_id, seen_at.isoformat())
                for item_id in item_ids
            ])
            conn.execute("""
                DELETE FROM seen_item
                WHERE platform = ? AND content_type = ? AND channel_id = ?
                AND id NOT IN (
                    SELECT id FROM seen_item
                    WHERE platform = ? AND content_type = ? AND channel_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                )
            """, (platform, content_type, channel_id, platform, content_type, channel_id, keep))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
