"""
SQLite-backed implementation of the engine's Store capability.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..interfaces import Store
from ..models import (
    Alert,
    DiffResult,
    MonitoringContext,
    Plan,
    ScraperStrategy,
    SignalType,
    Snapshot,
    Target,
    TargetStatus,
    UsageCounters,
    User,
    utcnow,
)
from .db import Database

logger = logging.getLogger(__name__)

USAGE_COUNTERS = ("crawls_today", "manual_checks_today")


class StoreError(Exception):
    """Raised for persistence failures the engine cannot recover from."""


class NotFoundError(StoreError):
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _today(today: Optional[str]) -> str:
    return today or utcnow().date().isoformat()


class SqliteStore(Store):
    """Store on top of the shared aiosqlite ``Database`` wrapper."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------ #
    # Row mapping
    @staticmethod
    def _user(row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            plan=Plan(row["plan"]),
            crawls_today=row["crawls_today"],
            manual_checks_today=row["manual_checks_today"],
            last_reset=row["last_reset"],
        )

    @staticmethod
    def _target(row) -> Target:
        return Target(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            url=row["url"],
            status=TargetStatus(row["status"]),
            scraper_hint=ScraperStrategy(row["scraper_hint"]) if row["scraper_hint"] else None,
            failure_count=row["failure_count"],
            last_checked_at=_parse_dt(row["last_checked_at"]),
            last_failure_at=_parse_dt(row["last_failure_at"]),
            created_at=_parse_dt(row["created_at"]),
        )

    @staticmethod
    def _context(row) -> MonitoringContext:
        return MonitoringContext(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            requires_rich_render=bool(row["requires_rich_render"]),
            locale=row["locale"],
            timezone=row["timezone"],
            position=row["position"],
        )

    @staticmethod
    def _snapshot(row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            target_id=row["target_id"],
            context_id=row["context_id"],
            signal=SignalType(row["signal"]),
            method=ScraperStrategy(row["method"]),
            content_hash=row["content_hash"],
            content=json.loads(row["content"]),
            evidence_path=row["evidence_path"],
            created_at=_parse_dt(row["created_at"]),
        )

    # ------------------------------------------------------------------ #
    # Seeding (used by the dashboard side and by tests)
    async def add_user(self, user: User) -> None:
        await self.db.upsert(
            "users",
            {
                "id": user.id,
                "email": user.email,
                "plan": user.plan.value,
                "crawls_today": user.crawls_today,
                "manual_checks_today": user.manual_checks_today,
                "last_reset": user.last_reset.isoformat() if user.last_reset else None,
            },
            ["id"],
        )

    async def add_target(self, target: Target) -> None:
        await self.db.upsert(
            "targets",
            {
                "id": target.id,
                "user_id": target.user_id,
                "name": target.name,
                "url": target.url,
                "status": target.status.value,
                "scraper_hint": target.scraper_hint.value if target.scraper_hint else None,
                "failure_count": target.failure_count,
                "last_checked_at": _iso(target.last_checked_at),
                "last_failure_at": _iso(target.last_failure_at),
                "created_at": _iso(target.created_at),
            },
            ["id"],
        )

    async def add_context(self, context: MonitoringContext) -> None:
        await self.db.upsert(
            "monitoring_contexts",
            {
                "id": context.id,
                "key": context.key,
                "name": context.name,
                "requires_rich_render": int(context.requires_rich_render),
                "locale": context.locale,
                "timezone": context.timezone,
                "position": context.position,
            },
            ["id"],
        )

    # ------------------------------------------------------------------ #
    # Reference data
    async def get_user(self, user_id: str) -> User:
        row = await self.db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            raise NotFoundError(f"User not found: {user_id}")
        return self._user(row)

    async def get_target(self, target_id: str) -> Target:
        row = await self.db.fetch_one("SELECT * FROM targets WHERE id = ?", (target_id,))
        if row is None:
            raise NotFoundError(f"Target not found: {target_id}")
        return self._target(row)

    async def list_active_targets(self) -> List[Tuple[Target, Plan]]:
        rows = await self.db.fetch_all(
            """
            SELECT t.*, u.plan AS owner_plan
            FROM targets t JOIN users u ON u.id = t.user_id
            WHERE t.status = ?
            ORDER BY t.created_at, t.id
            """,
            (TargetStatus.ACTIVE.value,),
        )
        return [(self._target(row), Plan(row["owner_plan"])) for row in rows]

    async def list_contexts(self) -> List[MonitoringContext]:
        rows = await self.db.fetch_all(
            "SELECT * FROM monitoring_contexts ORDER BY position, key"
        )
        return [self._context(row) for row in rows]

    async def count_active_targets(self, user_id: str) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) FROM targets WHERE user_id = ? AND status = ?",
            (user_id, TargetStatus.ACTIVE.value),
        )
        return row[0]

    async def count_targets_created_since(self, user_id: str, since: datetime) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) FROM targets WHERE user_id = ? AND created_at >= ?",
            (user_id, _iso(since)),
        )
        return row[0]

    # ------------------------------------------------------------------ #
    # Snapshots & diffs
    async def latest_snapshot(
        self, target_id: str, context_id: str, signal: SignalType
    ) -> Optional[Snapshot]:
        row = await self.db.fetch_one(
            """
            SELECT * FROM snapshots
            WHERE target_id = ? AND context_id = ? AND signal = ?
            ORDER BY id DESC LIMIT 1
            """,
            (target_id, context_id, signal.value),
        )
        return self._snapshot(row) if row else None

    async def recent_snapshot_hashes(
        self, target_id: str, context_id: str, signal: SignalType, limit: int
    ) -> List[str]:
        rows = await self.db.fetch_all(
            """
            SELECT content_hash FROM snapshots
            WHERE target_id = ? AND context_id = ? AND signal = ?
            ORDER BY id DESC LIMIT ?
            """,
            (target_id, context_id, signal.value, limit),
        )
        return [row["content_hash"] for row in rows]

    async def insert_snapshot(self, snapshot: Snapshot) -> int:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO snapshots
                    (target_id, context_id, signal, method, content_hash, content,
                     evidence_path, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.target_id,
                    snapshot.context_id,
                    snapshot.signal.value,
                    snapshot.method.value,
                    snapshot.content_hash,
                    json.dumps(snapshot.content, sort_keys=True),
                    snapshot.evidence_path,
                    _iso(snapshot.created_at),
                ),
            )
            return cursor.lastrowid

    async def count_snapshots_since(self, since: datetime) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) FROM snapshots WHERE created_at >= ?", (_iso(since),)
        )
        return row[0]

    async def insert_diff(
        self, target_id: str, context_id: str, snapshot_id: int, result: DiffResult
    ) -> Optional[int]:
        # an empty diff means "no meaningful change" and is not kept
        if not result.has_changes:
            return None
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO diffs
                    (target_id, context_id, snapshot_id, signal, verdict, summary,
                     overall_score, changes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    target_id,
                    context_id,
                    snapshot_id,
                    result.signal.value,
                    result.verdict.value,
                    result.summary,
                    result.overall_score,
                    json.dumps([c.model_dump(mode="json") for c in result.changes]),
                    _iso(utcnow()),
                ),
            )
            return cursor.lastrowid

    async def last_diff_at(self, target_id: str, context_id: str) -> Optional[datetime]:
        row = await self.db.fetch_one(
            "SELECT MAX(created_at) FROM diffs WHERE target_id = ? AND context_id = ?",
            (target_id, context_id),
        )
        return _parse_dt(row[0]) if row else None

    # ------------------------------------------------------------------ #
    # Alerts
    async def insert_alert(self, alert: Alert) -> int:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO alerts
                    (user_id, target_id, context_id, signal, kind, severity, title,
                     description, metadata, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.user_id,
                    alert.target_id,
                    alert.context_id,
                    alert.signal.value,
                    alert.kind,
                    alert.severity.value,
                    alert.title,
                    alert.description,
                    json.dumps(alert.metadata, default=str),
                    int(alert.read),
                    _iso(alert.created_at),
                ),
            )
            return cursor.lastrowid

    async def count_recent_alerts(
        self, target_id: str, context_id: str, signal: SignalType, window: int
    ) -> int:
        """Alerts raised for a pair since the oldest of its last ``window`` snapshots."""
        row = await self.db.fetch_one(
            """
            SELECT COUNT(*) FROM alerts
            WHERE target_id = ? AND context_id = ? AND signal = ?
              AND created_at >= (
                  SELECT MIN(created_at) FROM (
                      SELECT created_at FROM snapshots
                      WHERE target_id = ? AND context_id = ? AND signal = ?
                      ORDER BY id DESC LIMIT ?
                  )
              )
            """,
            (target_id, context_id, signal.value, target_id, context_id, signal.value, window),
        )
        return row[0]

    async def list_alerts(self, user_id: str, limit: int = 50) -> List[Alert]:
        rows = await self.db.fetch_all(
            "SELECT * FROM alerts WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            Alert(
                id=row["id"],
                user_id=row["user_id"],
                target_id=row["target_id"],
                context_id=row["context_id"],
                signal=SignalType(row["signal"]),
                kind=row["kind"],
                severity=row["severity"],
                title=row["title"],
                description=row["description"],
                metadata=json.loads(row["metadata"]),
                read=bool(row["is_read"]),
                created_at=_parse_dt(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------ #
    # Target bookkeeping
    async def record_target_success(
        self,
        target_id: str,
        checked_at: datetime,
        scraper_hint: Optional[ScraperStrategy] = None,
    ) -> None:
        await self.db.execute_commit(
            """
            UPDATE targets
            SET last_checked_at = ?,
                failure_count = 0,
                last_failure_at = NULL,
                scraper_hint = COALESCE(?, scraper_hint)
            WHERE id = ?
            """,
            (_iso(checked_at), scraper_hint.value if scraper_hint else None, target_id),
        )

    async def record_target_failure(
        self,
        target_id: str,
        failed_at: datetime,
        pause_after: int,
        pause_status: TargetStatus = TargetStatus.ERROR,
    ) -> int:
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                UPDATE targets
                SET failure_count = failure_count + 1,
                    last_failure_at = ?,
                    status = CASE WHEN failure_count + 1 >= ? THEN ? ELSE status END
                WHERE id = ?
                """,
                (_iso(failed_at), pause_after, pause_status.value, target_id),
            )
            cursor = await conn.execute(
                "SELECT failure_count FROM targets WHERE id = ?", (target_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Target not found: {target_id}")
        return row["failure_count"]

    # ------------------------------------------------------------------ #
    # Usage counters
    @staticmethod
    def _usage(row) -> UsageCounters:
        return UsageCounters(
            user_id=row["id"],
            crawls_today=row["crawls_today"],
            manual_checks_today=row["manual_checks_today"],
            last_reset=row["last_reset"],
        )

    async def get_usage(self, user_id: str, today: Optional[str] = None) -> UsageCounters:
        """Return today's counters, applying the lazy UTC-day reset first."""
        today = _today(today)
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                UPDATE users
                SET crawls_today = 0, manual_checks_today = 0, last_reset = ?
                WHERE id = ? AND (last_reset IS NULL OR last_reset != ?)
                """,
                (today, user_id, today),
            )
            cursor = await conn.execute(
                "SELECT id, crawls_today, manual_checks_today, last_reset FROM users WHERE id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"User not found: {user_id}")
        return self._usage(row)

    async def consume_usage(
        self, user_id: str, counter: str, cap: int, today: Optional[str] = None
    ) -> Optional[UsageCounters]:
        """Reset-if-stale and increment ``counter`` in one conditional UPDATE.

        Returns the counters after the increment, or None when the user is
        already at ``cap`` for today.
        """
        if counter not in USAGE_COUNTERS:
            raise ValueError(f"Unknown usage counter: {counter}")
        other = next(c for c in USAGE_COUNTERS if c != counter)
        today = _today(today)

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE users
                SET {counter} = (CASE WHEN last_reset = ? THEN {counter} ELSE 0 END) + 1,
                    {other} = CASE WHEN last_reset = ? THEN {other} ELSE 0 END,
                    last_reset = ?
                WHERE id = ?
                  AND (CASE WHEN last_reset = ? THEN {counter} ELSE 0 END) < ?
                """,
                (today, today, today, user_id, today, cap),
            )
            updated = cursor.rowcount
            cursor = await conn.execute(
                "SELECT id, crawls_today, manual_checks_today, last_reset FROM users WHERE id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()

        if row is None:
            raise NotFoundError(f"User not found: {user_id}")
        if not updated:
            logger.debug("Usage cap reached for %s (%s >= %d)", user_id, counter, cap)
            return None
        return self._usage(row)
