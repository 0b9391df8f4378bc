# services/xp_store_pg.py
"""
Postgres-backed XPStore (asyncpg via services.db_service).

- Records are unique on (user_id, activity_id); the unique index is the last line
  of defence against double awards across processes.
- user_lock takes a session-level advisory lock keyed on the user id and pins
  that connection, so the whole award path (reads and commit) uses exactly one
  pooled connection and never needs a second one while holding the lock.
- commit_award runs in one transaction: record insert, progress compare-and-set
  on `version`, streak upserts. Any failure rolls all three back.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from app.core.logging import get_logger
from app.models.xp_ledger import StreakData, UserProgress, XPRecord
from app.models.xp_transparency import TransparencyReport
from services.db_service import (
    execute,
    execute_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    pinned_connection,
    run_in_transaction,
)
from services.xp_store import DuplicateActivityError, StaleWriteError, UserLocks, XPStore

logger = get_logger()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS xp_records (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    activity_id   TEXT NOT NULL,
    activity_type TEXT NOT NULL,
    xp_awarded    INTEGER NOT NULL,
    payload       JSONB NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS xp_records_user_activity_uniq ON xp_records (user_id, activity_id);
CREATE INDEX IF NOT EXISTS xp_records_user_created_idx ON xp_records (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS xp_records_activity_type_idx ON xp_records (activity_type);

CREATE TABLE IF NOT EXISTS xp_user_progress (
    user_id          TEXT PRIMARY KEY,
    total_xp         INTEGER NOT NULL DEFAULT 0,
    version          INTEGER NOT NULL DEFAULT 0,
    total_reached_at TIMESTAMPTZ,
    award_count      INTEGER NOT NULL DEFAULT 0,
    milestones       JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE TABLE IF NOT EXISTS xp_user_streaks (
    user_id     TEXT NOT NULL,
    streak_type TEXT NOT NULL,
    payload     JSONB NOT NULL,
    PRIMARY KEY (user_id, streak_type)
);

CREATE TABLE IF NOT EXISTS xp_transparency_reports (
    id         TEXT PRIMARY KEY,
    record_id  TEXT NOT NULL,
    payload    JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS xp_config_documents (
    name       TEXT PRIMARY KEY,
    payload    JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def _load_json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump(model: Any) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=False), ensure_ascii=False)


def _record_from_row(row: Mapping[str, Any]) -> XPRecord:
    return XPRecord.model_validate(_load_json(row["payload"]))


def _progress_from_row(row: Mapping[str, Any]) -> UserProgress:
    return UserProgress(
        user_id=row["user_id"],
        total_xp=int(row["total_xp"]),
        version=int(row["version"]),
        total_reached_at=row.get("total_reached_at"),
        award_count=int(row.get("award_count") or 0),
        milestones=list(_load_json(row.get("milestones")) or []),
    )


class PostgresXPStore(XPStore):
    def __init__(self) -> None:
        self._local_locks = UserLocks()

    async def ensure_schema(self) -> None:
        await execute(SCHEMA_SQL)
        logger.info("xp_schema_ensured")

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        # In-process lock first so one process holds at most one pooled connection per user.
        # Every store call inside the block runs on the connection holding the advisory lock.
        async with self._local_locks.hold(user_id):
            async with pinned_connection() as conn:
                await execute_with_conn(conn, "SELECT pg_advisory_lock(hashtext($1))", user_id)
                try:
                    yield
                finally:
                    await execute_with_conn(conn, "SELECT pg_advisory_unlock(hashtext($1))", user_id)

    # ---- Records -------------------------------------------------------------

    async def get_record(self, record_id: str) -> Optional[XPRecord]:
        row = await fetchrow("SELECT payload FROM xp_records WHERE id = $1", record_id)
        return _record_from_row(row) if row else None

    async def get_record_by_activity(self, user_id: str, activity_id: str) -> Optional[XPRecord]:
        row = await fetchrow(
            "SELECT payload FROM xp_records WHERE user_id = $1 AND activity_id = $2",
            user_id,
            activity_id,
        )
        return _record_from_row(row) if row else None

    async def list_user_records(self, user_id: str, limit: Optional[int] = None, offset: int = 0) -> List[XPRecord]:
        rows = await fetch(
            """
            SELECT payload FROM xp_records
            WHERE user_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [_record_from_row(r) for r in rows]

    async def count_user_records(self, user_id: str) -> int:
        row = await fetchrow("SELECT COUNT(*) AS n FROM xp_records WHERE user_id = $1", user_id)
        return int(row["n"]) if row else 0

    async def list_records_by_activity_type(self, activity_type: str) -> List[XPRecord]:
        rows = await fetch("SELECT payload FROM xp_records WHERE activity_type = $1", activity_type)
        return [_record_from_row(r) for r in rows]

    async def list_all_records(self) -> List[XPRecord]:
        rows = await fetch("SELECT payload FROM xp_records ORDER BY created_at ASC")
        return [_record_from_row(r) for r in rows]

    async def count_awards_since(self, user_id: str, since: datetime) -> int:
        row = await fetchrow(
            "SELECT COUNT(*) AS n FROM xp_records WHERE user_id = $1 AND created_at >= $2",
            user_id,
            since,
        )
        return int(row["n"]) if row else 0

    # ---- Aggregates ------------------------------------------------------------

    async def get_streaks(self, user_id: str) -> Dict[str, StreakData]:
        rows = await fetch("SELECT streak_type, payload FROM xp_user_streaks WHERE user_id = $1", user_id)
        return {r["streak_type"]: StreakData.model_validate(_load_json(r["payload"])) for r in rows}

    async def get_progress(self, user_id: str) -> UserProgress:
        row = await fetchrow(
            """
            SELECT user_id, total_xp, version, total_reached_at, award_count, milestones
            FROM xp_user_progress WHERE user_id = $1
            """,
            user_id,
        )
        return _progress_from_row(dict(row)) if row else UserProgress(user_id=user_id)

    async def list_progress(self) -> List[UserProgress]:
        rows = await fetch(
            "SELECT user_id, total_xp, version, total_reached_at, award_count, milestones FROM xp_user_progress"
        )
        return [_progress_from_row(dict(r)) for r in rows]

    async def commit_award(
        self,
        record: XPRecord,
        streaks: Mapping[str, StreakData],
        progress: UserProgress,
        expected_version: int,
    ) -> None:
        async with run_in_transaction() as conn:
            inserted = await fetchrow_with_conn(
                conn,
                """
                INSERT INTO xp_records (id, user_id, activity_id, activity_type, xp_awarded, payload, created_at)
                VALUES ($1, $2, $3, $4, $5, CAST($6 AS JSONB), $7)
                ON CONFLICT (user_id, activity_id) DO NOTHING
                RETURNING id
                """,
                record.id,
                record.user_id,
                record.activity_id,
                record.activity_type,
                record.xp_awarded,
                _dump(record),
                record.timestamp,
            )
            if inserted is None:
                raise DuplicateActivityError(
                    f"Activity {record.activity_id} already awarded",
                    user_id=record.user_id,
                    activity_id=record.activity_id,
                )

            milestones = json.dumps(list(progress.milestones))
            if expected_version == 0:
                written = await fetchrow_with_conn(
                    conn,
                    """
                    INSERT INTO xp_user_progress (user_id, total_xp, version, total_reached_at, award_count, milestones)
                    VALUES ($1, $2, $3, $4, $5, CAST($6 AS JSONB))
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING version
                    """,
                    progress.user_id,
                    progress.total_xp,
                    progress.version,
                    progress.total_reached_at,
                    progress.award_count,
                    milestones,
                )
            else:
                written = await fetchrow_with_conn(
                    conn,
                    """
                    UPDATE xp_user_progress
                    SET total_xp = $2, version = $3, total_reached_at = $4,
                        award_count = $5, milestones = CAST($6 AS JSONB)
                    WHERE user_id = $1 AND version = $7
                    RETURNING version
                    """,
                    progress.user_id,
                    progress.total_xp,
                    progress.version,
                    progress.total_reached_at,
                    progress.award_count,
                    milestones,
                    expected_version,
                )
            if written is None:
                current = await fetchrow_with_conn(
                    conn, "SELECT version FROM xp_user_progress WHERE user_id = $1", progress.user_id
                )
                raise StaleWriteError(progress.user_id, expected_version, int(current["version"]) if current else 0)

            for streak_type, data in streaks.items():
                await execute_with_conn(
                    conn,
                    """
                    INSERT INTO xp_user_streaks (user_id, streak_type, payload)
                    VALUES ($1, $2, CAST($3 AS JSONB))
                    ON CONFLICT (user_id, streak_type) DO UPDATE SET payload = EXCLUDED.payload
                    """,
                    record.user_id,
                    streak_type,
                    _dump(data),
                )

    # ---- Reports and configuration documents ------------------------------------

    async def put_report(self, report: TransparencyReport) -> None:
        await execute(
            """
            INSERT INTO xp_transparency_reports (id, record_id, payload, created_at)
            VALUES ($1, $2, CAST($3 AS JSONB), $4)
            ON CONFLICT (id) DO NOTHING
            """,
            report.id,
            report.record_id,
            _dump(report),
            report.generated_at,
        )

    async def get_report(self, report_id: str) -> Optional[TransparencyReport]:
        row = await fetchrow("SELECT payload FROM xp_transparency_reports WHERE id = $1", report_id)
        return TransparencyReport.model_validate(_load_json(row["payload"])) if row else None

    async def get_config_document(self, name: str) -> Optional[Dict[str, Any]]:
        row = await fetchrow("SELECT payload FROM xp_config_documents WHERE name = $1", name)
        return dict(_load_json(row["payload"])) if row else None

    async def put_config_document(self, name: str, document: Mapping[str, Any]) -> None:
        await execute(
            """
            INSERT INTO xp_config_documents (name, payload, updated_at)
            VALUES ($1, CAST($2 AS JSONB), $3)
            ON CONFLICT (name) DO UPDATE SET payload = EXCLUDED.payload, updated_at = EXCLUDED.updated_at
            """,
            name,
            json.dumps(dict(document), ensure_ascii=False, default=str),
            datetime.now(timezone.utc),
        )
