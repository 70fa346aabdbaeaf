"""Postgres-backed state store for loops shared across machines."""

import json
from typing import Any, Dict, List, Optional

import psycopg2

from rwl.db import get_cursor
from rwl.loop_state import LoopRecord, Signal, Status
from rwl.state_store import (
    LoopConflictError,
    StateStore,
    StorageError,
    TerminalRecordError,
    validate_loop_id,
)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS loop_records (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL,
    workspace TEXT NOT NULL,
    status TEXT NOT NULL,
    cycle_count INTEGER NOT NULL DEFAULT 0,
    feedback JSONB NOT NULL DEFAULT '[]'::jsonb,
    artifacts JSONB NOT NULL DEFAULT '[]'::jsonb,
    failure_reason TEXT,
    stop_signal TEXT,
    owner TEXT,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    cost_used DOUBLE PRECISION NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS loop_records_status_idx ON loop_records (status);

CREATE TABLE IF NOT EXISTS loop_progress (
    id BIGSERIAL PRIMARY KEY,
    loop_id TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS loop_progress_loop_idx ON loop_progress (loop_id, id);
"""

RECORD_COLUMNS = (
    "id, task, workspace, status, cycle_count, feedback, artifacts, failure_reason, "
    "stop_signal, owner, tokens_used, cost_used, created_at, updated_at"
)

TERMINAL_VALUES = tuple(sorted(s.value for s in (Status.COMPLETE, Status.FAILED, Status.STOPPED)))


def _row_to_record(row: Dict[str, Any]) -> LoopRecord:
    feedback = row["feedback"]
    artifacts = row["artifacts"]
    return LoopRecord.from_dict({
        "loop_id": row["id"],
        "task": row["task"],
        "workspace": row["workspace"],
        "status": row["status"],
        "cycle_count": row["cycle_count"],
        "feedback": json.loads(feedback) if isinstance(feedback, str) else feedback,
        "artifacts": json.loads(artifacts) if isinstance(artifacts, str) else artifacts,
        "failure_reason": row["failure_reason"],
        "stop_signal": row["stop_signal"],
        "owner": row["owner"],
        "tokens_used": row["tokens_used"],
        "cost_used": row["cost_used"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    })


class PostgresStateStore(StateStore):
    """State store over the loop_records / loop_progress tables.

    The conditional status transition is a single UPDATE ... WHERE status = %s,
    so Postgres row locking provides the atomicity.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url

    def _cursor(self, commit: bool = True):
        return get_cursor(self.database_url, commit=commit)

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        try:
            with self._cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
        except psycopg2.Error as e:
            raise StorageError(f"Schema initialization failed: {e}")

    def save(self, record: LoopRecord) -> None:
        validate_loop_id(record.loop_id)
        data = record.to_dict()
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    f"""
                    INSERT INTO loop_records ({RECORD_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        task = EXCLUDED.task,
                        workspace = EXCLUDED.workspace,
                        status = EXCLUDED.status,
                        cycle_count = EXCLUDED.cycle_count,
                        feedback = EXCLUDED.feedback,
                        artifacts = EXCLUDED.artifacts,
                        failure_reason = EXCLUDED.failure_reason,
                        stop_signal = EXCLUDED.stop_signal,
                        owner = EXCLUDED.owner,
                        tokens_used = EXCLUDED.tokens_used,
                        cost_used = EXCLUDED.cost_used,
                        updated_at = EXCLUDED.updated_at
                    WHERE loop_records.status NOT IN %s
                      AND loop_records.owner IS NOT DISTINCT FROM EXCLUDED.owner
                    RETURNING id
                    """,
                    (
                        data["loop_id"],
                        data["task"],
                        data["workspace"],
                        data["status"],
                        data["cycle_count"],
                        json.dumps(data["feedback"]),
                        json.dumps(data["artifacts"]),
                        data["failure_reason"],
                        data["stop_signal"],
                        data["owner"],
                        data["tokens_used"],
                        data["cost_used"],
                        record.created_at,
                        record.updated_at,
                        TERMINAL_VALUES,
                    ),
                )
                if cursor.fetchone() is not None:
                    return

                cursor.execute(
                    "SELECT status, owner FROM loop_records WHERE id = %s",
                    (record.loop_id,),
                )
                current = cursor.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot save record {record.loop_id}: {e}")

        if current and current["status"] in TERMINAL_VALUES:
            raise TerminalRecordError(
                f"Record {record.loop_id} is {current['status']} and read-only"
            )
        raise LoopConflictError(f"Record {record.loop_id} is owned by another controller")

    def load(self, loop_id: str) -> Optional[LoopRecord]:
        validate_loop_id(loop_id)
        try:
            with self._cursor(commit=False) as cursor:
                cursor.execute(
                    f"SELECT {RECORD_COLUMNS} FROM loop_records WHERE id = %s",
                    (loop_id,),
                )
                row = cursor.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot load record {loop_id}: {e}")

        if not row:
            return None
        return _row_to_record(row)

    def list_records(self, status: Optional[Status] = None) -> List[LoopRecord]:
        conditions = []
        params = []

        if status:
            conditions.append("status = %s")
            params.append(status.value)

        where_clause = " AND ".join(conditions) if conditions else "TRUE"

        try:
            with self._cursor(commit=False) as cursor:
                cursor.execute(
                    f"""
                    SELECT {RECORD_COLUMNS}
                    FROM loop_records
                    WHERE {where_clause}
                    ORDER BY created_at ASC
                    """,
                    params,
                )
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot list records: {e}")

        return [_row_to_record(row) for row in rows]

    def append_progress(self, loop_id: str, text: str) -> None:
        validate_loop_id(loop_id)
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    "INSERT INTO loop_progress (loop_id, content) VALUES (%s, %s)",
                    (loop_id, text if text.endswith("\n") else text + "\n"),
                )
        except psycopg2.Error as e:
            raise StorageError(f"Cannot append progress for {loop_id}: {e}")

    def read_progress(self, loop_id: str) -> str:
        validate_loop_id(loop_id)
        try:
            with self._cursor(commit=False) as cursor:
                cursor.execute(
                    "SELECT content FROM loop_progress WHERE loop_id = %s ORDER BY id ASC",
                    (loop_id,),
                )
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot read progress for {loop_id}: {e}")
        return "".join(row["content"] for row in rows)

    def compare_and_set_status(
        self,
        loop_id: str,
        expected: Status,
        new: Status,
        owner: Optional[str] = None,
        reason: Optional[str] = None,
        signal: Optional[Signal] = None,
    ) -> bool:
        if expected.is_terminal:
            raise TerminalRecordError(f"Cannot transition out of terminal status {expected.value}")
        validate_loop_id(loop_id)
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE loop_records
                    SET status = %s,
                        owner = %s,
                        failure_reason = COALESCE(%s, failure_reason),
                        stop_signal = COALESCE(%s, stop_signal),
                        updated_at = NOW()
                    WHERE id = %s AND status = %s
                    RETURNING id
                    """,
                    (
                        new.value,
                        owner if new == Status.RUNNING else None,
                        reason,
                        signal.value if signal else None,
                        loop_id,
                        expected.value,
                    ),
                )
                row = cursor.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot transition record {loop_id}: {e}")
        return row is not None
