"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    Step,
    WorkflowDefinition,
)
from ..errors import WorkflowNotFound
from .models import (
    ENROLLMENT_COLUMNS,
    TIMESTAMP_FIELDS,
    WorkflowStats,
    dump_action,
    dump_trigger,
    enrollment_from_row,
    event_from_row,
    step_from_row,
    ts_to_text,
    workflow_from_row,
)
from .repository import WorkflowRepository, check_enrollment_changes

_ACTIVE = EnrollmentStatus.ACTIVE.value


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows and the enrollment ledger using SQLite.

    A single connection is shared between worker threads; ``_lock`` keeps
    each statement group (and transaction) exclusive.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    trigger TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS workflow_steps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                    step_order INTEGER NOT NULL CHECK (step_order >= 1),
                    delay_days INTEGER NOT NULL DEFAULT 0 CHECK (delay_days >= 0),
                    action TEXT NOT NULL,
                    UNIQUE (workflow_id, step_order)
                );
                CREATE TABLE IF NOT EXISTS enrollments (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    current_step_order INTEGER NOT NULL,
                    next_action_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    enrolled_at TEXT NOT NULL,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    trigger_type TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    lease_token TEXT,
                    lease_until TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_enrollments_active
                    ON enrollments (workflow_id, lead_id) WHERE status = 'active';
                CREATE INDEX IF NOT EXISTS ix_enrollments_due
                    ON enrollments (status, next_action_at);
                CREATE TABLE IF NOT EXISTS enrollment_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    enrollment_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    step_order INTEGER,
                    message TEXT,
                    details TEXT,
                    occurred_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _insert_steps(self, workflow_id: str, steps: list[Step]) -> None:
        self._conn.executemany(
            "INSERT INTO workflow_steps (workflow_id, step_order, delay_days, action) VALUES (?, ?, ?, ?)",
            [(workflow_id, s.order, s.delay_days, dump_action(s)) for s in steps],
        )

    def _cancel(
        self,
        now: datetime,
        workflow_id: Optional[str],
        lead_id: Optional[str],
        reason: Optional[str],
    ) -> list[str]:
        if workflow_id is None and lead_id is None:
            raise ValueError("workflow_id or lead_id is required")
        where = ["status = ?"]
        params: list[Any] = [_ACTIVE]
        if workflow_id is not None:
            where.append("workflow_id = ?")
            params.append(workflow_id)
        if lead_id is not None:
            where.append("lead_id = ?")
            params.append(lead_id)
        clause = " AND ".join(where)
        ids = [r["id"] for r in self._conn.execute(f"SELECT id FROM enrollments WHERE {clause}", params)]
        self._conn.execute(
            f"""
            UPDATE enrollments
            SET status = ?, cancelled_at = ?, last_error = COALESCE(?, last_error),
                lease_token = NULL, lease_until = NULL, version = version + 1
            WHERE {clause}
            """,
            [EnrollmentStatus.CANCELLED.value, ts_to_text(now), reason, *params],
        )
        return ids

    # ------------------------------------------------------------------
    # Workflows
    def _create_workflow(self, workflow: WorkflowDefinition, steps: list[Step]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO workflows (id, owner, name, description, trigger, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow.id,
                    workflow.owner,
                    workflow.name,
                    workflow.description,
                    dump_trigger(workflow),
                    int(workflow.is_active),
                    ts_to_text(workflow.created_at),
                    ts_to_text(workflow.updated_at),
                ),
            )
            self._insert_steps(workflow.id, steps)

    async def create_workflow(
        self, workflow: WorkflowDefinition, steps: Optional[list[Step]] = None
    ) -> None:
        await asyncio.to_thread(self._create_workflow, workflow, list(steps or []))

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return workflow_from_row(row) if row else None

    async def list_workflows(
        self, owner: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowDefinition]:
        query = "SELECT * FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        if active is not None:
            query += " AND is_active = ?"
            params.append(int(active))
        query += " ORDER BY created_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [workflow_from_row(r) for r in rows]

    async def update_workflow(self, workflow: WorkflowDefinition) -> None:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET name = ?, description = ?, trigger = ?, updated_at = ? WHERE id = ?",
            workflow.name,
            workflow.description,
            dump_trigger(workflow),
            ts_to_text(workflow.updated_at),
            workflow.id,
        )
        if count == 0:
            raise WorkflowNotFound(workflow.id)

    async def set_workflow_active(
        self, workflow_id: str, is_active: bool, now: datetime
    ) -> None:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET is_active = ?, updated_at = ? WHERE id = ?",
            int(is_active),
            ts_to_text(now),
            workflow_id,
        )
        if count == 0:
            raise WorkflowNotFound(workflow_id)

    def _delete_workflow(self, workflow_id: str, now: datetime) -> list[str]:
        with self._lock, self._conn:
            row = self._conn.execute("SELECT id FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
            if row is None:
                raise WorkflowNotFound(workflow_id)
            cancelled = self._cancel(now, workflow_id, None, "workflow deleted")
            self._conn.execute("DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,))
            self._conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            return cancelled

    async def delete_workflow(self, workflow_id: str, now: datetime) -> list[str]:
        return await asyncio.to_thread(self._delete_workflow, workflow_id, now)

    # ------------------------------------------------------------------
    # Steps
    async def get_steps(self, workflow_id: str) -> list[Step]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT step_order, delay_days, action FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
            workflow_id,
        )
        return [step_from_row(r) for r in rows]

    def _replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        # ``with self._conn`` rolls the delete back if any insert fails.
        with self._lock, self._conn:
            row = self._conn.execute("SELECT id FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
            if row is None:
                raise WorkflowNotFound(workflow_id)
            self._conn.execute("DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,))
            self._insert_steps(workflow_id, steps)

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        await asyncio.to_thread(self._replace_steps, workflow_id, list(steps))

    # ------------------------------------------------------------------
    # Enrollments
    async def enroll_if_absent(self, enrollment: Enrollment) -> bool:
        data = enrollment.model_dump(mode="python")
        values = [
            ts_to_text(data[c]) if c in TIMESTAMP_FIELDS else data[c] for c in ENROLLMENT_COLUMNS
        ]
        values[ENROLLMENT_COLUMNS.index("status")] = enrollment.status.value
        placeholders = ", ".join("?" for _ in ENROLLMENT_COLUMNS)
        count = await asyncio.to_thread(
            self._execute,
            f"INSERT OR IGNORE INTO enrollments ({', '.join(ENROLLMENT_COLUMNS)}) VALUES ({placeholders})",
            *values,
        )
        return count == 1

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM enrollments WHERE id = ?", enrollment_id
        )
        return enrollment_from_row(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        query = "SELECT * FROM enrollments WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if lead_id is not None:
            query += " AND lead_id = ?"
            params.append(lead_id)
        if status is not None:
            query += " AND status = ?"
            params.append(EnrollmentStatus(status).value)
        query += " ORDER BY enrolled_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [enrollment_from_row(r) for r in rows]

    async def lead_ids_with_status(
        self, workflow_id: str, statuses: Iterable[EnrollmentStatus]
    ) -> set[str]:
        values = [EnrollmentStatus(s).value for s in statuses]
        if not values:
            return set()
        placeholders = ", ".join("?" for _ in values)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT DISTINCT lead_id FROM enrollments WHERE workflow_id = ? AND status IN ({placeholders})",
            workflow_id,
            *values,
        )
        return {r["lead_id"] for r in rows}

    async def list_due(
        self, now: datetime, limit: int, active_workflows_only: bool = False
    ) -> list[Enrollment]:
        stamp = ts_to_text(now)
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM enrollments
            WHERE status = ? AND next_action_at <= ?
              AND (lease_until IS NULL OR lease_until <= ?)
              AND (? = 0 OR workflow_id IN (SELECT id FROM workflows WHERE is_active = 1))
            ORDER BY next_action_at
            LIMIT ?
            """,
            _ACTIVE,
            stamp,
            stamp,
            int(active_workflows_only),
            limit,
        )
        return [enrollment_from_row(r) for r in rows]

    async def claim_enrollment(
        self,
        enrollment_id: str,
        expected_version: int,
        lease_token: str,
        lease_until: datetime,
        now: datetime,
    ) -> Enrollment | None:
        stamp = ts_to_text(now)
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments
            SET lease_token = ?, lease_until = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = ? AND next_action_at <= ?
              AND (lease_until IS NULL OR lease_until <= ?)
            """,
            lease_token,
            ts_to_text(lease_until),
            enrollment_id,
            expected_version,
            _ACTIVE,
            stamp,
            stamp,
        )
        if count != 1:
            return None
        return await self.get_enrollment(enrollment_id)

    async def update_enrollment(
        self, enrollment_id: str, expected_version: int, **changes: Any
    ) -> Enrollment | None:
        check_enrollment_changes(changes)
        assignments = []
        params: list[Any] = []
        for field, value in changes.items():
            if field in TIMESTAMP_FIELDS:
                value = ts_to_text(value)
            elif field == "status":
                value = EnrollmentStatus(value).value
            assignments.append(f"{field} = ?")
            params.append(value)
        assignments.append("version = version + 1")
        count = await asyncio.to_thread(
            self._execute,
            f"UPDATE enrollments SET {', '.join(assignments)} WHERE id = ? AND version = ?",
            *params,
            enrollment_id,
            expected_version,
        )
        if count != 1:
            return None
        return await self.get_enrollment(enrollment_id)

    def _cancel_locked(
        self,
        now: datetime,
        workflow_id: Optional[str],
        lead_id: Optional[str],
        reason: Optional[str],
    ) -> list[str]:
        with self._lock, self._conn:
            return self._cancel(now, workflow_id, lead_id, reason)

    async def cancel_enrollments(
        self,
        now: datetime,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        return await asyncio.to_thread(self._cancel_locked, now, workflow_id, lead_id, reason)

    async def workflow_stats(self, workflow_id: str) -> WorkflowStats:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS n FROM enrollments WHERE workflow_id = ? GROUP BY status",
            workflow_id,
        )
        return WorkflowStats(workflow_id=workflow_id, **{r["status"]: r["n"] for r in rows})

    # ------------------------------------------------------------------
    # Event log
    async def record_event(self, event: EnrollmentEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO enrollment_events (enrollment_id, kind, step_order, message, details, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            event.enrollment_id,
            event.kind,
            event.step_order,
            event.message,
            json.dumps(event.details, default=str),
            ts_to_text(event.occurred_at),
        )

    async def list_events(self, enrollment_id: str) -> list[EnrollmentEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM enrollment_events WHERE enrollment_id = ? ORDER BY id",
            enrollment_id,
        )
        return [event_from_row(r) for r in rows]
