"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

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
    WorkflowStats,
    dump_action,
    dump_trigger,
    enrollment_from_row,
    event_from_row,
    step_from_row,
    workflow_from_row,
)
from .repository import WorkflowRepository, check_enrollment_changes

_ACTIVE = EnrollmentStatus.ACTIVE.value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows and the enrollment ledger using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                trigger JSONB NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                step_order INTEGER NOT NULL CHECK (step_order >= 1),
                delay_days INTEGER NOT NULL DEFAULT 0 CHECK (delay_days >= 0),
                action JSONB NOT NULL,
                UNIQUE (workflow_id, step_order)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                lead_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                current_step_order INTEGER NOT NULL,
                next_action_at TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL,
                enrolled_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                trigger_type TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                lease_token TEXT,
                lease_until TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_enrollments_active
                ON enrollments (workflow_id, lead_id) WHERE status = 'active'
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_enrollments_due ON enrollments (status, next_action_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollment_events (
                id SERIAL PRIMARY KEY,
                enrollment_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                step_order INTEGER,
                message TEXT,
                details JSONB,
                occurred_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _cancel_query(
        workflow_id: Optional[str], lead_id: Optional[str]
    ) -> tuple[str, list[Any]]:
        if workflow_id is None and lead_id is None:
            raise ValueError("workflow_id or lead_id is required")
        where = ["status = $3"]
        params: list[Any] = [_ACTIVE]
        if workflow_id is not None:
            params.append(workflow_id)
            where.append(f"workflow_id = ${len(params) + 2}")
        if lead_id is not None:
            params.append(lead_id)
            where.append(f"lead_id = ${len(params) + 2}")
        query = f"""
            UPDATE enrollments
            SET status = 'cancelled', cancelled_at = $1, last_error = COALESCE($2, last_error),
                lease_token = NULL, lease_until = NULL, version = version + 1
            WHERE {' AND '.join(where)}
            RETURNING id
        """
        return query, params

    # ------------------------------------------------------------------
    async def create_workflow(
        self, workflow: WorkflowDefinition, steps: Optional[list[Step]] = None
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO workflows (id, owner, name, description, trigger, is_active, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    workflow.id,
                    workflow.owner,
                    workflow.name,
                    workflow.description,
                    dump_trigger(workflow),
                    workflow.is_active,
                    workflow.created_at,
                    workflow.updated_at,
                )
                await conn.executemany(
                    "INSERT INTO workflow_steps (workflow_id, step_order, delay_days, action) VALUES ($1, $2, $3, $4)",
                    [(workflow.id, s.order, s.delay_days, dump_action(s)) for s in steps or []],
                )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return workflow_from_row(row, parse_ts=False) if row else None

    async def list_workflows(
        self, owner: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM workflows
                WHERE ($1::text IS NULL OR owner = $1)
                  AND ($2::boolean IS NULL OR is_active = $2)
                ORDER BY created_at DESC
                """,
                owner,
                active,
            )
        finally:
            await conn.close()
        return [workflow_from_row(r, parse_ts=False) for r in rows]

    async def update_workflow(self, workflow: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflows SET name = $1, description = $2, trigger = $3, updated_at = $4 WHERE id = $5",
                workflow.name,
                workflow.description,
                dump_trigger(workflow),
                workflow.updated_at,
                workflow.id,
            )
        finally:
            await conn.close()
        if result.endswith(" 0"):
            raise WorkflowNotFound(workflow.id)

    async def set_workflow_active(
        self, workflow_id: str, is_active: bool, now: datetime
    ) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflows SET is_active = $1, updated_at = $2 WHERE id = $3",
                is_active,
                now,
                workflow_id,
            )
        finally:
            await conn.close()
        if result.endswith(" 0"):
            raise WorkflowNotFound(workflow_id)

    async def delete_workflow(self, workflow_id: str, now: datetime) -> list[str]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflows WHERE id = $1 FOR UPDATE", workflow_id
                )
                if exists is None:
                    raise WorkflowNotFound(workflow_id)
                query, params = self._cancel_query(workflow_id, None)
                rows = await conn.fetch(query, now, "workflow deleted", *params)
                await conn.execute("DELETE FROM workflow_steps WHERE workflow_id = $1", workflow_id)
                await conn.execute("DELETE FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return [r["id"] for r in rows]

    # ------------------------------------------------------------------
    async def get_steps(self, workflow_id: str) -> list[Step]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT step_order, delay_days, action FROM workflow_steps WHERE workflow_id = $1 ORDER BY step_order",
                workflow_id,
            )
        finally:
            await conn.close()
        return [step_from_row(r) for r in rows]

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflows WHERE id = $1 FOR UPDATE", workflow_id
                )
                if exists is None:
                    raise WorkflowNotFound(workflow_id)
                await conn.execute("DELETE FROM workflow_steps WHERE workflow_id = $1", workflow_id)
                await conn.executemany(
                    "INSERT INTO workflow_steps (workflow_id, step_order, delay_days, action) VALUES ($1, $2, $3, $4)",
                    [(workflow_id, s.order, s.delay_days, dump_action(s)) for s in steps],
                )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def enroll_if_absent(self, enrollment: Enrollment) -> bool:
        data = enrollment.model_dump(mode="python")
        data["status"] = enrollment.status.value
        placeholders = ", ".join(f"${i}" for i in range(1, len(ENROLLMENT_COLUMNS) + 1))
        conn = await self._connect()
        try:
            inserted = await conn.fetchval(
                f"""
                INSERT INTO enrollments ({', '.join(ENROLLMENT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (workflow_id, lead_id) WHERE status = 'active' DO NOTHING
                RETURNING id
                """,
                *[data[c] for c in ENROLLMENT_COLUMNS],
            )
        finally:
            await conn.close()
        return inserted is not None

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM enrollments WHERE id = $1", enrollment_id)
        finally:
            await conn.close()
        return enrollment_from_row(row, parse_ts=False) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM enrollments
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND ($2::text IS NULL OR lead_id = $2)
                  AND ($3::text IS NULL OR status = $3)
                ORDER BY enrolled_at
                """,
                workflow_id,
                lead_id,
                EnrollmentStatus(status).value if status is not None else None,
            )
        finally:
            await conn.close()
        return [enrollment_from_row(r, parse_ts=False) for r in rows]

    async def lead_ids_with_status(
        self, workflow_id: str, statuses: Iterable[EnrollmentStatus]
    ) -> set[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT DISTINCT lead_id FROM enrollments WHERE workflow_id = $1 AND status = ANY($2::text[])",
                workflow_id,
                [EnrollmentStatus(s).value for s in statuses],
            )
        finally:
            await conn.close()
        return {r["lead_id"] for r in rows}

    async def list_due(
        self, now: datetime, limit: int, active_workflows_only: bool = False
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM enrollments
                WHERE status = $1 AND next_action_at <= $2
                  AND (lease_until IS NULL OR lease_until <= $2)
                  AND (NOT $4::boolean OR workflow_id IN (SELECT id FROM workflows WHERE is_active))
                ORDER BY next_action_at
                LIMIT $3
                """,
                _ACTIVE,
                now,
                limit,
                active_workflows_only,
            )
        finally:
            await conn.close()
        return [enrollment_from_row(r, parse_ts=False) for r in rows]

    async def claim_enrollment(
        self,
        enrollment_id: str,
        expected_version: int,
        lease_token: str,
        lease_until: datetime,
        now: datetime,
    ) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE enrollments
                SET lease_token = $1, lease_until = $2, version = version + 1
                WHERE id = $3 AND version = $4 AND status = $5 AND next_action_at <= $6
                  AND (lease_until IS NULL OR lease_until <= $6)
                RETURNING *
                """,
                lease_token,
                lease_until,
                enrollment_id,
                expected_version,
                _ACTIVE,
                now,
            )
        finally:
            await conn.close()
        return enrollment_from_row(row, parse_ts=False) if row else None

    async def update_enrollment(
        self, enrollment_id: str, expected_version: int, **changes: Any
    ) -> Enrollment | None:
        check_enrollment_changes(changes)
        assignments = []
        params: list[Any] = []
        for field, value in changes.items():
            if field == "status":
                value = EnrollmentStatus(value).value
            params.append(value)
            assignments.append(f"{field} = ${len(params)}")
        assignments.append("version = version + 1")
        params.extend([enrollment_id, expected_version])
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE enrollments SET {', '.join(assignments)}
                WHERE id = ${len(params) - 1} AND version = ${len(params)}
                RETURNING *
                """,
                *params,
            )
        finally:
            await conn.close()
        return enrollment_from_row(row, parse_ts=False) if row else None

    async def cancel_enrollments(
        self,
        now: datetime,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        query, params = self._cancel_query(workflow_id, lead_id)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, now, reason, *params)
        finally:
            await conn.close()
        return [r["id"] for r in rows]

    async def workflow_stats(self, workflow_id: str) -> WorkflowStats:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM enrollments WHERE workflow_id = $1 GROUP BY status",
                workflow_id,
            )
        finally:
            await conn.close()
        return WorkflowStats(workflow_id=workflow_id, **{r["status"]: r["n"] for r in rows})

    # ------------------------------------------------------------------
    async def record_event(self, event: EnrollmentEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO enrollment_events (enrollment_id, kind, step_order, message, details, occurred_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                event.enrollment_id,
                event.kind,
                event.step_order,
                event.message,
                json.dumps(event.details, default=str),
                event.occurred_at,
            )
        finally:
            await conn.close()

    async def list_events(self, enrollment_id: str) -> list[EnrollmentEvent]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM enrollment_events WHERE enrollment_id = $1 ORDER BY id",
                enrollment_id,
            )
        finally:
            await conn.close()
        return [event_from_row(r, parse_ts=False) for r in rows]
