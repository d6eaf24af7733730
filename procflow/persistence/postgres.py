"""PostgreSQL implementation of the process repository."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

import asyncpg

from ..definitions import Category, ProcessDefinition
from ..errors import ConcurrentModification, DuplicateDefinition
from ..instances import AuditEntry, InstanceStatus, ProcessInstance
from ..instances.audit import entries_after
from .repository import ExpectedState, InstanceFilter, ProcessRepository

logger = logging.getLogger(__name__)

_INSTANCE_COLUMNS = (
    "id, definition_id, definition_version, business_key, status, current_step, "
    "variables, start_time, end_time, initiated_by, assigned_to, priority, "
    "tenant_id, department_id, version, updated_at"
)


def _loads(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered.
    return json.loads(value) if isinstance(value, str) else value


class PostgresProcessRepository(ProcessRepository):
    """Persist definitions and instances using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS process_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL,
                UNIQUE (name, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS process_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition_version TEXT NOT NULL,
                business_key TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step TEXT NOT NULL,
                variables JSONB NOT NULL,
                start_time TIMESTAMPTZ NOT NULL,
                end_time TIMESTAMPTZ,
                initiated_by TEXT NOT NULL,
                assigned_to JSONB NOT NULL,
                priority TEXT NOT NULL,
                tenant_id TEXT,
                department_id TEXT,
                version INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instance_events (
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                action TEXT NOT NULL,
                actor TEXT NOT NULL,
                details JSONB,
                previous_state JSONB,
                new_state JSONB,
                PRIMARY KEY (instance_id, sequence)
            )
            """
        )

    @staticmethod
    def _row_to_instance(
        row: asyncpg.Record, audit_log: list[AuditEntry] | None = None
    ) -> ProcessInstance:
        return ProcessInstance(
            id=row["id"],
            definition_id=row["definition_id"],
            definition_version=row["definition_version"],
            business_key=row["business_key"],
            status=row["status"],
            current_step=row["current_step"],
            variables=_loads(row["variables"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            initiated_by=row["initiated_by"],
            assigned_to=_loads(row["assigned_to"]),
            priority=row["priority"],
            tenant_id=row["tenant_id"],
            department_id=row["department_id"],
            version=row["version"],
            updated_at=row["updated_at"],
            audit_log=audit_log or [],
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: ProcessDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO process_definitions
                    (id, name, version, description, category, is_active, updated_at, document)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    version = EXCLUDED.version,
                    description = EXCLUDED.description,
                    category = EXCLUDED.category,
                    is_active = EXCLUDED.is_active,
                    updated_at = EXCLUDED.updated_at,
                    document = EXCLUDED.document
                """,
                definition.id,
                definition.name,
                definition.version,
                definition.description,
                definition.category.value,
                definition.is_active,
                definition.updated_at,
                definition.model_dump_json(),
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateDefinition(definition.name, definition.version) from None
        finally:
            await conn.close()
        logger.debug(f"Saved process definition {definition.id}")

    async def load_definition(self, definition_id: str) -> ProcessDefinition | None:
        conn = await self._connect()
        try:
            document = await conn.fetchval(
                "SELECT document FROM process_definitions WHERE id = $1", definition_id
            )
        finally:
            await conn.close()
        if document is None:
            return None
        return ProcessDefinition.model_validate(_loads(document))

    async def list_definitions(
        self,
        category: Optional[Category] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[ProcessDefinition]:
        clauses: List[str] = []
        params: List[Any] = []
        if category is not None:
            params.append(Category(category).value)
            clauses.append(f"category = ${len(params)}")
        if active is not None:
            params.append(active)
            clauses.append(f"is_active = ${len(params)}")
        if search:
            params.append(f"%{search}%")
            clauses.append(f"(name ILIKE ${len(params)} OR description ILIKE ${len(params)})")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT document FROM process_definitions {where} ORDER BY updated_at DESC",
                *params,
            )
        finally:
            await conn.close()
        return [ProcessDefinition.model_validate(_loads(r["document"])) for r in rows]

    async def delete_definition(self, definition_id: str) -> bool:
        conn = await self._connect()
        try:
            deleted = await conn.fetchval(
                "DELETE FROM process_definitions WHERE id = $1 RETURNING id", definition_id
            )
        finally:
            await conn.close()
        return deleted is not None

    # ------------------------------------------------------------------
    async def persist_instance(
        self, instance: ProcessInstance, expected: ExpectedState | None = None
    ) -> None:
        new_entries = (
            list(instance.audit_log)
            if expected is None
            else entries_after(instance, expected.version)
        )
        conn = await self._connect()
        try:
            async with conn.transaction():
                if expected is None:
                    try:
                        await conn.execute(
                            f"INSERT INTO process_instances ({_INSTANCE_COLUMNS}) VALUES "
                            "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)",
                            instance.id,
                            instance.definition_id,
                            instance.definition_version,
                            instance.business_key,
                            instance.status.value,
                            instance.current_step,
                            json.dumps(instance.variables),
                            instance.start_time,
                            instance.end_time,
                            instance.initiated_by,
                            json.dumps(instance.assigned_to),
                            instance.priority.value,
                            instance.tenant_id,
                            instance.department_id,
                            instance.version,
                            instance.updated_at,
                        )
                    except asyncpg.UniqueViolationError:
                        raise ConcurrentModification(instance.id) from None
                else:
                    updated = await conn.fetchval(
                        """
                        UPDATE process_instances SET
                            status = $1, current_step = $2, variables = $3, end_time = $4,
                            assigned_to = $5, priority = $6, version = $7, updated_at = $8
                        WHERE id = $9 AND version = $10 AND status = $11 AND current_step = $12
                        RETURNING id
                        """,
                        instance.status.value,
                        instance.current_step,
                        json.dumps(instance.variables),
                        instance.end_time,
                        json.dumps(instance.assigned_to),
                        instance.priority.value,
                        instance.version,
                        instance.updated_at,
                        instance.id,
                        expected.version,
                        expected.status.value,
                        expected.current_step,
                    )
                    if updated is None:
                        raise ConcurrentModification(instance.id, expected.version)
                try:
                    await conn.executemany(
                        """
                        INSERT INTO instance_events
                            (instance_id, sequence, timestamp, action, actor, details,
                             previous_state, new_state)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        """,
                        [
                            (
                                instance.id,
                                e.sequence,
                                e.timestamp,
                                e.action.value,
                                e.actor,
                                json.dumps(e.details, default=str),
                                json.dumps(e.previous_state, default=str),
                                json.dumps(e.new_state, default=str),
                            )
                            for e in new_entries
                        ],
                    )
                except asyncpg.UniqueViolationError:
                    raise ConcurrentModification(instance.id) from None
        finally:
            await conn.close()
        logger.debug(
            f"Persisted instance {instance.id} at version {instance.version} "
            f"({len(new_entries)} new event(s))"
        )

    async def load_instance(self, instance_id: str) -> ProcessInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM process_instances WHERE id = $1",
                instance_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        history = await self.load_history(instance_id)
        return self._row_to_instance(row, history)

    async def load_history(self, instance_id: str) -> list[AuditEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT sequence, timestamp, action, actor, details, previous_state, new_state "
                "FROM instance_events WHERE instance_id = $1 ORDER BY sequence",
                instance_id,
            )
        finally:
            await conn.close()
        return [
            AuditEntry(
                sequence=r["sequence"],
                timestamp=r["timestamp"],
                action=r["action"],
                actor=r["actor"],
                details=_loads(r["details"]) or {},
                previous_state=_loads(r["previous_state"]),
                new_state=_loads(r["new_state"]),
            )
            for r in rows
        ]

    async def list_instances(self, criteria: InstanceFilter) -> list[ProcessInstance]:
        clauses: List[str] = []
        params: List[Any] = []
        if criteria.statuses:
            params.append([s.value for s in criteria.statuses])
            clauses.append(f"status = ANY(${len(params)})")
        if criteria.definition_id:
            params.append(criteria.definition_id)
            clauses.append(f"definition_id = ${len(params)}")
        if criteria.business_key:
            params.append(f"%{criteria.business_key}%")
            clauses.append(f"business_key ILIKE ${len(params)}")
        if criteria.priority:
            params.append(criteria.priority.value)
            clauses.append(f"priority = ${len(params)}")
        if criteria.tenant_id:
            params.append(criteria.tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([criteria.limit, criteria.offset])
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_INSTANCE_COLUMNS} FROM process_instances {where} "
                f"ORDER BY start_time DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}",
                *params,
            )
        finally:
            await conn.close()
        return [self._row_to_instance(r) for r in rows]

    async def count_instances(
        self, definition_id: str, statuses: Optional[List[InstanceStatus]] = None
    ) -> int:
        conn = await self._connect()
        try:
            if statuses:
                return await conn.fetchval(
                    "SELECT COUNT(*) FROM process_instances "
                    "WHERE definition_id = $1 AND status = ANY($2)",
                    definition_id,
                    [InstanceStatus(s).value for s in statuses],
                )
            return await conn.fetchval(
                "SELECT COUNT(*) FROM process_instances WHERE definition_id = $1",
                definition_id,
            )
        finally:
            await conn.close()
