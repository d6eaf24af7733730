"""SQLite implementation of the process repository."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

from ..definitions import Category, ProcessDefinition
from ..errors import ConcurrentModification, DuplicateDefinition
from ..instances import AuditEntry, InstanceStatus, ProcessInstance
from ..instances.audit import entries_after
from .repository import ExpectedState, InstanceFilter, ProcessRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSTANCE_COLUMNS = (
    "id, definition_id, definition_version, business_key, status, current_step, "
    "variables, start_time, end_time, initiated_by, assigned_to, priority, "
    "tenant_id, department_id, version, updated_at"
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteProcessRepository(ProcessRepository):
    """Persist definitions and instances using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                document TEXT NOT NULL,
                UNIQUE (name, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition_version TEXT NOT NULL,
                business_key TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step TEXT NOT NULL,
                variables TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                initiated_by TEXT NOT NULL,
                assigned_to TEXT NOT NULL,
                priority TEXT NOT NULL,
                tenant_id TEXT,
                department_id TEXT,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instance_events (
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                action TEXT NOT NULL,
                actor TEXT NOT NULL,
                details TEXT,
                previous_state TEXT,
                new_state TEXT,
                PRIMARY KEY (instance_id, sequence)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_definition_status "
            "ON process_instances (definition_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock:
            cur = self._conn.cursor()
            try:
                result = work(cur)
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()
            return result

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _instance_params(instance: ProcessInstance) -> tuple:
        return (
            instance.id,
            instance.definition_id,
            instance.definition_version,
            instance.business_key,
            instance.status.value,
            instance.current_step,
            json.dumps(instance.variables),
            _iso(instance.start_time),
            _iso(instance.end_time),
            instance.initiated_by,
            json.dumps(instance.assigned_to),
            instance.priority.value,
            instance.tenant_id,
            instance.department_id,
            instance.version,
            _iso(instance.updated_at),
        )

    @staticmethod
    def _event_params(instance_id: str, entry: AuditEntry) -> tuple:
        return (
            instance_id,
            entry.sequence,
            _iso(entry.timestamp),
            entry.action.value,
            entry.actor,
            json.dumps(entry.details, default=str),
            json.dumps(entry.previous_state, default=str)
            if entry.previous_state is not None
            else None,
            json.dumps(entry.new_state, default=str)
            if entry.new_state is not None
            else None,
        )

    @staticmethod
    def _row_to_instance(
        row: sqlite3.Row, audit_log: list[AuditEntry] | None = None
    ) -> ProcessInstance:
        return ProcessInstance(
            id=row["id"],
            definition_id=row["definition_id"],
            definition_version=row["definition_version"],
            business_key=row["business_key"],
            status=row["status"],
            current_step=row["current_step"],
            variables=json.loads(row["variables"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            initiated_by=row["initiated_by"],
            assigned_to=json.loads(row["assigned_to"]),
            priority=row["priority"],
            tenant_id=row["tenant_id"],
            department_id=row["department_id"],
            version=row["version"],
            updated_at=_dt(row["updated_at"]),
            audit_log=audit_log or [],
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            sequence=row["sequence"],
            timestamp=_dt(row["timestamp"]),
            action=row["action"],
            actor=row["actor"],
            details=_loads(row["details"]) or {},
            previous_state=_loads(row["previous_state"]),
            new_state=_loads(row["new_state"]),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: ProcessDefinition) -> None:
        params = (
            definition.id,
            definition.name,
            definition.version,
            definition.description,
            definition.category.value,
            int(definition.is_active),
            _iso(definition.updated_at),
            definition.model_dump_json(),
        )

        def work(cur: sqlite3.Cursor) -> None:
            try:
                cur.execute(
                    """
                    INSERT INTO process_definitions
                        (id, name, version, description, category, is_active, updated_at, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        name = excluded.name,
                        version = excluded.version,
                        description = excluded.description,
                        category = excluded.category,
                        is_active = excluded.is_active,
                        updated_at = excluded.updated_at,
                        document = excluded.document
                    """,
                    params,
                )
            except sqlite3.IntegrityError:
                raise DuplicateDefinition(definition.name, definition.version) from None

        await asyncio.to_thread(self._transaction, work)
        logger.debug(f"Saved process definition {definition.id} to {self.db_path}")

    async def load_definition(self, definition_id: str) -> ProcessDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM process_definitions WHERE id = ?",
            definition_id,
        )
        if not row:
            return None
        return ProcessDefinition.model_validate_json(row["document"])

    async def list_definitions(
        self,
        category: Optional[Category] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[ProcessDefinition]:
        clauses: List[str] = []
        params: List[Any] = []
        if category is not None:
            clauses.append("category = ?")
            params.append(Category(category).value)
        if active is not None:
            clauses.append("is_active = ?")
            params.append(int(active))
        if search:
            clauses.append("(LOWER(name) LIKE ? OR LOWER(description) LIKE ?)")
            params.extend([f"%{search.lower()}%"] * 2)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document FROM process_definitions {where} ORDER BY updated_at DESC",
            *params,
        )
        return [ProcessDefinition.model_validate_json(r["document"]) for r in rows]

    async def delete_definition(self, definition_id: str) -> bool:
        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute("DELETE FROM process_definitions WHERE id = ?", (definition_id,))
            return cur.rowcount > 0

        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Instances
    async def persist_instance(
        self, instance: ProcessInstance, expected: ExpectedState | None = None
    ) -> None:
        new_entries = (
            list(instance.audit_log)
            if expected is None
            else entries_after(instance, expected.version)
        )
        events = [self._event_params(instance.id, e) for e in new_entries]
        params = self._instance_params(instance)

        def work(cur: sqlite3.Cursor) -> None:
            if expected is None:
                try:
                    cur.execute(
                        f"INSERT INTO process_instances ({_INSTANCE_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        params,
                    )
                except sqlite3.IntegrityError:
                    raise ConcurrentModification(instance.id) from None
            else:
                cur.execute(
                    """
                    UPDATE process_instances SET
                        status = ?, current_step = ?, variables = ?, end_time = ?,
                        assigned_to = ?, priority = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ? AND status = ? AND current_step = ?
                    """,
                    (
                        instance.status.value,
                        instance.current_step,
                        json.dumps(instance.variables),
                        _iso(instance.end_time),
                        json.dumps(instance.assigned_to),
                        instance.priority.value,
                        instance.version,
                        _iso(instance.updated_at),
                        instance.id,
                        expected.version,
                        expected.status.value,
                        expected.current_step,
                    ),
                )
                if cur.rowcount != 1:
                    raise ConcurrentModification(instance.id, expected.version)
            try:
                cur.executemany(
                    """
                    INSERT INTO instance_events
                        (instance_id, sequence, timestamp, action, actor, details,
                         previous_state, new_state)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    events,
                )
            except sqlite3.IntegrityError:
                raise ConcurrentModification(instance.id) from None

        await asyncio.to_thread(self._transaction, work)
        logger.debug(
            f"Persisted instance {instance.id} at version {instance.version} "
            f"({len(events)} new event(s))"
        )

    async def load_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM process_instances WHERE id = ?",
            instance_id,
        )
        if not row:
            return None
        history = await self.load_history(instance_id)
        return self._row_to_instance(row, history)

    async def load_history(self, instance_id: str) -> list[AuditEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT sequence, timestamp, action, actor, details, previous_state, new_state "
            "FROM instance_events WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        return [self._row_to_entry(r) for r in rows]

    async def list_instances(self, criteria: InstanceFilter) -> list[ProcessInstance]:
        clauses: List[str] = []
        params: List[Any] = []
        if criteria.statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in criteria.statuses)})")
            params.extend(s.value for s in criteria.statuses)
        if criteria.definition_id:
            clauses.append("definition_id = ?")
            params.append(criteria.definition_id)
        if criteria.business_key:
            clauses.append("LOWER(business_key) LIKE ?")
            params.append(f"%{criteria.business_key.lower()}%")
        if criteria.priority:
            clauses.append("priority = ?")
            params.append(criteria.priority.value)
        if criteria.tenant_id:
            clauses.append("tenant_id = ?")
            params.append(criteria.tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_INSTANCE_COLUMNS} FROM process_instances {where} "
            "ORDER BY start_time DESC LIMIT ? OFFSET ?",
            *params,
            criteria.limit,
            criteria.offset,
        )
        return [self._row_to_instance(r) for r in rows]

    async def count_instances(
        self, definition_id: str, statuses: Optional[List[InstanceStatus]] = None
    ) -> int:
        query = "SELECT COUNT(*) AS n FROM process_instances WHERE definition_id = ?"
        params: List[Any] = [definition_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(InstanceStatus(s).value for s in statuses)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return row["n"] if row else 0
