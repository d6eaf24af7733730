"""Append-only audit trail helpers.

Entries are only ever added through :func:`record`, which assigns the next
sequence number and keeps timestamps non-decreasing even if the wall clock
steps backwards between two operations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import AuditAction, AuditEntry, ProcessInstance


def record(
    instance: ProcessInstance,
    action: AuditAction,
    actor: str,
    now: datetime,
    details: Optional[Dict[str, Any]] = None,
    previous_state: Optional[Dict[str, Any]] = None,
    new_state: Optional[Dict[str, Any]] = None,
) -> ProcessInstance:
    """Return a copy of ``instance`` with one entry appended to its log."""
    timestamp = now
    if instance.audit_log and instance.audit_log[-1].timestamp > timestamp:
        timestamp = instance.audit_log[-1].timestamp

    entry = AuditEntry(
        sequence=instance.version + 1,
        timestamp=timestamp,
        action=action,
        actor=actor,
        details=details or {},
        previous_state=previous_state,
        new_state=new_state,
    )
    return instance.model_copy(
        update={
            "audit_log": [*instance.audit_log, entry],
            "version": entry.sequence,
            "updated_at": timestamp,
        }
    )


def entries_after(instance: ProcessInstance, version: int) -> List[AuditEntry]:
    """Entries appended after ``version``; what a commit must persist."""
    return [entry for entry in instance.audit_log if entry.sequence > version]


def retry_attempts(instance: ProcessInstance) -> int:
    return sum(1 for entry in instance.audit_log if entry.action is AuditAction.RETRY)
