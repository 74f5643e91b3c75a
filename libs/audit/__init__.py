"""Helpers to record and read back audit trail events."""
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from infra import AuditLog


def record_audit(
    db: Session,
    *,
    service: str,
    action: str,
    actor_id: str,
    subject_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None,
) -> AuditLog:
    """Add an :class:`AuditLog` entry to ``db`` and flush it.

    The caller owns the transaction, so the entry commits together with the
    state change it describes.
    """

    entry = AuditLog(
        service=service,
        action=action,
        actor_id=actor_id,
        subject_id=subject_id,
        details=details or {},
        message=message,
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit_entries(
    db: Session,
    *,
    service: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 100,
) -> Sequence[AuditLog]:
    """Return the most recent entries first, optionally scoped to a subject."""

    stmt = select(AuditLog)
    if service is not None:
        stmt = stmt.where(AuditLog.service == service)
    if subject_id is not None:
        stmt = stmt.where(AuditLog.subject_id == subject_id)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    return db.execute(stmt).scalars().all()


__all__ = ["list_audit_entries", "record_audit"]
