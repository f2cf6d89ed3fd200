"""
procurex/audit.py

Audit sink helper utilities.

Goals:
- Capture WHO did WHAT to WHICH entity, keyed by the requisition's transaction id.
- Store username snapshot to preserve identity even if the user record changes later.
- Store IP address for traceability when running inside a request.

IMPORTANT:
- This helper ADDS AuditLog entries to the current SQLAlchemy session.
  The calling route controls transaction boundaries (commit/rollback),
  so an audit row is written if and only if the state change is.
- Never pass a plaintext PIN in `details`.
"""

from __future__ import annotations

from typing import Any, Optional

from flask import has_request_context, request

from .extensions import db
from .models import AuditLog, Requisition


def log_action(
    action: str,
    entity: Any,
    *,
    details: Optional[str] = None,
    actor: Any = None,
    transaction_id: Optional[str] = None,
) -> AuditLog:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        action: stable action code (e.g. UNMASK_RFQ, FINALIZE_AWARD)
        entity: SQLAlchemy model instance with .id (flushed)
        details: free text (never secrets)
        actor: security.Actor (or None for system-triggered transitions)
        transaction_id: correlation id; defaults to the owning requisition's

    SECURITY NOTE:
    - request.remote_addr is as Flask sees it. In production behind a reverse proxy,
      configure ProxyFix / trusted proxy headers to capture real client IP.
    """
    if not action:
        raise TypeError("log_action requires an action code.")

    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    if transaction_id is None:
        transaction_id = _transaction_id_for(entity)

    entry = AuditLog(
        user_id=getattr(actor, "id", None),
        username_snapshot=getattr(actor, "name", None) if actor is not None else "system",
        action=str(action),
        entity_type=entity.__class__.__name__,
        entity_id=str(entity_id),
        details=details,
        transaction_id=transaction_id,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
    return entry


def _transaction_id_for(entity: Any) -> Optional[str]:
    if isinstance(entity, Requisition):
        return entity.transaction_id
    requisition = getattr(entity, "requisition", None)
    if requisition is not None:
        return requisition.transaction_id
    return None


def audit_trail(requisition: Requisition) -> list[AuditLog]:
    """Entries for one requisition, oldest first."""
    return (
        AuditLog.query.filter_by(transaction_id=requisition.transaction_id)
        .order_by(AuditLog.id.asc())
        .all()
    )


def count_actions(requisition: Requisition, action: str) -> int:
    return AuditLog.query.filter_by(transaction_id=requisition.transaction_id, action=action).count()
