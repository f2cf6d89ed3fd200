"""
Persistence helpers: requisition row locking and the Secret Store queries.

No business rules live here. Callers (the services) decide what to do with
the rows; this module only knows how to find, lock and flag them.

Locking:
- lock_requisition() issues SELECT ... FOR UPDATE on the requisition row, which
  serializes verify / finalize / promote / scoring for one requisition while
  leaving other requisitions independent. SQLite ignores FOR UPDATE; there the
  database-level write lock gives the same serialization.
"""

from __future__ import annotations

from ..errors import NotFound
from ..extensions import db
from ..models import DIRECTOR_ROLES, Pin, Quotation, Requisition, Role


def get_requisition(requisition_id: int) -> Requisition:
    requisition = db.session.get(Requisition, requisition_id)
    if requisition is None:
        raise NotFound(f"Requisition {requisition_id} not found.")
    return requisition


def lock_requisition(requisition_id: int) -> Requisition:
    requisition = (
        Requisition.query.filter_by(id=requisition_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if requisition is None:
        raise NotFound(f"Requisition {requisition_id} not found.")
    return requisition


def lock_quotations(requisition: Requisition) -> list[Quotation]:
    return (
        Quotation.query.filter_by(requisition_id=requisition.id)
        .order_by(Quotation.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )


# ---------------------------------------------------------------------
# Secret Store
# ---------------------------------------------------------------------
def outstanding_pins(requisition_id: int, role: Role, recipient_id: int | None = None, *, any_recipient: bool = False):
    """Unused, unrevoked PINs for (requisition, role), newest first. Expiry is left to the caller."""
    q = Pin.query.filter(
        Pin.requisition_id == requisition_id,
        Pin.role_name == role.value,
        Pin.used.is_(False),
        Pin.revoked_at.is_(None),
    )
    if not any_recipient:
        if recipient_id is None:
            q = q.filter(Pin.recipient_id.is_(None))
        else:
            q = q.filter((Pin.recipient_id.is_(None)) | (Pin.recipient_id == recipient_id))
    return q.order_by(Pin.generated_at.desc(), Pin.id.desc()).all()


def revoke_outstanding(requisition_id: int, role: Role, recipient_id: int | None, now) -> int:
    """Revoke earlier outstanding PINs for exactly this (requisition, role, recipient)."""
    q = Pin.query.filter(
        Pin.requisition_id == requisition_id,
        Pin.role_name == role.value,
        Pin.used.is_(False),
        Pin.revoked_at.is_(None),
    )
    if recipient_id is None:
        q = q.filter(Pin.recipient_id.is_(None))
    else:
        q = q.filter(Pin.recipient_id == recipient_id)

    revoked = 0
    for pin in q.all():
        pin.revoked_at = now
        revoked += 1
    return revoked


def revoke_all(requisition_id: int, now) -> int:
    """Administrative re-key: every PIN of the requisition stops counting."""
    revoked = 0
    for pin in Pin.query.filter(Pin.requisition_id == requisition_id, Pin.revoked_at.is_(None)).all():
        pin.revoked_at = now
        revoked += 1
    return revoked


def verified_roles(requisition_id: int) -> frozenset[Role]:
    """Distinct director roles with at least one used, unrevoked PIN."""
    rows = (
        db.session.query(Pin.role_name)
        .filter(
            Pin.requisition_id == requisition_id,
            Pin.used.is_(True),
            Pin.revoked_at.is_(None),
            Pin.role_name.in_([r.value for r in DIRECTOR_ROLES]),
        )
        .distinct()
        .all()
    )
    return frozenset(Role(row[0]) for row in rows)


def has_verified(requisition_id: int, role: Role, user_id: int | None) -> bool:
    if user_id is None:
        return False
    return (
        Pin.query.filter(
            Pin.requisition_id == requisition_id,
            Pin.role_name == role.value,
            Pin.used.is_(True),
            Pin.revoked_at.is_(None),
            Pin.used_by_id == user_id,
        ).first()
        is not None
    )
