"""
Requisition lifecycle state machine.

    Draft -> PendingApproval -> Approved -> Accepting_Quotes -> Ready_for_Opening
          -> Sealed -> Unsealed -> Scoring_In_Progress -> Scoring_Complete
          -> Awarded -> Closed

Any state except Disputed may be forced to Disputed; reopen() restores the
state it was disputed from.

Backward edges: Ready_for_Opening -> Accepting_Quotes (reopen_rfq) and
Awarded -> Scoring_In_Progress (award.reset_award, exhausted awards only).

Transitions are driven by:
- this module (approval flow, quote window, bid opening, disputes)
- pins/unsealing (Ready_for_Opening -> Sealed -> Unsealed)
- committee (Scoring_In_Progress -> Scoring_Complete)
- award (Scoring_Complete -> Awarded, Awarded -> Closed)

Every transition writes exactly one audit entry.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import update

from ..audit import log_action
from ..errors import Forbidden, InvalidRequest, InvalidState, NotFound
from ..extensions import db
from ..models import Quotation, Requisition, RequisitionStatus as S, Vendor
from ..notifications import Notification, send
from ..security import Actor, Capability, has_capability, require_capability
from ..utils import utcnow
from . import store

log = logging.getLogger(__name__)


TRANSITIONS: dict[S, frozenset[S]] = {
    S.DRAFT: frozenset({S.PENDING_APPROVAL}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.DRAFT}),
    S.APPROVED: frozenset({S.ACCEPTING_QUOTES}),
    S.ACCEPTING_QUOTES: frozenset({S.READY_FOR_OPENING}),
    S.READY_FOR_OPENING: frozenset({S.SEALED, S.ACCEPTING_QUOTES}),
    S.SEALED: frozenset({S.UNSEALED}),
    S.UNSEALED: frozenset({S.SCORING_IN_PROGRESS}),
    S.SCORING_IN_PROGRESS: frozenset({S.SCORING_COMPLETE}),
    S.SCORING_COMPLETE: frozenset({S.AWARDED}),
    S.AWARDED: frozenset({S.CLOSED, S.SCORING_IN_PROGRESS}),
    S.CLOSED: frozenset(),
    S.DISPUTED: frozenset(),
}


def can_transition(current: S, target: S) -> bool:
    if target is S.DISPUTED:
        return current is not S.DISPUTED
    return target in TRANSITIONS[current]


def require_status(requisition: Requisition, *allowed: S, action: str = "this operation") -> S:
    current = S(requisition.status)
    if current not in allowed:
        expected = ", ".join(s.value for s in allowed)
        raise InvalidState(
            f"Requisition {requisition.id} is {current.value}; {action} requires {expected}."
        )
    return current


def transition(
    requisition: Requisition,
    target: S,
    actor: Actor | None,
    *,
    action: str = "STATUS_CHANGE",
    details: str | None = None,
) -> None:
    """Move to `target` or raise InvalidState. Writes one audit entry."""
    current = S(requisition.status)
    if not can_transition(current, target):
        raise InvalidState(
            f"Requisition {requisition.id} cannot move from {current.value} to {target.value}."
        )
    requisition.status = target.value
    db.session.flush()
    log_action(
        action,
        requisition,
        details=details or f"Status changed from {current.value} to {target.value}.",
        actor=actor,
    )
    log.info("Requisition %s: %s -> %s (%s)", requisition.id, current.value, target.value, action)


def conditional_transition(
    requisition: Requisition,
    expected: S,
    target: S,
    actor: Actor | None,
    *,
    action: str,
    details: str | None = None,
) -> bool:
    """
    UPDATE requisitions SET status = target WHERE id = ? AND status = expected.

    Returns True only for the call that actually moved the row, so duplicate or
    concurrent triggers produce exactly one transition (and one audit entry).
    """
    result = db.session.execute(
        update(Requisition)
        .where(Requisition.id == requisition.id, Requisition.status == expected.value)
        .values(status=target.value)
    )
    if result.rowcount != 1:
        return False

    db.session.refresh(requisition)
    log_action(
        action,
        requisition,
        details=details or f"Status changed from {expected.value} to {target.value}.",
        actor=actor,
    )
    log.info("Requisition %s: %s -> %s (%s)", requisition.id, expected.value, target.value, action)
    return True


# ---------------------------------------------------------------------
# Approval flow
# ---------------------------------------------------------------------
def create_requisition(actor: Actor, title: str, description: str | None = None) -> Requisition:
    require_capability(actor, Capability.CREATE_REQUISITION)
    title = (title or "").strip()
    if not title:
        raise InvalidRequest("A requisition title is required.")

    requisition = Requisition(
        title=title,
        description=(description or "").strip() or None,
        requester_id=actor.id,
        status=S.DRAFT.value,
    )
    db.session.add(requisition)
    db.session.flush()
    log_action("CREATE_REQUISITION", requisition, details=f"Requisition '{title}' created.", actor=actor)
    return requisition


def submit_for_approval(requisition_id: int, actor: Actor) -> Requisition:
    requisition = store.lock_requisition(requisition_id)
    if requisition.requester_id != actor.id and not has_capability(actor, Capability.MANAGE_RFQ):
        raise Forbidden("Only the requester or a procurement officer can submit this requisition.")
    require_status(requisition, S.DRAFT, action="submitting for approval")
    transition(requisition, S.PENDING_APPROVAL, actor, action="SUBMIT_FOR_APPROVAL")
    return requisition


def approve(requisition_id: int, actor: Actor, *, approved: bool = True, comment: str | None = None) -> Requisition:
    """Approve for sourcing, or send back to Draft."""
    require_capability(actor, Capability.APPROVE_REQUISITION)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.PENDING_APPROVAL, action="approval")

    if approved:
        transition(requisition, S.APPROVED, actor, action="APPROVE_REQUISITION", details=comment)
    else:
        transition(
            requisition,
            S.DRAFT,
            actor,
            action="REJECT_REQUISITION",
            details=comment or "Requisition returned to draft.",
        )
    return requisition


def open_for_quotes(requisition_id: int, quote_deadline: datetime, actor: Actor, now: datetime | None = None) -> Requisition:
    require_capability(actor, Capability.MANAGE_RFQ)
    now = now or utcnow()
    if quote_deadline is None or quote_deadline <= now:
        raise InvalidRequest("The quote deadline must be in the future.")

    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.APPROVED, action="sending the RFQ")
    requisition.quote_deadline = quote_deadline
    transition(
        requisition,
        S.ACCEPTING_QUOTES,
        actor,
        action="SEND_RFQ",
        details=f"Accepting quotations until {quote_deadline.isoformat()}.",
    )
    return requisition


def submit_quotation(
    requisition_id: int,
    actor: Actor,
    *,
    total_price: Decimal | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Quotation:
    require_capability(actor, Capability.SUBMIT_QUOTATION)
    vendor = Vendor.query.filter_by(user_id=actor.id).first()
    if vendor is None:
        raise Forbidden("Only a registered vendor can submit a quotation.")

    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.ACCEPTING_QUOTES, action="submitting a quotation")
    if requisition.quote_deadline is not None and now >= requisition.quote_deadline:
        raise InvalidState("The quotation deadline has passed.")

    if Quotation.query.filter_by(requisition_id=requisition.id, vendor_id=vendor.id).first():
        raise InvalidState(f"{vendor.name} has already submitted a quotation.")

    quotation = Quotation(
        requisition=requisition,
        vendor=vendor,
        total_price=total_price,
        notes=(notes or "").strip() or None,
        submitted_at=now,
    )
    db.session.add(quotation)
    db.session.flush()
    log_action("SUBMIT_QUOTATION", quotation, details=f"Quotation received from {vendor.name}.", actor=actor)
    return quotation


# ---------------------------------------------------------------------
# Time-driven quote window close
# ---------------------------------------------------------------------
def close_quote_window(requisition_id: int, now: datetime | None = None, actor: Actor | None = None) -> bool:
    """
    Accepting_Quotes -> Ready_for_Opening once the deadline has passed.

    Guarded: a requisition in any other state, or whose deadline has not passed,
    is a no-op success (returns False). Pollers may call this repeatedly.
    """
    now = now or utcnow()
    requisition = store.get_requisition(requisition_id)

    if requisition.status != S.ACCEPTING_QUOTES.value:
        return False
    if requisition.quote_deadline is None or now < requisition.quote_deadline:
        return False

    return conditional_transition(
        requisition,
        S.ACCEPTING_QUOTES,
        S.READY_FOR_OPENING,
        actor,
        action="AUTO_UPDATE_STATUS",
        details="Quotation deadline passed; requisition ready for opening.",
    )


def reopen_rfq(requisition_id: int, new_deadline: datetime, actor: Actor, now: datetime | None = None) -> list[Vendor]:
    """
    Ready_for_Opening -> Accepting_Quotes with a new deadline.

    For windows that closed with too few quotations. Only possible before any
    PIN is issued. Vendors without a quotation are invited; returns them.
    """
    require_capability(actor, Capability.MANAGE_RFQ)
    now = now or utcnow()
    if new_deadline is None or new_deadline <= now:
        raise InvalidRequest("The new quote deadline must be in the future.")

    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.READY_FOR_OPENING, action="re-opening the RFQ")

    quoted = {q.vendor_id for q in requisition.quotations}
    invited = [v for v in Vendor.query.order_by(Vendor.id.asc()).all() if v.id not in quoted]
    if not invited:
        raise InvalidRequest("No vendors without a quotation are available to re-open the RFQ to.")

    requisition.quote_deadline = new_deadline
    transition(
        requisition,
        S.ACCEPTING_QUOTES,
        actor,
        action="REOPEN_RFQ",
        details=(
            f"RFQ re-opened until {new_deadline.isoformat()}; "
            f"{len(invited)} vendor(s) without a quotation invited."
        ),
    )

    for vendor in invited:
        delivered = send(
            Notification(
                to=vendor.email or "",
                subject=f"RFQ re-opened: {requisition.title}",
                body=(
                    f"Hello {vendor.name},\n"
                    f"Requisition {requisition.id} ({requisition.title}) is open for quotations again.\n"
                    f"New submission deadline: {new_deadline.isoformat()} UTC."
                ),
            )
        )
        if not delivered:
            log.warning("Requisition %s: RFQ re-open notice to vendor %s not delivered", requisition.id, vendor.id)
    return invited


# ---------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------
def open_bids(requisition_id: int, actor: Actor) -> Requisition:
    """
    Unsealed -> Scoring_In_Progress.

    Requires every role in the requisition's opening set to have verified, which
    is stricter than the unseal threshold.
    """
    require_capability(actor, Capability.OPEN_BIDS)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.UNSEALED, action="opening bids")

    missing = requisition.required_opening_roles - store.verified_roles(requisition.id)
    if missing:
        names = ", ".join(sorted(r.value for r in missing))
        raise InvalidState(f"Bid opening requires verification from: {names}.")

    requisition.bids_opened_at = utcnow()
    transition(
        requisition,
        S.SCORING_IN_PROGRESS,
        actor,
        action="OPEN_BIDS",
        details=f"Bids for requisition {requisition.id} opened after full director verification.",
    )
    return requisition


# ---------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------
def dispute(requisition_id: int, actor: Actor, reason: str | None = None) -> Requisition:
    require_capability(actor, Capability.RESOLVE_DISPUTES)
    requisition = store.lock_requisition(requisition_id)
    if requisition.status == S.DISPUTED.value:
        raise InvalidState(f"Requisition {requisition.id} is already disputed.")

    requisition.status_before_dispute = requisition.status
    transition(
        requisition,
        S.DISPUTED,
        actor,
        action="DISPUTE",
        details=reason or f"Requisition disputed while {requisition.status_before_dispute}.",
    )
    return requisition


def reopen(requisition_id: int, actor: Actor) -> Requisition:
    require_capability(actor, Capability.RESOLVE_DISPUTES)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.DISPUTED, action="reopening")

    if not requisition.status_before_dispute:
        raise NotFound("No pre-dispute state recorded for this requisition.")

    restored = requisition.status_before_dispute
    requisition.status = restored
    requisition.status_before_dispute = None
    db.session.flush()
    log_action("REOPEN", requisition, details=f"Dispute resolved; restored to {restored}.", actor=actor)
    return requisition
