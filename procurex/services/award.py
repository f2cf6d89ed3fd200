"""
Award resolution engine.

Ranks arrive from scoring (record_ranks) and are read-only afterwards.

finalize()        best-ranked quotation -> Awarded, other Submitted -> Standby,
                  requisition Scoring_Complete -> Awarded.
promote_standby() current awardee -> Rejected, best Standby -> Awarded; when no
                  Standby is left the award is "exhausted" (reported, not raised).
reset_award()     exhausted award -> every quotation back to Submitted, unranked;
                  requisition Awarded -> Scoring_In_Progress for a new round.

Ordering key everywhere is (rank, quotation id): ties on rank, which only
come from inconsistent upstream data, resolve to the lowest id so retries are
reproducible.

Both finalize() and promote_standby() lock the requisition row and its
quotation rows first, so two promotions can never run side by side.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..audit import log_action
from ..errors import Exhausted, Expired, Forbidden, InvalidRequest, InvalidState, NotFound
from ..extensions import db
from ..models import Quotation, QuotationStatus as Q, Requisition, RequisitionStatus as S, Vendor
from ..notifications import Notification, send
from ..security import SYSTEM_ACTOR, Actor, Capability, require_capability
from ..utils import utcnow
from . import store
from .lifecycle import require_status, transition

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Pure ranking / promotion step
# ---------------------------------------------------------------------
class AwardStepKind(str, enum.Enum):
    PROMOTE = "Promote"
    EXHAUSTED = "Exhausted"


@dataclass(frozen=True)
class AwardStep:
    kind: AwardStepKind
    quotation_id: Optional[int] = None


def _rank_key(quotation) -> tuple:
    return (quotation.rank, quotation.id)


def ranked(quotations: Iterable) -> list:
    """Non-rejected quotations with a rank, best first."""
    return sorted(
        (q for q in quotations if q.status != Q.REJECTED.value and q.rank is not None),
        key=_rank_key,
    )


def advance(quotations: Iterable) -> AwardStep:
    """Next step of the standby cascade, given the quotations after the current awardee was rejected."""
    standby = [q for q in ranked(quotations) if q.status == Q.STANDBY.value]
    if not standby:
        return AwardStep(AwardStepKind.EXHAUSTED)
    return AwardStep(AwardStepKind.PROMOTE, standby[0].id)


class PromotionOutcome(str, enum.Enum):
    PROMOTED = "Promoted"
    EXHAUSTED = "Exhausted"


@dataclass(frozen=True)
class PromotionResult:
    outcome: PromotionOutcome
    rejected_quotation_id: Optional[int] = None
    promoted_quotation_id: Optional[int] = None
    promoted_vendor_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "rejected_quotation_id": self.rejected_quotation_id,
            "promoted_quotation_id": self.promoted_quotation_id,
            "promoted_vendor_id": self.promoted_vendor_id,
        }


def awarded_quotation(quotations: Iterable) -> Optional[Quotation]:
    for q in quotations:
        if q.status == Q.AWARDED.value:
            return q
    return None


# ---------------------------------------------------------------------
# Ranks from scoring
# ---------------------------------------------------------------------
def record_ranks(requisition_id: int, ranks: dict, actor: Actor) -> list[Quotation]:
    """Store finalized ranks ({quotation_id: rank or None})."""
    require_capability(actor, Capability.RECORD_RANKS)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.SCORING_IN_PROGRESS, S.SCORING_COMPLETE, action="recording ranks")

    quotations = {q.id: q for q in store.lock_quotations(requisition)}
    for quotation_id, rank in ranks.items():
        if quotation_id not in quotations:
            raise NotFound(f"Quotation {quotation_id} does not belong to requisition {requisition.id}.")
        if rank is not None and (isinstance(rank, bool) or not isinstance(rank, int) or rank < 1):
            raise InvalidRequest(f"Rank for quotation {quotation_id} must be a positive integer.")
        quotations[quotation_id].rank = rank

    seen: dict[int, int] = {}
    for q in quotations.values():
        if q.status == Q.REJECTED.value or q.rank is None:
            continue
        if q.rank in seen:
            raise InvalidRequest(f"Quotations {seen[q.rank]} and {q.id} share rank {q.rank}.")
        seen[q.rank] = q.id

    db.session.flush()
    log_action(
        "RECORD_RANKS",
        requisition,
        details="Ranks: " + ", ".join(f"#{qid}={rank}" for qid, rank in sorted(seen.items())),
        actor=actor,
    )
    return sorted(quotations.values(), key=lambda q: q.id)


# ---------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------
def finalize(requisition_id: int, actor: Actor) -> Quotation:
    require_capability(actor, Capability.FINALIZE_AWARD)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.SCORING_COMPLETE, action="award finalization")

    quotations = store.lock_quotations(requisition)
    order = ranked(quotations)
    if not order:
        raise InvalidState(f"Requisition {requisition.id} has no ranked quotation to award.")

    winner = order[0]
    for q in quotations:
        if q.id == winner.id:
            q.status = Q.AWARDED.value
        elif q.status in (Q.SUBMITTED.value, Q.AWARDED.value):
            q.status = Q.STANDBY.value

    requisition.award_exhausted_at = None
    standby = len(order) - 1
    transition(
        requisition,
        S.AWARDED,
        actor,
        action="FINALIZE_AWARD",
        details=(
            f"Quotation {winner.id} (vendor {winner.vendor_id}, rank {winner.rank}) awarded; "
            f"{standby} ranked standby quotation(s)."
        ),
    )
    return winner


# ---------------------------------------------------------------------
# Vendor notification
# ---------------------------------------------------------------------
def notify_vendor(requisition_id: int, deadline: datetime, actor: Actor, now: datetime | None = None) -> Quotation:
    require_capability(actor, Capability.NOTIFY_VENDOR)
    now = now or utcnow()
    if deadline is None or deadline <= now:
        raise InvalidRequest("The award response deadline must be in the future.")

    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.AWARDED, action="vendor notification")
    quotation = awarded_quotation(requisition.quotations)
    if quotation is None:
        if requisition.award_exhausted_at is not None:
            raise Exhausted(f"Requisition {requisition.id} has no standby vendor left; reset the award first.")
        raise InvalidState(f"Requisition {requisition.id} has no awarded quotation to notify.")

    requisition.award_response_deadline = deadline
    db.session.flush()

    vendor = quotation.vendor
    delivered = send(
        Notification(
            to=(vendor.email if vendor else "") or "",
            subject=f"Contract awarded: {requisition.title}",
            body=(
                f"Congratulations, {vendor.name if vendor else 'vendor'}.\n"
                f"You have been awarded requisition {requisition.id} ({requisition.title}).\n"
                f"Please accept or decline by {deadline.isoformat()} UTC."
            ),
        )
    )
    if not delivered:
        log.warning("Requisition %s: award notice to vendor %s not delivered", requisition.id, quotation.vendor_id)

    log_action(
        "NOTIFY_VENDOR",
        requisition,
        details=f"Award notification sent to vendor {quotation.vendor_id}; respond by {deadline.isoformat()}.",
        actor=actor,
    )
    return quotation


# ---------------------------------------------------------------------
# Standby promotion
# ---------------------------------------------------------------------
def _promote_locked(requisition: Requisition, actor: Actor, now: datetime) -> PromotionResult:
    quotations = store.lock_quotations(requisition)

    rejected_id = None
    current = awarded_quotation(quotations)
    if current is not None:
        current.status = Q.REJECTED.value
        rejected_id = current.id

    requisition.award_response_deadline = None
    step = advance(quotations)

    if step.kind is AwardStepKind.PROMOTE:
        promoted = next(q for q in quotations if q.id == step.quotation_id)
        promoted.status = Q.AWARDED.value
        db.session.flush()
        log_action(
            "PROMOTE_STANDBY_AWARD",
            requisition,
            details=(
                f"Quotation {rejected_id} rejected; standby quotation {promoted.id} "
                f"(vendor {promoted.vendor_id}, rank {promoted.rank}) awarded."
            ),
            actor=actor,
        )
        log.info("Requisition %s: promoted standby quotation %s", requisition.id, promoted.id)
        return PromotionResult(
            PromotionOutcome.PROMOTED,
            rejected_quotation_id=rejected_id,
            promoted_quotation_id=promoted.id,
            promoted_vendor_id=promoted.vendor_id,
        )

    first_exhaustion = requisition.award_exhausted_at is None
    if first_exhaustion:
        requisition.award_exhausted_at = now
    db.session.flush()
    if first_exhaustion or rejected_id is not None:
        log_action(
            "AWARD_EXHAUSTED",
            requisition,
            details=f"Quotation {rejected_id} rejected; no standby vendor remains.",
            actor=actor,
        )
    log.info("Requisition %s: standby list exhausted", requisition.id)
    return PromotionResult(PromotionOutcome.EXHAUSTED, rejected_quotation_id=rejected_id)


def promote_standby(requisition_id: int, actor: Actor, now: datetime | None = None) -> PromotionResult:
    require_capability(actor, Capability.PROMOTE_STANDBY)
    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.AWARDED, action="standby promotion")
    return _promote_locked(requisition, actor, now)


# ---------------------------------------------------------------------
# Vendor response
# ---------------------------------------------------------------------
def respond_to_award(requisition_id: int, actor: Actor, accept: bool, now: datetime | None = None):
    """Awarded vendor accepts (Awarded -> Closed) or declines (standby promotion)."""
    require_capability(actor, Capability.RESPOND_TO_AWARD)
    vendor = Vendor.query.filter_by(user_id=actor.id).first()
    if vendor is None:
        raise Forbidden("Only a registered vendor can respond to an award.")

    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.AWARDED, action="responding to the award")

    quotation = awarded_quotation(requisition.quotations)
    if quotation is None or quotation.vendor_id != vendor.id:
        raise Forbidden(f"{vendor.name} does not hold the current award.")
    if requisition.award_response_deadline is not None and now > requisition.award_response_deadline:
        raise Expired("The award response deadline has passed.")

    if accept:
        transition(
            requisition,
            S.CLOSED,
            actor,
            action="ACCEPT_AWARD",
            details=f"{vendor.name} accepted the award (quotation {quotation.id}).",
        )
        return None

    log_action("DECLINE_AWARD", quotation, details=f"{vendor.name} declined the award.", actor=actor)
    return _promote_locked(requisition, actor, now)


def due_award_responses(now: datetime) -> list[int]:
    return [
        row.id
        for row in Requisition.query.filter(
            Requisition.status == S.AWARDED.value,
            Requisition.award_response_deadline.isnot(None),
            Requisition.award_response_deadline < now,
        )
        .order_by(Requisition.id.asc())
        .all()
    ]


def expire_award_response(requisition_id: int, now: datetime | None = None) -> Optional[PromotionResult]:
    """Promote past the awardee if their response deadline has passed; None when nothing is due."""
    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    deadline = requisition.award_response_deadline
    if requisition.status != S.AWARDED.value or deadline is None or deadline >= now:
        return None

    log_action(
        "AWARD_RESPONSE_EXPIRED",
        requisition,
        details=f"No vendor response by {deadline.isoformat()}.",
        actor=SYSTEM_ACTOR,
    )
    return _promote_locked(requisition, SYSTEM_ACTOR, now)


def expire_award_responses(now: datetime | None = None) -> list[tuple[int, PromotionResult]]:
    now = now or utcnow()
    results = []
    for requisition_id in due_award_responses(now):
        result = expire_award_response(requisition_id, now)
        if result is not None:
            results.append((requisition_id, result))
    return results


# ---------------------------------------------------------------------
# Reset after exhaustion
# ---------------------------------------------------------------------
def reset_award(requisition_id: int, actor: Actor) -> Requisition:
    """
    Send an exhausted award back to scoring.

    Every quotation returns to Submitted without a rank, committee submissions
    and the scoring/response deadlines are cleared, and the requisition moves
    Awarded -> Scoring_In_Progress so the committee can score and rank again.
    Membership and director verification are kept.
    """
    require_capability(actor, Capability.RESET_AWARD)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, S.AWARDED, action="resetting the award")

    quotations = store.lock_quotations(requisition)
    if awarded_quotation(quotations) is not None or requisition.award_exhausted_at is None:
        raise InvalidState(f"Requisition {requisition.id} still has an award in play; only an exhausted award can be reset.")

    for q in quotations:
        q.status = Q.SUBMITTED.value
        q.rank = None
    for assignment in requisition.assignments:
        assignment.scores_submitted = False
        assignment.submitted_at = None
        assignment.individual_deadline = None

    requisition.scoring_deadline = None
    requisition.award_response_deadline = None
    requisition.award_exhausted_at = None
    transition(
        requisition,
        S.SCORING_IN_PROGRESS,
        actor,
        action="RESET_AWARD",
        details=(
            f"Award reset after the standby list was exhausted; {len(quotations)} quotation(s) "
            "returned to scoring."
        ),
    )
    return requisition

