"""
Committee assignment tracker.

A requisition has a financial and a technical committee (members may sit on
both). Every member ever assigned gets a CommitteeAssignment row recording
whether they have submitted their scores. Scoring is complete when the union
of both committees is non-empty and every member in it has submitted; the
Scoring_In_Progress -> Scoring_Complete transition then fires exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ..audit import log_action
from ..errors import Forbidden, InvalidRequest, InvalidState, NotFound
from ..extensions import db
from ..models import (
    CommitteeAssignment,
    CommitteeKind,
    Requisition,
    RequisitionCommitteeMember,
    RequisitionStatus as S,
    Role,
    User,
)
from ..security import Actor, Capability, require_capability
from ..utils import utcnow
from . import store
from .lifecycle import conditional_transition, require_status

log = logging.getLogger(__name__)

ASSIGNABLE_STATES = (
    S.APPROVED,
    S.ACCEPTING_QUOTES,
    S.READY_FOR_OPENING,
    S.SEALED,
    S.UNSEALED,
    S.SCORING_IN_PROGRESS,
)


@dataclass(frozen=True)
class SubmissionResult:
    newly_submitted: bool
    scoring_complete: bool


def _assignment(requisition: Requisition, user_id: int) -> CommitteeAssignment | None:
    for assignment in requisition.assignments:
        if assignment.user_id == user_id:
            return assignment
    return None


def _upsert_assignment(requisition: Requisition, user_id: int) -> CommitteeAssignment:
    assignment = _assignment(requisition, user_id)
    if assignment is None:
        assignment = CommitteeAssignment(requisition=requisition, user_id=user_id, scores_submitted=False)
        db.session.add(assignment)
    return assignment


def assign_committee(
    requisition_id: int,
    financial_ids,
    technical_ids,
    actor: Actor,
    scoring_deadline: datetime | None = None,
) -> Requisition:
    require_capability(actor, Capability.ASSIGN_COMMITTEE)
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, *ASSIGNABLE_STATES, action="assigning the evaluation committee")

    financial = list(dict.fromkeys(financial_ids or []))
    technical = list(dict.fromkeys(technical_ids or []))

    members: dict[int, User] = {}
    for user_id in financial + technical:
        if user_id in members:
            continue
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        members[user_id] = user

    # Membership is replaced; assignment rows are kept for everyone ever assigned.
    requisition.committee_members.clear()
    db.session.flush()
    for kind, ids in ((CommitteeKind.FINANCIAL, financial), (CommitteeKind.TECHNICAL, technical)):
        for user_id in ids:
            requisition.committee_members.append(
                RequisitionCommitteeMember(user_id=user_id, committee=kind.value)
            )

    for user_id, user in members.items():
        user.add_role(Role.COMMITTEE_MEMBER)
        _upsert_assignment(requisition, user_id)

    if scoring_deadline is not None:
        requisition.scoring_deadline = scoring_deadline

    db.session.flush()
    log_action(
        "ASSIGN_COMMITTEE",
        requisition,
        details=(
            f"Financial committee: {sorted(financial) or '-'}; "
            f"technical committee: {sorted(technical) or '-'}."
        ),
        actor=actor,
    )

    # Dropping the last outstanding member can complete scoring.
    if requisition.status == S.SCORING_IN_PROGRESS.value and _complete(requisition):
        conditional_transition(
            requisition,
            S.SCORING_IN_PROGRESS,
            S.SCORING_COMPLETE,
            actor,
            action="SCORING_COMPLETE",
            details="All assigned committee members have submitted scores.",
        )
    return requisition


def _complete(requisition: Requisition) -> bool:
    union = requisition.committee_member_ids()
    if not union:
        return False
    submitted = {a.user_id for a in requisition.assignments if a.scores_submitted}
    return union <= submitted


def is_scoring_complete(requisition_id: int) -> bool:
    return _complete(store.get_requisition(requisition_id))


def record_submission(
    requisition_id: int,
    member_id: int,
    now: datetime | None = None,
    actor: Actor | None = None,
) -> SubmissionResult:
    """Mark a member's scores as submitted. Resubmission is a no-op."""
    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)

    if member_id not in requisition.committee_member_ids():
        raise Forbidden(f"User {member_id} is not on the evaluation committee for requisition {requisition.id}.")

    assignment = _assignment(requisition, member_id)
    if assignment is not None and assignment.scores_submitted:
        return SubmissionResult(newly_submitted=False, scoring_complete=_complete(requisition))

    current = require_status(
        requisition,
        S.SCORING_IN_PROGRESS,
        S.SCORING_COMPLETE,
        action="submitting scores",
    )
    assignment = assignment or _upsert_assignment(requisition, member_id)

    if current is S.SCORING_COMPLETE:
        raise InvalidState("Scoring is already complete for this requisition.")

    deadline = assignment.individual_deadline or requisition.scoring_deadline
    if deadline is not None and now > deadline:
        raise InvalidState(f"The scoring deadline ({deadline.isoformat()}) has passed.")

    assignment.scores_submitted = True
    assignment.submitted_at = now
    db.session.flush()
    log_action(
        "SUBMIT_SCORES",
        requisition,
        details=f"Committee member {member_id} submitted final scores.",
        actor=actor,
    )

    completed = False
    if _complete(requisition):
        completed = conditional_transition(
            requisition,
            S.SCORING_IN_PROGRESS,
            S.SCORING_COMPLETE,
            actor,
            action="SCORING_COMPLETE",
            details="All assigned committee members have submitted scores.",
        )
    return SubmissionResult(
        newly_submitted=True,
        scoring_complete=completed or requisition.status == S.SCORING_COMPLETE.value,
    )


def scoring_progress(requisition_id: int) -> list[dict]:
    requisition = store.get_requisition(requisition_id)
    financial = requisition.committee_member_ids(CommitteeKind.FINANCIAL)
    technical = requisition.committee_member_ids(CommitteeKind.TECHNICAL)

    rows = []
    for user_id in sorted(financial | technical):
        assignment = _assignment(requisition, user_id)
        deadline = (assignment.individual_deadline if assignment else None) or requisition.scoring_deadline
        rows.append(
            {
                "member_id": user_id,
                "committees": [
                    kind.value
                    for kind, ids in ((CommitteeKind.FINANCIAL, financial), (CommitteeKind.TECHNICAL, technical))
                    if user_id in ids
                ],
                "scores_submitted": bool(assignment and assignment.scores_submitted),
                "submitted_at": assignment.submitted_at.isoformat() if assignment and assignment.submitted_at else None,
                "deadline": deadline.isoformat() if deadline else None,
            }
        )
    return rows


def extend_member_deadline(requisition_id: int, member_id: int, deadline: datetime, actor: Actor) -> CommitteeAssignment:
    require_capability(actor, Capability.ASSIGN_COMMITTEE)
    if deadline is None:
        raise InvalidRequest("A new deadline is required.")

    requisition = store.lock_requisition(requisition_id)
    assignment = _assignment(requisition, member_id)
    if assignment is None:
        raise NotFound(f"No committee assignment for user {member_id} on requisition {requisition.id}.")

    assignment.individual_deadline = deadline
    db.session.flush()
    log_action(
        "EXTEND_MEMBER_DEADLINE",
        requisition,
        details=f"Scoring deadline for committee member {member_id} extended to {deadline.isoformat()}.",
        actor=actor,
    )
    return assignment


def extend_scoring_deadline(requisition_id: int, deadline: datetime, actor: Actor) -> Requisition:
    require_capability(actor, Capability.ASSIGN_COMMITTEE)
    if deadline is None:
        raise InvalidRequest("A new deadline is required.")

    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, *ASSIGNABLE_STATES, action="extending the scoring deadline")
    requisition.scoring_deadline = deadline
    db.session.flush()
    log_action(
        "EXTEND_SCORING_DEADLINE",
        requisition,
        details=f"Committee scoring deadline extended to {deadline.isoformat()}.",
        actor=actor,
    )
    return requisition
