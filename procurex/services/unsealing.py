"""
Unsealing controller and quorum settings.

Seal state is derived from the requisition's `masked` flag and the number of
distinct director roles verified so far:

    Sealed     masked, nobody verified
    Unsealing  masked, some roles verified but fewer than the threshold
    Unsealed   masked = False (irreversible)

evaluate() runs inside the transaction of the triggering verify() or
settings update. It only ever clears `masked`, never sets it.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from ..audit import log_action
from ..errors import InvalidRequest
from ..extensions import db
from ..models import DIRECTOR_ROLES, Requisition, RequisitionStatus as S, Role
from ..security import Actor, Capability, require_capability
from ..utils import utcnow
from . import store
from .lifecycle import require_status, transition

log = logging.getLogger(__name__)


class SealState(str, enum.Enum):
    SEALED = "Sealed"
    UNSEALING = "Unsealing"
    UNSEALED = "Unsealed"


@dataclass(frozen=True)
class QuorumSettings:
    """Typed quorum configuration, validated when written."""

    unseal_threshold: int
    required_roles_for_opening: frozenset

    @classmethod
    def build(cls, unseal_threshold, required_roles_for_opening=None) -> "QuorumSettings":
        if isinstance(unseal_threshold, bool) or not isinstance(unseal_threshold, int):
            raise InvalidRequest("unseal_threshold must be an integer.")
        if unseal_threshold < 1:
            raise InvalidRequest("unseal_threshold must be at least 1.")
        if unseal_threshold > len(DIRECTOR_ROLES):
            raise InvalidRequest(
                f"unseal_threshold {unseal_threshold} exceeds the {len(DIRECTOR_ROLES)} "
                "director roles; the requisition could never unseal."
            )

        if required_roles_for_opening is None:
            roles = frozenset(DIRECTOR_ROLES)
        else:
            try:
                roles = frozenset(
                    r if isinstance(r, Role) else Role.parse(r) for r in required_roles_for_opening
                )
            except ValueError as exc:
                raise InvalidRequest(str(exc)) from exc
        if not roles:
            raise InvalidRequest("At least one role is required to open bids.")
        non_director = roles - frozenset(DIRECTOR_ROLES)
        if non_director:
            names = ", ".join(sorted(r.value for r in non_director))
            raise InvalidRequest(f"Only director roles can be required for opening: {names}.")

        return cls(unseal_threshold=unseal_threshold, required_roles_for_opening=roles)

    @classmethod
    def of(cls, requisition: Requisition) -> "QuorumSettings":
        return cls(
            unseal_threshold=requisition.unseal_threshold,
            required_roles_for_opening=requisition.required_opening_roles,
        )


def seal_state(requisition: Requisition, verified_count: int) -> SealState:
    if not requisition.masked:
        return SealState.UNSEALED
    if verified_count > 0:
        return SealState.UNSEALING
    return SealState.SEALED


def evaluate(requisition: Requisition, actor: Actor | None, verified_count: int | None = None) -> bool:
    """
    Unseal when distinct verified roles >= threshold.

    Returns True only on the call that performed the unseal; an already
    unsealed requisition is a no-op.
    """
    if not requisition.masked:
        return False

    if verified_count is None:
        verified_count = len(store.verified_roles(requisition.id))
    if verified_count < requisition.unseal_threshold:
        return False

    requisition.masked = False
    requisition.unsealed_at = utcnow()
    details = (
        f"{verified_count} of {requisition.unseal_threshold} required director roles verified; "
        "vendor quotations unmasked."
    )

    if requisition.status == S.SEALED.value:
        transition(requisition, S.UNSEALED, actor, action="UNMASK_RFQ", details=details)
    else:
        db.session.flush()
        log_action("UNMASK_RFQ", requisition, details=details, actor=actor)
    log.info("Requisition %s unsealed (%s verified roles)", requisition.id, verified_count)
    return True


def update_settings(requisition_id: int, settings: QuorumSettings, actor: Actor) -> tuple[Requisition, int]:
    """
    Store new quorum settings. Lowering the threshold to or below the
    already-verified count unseals immediately.
    """
    require_capability(actor, Capability.MANAGE_QUORUM)
    requisition = store.lock_requisition(requisition_id)
    require_status(
        requisition,
        S.DRAFT,
        S.PENDING_APPROVAL,
        S.APPROVED,
        S.ACCEPTING_QUOTES,
        S.READY_FOR_OPENING,
        S.SEALED,
        S.UNSEALED,
        action="changing quorum settings",
    )

    requisition.unseal_threshold = settings.unseal_threshold
    requisition.required_opening_roles = settings.required_roles_for_opening
    db.session.flush()

    opening = ", ".join(sorted(r.value for r in settings.required_roles_for_opening))
    log_action(
        "SET_QUORUM_SETTINGS",
        requisition,
        details=f"Unseal threshold {settings.unseal_threshold}; opening requires {opening}.",
        actor=actor,
    )

    verified_count = len(store.verified_roles(requisition.id))
    if requisition.status == S.SEALED.value:
        evaluate(requisition, actor, verified_count)
    return requisition, verified_count
