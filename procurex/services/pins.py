"""
Quorum verifier: one-time director PINs.

issue()   generate a numeric PIN, store only its werkzeug hash, revoke earlier
          outstanding PINs for the same (requisition, role, recipient), hand
          the plaintext back exactly once.
verify()  check a candidate against the newest usable PIN for (requisition, role),
          consume it on match, re-tally distinct verified roles and let the
          unsealing controller react, all in the caller's transaction.

Hash comparison goes through werkzeug.security.check_password_hash, which
compares digests with hmac.compare_digest.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from werkzeug.security import check_password_hash, generate_password_hash

from ..audit import log_action
from ..errors import AlreadyVerified, Expired, Forbidden, InvalidRequest, InvalidSecret, NotFound
from ..extensions import db
from ..models import DIRECTOR_ROLES, Pin, Requisition, RequisitionStatus as S, Role, User, UserRole
from ..notifications import Notification, send
from ..security import Actor, Capability, has_capability, require_capability
from ..utils import utcnow
from . import store, unsealing
from .lifecycle import require_status, transition

log = logging.getLogger(__name__)

ISSUABLE_STATES = (S.READY_FOR_OPENING, S.SEALED, S.UNSEALED)
VERIFIABLE_STATES = (S.SEALED, S.UNSEALED)


@dataclass(frozen=True)
class IssuedPin:
    pin_id: int
    role: Role
    recipient_id: int | None
    expires_at: datetime
    plaintext: str = field(repr=False)


@dataclass(frozen=True)
class VerifyResult:
    verified: bool
    quorum_reached: bool
    unsealed: bool
    verified_count: int
    threshold: int

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.verified_count)


@dataclass(frozen=True)
class PreviewResult:
    would_unseal: bool
    verified_count: int
    threshold: int

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.verified_count)


def generate_numeric_pin(length: int) -> str:
    """Uniform over 10**length values, zero padded."""
    return str(secrets.randbelow(10 ** length)).zfill(length)


def _director_role(role) -> Role:
    try:
        parsed = role if isinstance(role, Role) else Role.parse(role)
    except ValueError as exc:
        raise InvalidRequest(str(exc)) from exc
    if parsed not in DIRECTOR_ROLES:
        raise InvalidRequest(f"{parsed.value} is not a sealing (director) role.")
    return parsed


# ---------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------
def issue(
    requisition_id: int,
    role,
    actor: Actor,
    recipient_id: int | None = None,
    now: datetime | None = None,
) -> IssuedPin:
    role = _director_role(role)

    if not has_capability(actor, Capability.ISSUE_PINS):
        # Directors may request their own PIN for a role they hold.
        own_request = (
            has_capability(actor, Capability.REQUEST_OWN_PIN)
            and actor.has_role(role)
            and recipient_id in (None, actor.id)
        )
        if not own_request:
            raise Forbidden(f"{actor.name} may not issue a PIN for {role.value}.")
        recipient_id = actor.id

    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, *ISSUABLE_STATES, action="issuing PINs")

    if recipient_id is not None:
        recipient = db.session.get(User, recipient_id)
        if recipient is None:
            raise NotFound(f"User {recipient_id} not found.")
        if not recipient.has_role(role):
            raise InvalidRequest(f"{recipient.name} does not hold the {role.value} role.")

    store.revoke_outstanding(requisition.id, role, recipient_id, now)

    cfg = current_app.config
    plaintext = generate_numeric_pin(cfg.get("PIN_LENGTH", 6))
    expires_at = now + timedelta(hours=cfg.get("PIN_TTL_HOURS", 24))

    pin = Pin(
        requisition=requisition,
        role_name=role.value,
        recipient_id=recipient_id,
        generated_by_id=actor.id,
        pin_hash=generate_password_hash(plaintext, method=cfg.get("PIN_HASH_METHOD", "pbkdf2:sha256")),
        generated_at=now,
        expires_at=expires_at,
    )
    db.session.add(pin)
    db.session.flush()

    if requisition.status == S.READY_FOR_OPENING.value:
        requisition.masked = True
        transition(
            requisition,
            S.SEALED,
            actor,
            action="SEAL_BIDS",
            details="Director PINs issued; quotations sealed until quorum verification.",
        )

    target = f" for user {recipient_id}" if recipient_id is not None else ""
    log_action(
        "ISSUE_PIN",
        requisition,
        details=f"PIN issued for role {role.value}{target}; expires {expires_at.isoformat()}.",
        actor=actor,
    )
    return IssuedPin(
        pin_id=pin.id,
        role=role,
        recipient_id=recipient_id,
        expires_at=expires_at,
        plaintext=plaintext,
    )


def issue_for_directors(requisition_id: int, actor: Actor, now: datetime | None = None) -> list[IssuedPin]:
    """One recipient-bound PIN per user holding each director role, delivered by email."""
    require_capability(actor, Capability.ISSUE_PINS)
    requisition = store.lock_requisition(requisition_id)

    issued: list[IssuedPin] = []
    for role in DIRECTOR_ROLES:
        holders = (
            User.query.join(UserRole)
            .filter(UserRole.role_name == role.value, User.is_active.is_(True))
            .order_by(User.id.asc())
            .all()
        )
        if not holders:
            log.warning("Requisition %s: no active user holds %s; that role cannot verify.", requisition.id, role.value)
            continue

        for user in holders:
            result = issue(requisition.id, role, actor, recipient_id=user.id, now=now)
            _deliver(requisition, user, result)
            issued.append(result)
    return issued


def _deliver(requisition: Requisition, user: User, result: IssuedPin) -> None:
    send(
        Notification(
            to=user.email or "",
            subject=f"Verification PIN for requisition {requisition.id}",
            body=(
                f"Your {result.role.value} verification PIN for requisition {requisition.id} "
                f"({requisition.title}) is {result.plaintext}.\n"
                f"It expires at {result.expires_at.isoformat()} UTC and can be used once."
            ),
        )
    )


# ---------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------
def _authorize_verifier(role: Role, actor: Actor) -> bool:
    """Return True when the actor verifies through the administrative override."""
    if actor.has_role(role):
        return False
    if has_capability(actor, Capability.OVERRIDE_SEAL):
        return True
    raise Forbidden(f"{actor.name} does not hold the {role.value} role.")


def _find_usable_pin(requisition: Requisition, role: Role, actor: Actor, override: bool, now: datetime) -> Pin:
    candidates = store.outstanding_pins(requisition.id, role, actor.id, any_recipient=override)
    for pin in candidates:
        if not pin.is_expired(now):
            return pin
    if candidates:
        raise Expired(f"The PIN for {role.value} has expired; request a new one.")
    raise NotFound(f"No active PIN for {role.value} on requisition {requisition.id}.")


def _check(requisition_id: int, role, candidate: str, actor: Actor, now: datetime):
    role = _director_role(role)
    override = _authorize_verifier(role, actor)

    candidate = (candidate or "").strip()
    if not candidate:
        raise InvalidRequest("A PIN is required.")

    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, *VERIFIABLE_STATES, action="PIN verification")

    if store.has_verified(requisition.id, role, actor.id):
        raise AlreadyVerified(f"{actor.name} has already verified {role.value} for this requisition.")

    pin = _find_usable_pin(requisition, role, actor, override, now)
    if not check_password_hash(pin.pin_hash, candidate):
        raise InvalidSecret("Invalid PIN.")
    return requisition, role, pin


def verify(requisition_id: int, role, candidate: str, actor: Actor, now: datetime | None = None) -> VerifyResult:
    now = now or utcnow()
    requisition, role, pin = _check(requisition_id, role, candidate, actor, now)

    pin.used = True
    pin.used_by_id = actor.id
    pin.used_at = now
    db.session.flush()

    log_action(
        "VERIFY_PIN",
        requisition,
        details=f"PIN verified for role {role.value} by {actor.name}.",
        actor=actor,
    )

    verified_count = len(store.verified_roles(requisition.id))
    unsealing.evaluate(requisition, actor, verified_count)

    return VerifyResult(
        verified=True,
        quorum_reached=verified_count >= requisition.unseal_threshold,
        unsealed=not requisition.masked,
        verified_count=verified_count,
        threshold=requisition.unseal_threshold,
    )


def preview(requisition_id: int, role, candidate: str, actor: Actor, now: datetime | None = None) -> PreviewResult:
    """Same checks as verify() without consuming the PIN."""
    now = now or utcnow()
    requisition, role, _pin = _check(requisition_id, role, candidate, actor, now)

    verified = store.verified_roles(requisition.id)
    would_count = len(verified | {role})
    return PreviewResult(
        would_unseal=requisition.masked and would_count >= requisition.unseal_threshold,
        verified_count=would_count,
        threshold=requisition.unseal_threshold,
    )


def verified_roles(requisition_id: int) -> frozenset[Role]:
    store.get_requisition(requisition_id)
    return store.verified_roles(requisition_id)


# ---------------------------------------------------------------------
# Re-key
# ---------------------------------------------------------------------
def reset(requisition_id: int, actor: Actor, now: datetime | None = None) -> list[IssuedPin]:
    """
    Revoke every PIN of the requisition and issue a fresh set.

    Verifications made with revoked PINs stop counting, so the quorum (and the
    full opening set) must be collected again. An unsealed requisition stays
    unsealed.
    """
    require_capability(actor, Capability.RESET_PINS)
    now = now or utcnow()
    requisition = store.lock_requisition(requisition_id)
    require_status(requisition, *VERIFIABLE_STATES, action="resetting PINs")

    revoked = store.revoke_all(requisition.id, now)
    db.session.flush()
    log_action(
        "RESET_PINS",
        requisition,
        details=f"{revoked} PIN(s) revoked; director verification restarted.",
        actor=actor,
    )
    return issue_for_directors(requisition.id, actor, now=now)
