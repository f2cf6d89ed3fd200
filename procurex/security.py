"""
procurex/security.py

Access control helpers for the sealed-bid service.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Roles are a closed enumeration (models.Role). Capabilities are derived from
  roles through ROLE_CAPABILITIES, once, when the actor is resolved.
- Services receive an immutable Actor and check capabilities on it; they never
  re-read role lists from the request.

Actor resolution:
- Flask-Login request_loader reads `Authorization: Bearer <token>` and loads the
  User by the SHA-256 digest of the token.
- resolve_actor() converts current_user into an Actor or raises Unauthenticated.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional

from flask import request
from flask_login import current_user

from .errors import Forbidden, Unauthenticated
from .extensions import login_manager
from .models import DIRECTOR_ROLES, Role, User


class Capability(str, enum.Enum):
    CREATE_REQUISITION = "create_requisition"
    APPROVE_REQUISITION = "approve_requisition"
    MANAGE_RFQ = "manage_rfq"
    ISSUE_PINS = "issue_pins"
    REQUEST_OWN_PIN = "request_own_pin"
    OVERRIDE_SEAL = "override_seal"
    MANAGE_QUORUM = "manage_quorum"
    RESET_PINS = "reset_pins"
    OPEN_BIDS = "open_bids"
    ASSIGN_COMMITTEE = "assign_committee"
    SUBMIT_SCORES = "submit_scores"
    RECORD_RANKS = "record_ranks"
    FINALIZE_AWARD = "finalize_award"
    NOTIFY_VENDOR = "notify_vendor"
    PROMOTE_STANDBY = "promote_standby"
    RESET_AWARD = "reset_award"
    SUBMIT_QUOTATION = "submit_quotation"
    RESPOND_TO_AWARD = "respond_to_award"
    RESOLVE_DISPUTES = "resolve_disputes"
    VIEW_AUDIT = "view_audit"


_OFFICER_CAPABILITIES = frozenset(
    {
        Capability.CREATE_REQUISITION,
        Capability.MANAGE_RFQ,
        Capability.ISSUE_PINS,
        Capability.MANAGE_QUORUM,
        Capability.OPEN_BIDS,
        Capability.ASSIGN_COMMITTEE,
        Capability.RECORD_RANKS,
        Capability.FINALIZE_AWARD,
        Capability.NOTIFY_VENDOR,
        Capability.PROMOTE_STANDBY,
        Capability.RESET_AWARD,
        Capability.VIEW_AUDIT,
    }
)

_DIRECTOR_CAPABILITIES = frozenset({Capability.REQUEST_OWN_PIN, Capability.VIEW_AUDIT})

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.REQUESTER: frozenset({Capability.CREATE_REQUISITION}),
    Role.APPROVER: frozenset({Capability.APPROVE_REQUISITION, Capability.VIEW_AUDIT}),
    Role.PROCUREMENT_OFFICER: _OFFICER_CAPABILITIES,
    Role.COMMITTEE_MEMBER: frozenset({Capability.SUBMIT_SCORES}),
    Role.FINANCE_DIRECTOR: _DIRECTOR_CAPABILITIES,
    Role.FACILITY_DIRECTOR: _DIRECTOR_CAPABILITIES,
    Role.SUPPLY_CHAIN_DIRECTOR: _DIRECTOR_CAPABILITIES,
    Role.VENDOR: frozenset({Capability.SUBMIT_QUOTATION, Capability.RESPOND_TO_AWARD}),
}


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity (id, name, roles) plus derived capabilities."""

    id: Optional[int]
    name: str
    roles: frozenset = frozenset()
    email: Optional[str] = None
    capabilities: frozenset = field(init=False)

    def __post_init__(self) -> None:
        caps: set[Capability] = set()
        for role in self.roles:
            caps |= ROLE_CAPABILITIES.get(role, frozenset())
        object.__setattr__(self, "capabilities", frozenset(caps))

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, name=user.name, roles=user.roles, email=user.email)

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def director_roles(self) -> frozenset[Role]:
        return frozenset(r for r in self.roles if r in DIRECTOR_ROLES)


# Used by the deadline poller for system-triggered transitions.
SYSTEM_ACTOR = Actor(id=None, name="system", roles=frozenset({Role.ADMIN}))


def has_capability(actor: Actor, capability: Capability) -> bool:
    return capability in actor.capabilities


def require_capability(actor: Actor, capability: Capability, detail: str | None = None) -> None:
    """Raise Forbidden unless the actor holds the capability."""
    if not has_capability(actor, capability):
        raise Forbidden(detail or f"{actor.name} lacks capability '{capability.value}'.")


# ---------------------------------------------------------------------
# Flask-Login wiring
# ---------------------------------------------------------------------
def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@login_manager.request_loader
def load_user_from_request(req) -> User | None:
    """Resolve the bearer token to an active User."""
    token = _bearer_token()
    if not token:
        return None
    user = User.query.filter_by(api_token_digest=User.token_digest(token)).first()
    if user is None or not user.is_active:
        return None
    return user


def resolve_actor() -> Actor:
    """Actor Resolver boundary: current request credential -> Actor."""
    if not current_user or not current_user.is_authenticated:
        raise Unauthenticated("A valid bearer token is required.")
    return Actor.from_user(current_user)


def capability_required(capability: Capability) -> Callable[..., Any]:
    """
    Decorator factory: resolve the actor and require a capability before the view runs.

    Usage:
        @capability_required(Capability.VIEW_AUDIT)
        def view(requisition_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            require_capability(resolve_actor(), capability)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator
