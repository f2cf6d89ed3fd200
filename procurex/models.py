"""
Sealed-bid procurement – Domain Models

Aggregate root is the Requisition. Everything below it (PINs, committee
assignments, quotations) is owned by a requisition and looked up through it:
- Pin: hashed one-time secret bound to (requisition, director role[, recipient])
- RequisitionCommitteeMember: financial/technical committee membership
- CommitteeAssignment: per-member scoring completion (+ individual deadline)
- Quotation: vendor bid with status and rank
- AuditLog: append-only protocol history, keyed by requisition.transaction_id

IMPORTANT:
- Plaintext PINs are never stored. Only werkzeug hashes.
- Rows are never deleted. Lifecycle is expressed by transitions and flags.
- Status columns hold the `.value` of the enums below.
"""

from __future__ import annotations

import enum
import hashlib
import uuid

from flask_login import UserMixin

from .extensions import db
from .utils import utcnow


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------
class Role(str, enum.Enum):
    """Closed set of role labels the Actor Resolver can return."""

    ADMIN = "Admin"
    REQUESTER = "Requester"
    APPROVER = "Approver"
    PROCUREMENT_OFFICER = "Procurement_Officer"
    COMMITTEE_MEMBER = "Committee_Member"
    FINANCE_DIRECTOR = "Finance_Director"
    FACILITY_DIRECTOR = "Facility_Director"
    SUPPLY_CHAIN_DIRECTOR = "Director_Supply_Chain_and_Property_Management"
    VENDOR = "Vendor"

    @classmethod
    def parse(cls, raw: str) -> "Role":
        """Accept either the value ("Finance_Director") or the member name."""
        raw = (raw or "").strip()
        for role in cls:
            if raw == role.value or raw.upper() == role.name:
                return role
        raise ValueError(f"Unknown role: {raw!r}")


# Sealing roles: one PIN per director role guards the bids.
DIRECTOR_ROLES: tuple[Role, ...] = (
    Role.FINANCE_DIRECTOR,
    Role.FACILITY_DIRECTOR,
    Role.SUPPLY_CHAIN_DIRECTOR,
)


class RequisitionStatus(str, enum.Enum):
    DRAFT = "Draft"
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    ACCEPTING_QUOTES = "Accepting_Quotes"
    READY_FOR_OPENING = "Ready_for_Opening"
    SEALED = "Sealed"
    UNSEALED = "Unsealed"
    SCORING_IN_PROGRESS = "Scoring_In_Progress"
    SCORING_COMPLETE = "Scoring_Complete"
    AWARDED = "Awarded"
    CLOSED = "Closed"
    DISPUTED = "Disputed"


class QuotationStatus(str, enum.Enum):
    SUBMITTED = "Submitted"
    STANDBY = "Standby"
    AWARDED = "Awarded"
    REJECTED = "Rejected"


class CommitteeKind(str, enum.Enum):
    FINANCIAL = "financial"
    TECHNICAL = "technical"


# ---------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """API user. Authenticated by bearer token (digest stored, never the token)."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    api_token_digest = db.Column(db.String(64), unique=True, nullable=True, index=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    role_links = db.relationship(
        "UserRole",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @staticmethod
    def token_digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def set_api_token(self, token: str) -> None:
        self.api_token_digest = self.token_digest(token)

    @property
    def roles(self) -> frozenset[Role]:
        return frozenset(Role(link.role_name) for link in self.role_links)

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def add_role(self, role: Role) -> None:
        if not self.has_role(role):
            self.role_links.append(UserRole(role_name=role.value))

    def __repr__(self):
        return f"<User {self.username}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_name = db.Column(db.String(80), nullable=False, index=True)

    user = db.relationship("User", back_populates="role_links")

    __table_args__ = (db.UniqueConstraint("user_id", "role_name", name="uq_user_role"),)


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    # Vendor portal login (optional)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", foreign_keys=[user_id])

    def __repr__(self):
        return f"<Vendor {self.name}>"


# ---------------------------------------------------------------------
# Requisition aggregate
# ---------------------------------------------------------------------
class Requisition(db.Model):
    __tablename__ = "requisitions"

    id = db.Column(db.Integer, primary_key=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(40),
        nullable=False,
        default=RequisitionStatus.DRAFT.value,
        index=True,
    )
    status_before_dispute = db.Column(db.String(40), nullable=True)

    requester_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    quote_deadline = db.Column(db.DateTime, nullable=True, index=True)
    scoring_deadline = db.Column(db.DateTime, nullable=True)
    award_response_deadline = db.Column(db.DateTime, nullable=True, index=True)

    # Sealing
    masked = db.Column(db.Boolean, default=True, nullable=False)
    unseal_threshold = db.Column(db.Integer, nullable=False, default=len(DIRECTOR_ROLES))
    opening_roles = db.Column(
        db.Text,
        nullable=False,
        default=",".join(r.value for r in DIRECTOR_ROLES),
    )
    unsealed_at = db.Column(db.DateTime, nullable=True)
    bids_opened_at = db.Column(db.DateTime, nullable=True)

    award_exhausted_at = db.Column(db.DateTime, nullable=True)

    # Audit correlation id
    transaction_id = db.Column(
        db.String(32),
        nullable=False,
        unique=True,
        default=lambda: uuid.uuid4().hex,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    requester = db.relationship("User", foreign_keys=[requester_id])

    committee_members = db.relationship(
        "RequisitionCommitteeMember",
        back_populates="requisition",
        cascade="all, delete-orphan",
    )
    assignments = db.relationship(
        "CommitteeAssignment",
        back_populates="requisition",
        cascade="all, delete-orphan",
    )
    quotations = db.relationship(
        "Quotation",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="Quotation.id",
    )
    pins = db.relationship(
        "Pin",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="Pin.id",
    )

    @property
    def required_opening_roles(self) -> frozenset[Role]:
        raw = [part for part in (self.opening_roles or "").split(",") if part]
        return frozenset(Role(part) for part in raw)

    @required_opening_roles.setter
    def required_opening_roles(self, roles) -> None:
        ordered = [r for r in DIRECTOR_ROLES if r in set(roles)]
        self.opening_roles = ",".join(r.value for r in ordered)

    def committee_member_ids(self, kind: CommitteeKind | None = None) -> set[int]:
        return {
            m.user_id
            for m in self.committee_members
            if kind is None or m.committee == kind.value
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "masked": self.masked,
            "unseal_threshold": self.unseal_threshold,
            "opening_roles": sorted(r.value for r in self.required_opening_roles),
            "quote_deadline": _iso(self.quote_deadline),
            "scoring_deadline": _iso(self.scoring_deadline),
            "award_response_deadline": _iso(self.award_response_deadline),
            "award_exhausted": self.award_exhausted_at is not None,
            "financial_committee": sorted(self.committee_member_ids(CommitteeKind.FINANCIAL)),
            "technical_committee": sorted(self.committee_member_ids(CommitteeKind.TECHNICAL)),
            "transaction_id": self.transaction_id,
        }

    def __repr__(self):
        return f"<Requisition {self.id} {self.status}>"


class RequisitionCommitteeMember(db.Model):
    __tablename__ = "requisition_committee_members"

    id = db.Column(db.Integer, primary_key=True)

    requisition_id = db.Column(
        db.Integer,
        db.ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    committee = db.Column(db.String(20), nullable=False)

    requisition = db.relationship("Requisition", back_populates="committee_members")
    user = db.relationship("User")

    __table_args__ = (
        db.UniqueConstraint("requisition_id", "user_id", "committee", name="uq_committee_member"),
    )


class CommitteeAssignment(db.Model):
    """Scoring completion per (member, requisition). Kept even if the member is later removed."""

    __tablename__ = "committee_assignments"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requisition_id = db.Column(
        db.Integer,
        db.ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scores_submitted = db.Column(db.Boolean, default=False, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)
    individual_deadline = db.Column(db.DateTime, nullable=True)

    requisition = db.relationship("Requisition", back_populates="assignments")
    user = db.relationship("User")

    __table_args__ = (
        db.UniqueConstraint("user_id", "requisition_id", name="uq_assignment_user_requisition"),
    )


class Quotation(db.Model):
    __tablename__ = "quotations"

    id = db.Column(db.Integer, primary_key=True)

    requisition_id = db.Column(
        db.Integer,
        db.ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vendor_id = db.Column(
        db.Integer,
        db.ForeignKey("vendors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    total_price = db.Column(db.Numeric(14, 2), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20),
        nullable=False,
        default=QuotationStatus.SUBMITTED.value,
        index=True,
    )
    rank = db.Column(db.Integer, nullable=True)

    submitted_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    requisition = db.relationship("Requisition", back_populates="quotations")
    vendor = db.relationship("Vendor", backref=db.backref("quotations", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("requisition_id", "vendor_id", name="uq_quotation_vendor"),
    )

    def to_dict(self, masked: bool = False) -> dict:
        data = {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "status": self.status,
            "rank": self.rank,
        }
        if not masked:
            data["vendor_name"] = self.vendor.name if self.vendor else None
            data["total_price"] = str(self.total_price) if self.total_price is not None else None
            data["notes"] = self.notes
        return data


class Pin(db.Model):
    """One-time director PIN (hash only)."""

    __tablename__ = "pins"

    id = db.Column(db.Integer, primary_key=True)

    requisition_id = db.Column(
        db.Integer,
        db.ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_name = db.Column(db.String(80), nullable=False, index=True)

    recipient_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    generated_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    pin_hash = db.Column(db.String(255), nullable=False)

    generated_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    used = db.Column(db.Boolean, default=False, nullable=False, index=True)
    used_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    used_at = db.Column(db.DateTime, nullable=True)

    # Superseded by a newer PIN or an administrative re-key
    revoked_at = db.Column(db.DateTime, nullable=True)

    requisition = db.relationship("Requisition", back_populates="pins")
    recipient = db.relationship("User", foreign_keys=[recipient_id])
    used_by = db.relationship("User", foreign_keys=[used_by_id])

    __table_args__ = (
        db.Index("ix_pins_requisition_role", "requisition_id", "role_name"),
    )

    def is_expired(self, now=None) -> bool:
        return self.expires_at <= (now or utcnow())


class AuditLog(db.Model):
    """Append-only audit trail."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    action = db.Column(db.String(40), nullable=False, index=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False, index=True)

    details = db.Column(db.Text, nullable=True)
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username_snapshot,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "transaction_id": self.transaction_id,
            "created_at": _iso(self.created_at),
        }


def _iso(value):
    return value.isoformat() if value else None
