"""
procurex/seed.py

Demo identities for local development.

Rules:
- Safe to run multiple times (idempotent). Existing usernames are skipped.
- API tokens are generated with `secrets` and returned to the caller exactly
  once; only their SHA-256 digest is stored.
- The caller (CLI command) commits.
"""

from __future__ import annotations

import secrets

from .extensions import db
from .models import Role, User, Vendor


DEMO_USERS = [
    # username, display name, email, roles
    ("admin", "System Administrator", "admin@example.org", [Role.ADMIN]),
    ("requester", "Operations Requester", "requester@example.org", [Role.REQUESTER]),
    ("approver", "Budget Approver", "approver@example.org", [Role.APPROVER]),
    ("officer", "Procurement Officer", "officer@example.org", [Role.PROCUREMENT_OFFICER]),
    ("finance", "Finance Director", "finance@example.org", [Role.FINANCE_DIRECTOR]),
    ("facility", "Facility Director", "facility@example.org", [Role.FACILITY_DIRECTOR]),
    ("supplychain", "Director Supply Chain", "supplychain@example.org", [Role.SUPPLY_CHAIN_DIRECTOR]),
    ("evaluator1", "Evaluator One", "evaluator1@example.org", [Role.COMMITTEE_MEMBER]),
    ("evaluator2", "Evaluator Two", "evaluator2@example.org", [Role.COMMITTEE_MEMBER]),
]

DEMO_VENDORS = [
    # username, vendor name, email
    ("acme", "Acme Supplies Ltd", "bids@acme.example.com"),
    ("globex", "Globex Trading", "tenders@globex.example.com"),
    ("initech", "Initech Office Solutions", "sales@initech.example.com"),
]


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def create_user(username: str, name: str, roles, email: str | None = None) -> str | None:
    """Create a user with the given roles. Returns the plaintext token, or None if the username exists."""
    if User.query.filter_by(username=username).first():
        return None

    token = new_api_token()
    user = User(username=username, name=name, email=email, is_active=True)
    user.set_api_token(token)
    for role in roles:
        user.add_role(role)
    db.session.add(user)
    db.session.flush()
    return token


def seed_demo() -> dict[str, str]:
    """
    Create demo users and vendor logins that don't exist yet.

    Returns {username: token} for the users created by this call only.
    """
    tokens: dict[str, str] = {}

    for username, name, email, roles in DEMO_USERS:
        token = create_user(username, name, roles, email=email)
        if token:
            tokens[username] = token

    for username, vendor_name, email in DEMO_VENDORS:
        token = create_user(username, vendor_name, [Role.VENDOR], email=email)
        if token:
            tokens[username] = token

        user = User.query.filter_by(username=username).first()
        if not Vendor.query.filter_by(user_id=user.id).first():
            db.session.add(Vendor(name=vendor_name, email=email, user_id=user.id))

    db.session.flush()
    return tokens
