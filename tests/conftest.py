"""Shared fixtures: app with an in-memory database, identities, and a requisition builder.

Service tests run inside the app context pushed by the `app` fixture. The
Flask test client reuses that context, so routes and tests share one session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

import pytest
from flask import g
from flask.testing import FlaskClient

from config import TestConfig
from procurex import create_app
from procurex.extensions import db
from procurex.models import Role, User, Vendor
from procurex.notifications import outbox
from procurex.security import Actor
from procurex.services import award, committee, lifecycle, pins, store
from procurex.utils import utcnow


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


class _PerRequestUserClient(FlaskClient):
    """Requests reuse the test's app context, so drop the user Flask-Login cached on `g`."""

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture
def client(app):
    app.test_client_class = _PerRequestUserClient
    return app.test_client()


@pytest.fixture
def sent(app):
    """Notifications captured by the memory backend."""
    return outbox()


def _make_user(username: str, *roles: Role, email: str | None = None) -> User:
    user = User(username=username, name=username.replace("_", " ").title(), email=email or f"{username}@example.org")
    user.set_api_token(f"{username}-token")
    for role in roles:
        user.add_role(role)
    db.session.add(user)
    db.session.flush()
    return user


@pytest.fixture
def auth():
    """Bearer headers for a user created by the `people` fixture."""

    def _headers(username: str) -> dict:
        return {"Authorization": f"Bearer {username}-token"}

    return _headers


@dataclass
class People:
    admin: Actor
    officer: Actor
    requester: Actor
    approver: Actor
    finance: Actor
    facility: Actor
    supply_chain: Actor
    members: list[Actor]
    vendors: list[Actor]
    vendor_ids: list[int] = field(default_factory=list)

    @property
    def directors(self) -> dict[Role, Actor]:
        return {
            Role.FINANCE_DIRECTOR: self.finance,
            Role.FACILITY_DIRECTOR: self.facility,
            Role.SUPPLY_CHAIN_DIRECTOR: self.supply_chain,
        }


@pytest.fixture
def people(app) -> People:
    def actor(user: User) -> Actor:
        return Actor.from_user(user)

    vendors = []
    vendor_ids = []
    for name in ("acme", "globex", "initech"):
        user = _make_user(name, Role.VENDOR)
        vendor = Vendor(name=name.title(), email=f"bids@{name}.example.com", user_id=user.id)
        db.session.add(vendor)
        db.session.flush()
        vendors.append(actor(user))
        vendor_ids.append(vendor.id)

    result = People(
        admin=actor(_make_user("admin", Role.ADMIN)),
        officer=actor(_make_user("officer", Role.PROCUREMENT_OFFICER)),
        requester=actor(_make_user("requester", Role.REQUESTER)),
        approver=actor(_make_user("approver", Role.APPROVER)),
        finance=actor(_make_user("finance", Role.FINANCE_DIRECTOR)),
        facility=actor(_make_user("facility", Role.FACILITY_DIRECTOR)),
        supply_chain=actor(_make_user("supply_chain", Role.SUPPLY_CHAIN_DIRECTOR)),
        members=[actor(_make_user("member_one")), actor(_make_user("member_two"))],
        vendors=vendors,
        vendor_ids=vendor_ids,
    )
    db.session.commit()
    return result


@dataclass
class Built:
    requisition_id: int
    quotation_ids: list[int]
    plaintexts: dict[Role, str] = field(default_factory=dict)


ORDER = [
    "Draft",
    "PendingApproval",
    "Approved",
    "Accepting_Quotes",
    "Ready_for_Opening",
    "Sealed",
    "Unsealed",
    "Scoring_In_Progress",
    "Scoring_Complete",
    "Awarded",
]


@pytest.fixture
def build(people):
    """
    Drive a fresh requisition forward to `state` through the services.

    Quotations are submitted by the first `quotations` vendors; when scoring is
    reached they are ranked in submission order (1, 2, 3).
    """

    def _build(state: str, quotations: int = 3, threshold: int | None = None) -> Built:
        target = ORDER.index(state)
        now = utcnow()

        requisition = lifecycle.create_requisition(people.requester, "Office chairs", "Forty ergonomic chairs")
        built = Built(requisition_id=requisition.id, quotation_ids=[])
        rid = requisition.id

        if threshold is not None:
            from procurex.services.unsealing import QuorumSettings, update_settings

            update_settings(rid, QuorumSettings.build(threshold), people.officer)

        if target >= 1:
            lifecycle.submit_for_approval(rid, people.requester)
        if target >= 2:
            lifecycle.approve(rid, people.approver)
        if target >= 3:
            deadline = now + timedelta(days=1)
            lifecycle.open_for_quotes(rid, deadline, people.officer, now=now)
            for price, vendor in zip(("1200.00", "1350.00", "1500.00"), people.vendors[:quotations]):
                q = lifecycle.submit_quotation(rid, vendor, total_price=Decimal(price), now=now)
                built.quotation_ids.append(q.id)
        if target >= 4:
            lifecycle.close_quote_window(rid, now=now + timedelta(days=1, minutes=1))
        if target >= 5:
            for issued in pins.issue_for_directors(rid, people.officer):
                built.plaintexts[issued.role] = issued.plaintext
        if target >= 6:
            for role, director in people.directors.items():
                requisition = store.get_requisition(rid)
                if requisition.status == "Sealed":
                    pins.verify(rid, role, built.plaintexts[role], director)
        if target >= 7:
            # Opening needs the full set even when the threshold was lower.
            for role, director in people.directors.items():
                if not store.has_verified(rid, role, director.id):
                    pins.verify(rid, role, built.plaintexts[role], director)
            lifecycle.open_bids(rid, people.officer)
            committee.assign_committee(
                rid,
                [people.members[0].id],
                [people.members[1].id],
                people.officer,
            )
            award.record_ranks(
                rid,
                {qid: rank for rank, qid in enumerate(built.quotation_ids, start=1)},
                people.officer,
            )
        if target >= 8:
            for member in people.members:
                committee.record_submission(rid, member.id, actor=member)
        if target >= 9:
            award.finalize(rid, people.officer)

        db.session.commit()
        return built

    return _build
