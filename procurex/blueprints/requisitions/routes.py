"""
procurex/blueprints/requisitions/routes.py

Requisition JSON API.

Every handler follows the same shape:
    actor = resolve_actor()
    result = <service>(...)
    db.session.commit()
    return jsonify(...)

Services raise ProcurementError subclasses; the app-level error handler rolls
the session back and renders them, so handlers never commit a failed operation.

IMPORTANT:
- Vendor identity and prices are hidden while a requisition is masked.
- Plaintext PINs only leave the server in the single-PIN issue response (the
  caller asked for it) or, for bulk issue, when PIN_EXPOSE_PLAINTEXT is set.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from ...audit import audit_trail
from ...errors import InvalidRequest
from ...extensions import db
from ...security import Capability, capability_required, resolve_actor
from ...services import award, committee, lifecycle, pins, store, unsealing
from ...utils import parse_datetime, parse_optional_int

requisitions_bp = Blueprint("requisitions", __name__, url_prefix="/requisitions")


# ---------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------
def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    return data


def _datetime(data: dict, key: str, required: bool = True):
    try:
        value = parse_datetime(data.get(key))
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"'{key}' must be an ISO-8601 timestamp.") from exc
    if value is None and required:
        raise InvalidRequest(f"'{key}' is required.")
    return value


def _decimal(value) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None:
        return None
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequest("'total_price' must be a number.") from exc
    if parsed < 0:
        raise InvalidRequest("'total_price' cannot be negative.")
    return parsed


def _id_list(data: dict, key: str) -> list[int]:
    raw = data.get(key) or []
    if not isinstance(raw, list):
        raise InvalidRequest(f"'{key}' must be a list of user ids.")
    ids = [parse_optional_int(v) for v in raw]
    if any(v is None for v in ids):
        raise InvalidRequest(f"'{key}' must contain integer user ids only.")
    return ids


def _role(data: dict) -> str:
    role = (data.get("role") or "").strip()
    if not role:
        raise InvalidRequest("'role' is required.")
    return role


def _issued(result: pins.IssuedPin, include_plaintext: bool) -> dict:
    data = {
        "pin_id": result.pin_id,
        "role": result.role.value,
        "recipient_id": result.recipient_id,
        "expires_at": result.expires_at.isoformat(),
    }
    if include_plaintext:
        data["pin"] = result.plaintext
    return data


def _requisition_view(requisition) -> dict:
    verified = store.verified_roles(requisition.id)
    data = requisition.to_dict()
    data["seal_state"] = unsealing.seal_state(requisition, len(verified)).value
    data["verified_roles"] = sorted(r.value for r in verified)
    data["quotations"] = [q.to_dict(masked=requisition.masked) for q in requisition.quotations]
    return data


# ---------------------------------------------------------------------
# Requisition lifecycle
# ---------------------------------------------------------------------
@requisitions_bp.route("", methods=["POST"])
@login_required
def create_requisition():
    actor = resolve_actor()
    data = _body()
    requisition = lifecycle.create_requisition(actor, data.get("title"), data.get("description"))
    db.session.commit()
    return jsonify(requisition.to_dict()), 201


@requisitions_bp.route("/<int:requisition_id>", methods=["GET"])
@login_required
def get_requisition(requisition_id: int):
    resolve_actor()
    return jsonify(_requisition_view(store.get_requisition(requisition_id)))


@requisitions_bp.route("/<int:requisition_id>/submit", methods=["POST"])
@login_required
def submit_for_approval(requisition_id: int):
    actor = resolve_actor()
    requisition = lifecycle.submit_for_approval(requisition_id, actor)
    db.session.commit()
    return jsonify(requisition.to_dict())


@requisitions_bp.route("/<int:requisition_id>/approve", methods=["POST"])
@login_required
def approve(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    approved = data.get("approved", True)
    if not isinstance(approved, bool):
        raise InvalidRequest("'approved' must be true or false.")
    requisition = lifecycle.approve(requisition_id, actor, approved=approved, comment=data.get("comment"))
    db.session.commit()
    return jsonify(requisition.to_dict())


@requisitions_bp.route("/<int:requisition_id>/open-quotes", methods=["POST"])
@login_required
def open_for_quotes(requisition_id: int):
    actor = resolve_actor()
    deadline = _datetime(_body(), "quote_deadline")
    requisition = lifecycle.open_for_quotes(requisition_id, deadline, actor)
    db.session.commit()
    return jsonify(requisition.to_dict())


@requisitions_bp.route("/<int:requisition_id>/quotations", methods=["POST"])
@login_required
def submit_quotation(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    quotation = lifecycle.submit_quotation(
        requisition_id,
        actor,
        total_price=_decimal(data.get("total_price")),
        notes=data.get("notes"),
    )
    db.session.commit()
    return jsonify({"id": quotation.id, "status": quotation.status}), 201


@requisitions_bp.route("/<int:requisition_id>/close-quotes", methods=["POST"])
@login_required
@capability_required(Capability.MANAGE_RFQ)
def close_quotes(requisition_id: int):
    actor = resolve_actor()
    changed = lifecycle.close_quote_window(requisition_id, actor=actor)
    db.session.commit()
    requisition = store.get_requisition(requisition_id)
    return jsonify({"changed": changed, "status": requisition.status})


@requisitions_bp.route("/<int:requisition_id>/reopen-rfq", methods=["POST"])
@login_required
def reopen_rfq(requisition_id: int):
    actor = resolve_actor()
    deadline = _datetime(_body(), "quote_deadline")
    invited = lifecycle.reopen_rfq(requisition_id, deadline, actor)
    db.session.commit()
    requisition = store.get_requisition(requisition_id)
    return jsonify(
        {
            "status": requisition.status,
            "quote_deadline": deadline.isoformat(),
            "invited_vendor_ids": [v.id for v in invited],
        }
    )


@requisitions_bp.route("/<int:requisition_id>/open-bids", methods=["POST"])
@login_required
def open_bids(requisition_id: int):
    actor = resolve_actor()
    requisition = lifecycle.open_bids(requisition_id, actor)
    db.session.commit()
    return jsonify(_requisition_view(requisition))


@requisitions_bp.route("/<int:requisition_id>/dispute", methods=["POST"])
@login_required
def dispute(requisition_id: int):
    actor = resolve_actor()
    requisition = lifecycle.dispute(requisition_id, actor, _body().get("reason"))
    db.session.commit()
    return jsonify(requisition.to_dict())


@requisitions_bp.route("/<int:requisition_id>/reopen", methods=["POST"])
@login_required
def reopen(requisition_id: int):
    actor = resolve_actor()
    requisition = lifecycle.reopen(requisition_id, actor)
    db.session.commit()
    return jsonify(requisition.to_dict())


# ---------------------------------------------------------------------
# PINs and quorum
# ---------------------------------------------------------------------
@requisitions_bp.route("/<int:requisition_id>/pins", methods=["POST"])
@login_required
def issue_pins(requisition_id: int):
    """
    Bulk issue: one PIN per director, delivered by notification.

    With {"role": ...} a single PIN is issued and returned to the caller.
    """
    actor = resolve_actor()
    data = _body()

    if data.get("role"):
        result = pins.issue(
            requisition_id,
            _role(data),
            actor,
            recipient_id=parse_optional_int(data.get("recipient_id")),
        )
        db.session.commit()
        return jsonify(_issued(result, include_plaintext=True)), 201

    results = pins.issue_for_directors(requisition_id, actor)
    db.session.commit()
    expose = current_app.config.get("PIN_EXPOSE_PLAINTEXT", False)
    return jsonify({"issued": [_issued(r, include_plaintext=expose) for r in results]}), 201


@requisitions_bp.route("/<int:requisition_id>/pins/request", methods=["POST"])
@login_required
def request_own_pin(requisition_id: int):
    actor = resolve_actor()
    result = pins.issue(requisition_id, _role(_body()), actor, recipient_id=actor.id)
    db.session.commit()
    return jsonify(_issued(result, include_plaintext=True)), 201


@requisitions_bp.route("/<int:requisition_id>/pins/verify", methods=["POST"])
@login_required
def verify_pin(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    result = pins.verify(requisition_id, _role(data), str(data.get("pin") or ""), actor)
    db.session.commit()
    return jsonify(
        {
            "verified": result.verified,
            "quorum_reached": result.quorum_reached,
            "unsealed": result.unsealed,
            "verified_count": result.verified_count,
            "threshold": result.threshold,
            "remaining": result.remaining,
        }
    )


@requisitions_bp.route("/<int:requisition_id>/pins/preview", methods=["POST"])
@login_required
def preview_pin(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    result = pins.preview(requisition_id, _role(data), str(data.get("pin") or ""), actor)
    # Nothing to persist; release the row lock.
    db.session.rollback()
    return jsonify(
        {
            "would_unseal": result.would_unseal,
            "verified_count": result.verified_count,
            "threshold": result.threshold,
            "remaining": result.remaining,
        }
    )


@requisitions_bp.route("/<int:requisition_id>/pins/reset", methods=["POST"])
@login_required
def reset_pins(requisition_id: int):
    actor = resolve_actor()
    results = pins.reset(requisition_id, actor)
    db.session.commit()
    expose = current_app.config.get("PIN_EXPOSE_PLAINTEXT", False)
    return jsonify({"issued": [_issued(r, include_plaintext=expose) for r in results]})


@requisitions_bp.route("/<int:requisition_id>/quorum-settings", methods=["PUT", "POST"])
@login_required
def quorum_settings(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    settings = unsealing.QuorumSettings.build(
        data.get("unseal_threshold"),
        data.get("required_roles_for_opening"),
    )
    requisition, verified_count = unsealing.update_settings(requisition_id, settings, actor)
    db.session.commit()
    return jsonify(
        {
            "unseal_threshold": requisition.unseal_threshold,
            "required_roles_for_opening": sorted(r.value for r in requisition.required_opening_roles),
            "verified_count": verified_count,
            "masked": requisition.masked,
            "status": requisition.status,
        }
    )


# ---------------------------------------------------------------------
# Committee
# ---------------------------------------------------------------------
@requisitions_bp.route("/<int:requisition_id>/committee", methods=["PUT", "POST"])
@login_required
def assign_committee(requisition_id: int):
    actor = resolve_actor()
    data = _body()
    requisition = committee.assign_committee(
        requisition_id,
        _id_list(data, "financial"),
        _id_list(data, "technical"),
        actor,
        scoring_deadline=_datetime(data, "scoring_deadline", required=False),
    )
    db.session.commit()
    return jsonify(requisition.to_dict())


@requisitions_bp.route("/<int:requisition_id>/scores/submit", methods=["POST"])
@login_required
@capability_required(Capability.SUBMIT_SCORES)
def submit_scores(requisition_id: int):
    actor = resolve_actor()
    result = committee.record_submission(requisition_id, actor.id, actor=actor)
    db.session.commit()
    return jsonify({"newly_submitted": result.newly_submitted, "scoring_complete": result.scoring_complete})


@requisitions_bp.route("/<int:requisition_id>/scoring-progress", methods=["GET"])
@login_required
@capability_required(Capability.ASSIGN_COMMITTEE)
def scoring_progress(requisition_id: int):
    return jsonify(
        {
            "complete": committee.is_scoring_complete(requisition_id),
            "members": committee.scoring_progress(requisition_id),
        }
    )


@requisitions_bp.route("/<int:requisition_id>/committee/<int:member_id>/deadline", methods=["POST"])
@login_required
def extend_member_deadline(requisition_id: int, member_id: int):
    actor = resolve_actor()
    deadline = _datetime(_body(), "deadline")
    assignment = committee.extend_member_deadline(requisition_id, member_id, deadline, actor)
    db.session.commit()
    return jsonify({"member_id": member_id, "deadline": assignment.individual_deadline.isoformat()})


@requisitions_bp.route("/<int:requisition_id>/scoring-deadline", methods=["POST"])
@login_required
def extend_scoring_deadline(requisition_id: int):
    actor = resolve_actor()
    deadline = _datetime(_body(), "deadline")
    requisition = committee.extend_scoring_deadline(requisition_id, deadline, actor)
    db.session.commit()
    return jsonify(requisition.to_dict())


# ---------------------------------------------------------------------
# Award
# ---------------------------------------------------------------------
@requisitions_bp.route("/<int:requisition_id>/ranks", methods=["PUT", "POST"])
@login_required
def record_ranks(requisition_id: int):
    actor = resolve_actor()
    raw = _body().get("ranks")
    if not isinstance(raw, dict):
        raise InvalidRequest("'ranks' must be an object of {quotation_id: rank}.")

    ranks = {}
    for key, value in raw.items():
        quotation_id = parse_optional_int(key)
        if quotation_id is None:
            raise InvalidRequest(f"Invalid quotation id: {key!r}.")
        ranks[quotation_id] = value

    quotations = award.record_ranks(requisition_id, ranks, actor)
    db.session.commit()
    return jsonify({"quotations": [q.to_dict() for q in quotations]})


@requisitions_bp.route("/<int:requisition_id>/finalize", methods=["POST"])
@login_required
def finalize(requisition_id: int):
    actor = resolve_actor()
    winner = award.finalize(requisition_id, actor)
    db.session.commit()
    return jsonify({"awarded_quotation_id": winner.id, "vendor_id": winner.vendor_id})


@requisitions_bp.route("/<int:requisition_id>/notify-vendor", methods=["POST"])
@login_required
def notify_vendor(requisition_id: int):
    actor = resolve_actor()
    deadline = _datetime(_body(), "response_deadline")
    quotation = award.notify_vendor(requisition_id, deadline, actor)
    db.session.commit()
    return jsonify(
        {
            "quotation_id": quotation.id,
            "vendor_id": quotation.vendor_id,
            "response_deadline": deadline.isoformat(),
        }
    )


@requisitions_bp.route("/<int:requisition_id>/promote-standby", methods=["POST"])
@login_required
def promote_standby(requisition_id: int):
    actor = resolve_actor()
    result = award.promote_standby(requisition_id, actor)
    db.session.commit()
    return jsonify(result.to_dict())


@requisitions_bp.route("/<int:requisition_id>/award-response", methods=["POST"])
@login_required
def award_response(requisition_id: int):
    actor = resolve_actor()
    accept = _body().get("accept")
    if not isinstance(accept, bool):
        raise InvalidRequest("'accept' must be true or false.")

    result = award.respond_to_award(requisition_id, actor, accept)
    db.session.commit()
    requisition = store.get_requisition(requisition_id)
    payload = {"accepted": accept, "status": requisition.status}
    if result is not None:
        payload["promotion"] = result.to_dict()
    return jsonify(payload)


@requisitions_bp.route("/<int:requisition_id>/reset-award", methods=["POST"])
@login_required
def reset_award(requisition_id: int):
    actor = resolve_actor()
    requisition = award.reset_award(requisition_id, actor)
    db.session.commit()
    return jsonify(_requisition_view(requisition))


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
@requisitions_bp.route("/<int:requisition_id>/audit", methods=["GET"])
@login_required
@capability_required(Capability.VIEW_AUDIT)
def audit(requisition_id: int):
    requisition = store.get_requisition(requisition_id)
    return jsonify({"transaction_id": requisition.transaction_id, "entries": [e.to_dict() for e in audit_trail(requisition)]})
