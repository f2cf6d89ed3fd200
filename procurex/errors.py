"""
procurex/errors.py

Stable error taxonomy for the sealed-bid engine.

Every service operation raises one of these. The app factory registers a
handler that rolls back the session and renders:

    {"error": <kind>, "detail": <human readable text>}

IMPORTANT:
- Never put a plaintext PIN into `detail`.
"""

from __future__ import annotations


class ProcurementError(Exception):
    """Base class: terminal for the calling operation."""

    kind = "ProcurementError"
    status_code = 400

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class Unauthenticated(ProcurementError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(ProcurementError):
    kind = "Forbidden"
    status_code = 403


class NotFound(ProcurementError):
    kind = "NotFound"
    status_code = 404


class Expired(ProcurementError):
    kind = "Expired"
    status_code = 410


class InvalidSecret(ProcurementError):
    kind = "InvalidSecret"
    status_code = 400


class AlreadyVerified(ProcurementError):
    kind = "AlreadyVerified"
    status_code = 409


class InvalidState(ProcurementError):
    kind = "InvalidState"
    status_code = 409


class Exhausted(ProcurementError):
    kind = "Exhausted"
    status_code = 409


class InvalidRequest(ProcurementError):
    """Malformed input or a configuration rejected at write time."""

    kind = "InvalidRequest"
    status_code = 400
