"""
procurex/blueprints/requisitions/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose requisitions_bp for app factory registration.
"""

from __future__ import annotations

from .routes import requisitions_bp  # noqa: F401
