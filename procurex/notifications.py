"""
Notification Service (outbound email).

send() is fire-and-forget: a delivery failure is logged and swallowed so it can
never block or roll back a state transition.

Backends (config MAIL_BACKEND):
- "smtp":   smtplib with MAIL_SERVER / MAIL_PORT / MAIL_USE_TLS / credentials
- "log":    log recipient + subject only (default for development)
- "memory": append to app.extensions["notification_outbox"] (tests)

IMPORTANT:
- Bodies may carry a one-time PIN. Only recipient and subject are ever logged.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText

from flask import current_app

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    body: str


def outbox() -> list:
    """Captured notifications for the memory backend."""
    return current_app.extensions.setdefault("notification_outbox", [])


def send(message: Notification) -> bool:
    """Dispatch one notification. Returns True on success, never raises."""
    if not message.to:
        log.info("Notification skipped (no recipient): %s", message.subject)
        return False

    backend = current_app.config.get("MAIL_BACKEND", "log")
    try:
        if backend == "memory":
            outbox().append(message)
        elif backend == "smtp":
            _send_smtp(message)
        else:
            log.info("Notification (log backend): %s -> %s", message.subject, message.to)
        return True
    except Exception as exc:
        log.warning("Notification to %s failed (%s): %s", message.to, message.subject, exc)
        return False


def _send_smtp(message: Notification) -> None:
    cfg = current_app.config
    if not cfg.get("MAIL_SERVER"):
        raise RuntimeError("MAIL_SERVER not configured")

    msg = MIMEText(message.body, "plain", "utf-8")
    msg["From"] = cfg.get("MAIL_DEFAULT_SENDER")
    msg["To"] = message.to
    msg["Subject"] = message.subject

    with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=10) as server:
        if cfg.get("MAIL_USE_TLS"):
            server.starttls()
        if cfg.get("MAIL_USERNAME"):
            server.login(cfg["MAIL_USERNAME"], cfg.get("MAIL_PASSWORD", ""))
        server.send_message(msg)

    log.info("Notification sent: %s -> %s", message.subject[:60], message.to)
