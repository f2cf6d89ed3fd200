"""
Logging configuration for the sealed-bid service.
Called once from create_app().
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Structured JSON log lines for machine parsing."""

    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("requisition_id", "action", "actor_id"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S")


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Attach a single console handler to the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_procurex", False):
            root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    console._procurex = True
    root.addHandler(console)
