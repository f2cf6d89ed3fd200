"""
Deadline poller.

Time-driven transitions are not run by in-process timers. An external
scheduler (cron, systemd timer) runs `flask poll-deadlines`, which calls
poll_deadlines() once:

- Accepting_Quotes requisitions whose quote deadline passed -> Ready_for_Opening
- Awarded requisitions whose award response deadline passed -> standby promotion

Each requisition is committed on its own so one failure does not hold back
the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..errors import ProcurementError
from ..extensions import db
from ..models import Requisition, RequisitionStatus as S
from ..security import SYSTEM_ACTOR
from ..utils import utcnow
from . import award
from .lifecycle import close_quote_window

log = logging.getLogger(__name__)


@dataclass
class PollReport:
    closed: list[int] = field(default_factory=list)
    promoted: list[int] = field(default_factory=list)
    exhausted: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def poll_deadlines(now: datetime | None = None) -> PollReport:
    now = now or utcnow()
    report = PollReport()

    due_ids = [
        row.id
        for row in Requisition.query.filter(
            Requisition.status == S.ACCEPTING_QUOTES.value,
            Requisition.quote_deadline.isnot(None),
            Requisition.quote_deadline <= now,
        )
        .order_by(Requisition.id.asc())
        .all()
    ]
    for requisition_id in due_ids:
        try:
            if close_quote_window(requisition_id, now=now, actor=SYSTEM_ACTOR):
                report.closed.append(requisition_id)
            db.session.commit()
        except ProcurementError as exc:
            db.session.rollback()
            report.failed.append(requisition_id)
            log.warning("Closing quote window for requisition %s failed: %s", requisition_id, exc.detail)

    for requisition_id in award.due_award_responses(now):
        try:
            result = award.expire_award_response(requisition_id, now)
            db.session.commit()
        except ProcurementError as exc:
            db.session.rollback()
            report.failed.append(requisition_id)
            log.warning("Award response expiry for requisition %s failed: %s", requisition_id, exc.detail)
            continue
        if result is None:
            continue
        if result.outcome is award.PromotionOutcome.PROMOTED:
            report.promoted.append(requisition_id)
        else:
            report.exhausted.append(requisition_id)

    log.info(
        "Deadline poll: %d closed, %d promoted, %d exhausted, %d failed",
        len(report.closed),
        len(report.promoted),
        len(report.exhausted),
        len(report.failed),
    )
    return report
