"""Tests for ranking, finalization, standby promotion and vendor responses."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from procurex.audit import count_actions
from procurex.errors import Exhausted, Expired, Forbidden, InvalidRequest, InvalidState
from procurex.extensions import db
from procurex.models import Quotation
from procurex.services import award, committee, store
from procurex.services.award import AwardStepKind, PromotionOutcome, advance, ranked
from procurex.services.poller import poll_deadlines
from procurex.utils import utcnow


def _q(id: int, status: str, rank):
    return SimpleNamespace(id=id, status=status, rank=rank)


def _statuses(requisition_id: int) -> list[str]:
    return [q.status for q in Quotation.query.filter_by(requisition_id=requisition_id).order_by(Quotation.id)]


def _awarded_count(requisition_id: int) -> int:
    return Quotation.query.filter_by(requisition_id=requisition_id, status="Awarded").count()


# ===================================================================
# Pure ranking / step function
# ===================================================================

class TestAdvance:
    def test_ranked_skips_rejected_and_unranked(self) -> None:
        quotations = [_q(1, "Rejected", 1), _q(2, "Standby", 3), _q(3, "Standby", None), _q(4, "Standby", 2)]
        assert [q.id for q in ranked(quotations)] == [4, 2]

    def test_best_standby_is_promoted(self) -> None:
        quotations = [_q(1, "Rejected", 1), _q(2, "Standby", 2), _q(3, "Standby", 3)]
        step = advance(quotations)
        assert step.kind is AwardStepKind.PROMOTE
        assert step.quotation_id == 2

    def test_rank_tie_breaks_on_lowest_id(self) -> None:
        quotations = [_q(7, "Standby", 2), _q(5, "Standby", 2)]
        assert advance(quotations).quotation_id == 5

    def test_no_standby_is_exhausted(self) -> None:
        quotations = [_q(1, "Rejected", 1), _q(2, "Rejected", 2), _q(3, "Standby", None)]
        step = advance(quotations)
        assert step.kind is AwardStepKind.EXHAUSTED
        assert step.quotation_id is None


# ===================================================================
# Ranks and finalize
# ===================================================================

class TestFinalize:
    def test_best_rank_wins_others_on_standby(self, build) -> None:
        built = build("Awarded")
        assert _statuses(built.requisition_id) == ["Awarded", "Standby", "Standby"]

        requisition = store.get_requisition(built.requisition_id)
        assert requisition.status == "Awarded"
        assert count_actions(requisition, "FINALIZE_AWARD") == 1

    def test_finalize_requires_scoring_complete(self, build, people) -> None:
        built = build("Scoring_In_Progress")
        with pytest.raises(InvalidState):
            award.finalize(built.requisition_id, people.officer)

    def test_finalize_without_ranks(self, build, people) -> None:
        built = build("Scoring_In_Progress")
        award.record_ranks(built.requisition_id, {qid: None for qid in built.quotation_ids}, people.officer)
        from procurex.services import committee

        for member in people.members:
            committee.record_submission(built.requisition_id, member.id)
        db.session.commit()

        with pytest.raises(InvalidState):
            award.finalize(built.requisition_id, people.officer)

    def test_duplicate_ranks_rejected(self, build, people) -> None:
        built = build("Scoring_In_Progress")
        first, second, _ = built.quotation_ids
        with pytest.raises(InvalidRequest):
            award.record_ranks(built.requisition_id, {first: 1, second: 1}, people.officer)

    @pytest.mark.parametrize("rank", [0, -2, "1", 1.5])
    def test_invalid_rank_values(self, build, people, rank) -> None:
        built = build("Scoring_In_Progress")
        with pytest.raises(InvalidRequest):
            award.record_ranks(built.requisition_id, {built.quotation_ids[0]: rank}, people.officer)

    def test_ranks_only_during_scoring(self, build, people) -> None:
        built = build("Unsealed")
        with pytest.raises(InvalidState):
            award.record_ranks(built.requisition_id, {built.quotation_ids[0]: 1}, people.officer)

    def test_finalize_requires_capability(self, build, people) -> None:
        built = build("Scoring_Complete")
        with pytest.raises(Forbidden):
            award.finalize(built.requisition_id, people.finance)


# ===================================================================
# Standby cascade
# ===================================================================

class TestPromotion:
    def test_cascade_to_exhaustion(self, build, people) -> None:
        built = build("Awarded")
        rid = built.requisition_id
        x, y, z = built.quotation_ids

        first = award.promote_standby(rid, people.officer)
        db.session.commit()
        assert first.outcome is PromotionOutcome.PROMOTED
        assert first.rejected_quotation_id == x
        assert first.promoted_quotation_id == y
        assert _statuses(rid) == ["Rejected", "Awarded", "Standby"]

        second = award.promote_standby(rid, people.officer)
        db.session.commit()
        assert second.promoted_quotation_id == z
        assert _statuses(rid) == ["Rejected", "Rejected", "Awarded"]

        third = award.promote_standby(rid, people.officer)
        db.session.commit()
        assert third.outcome is PromotionOutcome.EXHAUSTED
        assert third.rejected_quotation_id == z
        assert third.promoted_quotation_id is None
        assert _statuses(rid) == ["Rejected", "Rejected", "Rejected"]
        assert _awarded_count(rid) == 0

        requisition = store.get_requisition(rid)
        assert requisition.award_exhausted_at is not None
        assert count_actions(requisition, "PROMOTE_STANDBY_AWARD") == 2
        assert count_actions(requisition, "AWARD_EXHAUSTED") == 1

    def test_repeated_exhaustion_is_audited_once(self, build, people) -> None:
        built = build("Awarded", quotations=1)
        rid = built.requisition_id

        assert award.promote_standby(rid, people.officer).outcome is PromotionOutcome.EXHAUSTED
        assert award.promote_standby(rid, people.officer).outcome is PromotionOutcome.EXHAUSTED
        db.session.commit()

        assert count_actions(store.get_requisition(rid), "AWARD_EXHAUSTED") == 1

    def test_at_most_one_awarded_throughout(self, build, people) -> None:
        built = build("Awarded")
        rid = built.requisition_id
        for _ in range(4):
            award.promote_standby(rid, people.officer)
            db.session.commit()
            assert _awarded_count(rid) <= 1

    def test_promotion_requires_awarded_status(self, build, people) -> None:
        built = build("Scoring_Complete")
        with pytest.raises(InvalidState):
            award.promote_standby(built.requisition_id, people.officer)

    def test_promotion_clears_response_deadline(self, build, people) -> None:
        built = build("Awarded")
        rid = built.requisition_id
        award.notify_vendor(rid, utcnow() + timedelta(days=3), people.officer)
        db.session.commit()

        award.promote_standby(rid, people.officer)
        db.session.commit()
        assert store.get_requisition(rid).award_response_deadline is None


# ===================================================================
# Vendor notification and response
# ===================================================================

class TestVendorResponse:
    def test_notify_sends_award_notice(self, build, people, sent) -> None:
        built = build("Awarded")
        deadline = utcnow() + timedelta(days=3)
        quotation = award.notify_vendor(built.requisition_id, deadline, people.officer)
        db.session.commit()

        assert quotation.id == built.quotation_ids[0]
        notice = sent[-1]
        assert notice.to == "bids@acme.example.com"
        assert "awarded" in notice.subject.lower()
        assert store.get_requisition(built.requisition_id).award_response_deadline == deadline

    def test_notify_deadline_in_past(self, build, people) -> None:
        built = build("Awarded")
        with pytest.raises(InvalidRequest):
            award.notify_vendor(built.requisition_id, utcnow() - timedelta(hours=1), people.officer)

    def test_accept_closes_requisition(self, build, people) -> None:
        built = build("Awarded")
        result = award.respond_to_award(built.requisition_id, people.vendors[0], accept=True)
        db.session.commit()

        assert result is None
        requisition = store.get_requisition(built.requisition_id)
        assert requisition.status == "Closed"
        assert count_actions(requisition, "ACCEPT_AWARD") == 1

    def test_decline_promotes_next_vendor(self, build, people) -> None:
        built = build("Awarded")
        result = award.respond_to_award(built.requisition_id, people.vendors[0], accept=False)
        db.session.commit()

        assert result.outcome is PromotionOutcome.PROMOTED
        assert result.promoted_vendor_id == people.vendor_ids[1]
        assert count_actions(store.get_requisition(built.requisition_id), "DECLINE_AWARD") == 1

    def test_standby_vendor_cannot_respond(self, build, people) -> None:
        built = build("Awarded")
        with pytest.raises(Forbidden):
            award.respond_to_award(built.requisition_id, people.vendors[1], accept=True)

    def test_response_after_deadline_is_expired(self, build, people) -> None:
        built = build("Awarded")
        award.notify_vendor(built.requisition_id, utcnow() + timedelta(hours=1), people.officer)
        db.session.commit()

        with pytest.raises(Expired):
            award.respond_to_award(
                built.requisition_id, people.vendors[0], accept=True, now=utcnow() + timedelta(hours=2)
            )

    def test_poller_promotes_past_silent_vendor(self, build, people) -> None:
        built = build("Awarded")
        rid = built.requisition_id
        award.notify_vendor(rid, utcnow() + timedelta(hours=1), people.officer)
        db.session.commit()

        report = poll_deadlines(now=utcnow() + timedelta(hours=2))

        assert report.promoted == [rid]
        assert _statuses(rid) == ["Rejected", "Awarded", "Standby"]
        requisition = store.get_requisition(rid)
        assert count_actions(requisition, "AWARD_RESPONSE_EXPIRED") == 1
        assert requisition.award_response_deadline is None


# ===================================================================
# Reset after exhaustion
# ===================================================================

class TestResetAward:
    def _exhaust(self, build, people) -> int:
        built = build("Awarded", quotations=2)
        rid = built.requisition_id
        award.notify_vendor(rid, utcnow() + timedelta(days=1), people.officer)
        award.promote_standby(rid, people.officer)
        award.promote_standby(rid, people.officer)
        db.session.commit()
        return rid

    def test_notify_after_exhaustion_is_exhausted(self, build, people) -> None:
        rid = self._exhaust(build, people)
        with pytest.raises(Exhausted):
            award.notify_vendor(rid, utcnow() + timedelta(days=1), people.officer)

    def test_reset_returns_exhausted_award_to_scoring(self, build, people) -> None:
        rid = self._exhaust(build, people)

        award.reset_award(rid, people.officer)
        db.session.commit()

        requisition = store.get_requisition(rid)
        assert requisition.status == "Scoring_In_Progress"
        assert requisition.award_exhausted_at is None
        assert requisition.award_response_deadline is None
        assert requisition.scoring_deadline is None
        assert _statuses(rid) == ["Submitted", "Submitted"]
        assert all(q.rank is None for q in requisition.quotations)
        assert not any(a.scores_submitted for a in requisition.assignments)
        assert requisition.committee_member_ids() == {people.members[0].id, people.members[1].id}
        assert count_actions(requisition, "RESET_AWARD") == 1

    def test_reset_award_can_be_rescored_and_finalized(self, build, people) -> None:
        rid = self._exhaust(build, people)
        award.reset_award(rid, people.officer)
        x, y = [q.id for q in Quotation.query.filter_by(requisition_id=rid).order_by(Quotation.id)]

        award.record_ranks(rid, {x: 2, y: 1}, people.officer)
        for member in people.members:
            committee.record_submission(rid, member.id, actor=member)
        winner = award.finalize(rid, people.officer)
        db.session.commit()

        assert winner.id == y
        assert _statuses(rid) == ["Standby", "Awarded"]
        assert count_actions(store.get_requisition(rid), "SCORING_COMPLETE") == 2

    def test_reset_with_award_in_play_is_invalid_state(self, build, people) -> None:
        built = build("Awarded")
        with pytest.raises(InvalidState):
            award.reset_award(built.requisition_id, people.officer)

    def test_reset_requires_capability(self, build, people) -> None:
        rid = self._exhaust(build, people)
        with pytest.raises(Forbidden):
            award.reset_award(rid, people.vendors[0])
