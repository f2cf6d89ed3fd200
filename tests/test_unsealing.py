"""Tests for quorum settings and the unsealing controller."""

import pytest

from procurex.audit import count_actions
from procurex.errors import Forbidden, InvalidRequest, InvalidState
from procurex.extensions import db
from procurex.models import Role
from procurex.services import pins, store
from procurex.services.unsealing import QuorumSettings, SealState, evaluate, seal_state, update_settings


class TestQuorumSettings:
    def test_defaults_to_all_director_roles(self) -> None:
        settings = QuorumSettings.build(2)
        assert settings.unseal_threshold == 2
        assert settings.required_roles_for_opening == {
            Role.FINANCE_DIRECTOR,
            Role.FACILITY_DIRECTOR,
            Role.SUPPLY_CHAIN_DIRECTOR,
        }

    @pytest.mark.parametrize("threshold", [0, -1, 4, "2", True, None])
    def test_invalid_threshold(self, threshold) -> None:
        with pytest.raises(InvalidRequest):
            QuorumSettings.build(threshold)

    def test_opening_roles_accept_names_and_values(self) -> None:
        settings = QuorumSettings.build(1, ["FINANCE_DIRECTOR", "Facility_Director"])
        assert settings.required_roles_for_opening == {Role.FINANCE_DIRECTOR, Role.FACILITY_DIRECTOR}

    def test_empty_opening_roles(self) -> None:
        with pytest.raises(InvalidRequest):
            QuorumSettings.build(1, [])

    def test_non_director_opening_role(self) -> None:
        with pytest.raises(InvalidRequest):
            QuorumSettings.build(1, ["Approver"])

    def test_unknown_opening_role(self) -> None:
        with pytest.raises(InvalidRequest):
            QuorumSettings.build(1, ["Chief_Wizard"])


class TestUnsealing:
    def test_threshold_two_unseals_on_second_role(self, build, people) -> None:
        built = build("Sealed", threshold=2)
        rid = built.requisition_id

        first = pins.verify(rid, Role.FINANCE_DIRECTOR, built.plaintexts[Role.FINANCE_DIRECTOR], people.finance)
        db.session.commit()
        requisition = store.get_requisition(rid)
        assert first.unsealed is False
        assert requisition.masked is True
        assert seal_state(requisition, first.verified_count) is SealState.UNSEALING

        second = pins.verify(rid, Role.FACILITY_DIRECTOR, built.plaintexts[Role.FACILITY_DIRECTOR], people.facility)
        db.session.commit()
        requisition = store.get_requisition(rid)
        assert second.unsealed is True
        assert second.quorum_reached is True
        assert requisition.masked is False
        assert requisition.status == "Unsealed"
        assert requisition.unsealed_at is not None
        assert count_actions(requisition, "UNMASK_RFQ") == 1

    def test_third_verification_does_not_unmask_again(self, build, people) -> None:
        built = build("Unsealed", threshold=2)
        rid = built.requisition_id

        result = pins.verify(
            rid, Role.SUPPLY_CHAIN_DIRECTOR, built.plaintexts[Role.SUPPLY_CHAIN_DIRECTOR], people.supply_chain
        )
        db.session.commit()

        assert result.verified_count == 3
        assert count_actions(store.get_requisition(rid), "UNMASK_RFQ") == 1

    def test_lowering_threshold_unseals_immediately(self, build, people) -> None:
        built = build("Sealed")
        rid = built.requisition_id
        pins.verify(rid, Role.FINANCE_DIRECTOR, built.plaintexts[Role.FINANCE_DIRECTOR], people.finance)
        db.session.commit()
        assert store.get_requisition(rid).masked is True

        requisition, verified = update_settings(rid, QuorumSettings.build(1), people.officer)
        db.session.commit()

        assert verified == 1
        assert requisition.masked is False
        assert requisition.status == "Unsealed"
        assert count_actions(requisition, "UNMASK_RFQ") == 1
        assert count_actions(requisition, "SET_QUORUM_SETTINGS") == 1

    def test_raising_threshold_after_unseal_does_not_remask(self, build, people) -> None:
        built = build("Unsealed", threshold=1)
        requisition, _ = update_settings(built.requisition_id, QuorumSettings.build(3), people.officer)
        db.session.commit()

        assert requisition.masked is False
        assert requisition.status == "Unsealed"

    def test_reset_after_unseal_does_not_remask(self, build, people) -> None:
        built = build("Unsealed")
        pins.reset(built.requisition_id, people.admin)
        db.session.commit()

        requisition = store.get_requisition(built.requisition_id)
        assert requisition.masked is False
        assert store.verified_roles(requisition.id) == frozenset()

    def test_evaluate_is_idempotent(self, build, people) -> None:
        built = build("Unsealed")
        requisition = store.get_requisition(built.requisition_id)
        assert evaluate(requisition, people.officer) is False
        assert count_actions(requisition, "UNMASK_RFQ") == 1

    def test_settings_require_capability(self, build, people) -> None:
        built = build("Draft")
        with pytest.raises(Forbidden):
            update_settings(built.requisition_id, QuorumSettings.build(1), people.finance)

    def test_settings_frozen_once_scoring_starts(self, build, people) -> None:
        built = build("Scoring_In_Progress")
        with pytest.raises(InvalidState):
            update_settings(built.requisition_id, QuorumSettings.build(1), people.officer)

    def test_seal_state_for_fresh_requisition(self, build) -> None:
        built = build("Sealed")
        assert seal_state(store.get_requisition(built.requisition_id), 0) is SealState.SEALED
