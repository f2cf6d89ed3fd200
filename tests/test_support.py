"""Tests for notifications, logging, actor resolution, seeding and CLI commands."""

import json
import logging

import pytest

from procurex.errors import Forbidden
from procurex.logging_config import HumanFormatter, JSONFormatter
from procurex.models import Role, User, Vendor
from procurex.notifications import Notification, outbox, send
from procurex.security import SYSTEM_ACTOR, Actor, Capability, has_capability, require_capability
from procurex.seed import seed_demo


class TestNotifications:
    def test_memory_backend_captures(self, app) -> None:
        assert send(Notification(to="a@example.org", subject="Hi", body="Body")) is True
        assert outbox()[-1].subject == "Hi"

    def test_missing_recipient_is_skipped(self, app) -> None:
        assert send(Notification(to="", subject="Hi", body="Body")) is False
        assert outbox() == []

    def test_smtp_failure_never_raises(self, app, caplog) -> None:
        app.config["MAIL_BACKEND"] = "smtp"
        app.config["MAIL_SERVER"] = ""
        with caplog.at_level(logging.WARNING, logger="procurex.notifications"):
            assert send(Notification(to="a@example.org", subject="PIN", body="secret 123456")) is False
        assert "123456" not in caplog.text


class TestLogging:
    def test_json_formatter(self) -> None:
        record = logging.LogRecord("procurex.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.requisition_id = 7
        entry = json.loads(JSONFormatter().format(record))
        assert entry["msg"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["requisition_id"] == 7

    def test_human_formatter(self) -> None:
        record = logging.LogRecord("procurex.test", logging.WARNING, __file__, 1, "careful", (), None)
        assert "[WARNING] procurex.test: careful" in HumanFormatter().format(record)


class TestActors:
    def test_capabilities_derive_from_roles(self) -> None:
        director = Actor(id=1, name="D", roles=frozenset({Role.FINANCE_DIRECTOR}))
        assert has_capability(director, Capability.REQUEST_OWN_PIN)
        assert not has_capability(director, Capability.ISSUE_PINS)
        assert director.director_roles == {Role.FINANCE_DIRECTOR}

    def test_require_capability(self) -> None:
        vendor = Actor(id=2, name="V", roles=frozenset({Role.VENDOR}))
        with pytest.raises(Forbidden):
            require_capability(vendor, Capability.FINALIZE_AWARD)

    def test_system_actor_can_promote(self) -> None:
        assert has_capability(SYSTEM_ACTOR, Capability.PROMOTE_STANDBY)

    def test_role_parse(self) -> None:
        assert Role.parse("SUPPLY_CHAIN_DIRECTOR") is Role.SUPPLY_CHAIN_DIRECTOR
        assert Role.parse("Director_Supply_Chain_and_Property_Management") is Role.SUPPLY_CHAIN_DIRECTOR
        with pytest.raises(ValueError):
            Role.parse("Janitor")


class TestSeedAndCli:
    def test_seed_is_idempotent(self, app) -> None:
        first = seed_demo()
        second = seed_demo()

        assert "admin" in first and "acme" in first
        assert second == {}
        assert Vendor.query.count() == 3
        admin = User.query.filter_by(username="admin").first()
        assert admin.api_token_digest == User.token_digest(first["admin"])

    def test_create_user_command(self, app) -> None:
        runner = app.test_cli_runner()
        result = runner.invoke(args=["create-user", "dora", "--role", "Finance_Director", "--email", "dora@example.org"])
        assert result.exit_code == 0, result.output

        user = User.query.filter_by(username="dora").first()
        assert user.has_role(Role.FINANCE_DIRECTOR)
        assert user.api_token_digest == User.token_digest(result.output.strip())

        again = runner.invoke(args=["create-user", "dora", "--role", "Finance_Director"])
        assert again.exit_code != 0

    def test_create_user_rejects_unknown_role(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["create-user", "eve", "--role", "Overlord"])
        assert result.exit_code != 0
        assert User.query.filter_by(username="eve").first() is None

    def test_poll_deadlines_command(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["poll-deadlines"])
        assert result.exit_code == 0
        assert "closed=0" in result.output

    def test_health(self, client) -> None:
        assert client.get("/health").get_json()["status"] == "ok"
