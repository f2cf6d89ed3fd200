"""
procurex/__init__.py

Flask application factory for the sealed-bid procurement service.

Requirements:
- JSON API only; callers authenticate with `Authorization: Bearer <token>`.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev.
- Every service error is rendered as {"error": <kind>, "detail": <text>} after
  the session has been rolled back, so a failed operation leaves no partial
  state and no audit entry behind.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .errors import ProcurementError, Unauthenticated
from .extensions import db, login_manager, migrate
from .logging_config import setup_logging

log = logging.getLogger(__name__)


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    setup_logging(app.config.get("LOG_LEVEL", "INFO"), json_logs=app.config.get("LOG_JSON", False))

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Registers the bearer-token request_loader on login_manager.
    from . import security  # noqa: F401

    @login_manager.unauthorized_handler
    def _unauthorized():
        err = Unauthenticated("A valid bearer token is required.")
        return jsonify(err.to_dict()), err.status_code

    # ----------------------------------------------------------------------
    # Error rendering
    # ----------------------------------------------------------------------
    @app.errorhandler(ProcurementError)
    def _procurement_error(err: ProcurementError):
        db.session.rollback()
        if err.status_code >= 500:
            log.error("%s: %s", err.kind, err.detail)
        else:
            log.info("%s: %s", err.kind, err.detail)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException):
        db.session.rollback()
        return jsonify({"error": err.name.replace(" ", ""), "detail": err.description}), err.code

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.requisitions import requisitions_bp

    app.register_blueprint(requisitions_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Create tables and demo users/vendors. Prints new API tokens once."""
        from .seed import seed_demo

        db.create_all()
        tokens = seed_demo()
        db.session.commit()
        if not tokens:
            click.echo("Demo data already present; no new tokens issued.")
        for username, token in tokens.items():
            click.echo(f"{username}: {token}")

    @app.cli.command("create-user")
    @click.argument("username")
    @click.option("--name", default=None, help="Display name (defaults to the username).")
    @click.option("--email", default=None)
    @click.option("--role", "roles", multiple=True, required=True, help="Role value or name; repeatable.")
    def create_user_command(username, name, email, roles):
        """Create an API user and print its bearer token once."""
        from .models import Role
        from .seed import create_user

        try:
            parsed = [Role.parse(r) for r in roles]
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--role") from exc

        token = create_user(username, name or username, parsed, email=email)
        if token is None:
            raise click.ClickException(f"User {username} already exists.")
        db.session.commit()
        click.echo(token)

    @app.cli.command("poll-deadlines")
    def poll_deadlines_command():
        """Run time-driven transitions once (quote window close, award response expiry)."""
        from .services.poller import poll_deadlines

        report = poll_deadlines()
        click.echo(
            f"closed={len(report.closed)} promoted={len(report.promoted)} "
            f"exhausted={len(report.exhausted)} failed={len(report.failed)}"
        )

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "service": app.config.get("APP_NAME")})

    return app
