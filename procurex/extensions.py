"""
Flask extension singletons for the sealed-bid service.

Bound to the application in create_app(). Services import `db` from here and
never from the factory module, which keeps the import graph acyclic.

login_manager has no user_loader: callers are resolved per request from their
bearer token (see security.load_user_from_request), never from a session cookie.
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
