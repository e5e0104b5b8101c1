from __future__ import annotations

from flask import Flask

from .auth import auth_bp
from .keys import keys_bp
from .threads import threads_bp


def register_blueprints(app: Flask) -> None:
    """Attach all API blueprints to the Flask application."""
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(keys_bp, url_prefix="/api/keys")
    app.register_blueprint(threads_bp, url_prefix="/api/threads")


__all__ = ["register_blueprints"]
