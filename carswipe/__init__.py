from __future__ import annotations

import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager

from .config import DEV_KEY_ENCRYPTION_SECRET, Config
from .database import db
from .relay import MessageSubscribers, RelaySubscriber

jwt = JWTManager()


def create_app(config_class: type[Config] | None = None) -> Flask:
    """Application factory used by both wsgi entry points and tests."""
    app = Flask(__name__, instance_relative_config=True)

    # Ensure the instance folder exists for the SQLite database.
    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        pass

    app.config.from_object(config_class or Config())

    if app.config.get("KEY_ENCRYPTION_SECRET") == DEV_KEY_ENCRYPTION_SECRET and not app.config.get("TESTING"):
        app.logger.warning("KEY_ENCRYPTION_SECRET is not set; secret keys are wrapped under the public dev default")

    frontend_origin = app.config.get("FRONTEND_ORIGIN")
    allowed_origin_values = [
        origin for origin in {
            frontend_origin,
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        } if origin
    ]

    CORS(
        app,
        resources={
            r"/api/*": {
                "origins": allowed_origin_values,
                "methods": ["GET", "POST", "OPTIONS"],
                "allow_headers": ["Content-Type", "Authorization"],
            }
        },
        supports_credentials=True,
    )
    db.init_app(app)
    jwt.init_app(app)

    # New-message subscribers; the relay is optional and best-effort.
    subscribers = MessageSubscribers()
    if app.config.get("RELAY_API_URL"):
        subscribers.subscribe(
            RelaySubscriber(app.config["RELAY_API_URL"], app.config.get("RELAY_API_TOKEN", ""))
        )
    app.extensions["carswipe.subscribers"] = subscribers

    # Register blueprints lazily to avoid circular imports.
    from .routes import register_blueprints

    register_blueprints(app)

    @app.before_request
    def log_request():
        if request.method != "OPTIONS":
            app.logger.debug("%s %s", request.method, request.path)

    @app.get("/api/ping")
    def ping():
        """Simple health-check endpoint."""
        return jsonify({"status": "ok"}), 200

    # Ensure tables exist without requiring migrations for this minimal build.
    with app.app_context():
        db.create_all()

    return app


__all__ = ["create_app", "db", "jwt"]
