# backend/mealpass/__init__.py
import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        # Applied before extensions bind, so tests can point at their own database
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.packages import packages_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(packages_bp)

    from .services.concurrency import StorageError

    @app.errorhandler(StorageError)
    def handle_storage_error(exc):
        app.logger.error("Storage failure: %s", exc.message, exc_info=exc.__cause__)
        return jsonify(exc.to_dict()), 503

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
