# backend/stockroom/__init__.py
import logging
from typing import Any, Mapping

from flask import Flask
from flask.logging import default_handler

from .config import Config
from .extensions import db, migrate


def _configure_logging(app: Flask) -> None:
    # Service modules log under "stockroom.*"; route them through Flask's handler.
    package_logger = logging.getLogger("stockroom")
    if default_handler not in package_logger.handlers:
        package_logger.addHandler(default_handler)
    package_logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))


def create_app(overrides: Mapping[str, Any] | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
