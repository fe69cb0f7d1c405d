# backend/vault/__init__.py
import atexit
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before extensions read the config
    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401
    # Registers the tenant criteria and flush listeners on the ORM session
    from .services import tenant_service  # noqa: F401

    from .services.dispatcher import init_dispatcher
    from .services.rate_limit_service import init_rate_limiter

    dispatcher = init_dispatcher(app)
    atexit.register(dispatcher.shutdown)
    init_rate_limiter(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.currency import currency_bp
    from .routes.orders import orders_bp
    from .routes.catalog import catalog_bp
    from .routes.cron import cron_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(currency_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(cron_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
