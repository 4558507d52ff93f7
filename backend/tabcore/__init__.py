# backend/tabcore/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Payment gateway; tests replace this entry with a fake
    from .services.gateway import StripeGateway
    app.extensions["payment_gateway"] = StripeGateway(app.config.get("STRIPE_SECRET_KEY", ""))

    # Register blueprints
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
