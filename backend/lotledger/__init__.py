# backend/lotledger/__init__.py
from flask import Flask
from sqlalchemy.exc import OperationalError

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

    # Register blueprints
    from .routes.ledger import ledger_bp

    app.register_blueprint(ledger_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config.get("LEDGER_RECONCILE_ON_STARTUP"):
        _reconcile_on_startup(app)

    return app


def _reconcile_on_startup(app: Flask) -> None:
    """Report aggregate drift at boot; never repairs on its own."""
    from .services.reconciliation_service import reconcile

    with app.app_context():
        try:
            report = reconcile()
        except OperationalError:
            # Schema not created yet (fresh database before `flask db upgrade`)
            app.logger.exception("Startup reconciliation skipped")
            db.session.rollback()
            return
        app.logger.info(
            "Startup reconciliation checked %d product(s), %d drifted",
            report.checked, len(report.entries),
        )
