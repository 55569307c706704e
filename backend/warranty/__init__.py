# backend/warranty/__init__.py
from __future__ import annotations

from typing import Any, Mapping, Optional

from flask import Flask

from .config import Config, WarrantySettings
from .extensions import db, migrate


def build_orchestrator(app: Flask, settings: WarrantySettings, *, dispatcher=None):
    """Construct the service container. Called at startup and on settings reload."""
    from .services.batch_service import BatchEngine
    from .services.tenant_service import TenantResolver
    from .services.warranty_orchestrator import WarrantyOrchestrator

    return WarrantyOrchestrator(
        settings,
        resolver=TenantResolver(settings, logger=app.logger.getChild("tenants")),
        engine=BatchEngine(settings, logger=app.logger.getChild("batches")),
        dispatcher=dispatcher,
        logger=app.logger.getChild("warranty"),
    )


def reload_settings(app: Flask, overrides: Optional[Mapping[str, Any]] = None) -> WarrantySettings:
    """Build new settings and swap the whole service container in one assignment."""
    if overrides:
        app.config.update(overrides)
    settings = WarrantySettings.from_mapping(app.config)
    current = app.extensions["warranty"]
    app.extensions["warranty"] = build_orchestrator(app, settings, dispatcher=current.dispatcher)
    return settings


def create_app(config_overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Fails fast on invalid WARRANTY_* values
    settings = WarrantySettings.from_mapping(app.config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .worker import dispatch_batch, init_celery
    init_celery(app)
    app.extensions["warranty"] = build_orchestrator(
        app, settings, dispatcher=app.config.get("WARRANTY_BATCH_DISPATCHER", dispatch_batch)
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.admin_warranty import admin_warranty_bp
    from .routes.customer_warranty import customer_warranty_bp
    from .routes.public_warranty import public_warranty_bp
    from .routes.internal_warranty import internal_warranty_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(admin_warranty_bp)
    app.register_blueprint(customer_warranty_bp)
    app.register_blueprint(public_warranty_bp)
    app.register_blueprint(internal_warranty_bp)

    # Path-prefix tenant hint: /s/<slug>/api/v1/...
    app.register_blueprint(
        customer_warranty_bp,
        name="customer_warranty_by_slug",
        url_prefix="/s/<storefront_slug>/api/v1/customer/protected/warranty",
    )
    app.register_blueprint(
        public_warranty_bp,
        name="public_warranty_by_slug",
        url_prefix="/s/<storefront_slug>/api/v1/public/warranty",
    )

    from .responses import register_error_handlers
    register_error_handlers(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
