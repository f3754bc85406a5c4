# backend/couponledger/__init__.py
from datetime import timedelta

from flask import Flask, request

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

    # App-owned collaborators; services look these up via current_app.extensions
    from .services.coupon_policy_service import CACHE_EXTENSION_KEY, PolicyCache
    from .services.rate_limit_service import DETECTOR_EXTENSION_KEY, AbuseDetector

    app.extensions[CACHE_EXTENSION_KEY] = PolicyCache(ttl_seconds=app.config["POLICY_CACHE_TTL_SECONDS"])
    app.extensions[DETECTOR_EXTENSION_KEY] = AbuseDetector(
        threshold=app.config["ABUSE_THRESHOLD"],
        window=timedelta(seconds=app.config["ABUSE_WINDOW_SECONDS"]),
        repeat_every=app.config["ABUSE_REPEAT_EVERY"],
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.integration_coupons import integration_coupons_bp  # WhatsApp/Instagram workflow
    from .routes.admin_coupons import admin_coupons_bp  # Staff dashboard
    from .routes.admin_policy import admin_policy_bp  # Thresholds and reward tiers

    app.register_blueprint(system_bp)
    app.register_blueprint(integration_coupons_bp)
    app.register_blueprint(admin_coupons_bp)
    app.register_blueprint(admin_policy_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, X-API-Key, X-Admin-User"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
