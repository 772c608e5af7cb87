# backend/resale_pos/__init__.py
import logging

from flask import Flask, jsonify, request

from .config import Config
from .extensions import db, migrate


def build_sale_orchestrator(app: Flask):
    """Wire the sale engine with SQL-backed audit and idempotency storage."""
    from .services.audit_service import AuditRecorder, SqlAuditRepository
    from .services.idempotency_service import IdempotencyCoordinator, SqlIdempotencyRepository
    from .services.sales_service import SaleOrchestrator

    return SaleOrchestrator(
        audit=AuditRecorder(SqlAuditRepository()),
        idempotency=IdempotencyCoordinator(
            SqlIdempotencyRepository(),
            ttl_hours=app.config["IDEMPOTENCY_TTL_HOURS"],
        ),
        default_warranty_days=app.config["DEFAULT_WARRANTY_DAYS"],
        total_tolerance_cents=app.config["TOTAL_TOLERANCE_CENTS"],
        cancel_reason_min_length=app.config["CANCEL_REASON_MIN_LENGTH"],
    )


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("resale_pos").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    app.extensions["sale_orchestrator"] = build_sale_orchestrator(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": {"code": "not_found", "message": "Resource not found", "details": None}}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"error": {"code": "method_not_allowed", "message": "Method not allowed", "details": None}}), 405

    @app.errorhandler(500)
    def internal_error(_error):
        db.session.rollback()
        return jsonify({"error": {"code": "internal_error", "message": "Internal server error", "details": None}}), 500

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in app.config["CORS_ALLOWED_ORIGINS"]:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, Idempotency-Key, X-Actor-Id"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
