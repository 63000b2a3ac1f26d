import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from shop_inventory.config import Config
from shop_inventory.db import close_db, get_db, init_db
from shop_inventory.db_migrations import register_db_cli
from shop_inventory.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
    transfer_queue_health,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Test apps always get a schema without running Alembic.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()
        close_db()


def _register_blueprints(app: Flask) -> None:
    from shop_inventory.contexts.transfers.interfaces.http import transfers_bp

    app.register_blueprint(transfers_bp)


def _register_scheduler(app: Flask) -> None:
    from shop_inventory.scheduler import start_transfer_posting_scheduler

    start_transfer_posting_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from shop_inventory.contexts.transfers.domain.gateway import ErpGatewayError
    from shop_inventory.errors import AppError, IntegrationError, SystemError, classify_erp_failure

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(ErpGatewayError)
    def _handle_erp_error(exc: ErpGatewayError):
        request_id = ensure_request_id()
        code, message_key, http_status = classify_erp_failure(str(exc))
        mapped = IntegrationError(
            code=code,
            message_key=message_key,
            http_status=http_status,
            critical=False,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _empty_queue_health() -> dict:
    return {
        "worker_status": "unknown",
        "backlog_critical": False,
        "queue": {
            "pending": 0,
            "processing": 0,
            "failed": 0,
            "requires_review": 0,
            "completed": 0,
            "cancelled": 0,
            "stale_processing": 0,
            "oldest_pending_age_seconds": 0,
            "total_pending_quantity": 0.0,
        },
    }


def _register_health(app: Flask) -> None:
    def _queue_state() -> dict | None:
        try:
            return transfer_queue_health(get_db())
        except Exception:
            app.logger.warning("transfer_queue_health_unavailable", exc_info=True)
            return None

    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "erp_mode": str(app.config.get("ERP_MODE") or "simulator"),
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        queue_state = _queue_state()
        if queue_state is None:
            payload["status"] = "degraded"
            queue_state = _empty_queue_health()
        elif queue_state["worker_status"] == "stalled":
            payload["status"] = "degraded"
        payload["worker"] = queue_state

        scheduler = app.extensions.get("transfer_posting_scheduler")
        payload["scheduler"] = scheduler.state() if scheduler is not None else {"running": False}
        return payload, 200

    @app.route("/metrics")
    def metrics():
        body = prometheus_metrics_text(queue_state=_queue_state())
        return Response(body, mimetype="text/plain; version=0.0.4")
