"""
Flask Application Factory - Clinic Dashboard API

All metrics are derived in-process from the merged Medical Force dataset
owned by the SyncCoordinator. No request touches the upstream API except
POST /api/dashboard/refresh and /connect.

Error envelope (every non-2xx response):
    {"error": {"code": "...", "message": "...", "requestId": "..."}}
"""

import logging
import uuid

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from config import Config
from services.sync_coordinator import (
    BootstrapError,
    SyncDisabledError,
    SyncError,
    SyncStateError,
    UnknownTenantError,
)

logger = logging.getLogger(__name__)


def _error_response(code: str, message: str, status: int):
    request_id = getattr(g, 'request_id', None)
    response = jsonify({
        "error": {
            "code": code,
            "message": message,
            "requestId": request_id,
        }
    })
    response.status_code = status
    if request_id:
        response.headers['X-Request-ID'] = request_id
    return response


def _register_error_handlers(app: Flask) -> None:

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        """Preserve status codes for 404, 405, etc."""
        return _error_response(error.name.upper().replace(' ', '_'), error.description, error.code)

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        messages = [
            f"{'.'.join(str(p) for p in e['loc']) or 'params'}: {e['msg']}"
            for e in error.errors()
        ]
        return _error_response("VALIDATION_ERROR", "; ".join(messages), 400)

    @app.errorhandler(UnknownTenantError)
    def handle_unknown_tenant(error):
        return _error_response("VALIDATION_ERROR", str(error), 400)

    @app.errorhandler(SyncDisabledError)
    def handle_sync_disabled(error):
        return _error_response("SYNC_DISABLED", str(error), 503)

    @app.errorhandler(SyncStateError)
    def handle_sync_state(error):
        return _error_response("SYNC_NOT_READY", str(error), 409)

    @app.errorhandler(BootstrapError)
    def handle_bootstrap_error(error):
        return _error_response("UPSTREAM_UNAVAILABLE", str(error), 502)

    @app.errorhandler(SyncError)
    def handle_sync_error(error):
        return _error_response("SYNC_UNAVAILABLE", str(error), 503)

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Real 500s - actual internal errors."""
        if isinstance(error, HTTPException):
            return handle_http_exception(error)
        logger.exception(f"Unhandled error on {request.path}: {error}")
        return _error_response("INTERNAL_ERROR", "An unexpected error occurred", 500)


def create_app(coordinator=None, config_object=Config):
    """
    Build the Flask app.

    Args:
        coordinator: SyncCoordinator to serve. When None it is built from
            MF_* environment variables on the first dashboard request.
        config_object: Settings class (tests pass a subclass)
    """
    app = Flask(__name__)
    app.config.from_object(config_object)

    CORS(app,
         resources={r"/api/*": {"origins": app.config.get('CORS_ORIGINS', '*')}},
         methods=["GET", "POST", "OPTIONS"],
         allow_headers=["Content-Type", "X-Request-ID"],
         expose_headers=["X-Request-ID"],
         supports_credentials=False)

    # Request ID for correlation across logs and error envelopes
    @app.before_request
    def inject_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    @app.after_request
    def add_request_id_header(response):
        if 'X-Request-ID' not in response.headers and hasattr(g, 'request_id'):
            response.headers['X-Request-ID'] = g.request_id
        return response

    _register_error_handlers(app)

    if coordinator is not None:
        from routes.dashboard import COORDINATOR_EXTENSION
        app.extensions[COORDINATOR_EXTENSION] = coordinator

    from routes.dashboard import dashboard_bp
    app.register_blueprint(dashboard_bp, url_prefix='/api/dashboard')

    @app.route("/api/health", methods=["GET"])
    def health():
        from routes.dashboard import COORDINATOR_EXTENSION
        current = app.extensions.get(COORDINATOR_EXTENSION)
        return jsonify({
            "status": "ok",
            "sync_state": current.state.value if current is not None else "not_configured",
            "record_count": len(current.dataset) if current is not None else 0,
        })

    return app


def run_app():
    """Main entry point for local development - starts server with Flask's dev server."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    logger.info("=" * 60)
    logger.info("Starting Flask API - Clinic Dashboard")
    logger.info("=" * 60)

    app = create_app()

    if app.config.get('SYNC_AUTOSTART'):
        from routes.dashboard import start_background_connect
        from services.sync_coordinator import build_coordinator_from_env

        try:
            coordinator = build_coordinator_from_env()
        except SyncError as e:
            logger.error(f"Sync autostart skipped: {e}")
        else:
            from routes.dashboard import COORDINATOR_EXTENSION
            app.extensions[COORDINATOR_EXTENSION] = coordinator
            start_background_connect(coordinator)
            logger.info("Sync autostart: bootstrap running in background")

    app.run(debug=app.config.get('DEBUG', False), host="0.0.0.0", port=5000, use_reloader=False)


if __name__ == "__main__":
    run_app()
