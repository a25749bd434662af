import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from estate_billing.errors import BillingError, ConfigurationError
from estate_billing.locks import TenantLockTimeout
from estate_billing.observability import report_failure

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        level = logging.WARNING if error.status_code < 500 else logging.ERROR
        logger.log(
            level,
            f"{error.code}: {error.message} - Path: {request.path}",
            extra=error.context(),
        )
        response = jsonify({**error.to_dict(), "path": request.path})
        response.status_code = error.status_code
        return response

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error):
        logger.error(f"Configuration error: {error} - Path: {request.path}")
        return jsonify({
            "error": "CONFIGURATION_ERROR",
            "message": "Billing is not configured for this operation.",
            "path": request.path
        }), 503

    @app.errorhandler(TenantLockTimeout)
    def handle_lock_timeout(error):
        logger.warning(f"Tenant lock timeout: {error} - Path: {request.path}")
        return jsonify({
            "error": "CONFLICT",
            "message": "Another billing operation is in progress for this tenant.",
            "path": request.path
        }), 409

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        logger.info(f"{error.code} {error.name}: {request.method} {request.path}")
        return jsonify({
            "error": error.name,
            "message": error.description,
            "path": request.path
        }), error.code

    @app.errorhandler(Exception)
    def server_error(error):
        report_failure(error, {"handler": "unhandled", "path": request.path})
        return jsonify({
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path
        }), 500

    return app
