# subsync/error_handlers.py
import logging
import traceback

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from subsync.errors import DomainError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(DomainError)
    def handle_domain_error(error):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            f"{error.code}: {error.message} - Path: {request.path}",
            extra={"error_code": error.code, "status_code": error.status_code},
        )
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        logger.warning(f"{e.code} {e.name}: {request.method} {request.path}")
        return jsonify({
            "success": False,
            "error": e.name,
            "message": e.description,
            "path": request.path,
        }), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}", exc_info=True)
        if app.config.get("DEBUG", False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({
            "success": False,
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path,
        }), 500
