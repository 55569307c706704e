# Overview: JSON response envelopes and error handlers shared by all blueprints.

"""
Response Envelope

SUCCESS:  {"data": ..., "pagination": {...}}   (pagination only on lists)
FAILURE:  {"error": {"code": ..., "message": ..., "details": {...}}}

Every WarrantyError renders with its own code and HTTP status. Anything
else is logged with its traceback and rendered as internal/500 without
leaking the exception text.
"""

from flask import Flask, current_app, jsonify
from werkzeug.exceptions import HTTPException

from .errors import InternalError, WarrantyError
from .services.pagination import Page


def ok(data, status: int = 200):
    return jsonify({"data": data}), status


def paged(page: Page):
    return jsonify({"data": page.items, "pagination": page.pagination()}), 200


def no_content():
    return "", 204


def error_response(exc: WarrantyError):
    return jsonify({"error": exc.to_dict()}), exc.http_status


_HTTP_CODES = {
    400: "validation_failed",
    403: "forbidden",
    404: "not_found",
    405: "validation_failed",
    408: "timeout",
    413: "validation_failed",
    415: "validation_failed",
    429: "rate_limited",
}


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WarrantyError)
    def handle_warranty_error(exc: WarrantyError):
        if exc.http_status >= 500:
            current_app.logger.error("%s: %s", exc.code, exc.message, exc_info=exc.__cause__ or exc)
        return error_response(exc)

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        code = _HTTP_CODES.get(exc.code, "internal")
        body = {"code": code, "message": exc.description or exc.name}
        if exc.code == 405:
            body["message"] = "Method not allowed"
        return jsonify({"error": body}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        current_app.logger.exception("Unhandled error")
        return error_response(InternalError("Internal server error"))
