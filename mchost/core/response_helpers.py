"""Shared Flask JSON response helpers."""

from flask import jsonify, request


def ok_response(payload=None, status=200):
    """Return ``{"ok": true, ...payload}``."""
    body = {"ok": True}
    body.update(payload or {})
    return jsonify(body), status


def error_response(error, message, status):
    return jsonify({"ok": False, "error": error, "message": message}), status


def mchost_error_response(exc):
    """Map an ``MCHostError`` to its stable code and HTTP status."""
    return error_response(exc.code, exc.message, exc.http_status)


def internal_error_response():
    return error_response("internal_error", "Internal server error.", 500)


def json_body():
    """Return the request JSON object, or ``{}`` for missing/non-object bodies."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
