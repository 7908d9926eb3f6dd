"""Helpers shared by the JSON blueprints."""

from __future__ import annotations

import json

from flask import current_app, jsonify, request

from errors import ValidationError
from utils import to_millis, utc_now


def api_response(data=None, message: str = "", status: int = 200):
    """Wrap *data* in the standard ``{success, data, message, timestamp}`` envelope."""
    body = {
        "success": True,
        "data": data,
        "message": message,
        "timestamp": to_millis(utc_now()),
    }
    return jsonify(body), status


def json_body() -> dict:
    """Return the request's JSON object, or the JSON in the ``request`` form field."""
    if request.is_json:
        payload = request.get_json(silent=True)
    elif "request" in request.form:
        try:
            payload = json.loads(request.form["request"])
        except ValueError:
            raise ValidationError({"request": "Request part is not valid JSON"}) from None
    else:
        payload = {}
    if payload is None:
        raise ValidationError({"request": "Body is not valid JSON"})
    if not isinstance(payload, dict):
        raise ValidationError({"request": "Body must be a JSON object"})
    return payload


def document_store():
    return current_app.extensions["document_store"]


def tenant_monitor():
    return current_app.extensions["tenant_monitor"]
