from __future__ import annotations

import json

from flask import jsonify, request

from portal.access import Principal, current_principal, require_approved
from portal.email_service import pop_warnings
from portal.errors import ValidationError
from portal.serializers import jsonable


def payload() -> dict:
    """Request body as a plain dict, from JSON or form data."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body must be valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    return {key: values if len(values) > 1 else values[0] for key, values in request.form.lists()}


def json_field(data: dict, name: str) -> list:
    """Read a list field that multipart clients send as a JSON string."""
    value = data.pop(name, None)
    if value in (None, ""):
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValidationError(f"'{name}' must be a JSON list.", errors={name: ["Invalid JSON."]}) from exc
    if not isinstance(value, list):
        raise ValidationError(f"'{name}' must be a list.", errors={name: ["Expected a list."]})
    return value


def principal() -> Principal:
    return require_approved(current_principal())


def query_int(name: str) -> int | None:
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"'{name}' must be an integer.", errors={name: [raw]}) from exc


def query_flag(name: str) -> bool:
    return str(request.args.get(name, "")).lower() in {"1", "true", "yes", "on"}


def respond(data=None, status: int = 200, **extra):
    """JSON response carrying any notification warnings raised while handling the request."""
    body = {"data": jsonable(data)} if data is not None else {}
    body.update(jsonable(extra))
    warnings = pop_warnings()
    if warnings:
        body["warnings"] = warnings
    return jsonify(body), status


__all__ = ["payload", "json_field", "principal", "query_int", "query_flag", "respond"]
