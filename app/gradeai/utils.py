from __future__ import annotations

from typing import Any

from flask import jsonify, request


def api_error(message: str, status: int, **extra: Any):
    """JSON error body used by every API route."""
    body: dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), status


def json_body() -> dict[str, Any]:
    """Request JSON as a dict; anything else (missing, invalid, a list) reads as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
