"""Request-context helpers shared by the cycle blueprints.

tenant_id is resolved from query param or JSON body. The acting user and role
arrive as ``X-User-Id`` / ``X-User-Role`` headers, set by the gateway after
authentication; nothing here verifies them.
"""

from __future__ import annotations

from flask import jsonify, request


def tenant_id() -> int | None:
    """Extract tenant_id from query string or JSON body."""
    tid = request.args.get("tenant_id", type=int)
    if tid:
        return tid
    data: dict = request.get_json(silent=True) or {}
    try:
        return int(data.get("tenant_id")) if data.get("tenant_id") else None
    except (TypeError, ValueError):
        return None


def tenant_required() -> tuple[int | None, tuple | None]:
    tid = tenant_id()
    if not tid:
        return None, (jsonify({"error": "tenant_id is required"}), 400)
    return tid, None


def acting_user_id() -> str | None:
    return request.headers.get("X-User-Id") or None


def acting_role() -> str | None:
    role = request.headers.get("X-User-Role")
    return role.strip().upper() if role else None


def page_args(default_limit: int = 20) -> dict:
    return {
        "page": request.args.get("page", 1, type=int),
        "limit": request.args.get("limit", default_limit, type=int),
    }


def json_body() -> dict:
    return request.get_json(silent=True) or {}
