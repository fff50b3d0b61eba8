"""
Courier Onboarding Engine
Blueprint helpers shared by the API modules.
"""

from flask import request

from courier_onboarding.core.exceptions import ValidationError


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def expected_version(data: dict | None = None):
    """Version the client last saw: JSON ``version`` or the If-Match header."""
    raw = (data or {}).get("version")
    if raw is None:
        raw = request.headers.get("If-Match")
    if raw is None or raw == "":
        return None
    try:
        return int(str(raw).strip('"'))
    except ValueError as exc:
        raise ValidationError("version must be an integer", details={"version": raw}) from exc


def actor_from(data: dict | None, default: str) -> str:
    """Acting user: JSON ``actor``, then the X-Actor header."""
    return (data or {}).get("actor") or request.headers.get("X-Actor") or default
