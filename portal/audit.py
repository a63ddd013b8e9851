from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from flask import has_request_context, request

from .access import Principal, require_super_admin
from .models import ActivityLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    return value


def record_activity(
    actor: Principal | None,
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> ActivityLog:
    """Stage an activity log row; it commits together with the audited change."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = (request.headers.get("User-Agent") or "")[:255]
    return ActivityLog.record(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor.id if actor else None,
        actor_email=actor.email if actor else None,
        old_values=_jsonable(old_values) if old_values is not None else None,
        new_values=_jsonable(new_values) if new_values is not None else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def list_activity(actor: Principal, *, limit: int = 100, action: str | None = None) -> list[ActivityLog]:
    require_super_admin(actor)
    query = ActivityLog.query
    if action:
        query = query.filter_by(action=action)
    return query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(min(max(limit, 1), 500)).all()


__all__ = ["record_activity", "list_activity"]
