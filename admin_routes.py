from typing import Callable, Optional

from fastapi import Header

from models import Role
from observability import log_event
from rate_limit import MAX_COUNT, MAX_WINDOW_SECONDS, MIN_COUNT, MIN_WINDOW_SECONDS


def _parse_limit_value(value: object, field: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer")
    if value < low or value > high:
        raise ValueError(f"{field} must be between {low} and {high}")
    return value


def _validate_update_payload(payload: object) -> tuple[Optional[dict], Optional[str]]:
    if not isinstance(payload, dict):
        return None, "Payload must be an object"
    if "window_seconds" not in payload or "max_count" not in payload:
        return None, "window_seconds and max_count are required"
    try:
        window_seconds = _parse_limit_value(
            payload.get("window_seconds"), "window_seconds", MIN_WINDOW_SECONDS, MAX_WINDOW_SECONDS
        )
        max_count = _parse_limit_value(payload.get("max_count"), "max_count", MIN_COUNT, MAX_COUNT)
    except ValueError as exc:
        return None, str(exc)
    return {"window_seconds": window_seconds, "max_count": max_count}, None


def register_admin_routes(
    app,
    *,
    get_actor: Callable,
    get_rate_limiters: Callable,
    enforce: Callable[[str, str], None],
    require_role: Callable,
    error_response: Callable,
) -> None:
    @app.get("/admin/rate-limits")
    def get_rate_limits(authorization: Optional[str] = Header(None)):
        actor = get_actor(authorization)
        enforce("user", actor.actor_id)
        role_error = require_role(actor, {Role.ADMIN}, "view rate limits")
        if role_error:
            return role_error
        return {"limits": get_rate_limiters().snapshot()}

    @app.put("/admin/rate-limits/{name}")
    def update_rate_limit(name: str, payload: dict, authorization: Optional[str] = Header(None)):
        actor = get_actor(authorization)
        enforce("user", actor.actor_id)
        role_error = require_role(actor, {Role.ADMIN}, "update rate limits")
        if role_error:
            return role_error
        limiters = get_rate_limiters()
        if name not in limiters:
            return error_response(404, "NOT_FOUND", f"Rate limiter {name} not found")
        validated, validation_error = _validate_update_payload(payload)
        if validation_error:
            return error_response(400, "INVALID_REQUEST", validation_error)
        limiter = limiters[name]
        old_values = limiter.snapshot()
        limiter.reconfigure(validated["window_seconds"], validated["max_count"])
        log_event(
            "rate_limits_updated",
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            limiter=name,
            old_window_seconds=old_values["window_seconds"],
            old_max_count=old_values["max_count"],
            new_window_seconds=validated["window_seconds"],
            new_max_count=validated["max_count"],
        )
        return limiter.snapshot()
