import contextvars
import json
import logging
from typing import Any

from step_engine.redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
# set inside the worker's copied context so step events name their run
deployment_id_ctx = contextvars.ContextVar("deployment_id", default="")
_logger = logging.getLogger("opsdeck.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def _format_value(value: Any) -> str:
    text = redact_text(value) if isinstance(value, str) else str(value)
    if any(ch.isspace() for ch in text) or '"' in text:
        return json.dumps(text)
    return text


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Write one ``key=value`` line per event on the ``opsdeck.obs`` logger.

    Keys are sorted, ``None`` fields are dropped, string values are redacted and
    values containing whitespace are JSON-quoted so a line splits back into
    fields. The bound request id and deployment id are added unless a field of
    the same name is passed.
    """
    payload = {"event": event, "request_id": get_request_id()}
    deployment_id = deployment_id_ctx.get()
    if deployment_id:
        payload["deployment_id"] = deployment_id
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = value
    parts = [f"{key}={_format_value(payload[key])}" for key in sorted(payload.keys())]
    _logger.log(level, " ".join(parts))
