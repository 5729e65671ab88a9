import re
from urllib.parse import urlsplit


_SECRET_PATTERNS = [
    re.compile(r"(Authorization\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(X-API-Key\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(r"((?:access|id|refresh)_?token[=:]\s*)[^&\s,]+", re.IGNORECASE),
    re.compile(r"((?:api_?key|apiKey)[=:]\s*)[^&\s,]+", re.IGNORECASE),
    re.compile(r"((?:password|passwd|secret)[=:]\s*)[^&\s,]+", re.IGNORECASE),
    re.compile(r"(token=)[^&\s]+", re.IGNORECASE),
]


def redact_url(value: str) -> str:
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}/..."


def redact_text(value: str) -> str:
    """Strip credentials and URL paths from free text before it reaches a log line."""
    if not value:
        return value
    redacted = value
    for pattern in _SECRET_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    return re.sub(r"https?://[^\s]+", lambda match: redact_url(match.group(0)), redacted)
