# /app/workflows/error_handler.py

"""
Classification and rendering of tool errors.

An error is *technical* when it looks like an infrastructure failure the user
cannot fix (upstream outage, protocol or configuration problem). Anything else
is *user-actionable* and may be surfaced as part of the next prompt.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No logging
"""

import re
from typing import Optional, TypedDict

TECHNICAL_KEYWORDS = (
    "webhook",
    "https",
    "http",
    "protocol",
    "endpoint",
    "server error",
    "internal server",
    "connection timeout",
    "network error",
    "socket",
    "tls",
    "ssl",
    "certificate",
    "dns",
    "bad gateway",
    "gateway timeout",
    "proxy",
    "cors",
    "authentication token",
    "status code",
    "500",
    "502",
    "503",
    "504",
    "database connection",
    "sql",
    "query failed",
    "schema",
    "constraint",
    "exception",
    "stack trace",
    "config",
    "configuration",
)

_TECHNICAL_PATTERN = re.compile(
    "|".join(rf"\b{re.escape(keyword)}\b" for keyword in TECHNICAL_KEYWORDS),
    re.IGNORECASE,
)

# Failures raised by the tool registry itself, never by a tool's business rules.
TECHNICAL_ERROR_CODES = frozenset({
    "TOOL_NOT_FOUND",
    "TOOL_LOAD_FAILED",
    "INVALID_TOOL_RESULT",
    "TOOL_EXCEPTION",
})


class ErrorAnalysis(TypedDict):
    is_technical: bool
    message: str


def is_technical_error(message: Optional[str], status: Optional[int] = None, error_code: Optional[str] = None) -> bool:
    """True when the error code, upstream status or message points at an infrastructure failure."""
    if error_code in TECHNICAL_ERROR_CODES:
        return True
    if status is not None and status >= 500:
        return True
    if not message:
        return False
    return bool(_TECHNICAL_PATTERN.search(message))


def analyze_error(message: Optional[str], status: Optional[int] = None, error_code: Optional[str] = None) -> ErrorAnalysis:
    return {
        "is_technical": is_technical_error(message, status, error_code),
        "message": (message or "").strip(),
    }


def render_error_message(
    template: Optional[str],
    error: Optional[str],
    stage: Optional[str],
    conversation_id: Optional[str],
) -> str:
    """
    Fill an error-config message template. Supported placeholders are
    ``{error}``, ``{stage}`` and ``{conversationId}``; unknown braces are left as-is.
    """
    if not template:
        return error or ""
    values = {
        "error": error or "",
        "stage": stage or "",
        "conversationId": conversation_id or "",
    }
    return re.sub(r"\{(error|stage|conversationId)\}", lambda m: values[m.group(1)], template)
