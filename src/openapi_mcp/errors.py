"""Error taxonomy for tool compilation and tool calls."""

from __future__ import annotations

import json
from typing import Any, Optional


class CompileError(Exception):
    """Raised when an OpenAPI description cannot be compiled into tools."""


class ToolCallError(Exception):
    code = "TOOL_CALL_FAILED"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ToolNotFoundError(ToolCallError):
    code = "TOOL_NOT_FOUND"


class ValidationError(ToolCallError):
    code = "INVALID_INPUT"


class AuthenticationError(ToolCallError):
    code = "AUTHENTICATION_FAILED"


class PolicyError(ToolCallError):
    code = "POLICY_DENIED"

    def __init__(self, check: str, value: str) -> None:
        label = "Method" if check == "method" else "Path"
        super().__init__(f"{label} not allowed: {value}")
        self.check = check
        self.value = value


class RateLimitError(ToolCallError):
    code = "RATE_LIMITED"


class ConcurrencyLimitError(ToolCallError):
    code = "CONCURRENCY_LIMITED"


class UpstreamHttpError(ToolCallError):
    code = "UPSTREAM_HTTP_ERROR"

    def __init__(self, status_code: int, reason: str, body: Any) -> None:
        message = f"API Error: {status_code} {reason}".rstrip()
        detail = body if isinstance(body, str) else _dump(body)
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.body = body


class NetworkError(ToolCallError):
    code = "NETWORK_ERROR"


def _dump(body: Optional[Any]) -> str:
    try:
        return json.dumps(body)
    except (TypeError, ValueError):
        return str(body)
