"""Internal models for compiled tool definitions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .schema import ObjectNode


API_KEY = "apiKey"
HTTP_BEARER = "httpBearer"
HTTP_BASIC = "httpBasic"
OAUTH2 = "oauth2"

# An empty requirement object: the call may go out without credentials.
ANONYMOUS = "anonymous"

SECURITY_TYPES = (API_KEY, HTTP_BEARER, HTTP_BASIC, OAUTH2, ANONYMOUS)


@dataclass(frozen=True)
class SecurityRequirement:
    scheme_name: str
    type: str
    group: int = 0
    location: Optional[str] = None
    credential_name: Optional[str] = None
    token_url: Optional[str] = None
    scopes: Tuple[str, ...] = ()


ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    method: str
    path_template: str
    base_url: str
    input_schema: ObjectNode
    operation_id: str
    path_params: Tuple[str, ...] = ()
    query_params: Tuple[str, ...] = ()
    header_params: Tuple[str, ...] = ()
    cookie_params: Tuple[str, ...] = ()
    security_requirements: Tuple[SecurityRequirement, ...] = ()
    tags: Tuple[str, ...] = ()
    handler: Optional[ToolHandler] = field(default=None, compare=False, repr=False)

    def json_schema(self) -> Dict[str, Any]:
        return self.input_schema.to_json_schema()

    def with_handler(self, handler: ToolHandler) -> "ToolDefinition":
        return replace(self, handler=handler)
