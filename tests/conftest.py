"""Shared fixtures: a sample OpenAPI description and a mocked upstream API.

The upstream is an ``httpx.MockTransport`` so the whole request pipeline runs
for real without a network; every request it receives is recorded.
"""

from __future__ import annotations

import copy
import json
import os
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from openapi_mcp.config import Settings
from openapi_mcp.state import RuntimeState


# ---------------------------------------------------------------------------
# Sample OpenAPI description
# ---------------------------------------------------------------------------

_SPEC: Dict[str, Any] = {
    "openapi": "3.0.3",
    "info": {"title": "Widgets", "version": "1.0.0"},
    "servers": [{"url": "http://api.test/v1"}],
    "components": {
        "schemas": {
            "Widget": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "size": {"type": "integer", "minimum": 0},
                },
                "required": ["name"],
            },
        },
        "securitySchemes": {
            "apiKeyHeader": {"type": "apiKey", "in": "header", "name": "X-API-Key"},
            "apiKeyQuery": {"type": "apiKey", "in": "query", "name": "api_key"},
            "apiKeyCookie": {"type": "apiKey", "in": "cookie", "name": "session"},
            "bearer": {"type": "http", "scheme": "bearer"},
            "basic": {"type": "http", "scheme": "basic"},
            "oauth": {
                "type": "oauth2",
                "flows": {
                    "clientCredentials": {
                        "tokenUrl": "http://auth.test/token",
                        "scopes": {"read": "Read widgets", "write": "Write widgets"},
                    }
                },
            },
            "openid": {"type": "openIdConnect", "openIdConnectUrl": "http://auth.test/.well-known"},
        },
    },
    "paths": {
        "/widgets": {
            "get": {
                "operationId": "listWidgets",
                "summary": "List widgets",
                "tags": ["widgets"],
                "parameters": [
                    {"name": "limit", "in": "query", "schema": {"type": "integer", "maximum": 100}},
                    {"name": "X-Trace", "in": "header", "schema": {"type": "string"}},
                ],
            },
            "post": {
                "operationId": "createWidget",
                "tags": ["widgets"],
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/x-www-form-urlencoded": {"schema": {"type": "object"}},
                        "application/json": {"schema": {"$ref": "#/components/schemas/Widget"}},
                    },
                },
            },
        },
        "/widgets/{id}": {
            "parameters": [
                {"name": "id", "in": "path", "required": True, "schema": {"type": "string"}},
            ],
            "get": {
                "operationId": "widgets.get",
                "tags": ["widgets"],
                "parameters": [
                    {"name": "tenant", "in": "cookie", "schema": {"type": "string"}},
                ],
            },
            "delete": {"operationId": "deleteWidget", "tags": ["admin"]},
        },
        "/union-any": {
            "post": {
                "operationId": "testUnionAny",
                "requestBody": {
                    "content": {
                        "application/json": {
                            "schema": {
                                "anyOf": [
                                    {
                                        "type": "object",
                                        "properties": {"a": {"type": "string"}},
                                        "required": ["a"],
                                    },
                                    {
                                        "type": "object",
                                        "properties": {"a": {"type": "number"}},
                                        "required": ["a"],
                                    },
                                ]
                            }
                        }
                    }
                },
            }
        },
        "/union-one": {
            "post": {
                "operationId": "testUnionOne",
                "requestBody": {
                    "content": {
                        "application/json": {
                            "schema": {
                                "oneOf": [
                                    {
                                        "type": "object",
                                        "properties": {"y": {"type": "integer"}},
                                        "required": ["y"],
                                    },
                                    {
                                        "type": "object",
                                        "properties": {"y": {"type": "number"}},
                                        "required": ["y"],
                                    },
                                ]
                            }
                        }
                    }
                },
            }
        },
        "/union-array": {
            "post": {
                "operationId": "testUnionArray",
                "requestBody": {
                    "content": {
                        "application/json": {
                            "schema": {
                                "type": "array",
                                "items": {"anyOf": [{"type": "string"}, {"type": "integer"}]},
                            }
                        }
                    }
                },
            }
        },
        "/other-thing": {"get": {"operationId": "otherThing"}},
        "/no-id": {"get": {"summary": "Has no operationId"}},
        "/secure/api-key": {
            "get": {"operationId": "pingApiKey", "security": [{"apiKeyHeader": []}]}
        },
        "/secure/query-key": {
            "get": {"operationId": "pingQueryKey", "security": [{"apiKeyQuery": []}]}
        },
        "/secure/cookie": {
            "get": {"operationId": "pingCookie", "security": [{"apiKeyCookie": []}]}
        },
        "/secure/bearer": {"get": {"operationId": "pingBearer", "security": [{"bearer": []}]}},
        "/secure/basic": {"get": {"operationId": "pingBasic", "security": [{"basic": []}]}},
        "/secure/oauth": {
            "get": {"operationId": "getWidgetsOAuth", "security": [{"oauth": ["read", "write"]}]}
        },
        "/secure/either": {
            "get": {"operationId": "pingEither", "security": [{"bearer": []}, {"basic": []}]}
        },
        "/secure/openid": {"get": {"operationId": "pingOpenId", "security": [{"openid": []}]}},
        "/public": {"get": {"operationId": "getPublic", "security": [{"bearer": []}, {}]}},
    },
}


@pytest.fixture
def spec() -> Dict[str, Any]:
    return copy.deepcopy(_SPEC)


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop runtime settings inherited from the developer's shell."""
    for key in list(os.environ):
        if key.upper().startswith(("OPENAPI_", "ADAPTER_")):
            monkeypatch.delenv(key, raising=False)


class SettingsBox:
    """Settings provider whose snapshot tests can swap between calls."""

    def __init__(self, **values: Any) -> None:
        self.value = Settings(**values)
        self.reads = 0

    def set(self, **values: Any) -> None:
        self.value = Settings(**values)

    def __call__(self) -> Settings:
        self.reads += 1
        return self.value


@pytest.fixture
def settings_box() -> SettingsBox:
    return SettingsBox()


# ---------------------------------------------------------------------------
# Mocked upstream
# ---------------------------------------------------------------------------

def _default_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "auth.test":
        return httpx.Response(200, json={"access_token": "test_access_token", "expires_in": 60})
    return httpx.Response(
        200,
        json={"ok": True, "method": request.method, "path": request.url.path},
    )


class Upstream:
    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = _default_handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def api_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host == "api.test"]

    def token_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host == "auth.test"]

    def last_json(self) -> Optional[Any]:
        return json.loads(self.api_requests()[-1].content)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
async def state(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    runtime = RuntimeState(client=client)
    yield runtime
    await runtime.aclose()
