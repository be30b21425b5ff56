"""MCP server setup for compiled OpenAPI tools."""

import json
import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import TextContent
from pydantic import PrivateAttr
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .config import Settings
from .errors import ToolCallError
from .models import ToolDefinition
from .service import ToolService

logger = logging.getLogger(__name__)

# transport name -> keyword arguments for FastMCP.http_app
_HTTP_TRANSPORTS: Dict[str, Dict[str, Any]] = {
    "http": {"transport": "http", "stateless_http": True, "json_response": True},
    "streamable-http": {"transport": "streamable-http", "stateless_http": True, "json_response": True},
    "streamablehttp": {"transport": "streamable-http", "stateless_http": True, "json_response": True},
    "sse": {"transport": "sse"},
}


class OperationTool(Tool):
    """FastMCP tool whose parameters are the compiled JSON Schema of one operation."""

    _service: Any = PrivateAttr(default=None)

    @classmethod
    def from_definition(cls, service: ToolService, definition: ToolDefinition) -> "OperationTool":
        tool = cls(
            name=definition.name,
            description=definition.description,
            parameters=definition.json_schema(),
            tags=set(definition.tags),
        )
        tool._service = service
        return tool

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        try:
            result = await self._service.invoke(self.name, arguments)
        except ToolCallError as exc:
            raise ToolError(exc.message) from exc
        text = result if isinstance(result, str) else json.dumps(result, default=str)
        return ToolResult(
            content=[TextContent(type="text", text=text)],
            structured_content=result if isinstance(result, dict) else None,
        )


def build_server(settings: Settings, service: ToolService) -> tuple[FastMCP, object | None]:
    mcp = FastMCP(settings.service_name, instructions=_instructions())

    for definition in service.registry.tools():
        mcp.add_tool(OperationTool.from_definition(service, definition))
        logger.info("Registered tool: %s", definition.name)

    app = _get_http_app(mcp, settings)
    if app is not None:
        _attach_cors(app)
        _attach_healthcheck(app, service)
    return mcp, app


def _instructions() -> str:
    return (
        "Tools generated from an OpenAPI description. "
        "Each tool proxies one operation to the upstream API under method/path "
        "policy, rate limiting and concurrency limits."
    )


def _get_http_app(mcp: FastMCP, settings: Settings):  # type: ignore[no-untyped-def]
    options: Optional[Dict[str, Any]] = _HTTP_TRANSPORTS.get(settings.adapter_transport.lower())
    if options is None:
        return None
    return mcp.http_app(**options)


def _attach_healthcheck(app, service: ToolService) -> None:  # type: ignore[no-untyped-def]
    async def healthcheck(_request):  # type: ignore[no-untyped-def]
        return JSONResponse(
            {
                "status": "ok",
                "tools": len(service.registry.tools()),
                "in_flight": service.state.concurrency.in_flight,
            }
        )

    app.add_route("/health", healthcheck, methods=["GET"])


def _attach_cors(app) -> None:  # type: ignore[no-untyped-def]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
