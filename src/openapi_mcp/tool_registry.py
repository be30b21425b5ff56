"""Tool registry for compiled OpenAPI tools."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .compiler import CompileFilters, ToolCompiler
from .config import Settings
from .errors import ToolNotFoundError
from .executors import RequestPipeline
from .models import ToolDefinition, ToolHandler
from .openapi import OpenAPILoader


logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(
        self,
        settings: Settings,
        openapi_loader: Optional[OpenAPILoader] = None,
    ) -> None:
        self.settings = settings
        self.openapi_loader = openapi_loader or OpenAPILoader()
        self._tools: Dict[str, ToolDefinition] = {}

    async def load_tools(self, document: Optional[Dict[str, Any]] = None) -> List[ToolDefinition]:
        if self._tools:
            return list(self._tools.values())

        if document is None:
            document = await self.openapi_loader.load(
                spec_file=self.settings.openapi_spec_file,
                spec_url=self.settings.openapi_spec_url,
            )

        compiler = ToolCompiler(
            base_url=self.settings.openapi_base_url,
            filters=CompileFilters(**self.settings.compile_filters()),
        )
        for tool in compiler.compile(document):
            self._tools[tool.name] = tool
            logger.debug("Compiled tool: %s %s -> %s", tool.method, tool.path_template, tool.name)
        return list(self._tools.values())

    def bind(self, pipeline: RequestPipeline) -> None:
        """Attach a handler closure that runs each tool through ``pipeline``."""
        for name, tool in self._tools.items():
            self._tools[name] = tool.with_handler(_handler(pipeline, tool))

    def get(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError as exc:
            raise ToolNotFoundError(f"Unknown tool: {name}") from exc

    def tools(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"name": tool.name, "description": tool.description, "inputSchema": tool.json_schema()}
            for tool in self._tools.values()
        ]


def _handler(pipeline: RequestPipeline, tool: ToolDefinition) -> ToolHandler:
    async def handler(arguments: Dict[str, Any]) -> Any:
        return await pipeline.execute(tool, arguments)

    handler.__name__ = tool.name
    return handler
