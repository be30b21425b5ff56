"""Tool invocation service: the ``invoke(tool_name, arguments)`` contract."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .config import Settings, load_settings
from .executors import RequestPipeline
from .logging import redact_payload
from .state import RuntimeState
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolService:
    """
    Entry point used by every transport.

    Tools are compiled once by the registry and bound to a single request
    pipeline; the pipeline re-reads runtime settings on each call.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        state: RuntimeState,
        settings_provider: Callable[[], Settings] = load_settings,
    ) -> None:
        self.registry = registry
        self.state = state
        self.pipeline = RequestPipeline(state, settings_provider=settings_provider)

    async def start(self, document: Optional[Dict[str, Any]] = None) -> None:
        await self.registry.load_tools(document)
        self.registry.bind(self.pipeline)

    async def invoke(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        tool = self.registry.get(tool_name)
        payload = arguments or {}
        logger.info("Executing tool=%s payload=%s", tool.name, redact_payload(payload))
        if tool.handler is None:
            return await self.pipeline.execute(tool, payload)
        return await tool.handler(payload)

    def list_tools(self) -> List[Dict[str, Any]]:
        return self.registry.describe()

    async def aclose(self) -> None:
        await self.state.aclose()
