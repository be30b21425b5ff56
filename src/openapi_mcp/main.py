"""CLI entry point for the OpenAPI MCP runtime."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import uvicorn

from .config import Settings, get_settings
from .errors import CompileError, ToolCallError
from .logging import configure_audit_log, configure_logging
from .server import build_server
from .service import ToolService
from .state import RuntimeState
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve an OpenAPI description as MCP tools")
    parser.add_argument(
        "--transport",
        choices=["stdio", "http", "streamable-http", "sse"],
        help="Override ADAPTER_TRANSPORT",
    )
    parser.add_argument("--spec", help="Path to the OpenAPI description (overrides OPENAPI_SPEC_FILE)")
    parser.add_argument(
        "--once",
        nargs="+",
        metavar=("METHOD", "ARGS"),
        help="Run 'tools/list' or a single tool call with JSON arguments, print the result and exit",
    )
    return parser.parse_args(argv)


async def run_once(service: ToolService, method: str, raw_arguments: Optional[str]) -> int:
    if method == "tools/list":
        print(json.dumps({"tools": service.list_tools()}, indent=2))
        return 0
    arguments = json.loads(raw_arguments) if raw_arguments else {}
    try:
        result = await service.invoke(method, arguments)
    except ToolCallError as exc:
        print(json.dumps({"error": {"code": exc.code, "message": exc.message}}, indent=2))
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


async def _run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.transport:
        overrides["adapter_transport"] = args.transport
    if args.spec:
        overrides["openapi_spec_file"] = args.spec
    settings = get_settings().model_copy(update=overrides) if overrides else get_settings()

    configure_logging(settings.adapter_log_level)
    configure_audit_log(
        settings.openapi_mcp_log_file,
        max_bytes=settings.openapi_mcp_log_max_size,
        backup_count=settings.openapi_mcp_log_max_files,
        fmt=settings.openapi_mcp_log_format,
    )

    service = ToolService(ToolRegistry(settings), RuntimeState())
    try:
        await service.start()
        if args.once:
            method = args.once[0]
            raw_arguments = args.once[1] if len(args.once) > 1 else None
            return await run_once(service, method, raw_arguments)
        await _serve(settings, service)
        return 0
    finally:
        await service.aclose()


async def _serve(settings: Settings, service: ToolService) -> None:
    mcp, app = build_server(settings, service)
    if app is None:
        if settings.adapter_transport.lower() != "stdio":
            raise RuntimeError(f"Unsupported transport={settings.adapter_transport}")
        await mcp.run_stdio_async()
        return

    logger.info(
        "Serving %s tools over %s on %s:%s",
        len(service.registry.tools()),
        settings.adapter_transport,
        settings.adapter_host,
        settings.adapter_port,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.adapter_host, port=settings.adapter_port)
    )
    await server.serve()


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        code = asyncio.run(_run(args))
    except CompileError as exc:
        print(f"Fatal: {exc}", file=sys.stderr)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
