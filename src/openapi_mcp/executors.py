"""Request execution pipeline for compiled OpenAPI tools."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from .config import Settings, load_settings
from .errors import NetworkError, ToolCallError, UpstreamHttpError, ValidationError
from .logging import AUDIT_LOGGER_NAME, redact_payload
from .models import ToolDefinition
from .policy import PolicyConfig
from .security import OutgoingRequest, select_group, strategy_for
from .state import RuntimeState

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


class RequestPipeline:
    """Runs one tool call: validate, authenticate, build, guard, dispatch, classify."""

    def __init__(
        self,
        state: RuntimeState,
        settings_provider: Callable[[], Settings] = load_settings,
    ) -> None:
        self.state = state
        self.settings_provider = settings_provider
        self._validators: Dict[str, Draft7Validator] = {}

    async def execute(self, tool: ToolDefinition, arguments: Optional[Dict[str, Any]]) -> Any:
        settings = self.settings_provider()
        payload = dict(arguments or {})
        started = time.perf_counter()
        status: Optional[int] = None
        path = tool.path_template
        try:
            self.validate(tool, payload)

            request = OutgoingRequest()
            strategies = [strategy_for(requirement) for requirement in tool.security_requirements]
            for strategy in select_group(strategies, payload, settings):
                await strategy.apply(request, payload, settings, self.state.token_cache)

            path = self._resolve_path(tool, payload)
            self._route_parameters(tool, payload, request)
            content, form, json_body = self._build_body(tool, payload, request)

            self.state.policy.check(
                PolicyConfig(
                    allowed_methods=frozenset(settings.allowed_methods()),
                    allowed_path_patterns=settings.allowed_path_patterns(),
                ),
                tool.method,
                path,
            )
            self.state.rate_limiter.acquire(
                settings.openapi_mcp_rate_limit,
                settings.openapi_mcp_rate_window_ms,
                settings.rate_burst(),
            )

            with self.state.concurrency.slot(
                tool.path_template,
                settings.openapi_mcp_max_concurrency,
                settings.openapi_mcp_max_concurrency_per_path,
            ):
                response = await self._dispatch(
                    tool,
                    settings,
                    path,
                    request,
                    content=content,
                    form=form,
                    json_body=json_body,
                )
            status = response.status_code
            return self._classify(response)
        except ToolCallError as exc:
            if status is None:
                status = getattr(exc, "status_code", None)
            logger.warning("Tool call failed: tool=%s error=%s", tool.name, exc)
            raise
        finally:
            self._audit(tool, path, payload, status, started)

    def validate(self, tool: ToolDefinition, payload: Dict[str, Any]) -> None:
        for name in tool.input_schema.required_names():
            if name in payload and payload[name] is not None:
                continue
            if name in tool.path_params:
                raise ValidationError(f"Missing required path parameter: {name}")
            raise ValidationError(f"Missing required parameter: {name}")

        validator = self._validators.get(tool.name)
        if validator is None:
            validator = Draft7Validator(tool.json_schema())
            self._validators[tool.name] = validator
        error = best_match(validator.iter_errors(payload))
        if error is not None:
            location = ".".join(str(part) for part in error.absolute_path)
            detail = f"{location}: {error.message}" if location else error.message
            raise ValidationError(f"Invalid input: {detail}")

    def _resolve_path(self, tool: ToolDefinition, payload: Dict[str, Any]) -> str:
        path = tool.path_template
        for name in tool.path_params:
            value = payload.get(name)
            if value is None:
                raise ValidationError(f"Missing required path parameter: {name}")
            path = path.replace(f"{{{name}}}", quote(_scalar(value), safe=""))
        return path

    def _route_parameters(
        self, tool: ToolDefinition, payload: Dict[str, Any], request: OutgoingRequest
    ) -> None:
        for name in tool.query_params:
            if payload.get(name) is not None:
                value = payload[name]
                request.query[name] = [_scalar(item) for item in value] if isinstance(value, list) else _scalar(value)
        for name in tool.header_params:
            if payload.get(name) is not None:
                request.headers[name] = _scalar(payload[name])
        for name in tool.cookie_params:
            if payload.get(name) is not None:
                request.cookies[name] = _scalar(payload[name])
        if request.cookies:
            request.headers["Cookie"] = "; ".join(
                f"{name}={value}" for name, value in request.cookies.items()
            )

    def _build_body(
        self, tool: ToolDefinition, payload: Dict[str, Any], request: OutgoingRequest
    ) -> tuple[Optional[str], Optional[Dict[str, Any]], Any]:
        if tool.input_schema.property("body") is None or "body" not in payload:
            return None, None, None
        body = payload["body"]
        content_type = next(
            (value for key, value in request.headers.items() if key.lower() == "content-type"),
            None,
        )
        if content_type is None:
            return None, None, body
        media_type = content_type.split(";")[0].strip().lower()
        if media_type == "application/x-www-form-urlencoded" and isinstance(body, dict):
            return None, {key: _scalar(value) for key, value in body.items()}, None
        if media_type.endswith("json"):
            return json.dumps(body), None, None
        return body if isinstance(body, str) else json.dumps(body), None, None

    async def _dispatch(
        self,
        tool: ToolDefinition,
        settings: Settings,
        path: str,
        request: OutgoingRequest,
        content: Optional[str],
        form: Optional[Dict[str, Any]],
        json_body: Any,
    ) -> httpx.Response:
        base_url = settings.openapi_base_url or tool.base_url
        url = base_url.rstrip("/") + "/" + path.lstrip("/")
        headers = {"Accept": "application/json", **request.headers}
        try:
            return await self.state.client.request(
                tool.method,
                url,
                params=request.query or None,
                headers=headers,
                content=content,
                data=form,
                json=json_body,
                timeout=settings.openapi_mcp_http_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Request to {tool.method} {path} timed out") from exc
        except httpx.InvalidURL as exc:
            raise NetworkError(f"Invalid URL for {tool.method} {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Request to {tool.method} {path} failed: {exc}") from exc

    def _classify(self, response: httpx.Response) -> Any:
        try:
            parsed: Any = response.json()
        except ValueError:
            parsed = response.text
        if response.status_code >= 400:
            raise UpstreamHttpError(response.status_code, response.reason_phrase, parsed)
        return parsed

    def _audit(
        self,
        tool: ToolDefinition,
        path: str,
        payload: Dict[str, Any],
        status: Optional[int],
        started: float,
    ) -> None:
        ok = status is not None and status < 400
        audit_logger.info(
            "tool=%s method=%s path=%s status=%s ok=%s",
            tool.name,
            tool.method,
            path,
            status,
            ok,
            extra={
                "audit": {
                    "time": datetime.now(timezone.utc).isoformat(),
                    "tool": tool.name,
                    "method": tool.method,
                    "path": path,
                    "status": status,
                    "ok": ok,
                    "ms": round((time.perf_counter() - started) * 1000),
                    "arguments": redact_payload(payload),
                }
            },
        )


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)
