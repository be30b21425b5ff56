"""Compile a dereferenced OpenAPI description into tool definitions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import CompileError
from .models import SecurityRequirement, ToolDefinition
from .openapi import dereference
from .policy import wildcard_to_regex
from .schema import ObjectNode, PropertySpec, translate_schema
from .security import resolve_requirements, strategy_for


logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")
PARAMETER_LOCATIONS = ("path", "query", "header", "cookie")
BODY_MEDIA_TYPES = ("application/json", "application/x-www-form-urlencoded")

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class CompileFilters:
    include_tags: List[str] = field(default_factory=list)
    exclude_tags: List[str] = field(default_factory=list)
    include_ops: List[str] = field(default_factory=list)
    exclude_ops: List[str] = field(default_factory=list)
    include_paths: List[str] = field(default_factory=list)
    exclude_paths: List[str] = field(default_factory=list)

    def allows(self, operation_id: str, path: str, tags: Tuple[str, ...]) -> bool:
        if self.include_ops and operation_id not in self.include_ops:
            return False
        if operation_id in self.exclude_ops:
            return False
        if self.include_tags and not set(tags) & set(self.include_tags):
            return False
        if set(tags) & set(self.exclude_tags):
            return False
        if self.include_paths and not _matches_any(path, self.include_paths):
            return False
        if self.exclude_paths and _matches_any(path, self.exclude_paths):
            return False
        return True


def _matches_any(path: str, patterns: List[str]) -> bool:
    return any(wildcard_to_regex(pattern).fullmatch(path) for pattern in patterns)


def sanitize_tool_name(operation_id: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", operation_id.strip()) or "operation"


class ToolCompiler:
    def __init__(
        self,
        base_url: Optional[str] = None,
        filters: Optional[CompileFilters] = None,
    ) -> None:
        self.base_url = base_url
        self.filters = filters or CompileFilters()

    def compile(self, document: Dict[str, Any]) -> List[ToolDefinition]:
        if not isinstance(document, dict) or not isinstance(document.get("paths"), dict):
            raise CompileError("Invalid OpenAPI description: missing paths")

        api = dereference(document)
        base_url = self.base_url or self._extract_server_url(api)
        if not base_url:
            raise CompileError("Base URL not provided and no servers defined in the OpenAPI description")

        tools: List[ToolDefinition] = []
        used_names: Dict[str, int] = {}

        for path, path_item in api["paths"].items():
            if not isinstance(path_item, dict):
                continue
            shared_parameters = path_item.get("parameters") or []
            for method, operation in path_item.items():
                if method.lower() not in HTTP_METHODS or not isinstance(operation, dict):
                    continue
                operation_id = operation.get("operationId")
                if not operation_id:
                    logger.debug("Skipping %s %s: no operationId", method.upper(), path)
                    continue
                tags = tuple(operation.get("tags") or ())
                if not self.filters.allows(operation_id, path, tags):
                    continue

                name = self._unique_name(sanitize_tool_name(str(operation_id)), used_names)
                tools.append(
                    self._build_tool(
                        api, name, str(operation_id), method.lower(), path, operation, shared_parameters, base_url
                    )
                )

        logger.info("Compiled %s tools from OpenAPI description", len(tools))
        return tools

    def _build_tool(
        self,
        api: Dict[str, Any],
        name: str,
        operation_id: str,
        method: str,
        path: str,
        operation: Dict[str, Any],
        shared_parameters: List[Dict[str, Any]],
        base_url: str,
    ) -> ToolDefinition:
        schema = ObjectNode()
        locations: Dict[str, List[str]] = {location: [] for location in PARAMETER_LOCATIONS}

        for parameter in self._merge_parameters(shared_parameters, operation.get("parameters") or []):
            location = parameter.get("in")
            param_name = parameter.get("name")
            if location not in locations or not param_name:
                continue
            if param_name in locations[location]:
                continue
            node = translate_schema(
                parameter.get("schema") or {"type": "string"}, parameter.get("description")
            )
            required = location == "path" or bool(parameter.get("required"))
            schema = schema.with_property(PropertySpec(name=param_name, node=node, required=required))
            locations[location].append(param_name)

        request_body = operation.get("requestBody") or {}
        content = request_body.get("content") or {}
        if content:
            body_schema = (content.get(self._select_media_type(content)) or {}).get("schema")
            if body_schema is not None:
                schema = schema.with_property(
                    PropertySpec(
                        name="body",
                        node=translate_schema(body_schema, request_body.get("description")),
                        required=bool(request_body.get("required")),
                    )
                )

        requirements = resolve_requirements(operation, api)
        schema = self._add_credential_fields(schema, requirements)

        description = (
            operation.get("summary")
            or operation.get("description")
            or f"Calls {method.upper()} {path}"
        )

        return ToolDefinition(
            name=name,
            description=description,
            method=method.upper(),
            path_template=path,
            base_url=base_url,
            input_schema=schema,
            operation_id=operation_id,
            path_params=tuple(locations["path"]),
            query_params=tuple(locations["query"]),
            header_params=tuple(locations["header"]),
            cookie_params=tuple(locations["cookie"]),
            security_requirements=requirements,
            tags=tuple(operation.get("tags") or ()),
        )

    def _merge_parameters(
        self, shared: List[Dict[str, Any]], own: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        merged: Dict[Tuple[Any, Any], Dict[str, Any]] = {}
        for parameter in [*shared, *own]:
            if isinstance(parameter, dict):
                merged[(parameter.get("name"), parameter.get("in"))] = parameter
        return list(merged.values())

    def _select_media_type(self, content: Dict[str, Any]) -> str:
        for media_type in BODY_MEDIA_TYPES:
            if media_type in content:
                return media_type
        return next(iter(content))

    def _add_credential_fields(
        self, schema: ObjectNode, requirements: Tuple[SecurityRequirement, ...]
    ) -> ObjectNode:
        for requirement in requirements:
            for credential_field in strategy_for(requirement).credential_fields():
                schema = schema.with_property(credential_field)
        return schema

    def _unique_name(self, name: str, used_names: Dict[str, int]) -> str:
        if name not in used_names:
            used_names[name] = 1
            return name
        used_names[name] += 1
        candidate = f"{name}_{used_names[name]}"
        while candidate in used_names:
            used_names[name] += 1
            candidate = f"{name}_{used_names[name]}"
        used_names[candidate] = 1
        return candidate

    def _extract_server_url(self, document: Dict[str, Any]) -> Optional[str]:
        servers = document.get("servers") or []
        if not servers:
            return None
        server = servers[0]
        if isinstance(server, dict):
            return server.get("url")
        return None

