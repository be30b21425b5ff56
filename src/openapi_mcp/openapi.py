"""OpenAPI description loader and dereferencer."""

from __future__ import annotations

import copy
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx
import yaml

from .errors import CompileError


logger = logging.getLogger(__name__)


class OpenAPILoader:
    def __init__(self, cache_seconds: int = 3600, timeout_seconds: float = 30) -> None:
        self.cache_seconds = cache_seconds
        self.timeout_seconds = timeout_seconds
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    async def load(
        self, spec_file: Optional[str] = None, spec_url: Optional[str] = None
    ) -> Dict[str, Any]:
        if spec_file:
            return self.load_file(spec_file)
        if spec_url:
            return await self.load_url(spec_url)
        raise CompileError("Set OPENAPI_SPEC_FILE or OPENAPI_SPEC_URL")

    def load_file(self, path: str) -> Dict[str, Any]:
        spec_path = Path(path).expanduser()
        if not spec_path.exists():
            raise CompileError(f"OpenAPI description not found: {spec_path}")
        with spec_path.open("r", encoding="utf-8") as handle:
            raw = handle.read()
        return self._parse(raw, spec_path.suffix.lower(), str(spec_path))

    async def load_url(self, url: str) -> Dict[str, Any]:
        cached = self._cache.get(url)
        if cached and time.time() - cached[0] < self.cache_seconds:
            return cached[1]

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
            if response.status_code != 200:
                raise CompileError(
                    f"Failed to fetch OpenAPI description: {url} ({response.status_code})"
                )
            data = self._parse(response.text, Path(httpx.URL(url).path).suffix.lower(), url)

        self._cache[url] = (time.time(), data)
        return data

    def _parse(self, raw: str, suffix: str, source: str) -> Dict[str, Any]:
        try:
            if suffix == ".json":
                data = json.loads(raw)
            else:
                # YAML is a superset of JSON, so unknown suffixes go through the YAML parser.
                data = yaml.safe_load(raw)
        except (ValueError, yaml.YAMLError) as exc:
            raise CompileError(f"Could not parse OpenAPI description {source}: {exc}") from exc
        if not isinstance(data, dict):
            raise CompileError(f"OpenAPI description {source} is not an object")
        return data


def dereference(document: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``document`` with every local ``$ref`` under ``paths``
    and ``components.securitySchemes`` inlined.

    Only the parts the compiler walks are resolved, so an unused recursive
    component schema does not break compilation. A reference reachable from an
    operation that points back into itself cannot be inlined into a finite
    tree and raises ``CompileError``.
    """
    resolved = dict(document)
    resolved["paths"] = _resolve(document.get("paths") or {}, document, ())
    components = document.get("components")
    if isinstance(components, dict) and "securitySchemes" in components:
        resolved["components"] = {
            **components,
            "securitySchemes": _resolve(components["securitySchemes"], document, ()),
        }
    return resolved


def resolve_pointer(document: Dict[str, Any], ref: str) -> Any:
    if not ref.startswith("#"):
        raise CompileError(f"Unsupported external $ref: {ref}")
    node: Any = document
    pointer = ref[1:].lstrip("/")
    if not pointer:
        return node
    for raw_part in pointer.split("/"):
        part = raw_part.replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            raise CompileError(f"Unresolvable $ref: {ref}")
    return node


def _resolve(node: Any, document: Dict[str, Any], stack: Tuple[str, ...]) -> Any:
    if isinstance(node, list):
        return [_resolve(item, document, stack) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str):
        if ref in stack:
            cycle = " -> ".join((*stack[stack.index(ref):], ref))
            raise CompileError(f"Circular $ref in OpenAPI description: {cycle}")
        try:
            target = resolve_pointer(document, ref)
        except CompileError:
            if ref.startswith("#"):
                raise
            logger.warning("Skipping unsupported external $ref: %s", ref)
            target = {}
        resolved = _resolve(copy.deepcopy(target), document, (*stack, ref))
        siblings = {key: value for key, value in node.items() if key != "$ref"}
        if siblings and isinstance(resolved, dict):
            resolved = {**resolved, **_resolve(siblings, document, stack)}
        return resolved

    return {key: _resolve(value, document, stack) for key, value in node.items()}
