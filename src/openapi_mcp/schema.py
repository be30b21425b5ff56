"""Translate OpenAPI schema objects into SchemaNode trees.

A SchemaNode is the validation-capable shape of a tool argument. Every node
renders to a JSON Schema dict, which is both what the MCP server advertises
and what the request pipeline validates against.

Unsupported or exotic shapes degrade to ``AnyNode`` instead of failing, so a
single odd field never prevents a tool from being generated.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union


PRIMITIVE_TYPES = ("string", "number", "integer", "boolean", "null")

_PRIMITIVE_CONSTRAINTS = (
    "minLength",
    "maxLength",
    "pattern",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
    "format",
)


@dataclass(frozen=True)
class AnyNode:
    description: Optional[str] = None

    def to_json_schema(self) -> Dict[str, Any]:
        return _with_description({}, self.description)


@dataclass(frozen=True)
class PrimitiveNode:
    base_type: Optional[str]
    enum: Optional[Tuple[Any, ...]] = None
    constraints: Tuple[Tuple[str, Any], ...] = ()
    default: Any = None
    description: Optional[str] = None

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {}
        if self.base_type:
            schema["type"] = self.base_type
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        for key, value in self.constraints:
            schema[key] = value
        if self.default is not None:
            schema["default"] = self.default
        return _with_description(schema, self.description)


@dataclass(frozen=True)
class PropertySpec:
    name: str
    node: "SchemaNode"
    required: bool = False


@dataclass(frozen=True)
class ObjectNode:
    properties: Tuple[PropertySpec, ...] = ()
    additional_properties: bool = True
    description: Optional[str] = None

    def property(self, name: str) -> Optional[PropertySpec]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def required_names(self) -> List[str]:
        return [prop.name for prop in self.properties if prop.required]

    def with_property(self, prop: PropertySpec) -> "ObjectNode":
        """Return a copy with ``prop`` appended; existing names are kept as-is."""
        if self.property(prop.name) is not None:
            return self
        return ObjectNode(
            properties=(*self.properties, prop),
            additional_properties=self.additional_properties,
            description=self.description,
        )

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {prop.name: prop.node.to_json_schema() for prop in self.properties},
        }
        required = self.required_names()
        if required:
            schema["required"] = required
        if not self.additional_properties:
            schema["additionalProperties"] = False
        return _with_description(schema, self.description)


@dataclass(frozen=True)
class ArrayNode:
    items: "SchemaNode" = field(default_factory=AnyNode)
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    unique_items: bool = False
    description: Optional[str] = None

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": "array", "items": self.items.to_json_schema()}
        if self.min_items is not None:
            schema["minItems"] = self.min_items
        if self.max_items is not None:
            schema["maxItems"] = self.max_items
        if self.unique_items:
            schema["uniqueItems"] = True
        return _with_description(schema, self.description)


@dataclass(frozen=True)
class UnionNode:
    mode: str
    candidates: Tuple["SchemaNode", ...]
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if self.mode not in ("anyOf", "oneOf"):
            raise ValueError(f"Unsupported union mode: {self.mode}")

    def to_json_schema(self) -> Dict[str, Any]:
        schema = {self.mode: [candidate.to_json_schema() for candidate in self.candidates]}
        return _with_description(schema, self.description)


SchemaNode = Union[AnyNode, PrimitiveNode, ObjectNode, ArrayNode, UnionNode]


def translate_schema(schema: Any, description: Optional[str] = None) -> SchemaNode:
    """Translate one dereferenced OpenAPI schema into a SchemaNode."""
    if not isinstance(schema, dict):
        return AnyNode(description=description)

    description = description or schema.get("description")

    node = _translate(schema, description)
    if schema.get("nullable") is True and not _accepts_null(node):
        return UnionNode(
            mode="anyOf",
            candidates=(node, PrimitiveNode(base_type="null")),
            description=description,
        )
    return node


def _translate(schema: Dict[str, Any], description: Optional[str]) -> SchemaNode:
    for mode in ("anyOf", "oneOf"):
        if isinstance(schema.get(mode), list) and schema[mode]:
            return UnionNode(
                mode=mode,
                candidates=tuple(translate_schema(candidate) for candidate in schema[mode]),
                description=description,
            )

    if isinstance(schema.get("allOf"), list) and schema["allOf"]:
        return _merge_all_of(schema, description)

    schema_type = schema.get("type")

    # OpenAPI 3.1 allows a list of types, e.g. ["string", "null"].
    if isinstance(schema_type, list):
        candidates = tuple(
            _translate({**schema, "type": item}, None) for item in schema_type if isinstance(item, str)
        )
        if len(candidates) == 1:
            return _replace_description(candidates[0], description)
        if not candidates:
            return AnyNode(description=description)
        return UnionNode(mode="anyOf", candidates=candidates, description=description)

    if schema_type == "object" or (schema_type is None and "properties" in schema):
        return _translate_object(schema, description)

    if schema_type == "array":
        return ArrayNode(
            items=translate_schema(schema.get("items")),
            min_items=schema.get("minItems"),
            max_items=schema.get("maxItems"),
            unique_items=bool(schema.get("uniqueItems", False)),
            description=description,
        )

    if schema_type in PRIMITIVE_TYPES or (schema_type is None and "enum" in schema):
        enum = schema.get("enum")
        return PrimitiveNode(
            base_type=schema_type,
            enum=tuple(enum) if isinstance(enum, list) else None,
            constraints=_primitive_constraints(schema),
            default=schema.get("default"),
            description=description,
        )

    return AnyNode(description=description)


def _primitive_constraints(schema: Dict[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    constraints = {key: schema[key] for key in _PRIMITIVE_CONSTRAINTS if schema.get(key) is not None}
    # OpenAPI 3.0 spells exclusive bounds as booleans next to minimum/maximum.
    for exclusive, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
        flag = constraints.get(exclusive)
        if isinstance(flag, bool):
            del constraints[exclusive]
            if flag and bound in constraints:
                constraints[exclusive] = constraints.pop(bound)
    return tuple(constraints.items())


def _translate_object(schema: Dict[str, Any], description: Optional[str]) -> ObjectNode:
    required = set(schema.get("required") or [])
    properties = schema.get("properties") or {}
    return ObjectNode(
        properties=tuple(
            PropertySpec(name=name, node=translate_schema(value), required=name in required)
            for name, value in properties.items()
        ),
        additional_properties=schema.get("additionalProperties") is not False,
        description=description,
    )


def _merge_all_of(schema: Dict[str, Any], description: Optional[str]) -> SchemaNode:
    parts = [part for part in schema["allOf"] if isinstance(part, dict)]
    if not parts or not all(
        part.get("type") == "object" or "properties" in part for part in parts
    ):
        return AnyNode(description=description)

    merged: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    for part in parts:
        merged["properties"].update(part.get("properties") or {})
        for name in part.get("required") or []:
            if name not in merged["required"]:
                merged["required"].append(name)
        if part.get("additionalProperties") is False:
            merged["additionalProperties"] = False
    return _translate_object(merged, description)


def _accepts_null(node: SchemaNode) -> bool:
    if isinstance(node, AnyNode):
        return True
    if isinstance(node, PrimitiveNode):
        return node.base_type == "null"
    if isinstance(node, UnionNode):
        return any(_accepts_null(candidate) for candidate in node.candidates)
    return False


def _replace_description(node: SchemaNode, description: Optional[str]) -> SchemaNode:
    if description is None:
        return node
    return replace(node, description=description)


def _with_description(schema: Dict[str, Any], description: Optional[str]) -> Dict[str, Any]:
    if description:
        schema["description"] = description
    return schema
