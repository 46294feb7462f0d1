"""Object schemas used by schema validation rules.

A schema names the top-level JSON type, the required keys and, optionally,
the JSON type of individual properties. Checking is done by ``jsonschema``
(draft 2020-12); each violation is reported as one short sentence.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError
from pydantic import BaseModel


def json_type_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "array"
    return type(value).__name__


def _describe(error: ValidationError) -> list[str]:
    location = ".".join(str(part) for part in error.absolute_path)
    if error.validator == "required":
        return [
            f"missing required field {name!r}"
            for name in error.validator_value
            if name not in error.instance
        ]
    if error.validator == "type":
        got = json_type_of(error.instance)
        if not location:
            return [f"expected {error.validator_value}, got {got}"]
        return [f"field {location!r} should be {error.validator_value}, got {got}"]
    if location:
        return [f"field {location!r}: {error.message}"]
    return [error.message]


@dataclass(frozen=True, slots=True)
class ObjectSchema:
    type: str = "object"
    required: tuple[str, ...] = ()
    properties: Mapping[str, str | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            Draft202012Validator.check_schema(self.to_json())
        except SchemaError as e:
            raise ValueError(f"Unknown schema type in {self.to_json()}: {e.message}") from e

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> ObjectSchema:
        """Build a schema from its JSON form, e.g. ``{"type": "object", "required": [...]}``."""
        properties: dict[str, str | None] = {}
        for name, definition in (raw.get("properties") or {}).items():
            if isinstance(definition, Mapping):
                properties[name] = definition.get("type")
            else:
                properties[name] = definition
        return cls(
            type=str(raw.get("type", "object")),
            required=tuple(raw.get("required") or ()),
            properties=properties,
        )

    def to_json(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.type == "object":
            schema["required"] = list(self.required)
            schema["properties"] = {
                name: {} if expected is None else {"type": expected}
                for name, expected in self.properties.items()
            }
        return schema

    def validate(self, data: Any) -> list[str]:
        """Return the list of violations; empty means the data conforms.

        Keys holding None count as absent, so they only fail when required.
        """
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        if isinstance(data, Mapping):
            data = {key: value for key, value in data.items() if value is not None}

        errors: list[str] = []
        for error in Draft202012Validator(self.to_json()).iter_errors(data):
            errors.extend(_describe(error))
        return list(dict.fromkeys(errors))
