"""Dot-path access into workflow contexts.

Paths such as ``implementation.metrics.test_coverage`` or
``metadata.flags.synced`` walk through pydantic models and plain dicts. Writes
create missing intermediate models (``failure_info``) or dicts
(``metadata.flags.x``) and coerce values against the annotated field type.
"""

from __future__ import annotations

import types
import typing
from collections.abc import Mapping, MutableMapping
from typing import Any, Literal

from pydantic import BaseModel, TypeAdapter, ValidationError

DataOperation = Literal["set", "increment", "append", "merge"]


class PathError(ValueError):
    """A dot path cannot be read or written as requested."""


def split_path(path: str) -> list[str]:
    segments = path.split(".")
    if not all(segments):
        raise PathError(f"Invalid path: {path!r}")
    return segments


def get_path(root: Any, path: str, default: Any = None) -> Any:
    current = root
    for segment in split_path(path):
        if current is None:
            return default
        if isinstance(current, Mapping):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, BaseModel):
            if segment not in type(current).model_fields:
                return default
            current = getattr(current, segment)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def apply_update(root: Any, path: str, value: Any, operation: DataOperation = "set") -> None:
    segments = split_path(path)
    parent = root
    for segment in segments[:-1]:
        parent = _child_for_write(parent, segment, path)
    leaf = segments[-1]

    if operation == "merge":
        _merge(parent, leaf, value, path)
        return

    current = _read(parent, leaf, path)
    if operation == "set":
        new_value = value
    elif operation == "increment":
        if current is None:
            current = 0
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise PathError(f"Cannot increment non-numeric value at {path!r}")
        new_value = current + value
    elif operation == "append":
        if current is None:
            new_value = [value]
        elif isinstance(current, list):
            new_value = [*current, value]
        elif isinstance(current, (set, frozenset)):
            new_value = {*current, value}
        else:
            raise PathError(f"Cannot append to non-list value at {path!r}")
    else:
        raise PathError(f"Unknown operation {operation!r}")
    _write(parent, leaf, new_value, path)


def _merge(parent: Any, leaf: str, value: Any, path: str) -> None:
    if not isinstance(value, Mapping):
        raise PathError(f"merge at {path!r} needs a mapping value")
    current = _read(parent, leaf, path)
    if isinstance(current, BaseModel):
        for key, item in value.items():
            apply_update(current, key, item, "set")
        return
    if current is None:
        if isinstance(parent, BaseModel) and _model_class(parent, leaf) is not None:
            created = _child_for_write(parent, leaf, path)
            for key, item in value.items():
                apply_update(created, key, item, "set")
            return
        _write(parent, leaf, dict(value), path)
        return
    if isinstance(current, Mapping):
        _write(parent, leaf, {**current, **value}, path)
        return
    raise PathError(f"Cannot merge into non-mapping value at {path!r}")


def _read(parent: Any, leaf: str, path: str) -> Any:
    if isinstance(parent, Mapping):
        return parent.get(leaf)
    if isinstance(parent, BaseModel):
        if leaf not in type(parent).model_fields:
            raise PathError(f"{type(parent).__name__} has no field {leaf!r} ({path})")
        return getattr(parent, leaf)
    raise PathError(f"Cannot read {leaf!r} from {type(parent).__name__} ({path})")


def _write(parent: Any, leaf: str, value: Any, path: str) -> None:
    if isinstance(parent, MutableMapping):
        parent[leaf] = value
        return
    if isinstance(parent, BaseModel):
        field = type(parent).model_fields.get(leaf)
        if field is None:
            raise PathError(f"{type(parent).__name__} has no field {leaf!r} ({path})")
        try:
            coerced = TypeAdapter(field.annotation).validate_python(value)
        except ValidationError as exc:
            raise PathError(f"Invalid value for {path!r}: {exc.errors()[0]['msg']}") from exc
        setattr(parent, leaf, coerced)
        return
    raise PathError(f"Cannot write {leaf!r} on {type(parent).__name__} ({path})")


def _child_for_write(parent: Any, segment: str, path: str) -> Any:
    if isinstance(parent, MutableMapping):
        child = parent.get(segment)
        if child is None:
            child = {}
            parent[segment] = child
        return child

    if isinstance(parent, BaseModel):
        if segment not in type(parent).model_fields:
            raise PathError(f"{type(parent).__name__} has no field {segment!r} ({path})")
        child = getattr(parent, segment)
        if child is not None:
            return child
        model_cls = _model_class(parent, segment)
        if model_cls is not None:
            try:
                child = model_cls()
            except ValidationError as exc:
                raise PathError(f"Cannot create {model_cls.__name__} for {path!r}") from exc
        else:
            child = {}
        setattr(parent, segment, child)
        return child

    raise PathError(f"Cannot descend into {type(parent).__name__} at {segment!r} ({path})")


def _model_class(parent: BaseModel, name: str) -> type[BaseModel] | None:
    annotation = type(parent).model_fields[name].annotation
    candidates: tuple[Any, ...] = (annotation,)
    if isinstance(annotation, types.UnionType) or typing.get_origin(annotation) is typing.Union:
        candidates = typing.get_args(annotation)
    for candidate in candidates:
        if isinstance(candidate, type) and issubclass(candidate, BaseModel):
            return candidate
    return None
