"""Binding of untyped post hook parameters to typed, frozen dataclasses.

Every params dataclass declares its fields with :func:`param`, naming the JSON
key the field is read from and a JSON schema fragment describing its shape::

    @dataclass(frozen=True)
    class Example:
        namespaces: tuple[str, ...] = param("namespaces", {"type": "array", "items": {"type": "string"}}, ())

:func:`bind` validates the raw mapping against the schema assembled from those
fields and either returns a fully populated instance or raises
:class:`BindingError`. Unknown keys are ignored, ``null`` counts as absent.
"""
from __future__ import annotations

from dataclasses import MISSING, Field, field, fields, is_dataclass
from functools import lru_cache
from typing import Any, Mapping, TypeVar

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate

from clusterhooks.services.errors import BindingError

P = TypeVar("P")


def param(alias: str, schema: dict[str, Any], default: Any = MISSING) -> Any:
    return field(default=default, metadata={"alias": alias, "schema": schema})


def _param_fields(params_type: type) -> tuple[Field, ...]:
    if not is_dataclass(params_type):
        raise TypeError(f"{params_type.__name__} is not a params dataclass")
    return fields(params_type)


@lru_cache(maxsize=None)
def schema_for(params_type: type) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    required: list[str] = []
    for f in _param_fields(params_type):
        alias = f.metadata.get("alias", f.name)
        properties[alias] = f.metadata.get("schema", {})
        if f.default is MISSING and f.default_factory is MISSING:
            required.append(alias)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _freeze(value: Any, schema: Mapping[str, Any]) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(v, schema.get("items", {})) for v in value)
    # jsonschema accepts 2.0 as an integer
    if schema.get("type") == "integer" and isinstance(value, float):
        return int(value)
    return value


def bind(raw: Mapping[str, Any] | None, params_type: type[P]) -> P:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise BindingError(f"posthook params must be a mapping, got {type(raw).__name__}")

    present = {key: _plain(value) for key, value in raw.items() if value is not None}
    try:
        jsonschema_validate(instance=present, schema=schema_for(params_type))
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "params"
        raise BindingError(f"invalid value for {location!r}: {exc.message}") from exc

    values: dict[str, Any] = {}
    for f in _param_fields(params_type):
        alias = f.metadata.get("alias", f.name)
        if alias in present:
            values[f.name] = _freeze(present[alias], f.metadata.get("schema", {}))
    return params_type(**values)
