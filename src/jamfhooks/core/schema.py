from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

import yaml
from pydantic import BaseModel, ConfigDict, StrictBool, StrictFloat, StrictInt, StrictStr, create_model

from jamfhooks.core import log
from jamfhooks.core.contracts import EventTypeTag, FieldSchema, FieldSpec, FieldType
from jamfhooks.core.errors import ConfigError, RegistryFrozen, UnknownEventType

BUILTIN_SCHEMAS = Path(__file__).resolve().parent.parent / "data" / "schemas.yaml"

l = log.get("schema")

TagLike = Union[EventTypeTag, str]

_PY_TYPES: Dict[FieldType, Any] = {
    FieldType.STRING: StrictStr,
    FieldType.INTEGER: StrictInt,
    FieldType.NUMBER: Union[StrictInt, StrictFloat],
    FieldType.BOOLEAN: StrictBool,
    FieldType.OBJECT: Dict[str, Any],
    FieldType.ARRAY: List[Any],
    FieldType.ANY: Any,
}


class EventFields(BaseModel):
    """Base for the per-tag field models built by :func:`build_model`."""
    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)


def field_key(index: int) -> str:
    """Model attribute for the ``index``-th schema field (names may not be identifiers)."""
    return f"f{index}"


def build_model(tag: EventTypeTag, schema: FieldSchema) -> Type[EventFields]:
    """One pydantic model per tag; fields keep schema order so errors do too."""
    fields: Dict[str, Any] = {}
    for i, spec in enumerate(schema):
        tp = _PY_TYPES[spec.type]
        fields[field_key(i)] = (tp, ...) if spec.required else (Optional[tp], None)
    return create_model(f"{tag.value}Fields", __base__=EventFields, **fields)


class SchemaRegistry:
    """Field schema per event type. Written during startup, read-only after ``freeze()``."""

    def __init__(self) -> None:
        self._schemas: Dict[EventTypeTag, FieldSchema] = {}
        self._models: Dict[EventTypeTag, Type[EventFields]] = {}
        self._frozen = False

    def register(self, tag: TagLike, schema: Iterable[FieldSpec]) -> None:
        if self._frozen:
            raise RegistryFrozen("schema registry is frozen")
        et = EventTypeTag.coerce(tag)
        if et is None:
            raise UnknownEventType(tag)
        schema = tuple(schema)
        names = [f.name for f in schema]
        if len(set(names)) != len(names):
            raise ConfigError(f"duplicate field name in schema for {et}: {names}")
        model = build_model(et, schema)
        if et in self._schemas:
            l.debug("schema replaced tag=%s", et)
        self._schemas[et] = schema
        self._models[et] = model

    def lookup(self, tag: TagLike) -> FieldSchema:
        et = EventTypeTag.coerce(tag)
        if et is None or et not in self._schemas:
            raise UnknownEventType(tag)
        return self._schemas[et]

    def model(self, tag: TagLike) -> Type[EventFields]:
        """Validation model for ``tag``; attributes are ``field_key(i)``."""
        et = EventTypeTag.coerce(tag)
        if et is None or et not in self._models:
            raise UnknownEventType(tag)
        return self._models[et]

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def tags(self) -> Tuple[EventTypeTag, ...]:
        return tuple(self._schemas)

    def __contains__(self, tag: object) -> bool:
        et = EventTypeTag.coerce(tag)
        return et is not None and et in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)

    # ---- construction helpers ----

    @classmethod
    def from_table(cls, table: Mapping[str, Any]) -> "SchemaRegistry":
        """Build from ``{tag: [{name, type, required, path}, ...]}``."""
        reg = cls()
        for tag, fields in (table or {}).items():
            if EventTypeTag.coerce(tag) is None:
                raise ConfigError(f"schema table names unknown event type {tag!r}")
            try:
                specs = [FieldSpec.from_dict(f) for f in (fields or [])]
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"bad field definition for {tag}: {e}") from e
            reg.register(tag, specs)
        l.info("schemas loaded count=%d", len(reg))
        return reg

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SchemaRegistry":
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read schema table {path}: {e}") from e
        if data is not None and not isinstance(data, Mapping):
            raise ConfigError(f"schema table {path} must be a mapping")
        return cls.from_table(data or {})

    @classmethod
    def load_builtin(cls) -> "SchemaRegistry":
        return cls.from_yaml(BUILTIN_SCHEMAS)
