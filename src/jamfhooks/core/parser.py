from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Tuple, Union

from pydantic import ValidationError

from jamfhooks.core import log
from jamfhooks.core.contracts import Event, EventTypeTag, FieldSchema, freeze, thaw
from jamfhooks.core.errors import MalformedPayload, SchemaViolation, UnknownEventType
from jamfhooks.core.schema import SchemaRegistry, TagLike, field_key

l = log.get("parser")

RawPayload = Union[str, bytes, bytearray, Mapping[str, Any]]

_MISSING = object()


def _decode(raw: RawPayload) -> Tuple[Dict[str, Any], str]:
    """Return (decoded object, JSON text)."""
    if isinstance(raw, Mapping):
        try:
            text = json.dumps(thaw(raw))
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"payload is not JSON-serializable: {e}") from e
        return json.loads(text), text
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayload(f"payload is not valid UTF-8: {e}") from e
    if not isinstance(raw, str):
        raise MalformedPayload(f"unsupported payload type {type(raw).__name__}")
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedPayload(f"payload root must be a JSON object, got {type(obj).__name__}")
    return obj, raw


def _is_envelope(obj: Mapping[str, Any]) -> bool:
    return isinstance(obj.get("webhook"), dict) and isinstance(obj.get("event"), dict)


def _resolve(root: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    cur: Any = root
    for key in path:
        if not isinstance(cur, Mapping) or key not in cur:
            return _MISSING
        cur = cur[key]
    return cur


class EventParser:
    """Turns (tag, raw JSON) into an immutable :class:`Event`.

    Validation is fail-fast: the first violated field (in schema order)
    is reported and the rest of the schema is not checked.
    """

    def __init__(self, schemas: SchemaRegistry):
        self.schemas = schemas

    def parse(self, tag: TagLike, raw: RawPayload) -> Event:
        schema = self.schemas.lookup(tag)
        et = EventTypeTag.coerce(tag)
        obj, text = _decode(raw)
        return self._build(et, schema, obj, text)

    def parse_envelope(self, raw: RawPayload) -> Event:
        """Parse a full webhook envelope, taking the tag from ``webhook.webhookEvent``."""
        obj, text = _decode(raw)
        wh = obj.get("webhook")
        name = wh.get("webhookEvent") if isinstance(wh, dict) else None
        if not isinstance(name, str):
            raise MalformedPayload("payload has no webhook.webhookEvent")
        schema = self.schemas.lookup(name)
        return self._build(EventTypeTag(name), schema, obj, text)

    def _build(self, et: EventTypeTag, schema: FieldSchema, obj: Dict[str, Any], text: str) -> Event:
        root: Mapping[str, Any] = obj
        if _is_envelope(obj):
            declared = obj["webhook"].get("webhookEvent")
            if declared is not None and declared != et.value:
                raise SchemaViolation("webhookEvent", f"envelope declares {declared!r}, expected {et.value!r}")
            root = obj["event"]

        # null counts as absent; remember which ones were null for the error text
        values: Dict[str, Any] = {}
        nulls = set()
        for i, spec in enumerate(schema):
            value = _resolve(root, spec.lookup_path)
            if value is None:
                nulls.add(i)
            elif value is not _MISSING:
                values[field_key(i)] = value

        try:
            model = self.schemas.model(et).model_validate(values)
        except ValidationError as e:
            raise _violation(schema, nulls, e.errors()[0]) from e

        fields = {
            spec.name: getattr(model, field_key(i))
            for i, spec in enumerate(schema)
            if field_key(i) in model.model_fields_set
        }
        ev = Event(type=et, raw_payload=freeze(obj), fields=freeze(fields), raw_json=text)
        l.debug("parsed tag=%s event_id=%s fields=%d", et, ev.event_id, len(fields))
        return ev


def _violation(schema: FieldSchema, nulls, err: Mapping[str, Any]) -> SchemaViolation:
    """First pydantic error (schema order) -> SchemaViolation naming the field."""
    index = int(str(err["loc"][0])[1:])
    spec = schema[index]
    if err["type"] == "missing":
        why = "null" if index in nulls else "missing"
        return SchemaViolation(spec.name, f"required field is {why}")
    return SchemaViolation(spec.name, f"expected {spec.type.value}: {err['msg']}")


__all__ = ["EventParser", "RawPayload", "UnknownEventType", "MalformedPayload", "SchemaViolation"]
