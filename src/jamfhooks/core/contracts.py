from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Tuple

__all__ = [
    "EventTypeTag",
    "FieldType",
    "FieldSpec",
    "FieldSchema",
    "Event",
    "Handler",
    "HandlerRegistration",
    "OutcomeStatus",
    "HandlerOutcome",
    "DispatchStatus",
    "DispatchReport",
    "freeze",
    "thaw",
]


# --------- Event type tags ---------
class EventTypeTag(str, Enum):
    """Webhook event names sent by Jamf Pro. Closed set."""
    ComputerAdded = "ComputerAdded"
    ComputerCheckIn = "ComputerCheckIn"
    ComputerInventoryCompleted = "ComputerInventoryCompleted"
    ComputerPatchPolicyCompleted = "ComputerPatchPolicyCompleted"
    ComputerPolicyFinished = "ComputerPolicyFinished"
    ComputerPushCapabilityChanged = "ComputerPushCapabilityChanged"
    DeviceAddedToDEP = "DeviceAddedToDEP"
    JSSShutdown = "JSSShutdown"
    JSSStartup = "JSSStartup"
    MobileDeviceCheckIn = "MobileDeviceCheckIn"
    MobileDeviceCommandCompleted = "MobileDeviceCommandCompleted"
    MobileDeviceEnrolled = "MobileDeviceEnrolled"
    MobileDevicePushSent = "MobileDevicePushSent"
    MobileDeviceUnEnrolled = "MobileDeviceUnEnrolled"
    PatchSoftwareTitleUpdated = "PatchSoftwareTitleUpdated"
    PushSent = "PushSent"
    RestAPIOperation = "RestAPIOperation"
    SCEPChallenge = "SCEPChallenge"
    SmartGroupComputerMembershipChange = "SmartGroupComputerMembershipChange"
    SmartGroupMobileDeviceMembershipChange = "SmartGroupMobileDeviceMembershipChange"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def coerce(cls, tag: Any) -> Optional["EventTypeTag"]:
        """EventTypeTag for ``tag`` (member or name), or None."""
        if isinstance(tag, cls):
            return tag
        try:
            return cls(tag)
        except ValueError:
            return None


# --------- Schemas ---------
class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    name: str
    type: FieldType = FieldType.ANY
    required: bool = True
    path: Optional[str] = None   # dotted lookup path, defaults to name

    @property
    def lookup_path(self) -> Tuple[str, ...]:
        return tuple((self.path or self.name).split("."))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "FieldSpec":
        return cls(
            name=str(d["name"]),
            type=FieldType(d.get("type", "any")),
            required=bool(d.get("required", True)),
            path=d.get("path"),
        )


FieldSchema = Tuple[FieldSpec, ...]


# --------- Events ---------
def freeze(value: Any) -> Any:
    """Deep read-only copy of decoded JSON: dict -> mappingproxy, list -> tuple."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


@dataclass(frozen=True, slots=True)
class Event:
    """One parsed webhook notification. Never mutated after parse."""
    type: EventTypeTag
    raw_payload: Mapping[str, Any]
    fields: Mapping[str, Any]
    raw_json: str = field(default="", repr=False, compare=False)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)
    received_at: float = field(default_factory=time.time, compare=False)

    @property
    def tag(self) -> EventTypeTag:
        return self.type

    @property
    def webhook(self) -> Mapping[str, Any]:
        wh = self.raw_payload.get("webhook")
        return wh if isinstance(wh, Mapping) else MappingProxyType({})

    @property
    def webhook_id(self) -> Optional[int]:
        return self.webhook.get("id")

    @property
    def webhook_name(self) -> Optional[str]:
        return self.webhook.get("name")

    def to_dict(self) -> dict:
        """Plain (mutable) copy, for archiving and logging."""
        return {
            "type": self.type.value,
            "event_id": self.event_id,
            "received_at": self.received_at,
            "fields": thaw(self.fields),
            "payload": thaw(self.raw_payload),
        }


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists again."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


# --------- Handlers ---------
Handler = Callable[[Event], Any]


@dataclass(frozen=True, slots=True)
class HandlerRegistration:
    tag: EventTypeTag
    identity: str
    handler: Handler


# --------- Dispatch results ---------
class OutcomeStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class DispatchStatus(str, Enum):
    ALL_SUCCEEDED = "AllSucceeded"
    PARTIAL_FAILURE = "PartialFailure"
    NO_HANDLERS = "NoHandlers"
    ABORTED = "Aborted"
    CANCELLED = "Cancelled"


@dataclass(frozen=True, slots=True)
class HandlerOutcome:
    identity: str
    status: OutcomeStatus
    error: Optional[Exception] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK


@dataclass(frozen=True, slots=True)
class DispatchReport:
    tag: EventTypeTag
    event_id: str
    status: DispatchStatus
    outcomes: Tuple[HandlerOutcome, ...] = ()

    @property
    def invoked(self) -> int:
        """Handlers actually started (skipped ones excluded)."""
        return sum(1 for o in self.outcomes if o.status is not OutcomeStatus.SKIPPED)

    @property
    def errors(self) -> Tuple[HandlerOutcome, ...]:
        return tuple(o for o in self.outcomes if o.error is not None)

    def outcome(self, identity: str) -> HandlerOutcome:
        for o in self.outcomes:
            if o.identity == identity:
                return o
        raise KeyError(identity)
