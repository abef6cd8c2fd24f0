"""Wire models for the realtime channel.

Envelope (both directions): ``{"type": str, "data"?: object, "timestamp"?: ISO-8601}``.

Inbound messages are parsed into one model per known ``type``. Types ending in
``-event`` become ``DomainEventMessage`` (generic passthrough carrying its own
sub-type in ``data.type``); anything else unrecognised becomes
``UnknownMessage`` so new server-side events are delivered rather than lost.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Literal, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError


class MalformedMessageError(ValueError):
    """Raised when an inbound frame cannot be decoded into a message."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")


def freeze(value: Any) -> Any:
    """Read-only copy of decoded JSON: mappings become proxies, arrays tuples."""

    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Plain mutable ``dict``/``list`` copy of a payload (models are dumped by alias)."""

    if isinstance(value, BaseModel):
        extra = value.model_extra or {}
        dumped = value.model_dump(by_alias=True, exclude=set(extra))
        dumped.update(extra)
        value = dumped
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    return value


class InboundModel(WireModel):
    """Received once, shared by every consumer: nothing inside may change."""

    @model_validator(mode="after")
    def _freeze_extras(self) -> "InboundModel":
        extra = self.__pydantic_extra__
        if extra:
            for name, value in extra.items():
                extra[name] = freeze(value)
        return self


# Inbound payloads ---------------------------------------------------------


class CallStartedData(InboundModel):
    call_id: Optional[str] = Field(default=None, alias="callId")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


class CallEndedData(InboundModel):
    call_id: Optional[str] = Field(default=None, alias="callId")
    duration: Optional[float] = None


class SpeechUpdateData(InboundModel):
    call_id: Optional[str] = Field(default=None, alias="callId")
    transcription: str = ""
    is_final: bool = Field(default=False, alias="isFinal")


class HandoffTriggeredData(InboundModel):
    call_id: Optional[str] = Field(default=None, alias="callId")
    reason: Optional[str] = None


class AlertData(InboundModel):
    # Kept as free text: unknown severities degrade to "informational".
    severity: Optional[str] = None
    message: Optional[str] = None

    @field_validator("severity")
    @classmethod
    def _lower(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip().lower() or None


class DomainEventData(InboundModel):
    type: Optional[str] = None


# Inbound messages ---------------------------------------------------------


class InboundMessage(InboundModel):
    type: str
    data: Any = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @field_validator("data", mode="before")
    @classmethod
    def _null_data(cls, value: Any) -> Any:
        # "data" is optional on the wire; an explicit null means "no payload".
        return {} if value is None else value

    @field_validator("data")
    @classmethod
    def _freeze_data(cls, value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value
        return freeze(value)


class ConnectedMessage(InboundMessage):
    type: Literal["connected"]


class PongMessage(InboundMessage):
    type: Literal["pong"]


class CallStartedMessage(InboundMessage):
    type: Literal["call-started"]
    data: CallStartedData = Field(default_factory=CallStartedData)


class CallEndedMessage(InboundMessage):
    type: Literal["call-ended"]
    data: CallEndedData = Field(default_factory=CallEndedData)


class SpeechUpdateMessage(InboundMessage):
    type: Literal["speech-update"]
    data: SpeechUpdateData = Field(default_factory=SpeechUpdateData)


class HandoffTriggeredMessage(InboundMessage):
    type: Literal["handoff-triggered"]
    data: HandoffTriggeredData = Field(default_factory=HandoffTriggeredData)


class AlertMessage(InboundMessage):
    type: Literal["alert"]
    data: AlertData = Field(default_factory=AlertData)


class DomainEventMessage(InboundMessage):
    data: DomainEventData = Field(default_factory=DomainEventData)

    @property
    def domain(self) -> str:
        return self.type[: -len("-event")]

    @property
    def sub_type(self) -> Optional[str]:
        return self.data.type


class UnknownMessage(InboundMessage):
    pass


MESSAGE_TYPES: Mapping[str, Type[InboundMessage]] = {
    "connected": ConnectedMessage,
    "pong": PongMessage,
    "call-started": CallStartedMessage,
    "call-ended": CallEndedMessage,
    "speech-update": SpeechUpdateMessage,
    "handoff-triggered": HandoffTriggeredMessage,
    "alert": AlertMessage,
}

CONTROL_TYPES = frozenset({"connected", "pong"})


def model_for(message_type: str) -> Type[InboundMessage]:
    model = MESSAGE_TYPES.get(message_type)
    if model is not None:
        return model
    if message_type.endswith("-event") and len(message_type) > len("-event"):
        return DomainEventMessage
    return UnknownMessage


def parse_message(raw: Union[str, bytes, bytearray, Mapping[str, Any]]) -> InboundMessage:
    """Decode one inbound frame. Raises MalformedMessageError on bad input."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessageError(f"Frame is not UTF-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedMessageError(f"Frame is not JSON: {exc}") from exc
    else:
        payload = raw
    if not isinstance(payload, Mapping):
        raise MalformedMessageError("Frame must be a JSON object")

    message_type = payload.get("type")
    if not isinstance(message_type, str) or not message_type.strip():
        raise MalformedMessageError("Frame has no 'type' tag")

    model = model_for(message_type)
    try:
        return model.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise MalformedMessageError(
            f"Invalid '{message_type}' payload: {exc.error_count()} error(s)"
        ) from exc


# Outbound messages --------------------------------------------------------


class OutboundMessage(WireModel):
    type: str
    data: Optional[Dict[str, Any]] = None

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class SubscribeMessage(OutboundMessage):
    type: Literal["subscribe"] = "subscribe"
    channel: str


class PingMessage(OutboundMessage):
    type: Literal["ping"] = "ping"
    timestamp: Optional[datetime] = Field(default_factory=_utc_now)


__all__ = [
    "AlertMessage",
    "CONTROL_TYPES",
    "CallEndedMessage",
    "CallStartedMessage",
    "ConnectedMessage",
    "DomainEventMessage",
    "HandoffTriggeredMessage",
    "InboundMessage",
    "MESSAGE_TYPES",
    "MalformedMessageError",
    "OutboundMessage",
    "PingMessage",
    "PongMessage",
    "SpeechUpdateMessage",
    "SubscribeMessage",
    "UnknownMessage",
    "freeze",
    "model_for",
    "parse_message",
    "thaw",
]
