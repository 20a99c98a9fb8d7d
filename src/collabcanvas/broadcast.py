"""Publish/subscribe fan-out that keeps independent scene copies in sync.

Locally originated commands are applied and then published; commands
received from the channel are applied and never published again. That
asymmetry is what keeps two observers from echoing each other forever.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Protocol, Sequence

import structlog

from .scene import (
    AddElement,
    ClearAll,
    RemoveElement,
    ReplaceAll,
    SceneCommand,
    SceneElement,
    SceneState,
    SceneStore,
    ShapeKind,
    UpdateElement,
)

logger = structlog.get_logger(__name__)

ADD_ELEMENT = "ADD_ELEMENT"
UPDATE_ELEMENT = "UPDATE_ELEMENT"
REMOVE_ELEMENT = "REMOVE_ELEMENT"
SET_STATE = "SET_STATE"
CLEAR = "CLEAR"

MESSAGE_TYPES = (ADD_ELEMENT, UPDATE_ELEMENT, REMOVE_ELEMENT, SET_STATE, CLEAR)

# Element attribute name -> wire key.
_WIRE_KEYS = {
    "id": "id",
    "kind": "type",
    "x": "x",
    "y": "y",
    "width": "width",
    "height": "height",
    "radius": "radius",
    "fill": "fill",
    "text": "text",
    "font_size": "fontSize",
}
_ATTRIBUTE_KEYS = {wire: attribute for attribute, wire in _WIRE_KEYS.items()}


class MessageDecodeError(ValueError):
    """Raised when a known message type carries a malformed payload."""


def element_to_wire(element: SceneElement) -> Dict[str, Any]:
    """Return the JSON object used for ``element`` on the wire."""

    payload: Dict[str, Any] = {}
    for attribute, key in _WIRE_KEYS.items():
        value = getattr(element, attribute)
        if value is None:
            continue
        payload[key] = value.value if attribute == "kind" else value
    return payload


def element_from_wire(payload: Any) -> SceneElement:
    if not isinstance(payload, Mapping):
        raise MessageDecodeError("element payload must be an object")
    values = {
        _ATTRIBUTE_KEYS[key]: value
        for key, value in payload.items()
        if key in _ATTRIBUTE_KEYS
    }
    try:
        return SceneElement(**values)
    except (TypeError, ValueError) as exc:
        raise MessageDecodeError(f"invalid element payload: {exc}") from exc


def encode_command(command: SceneCommand) -> Dict[str, Any]:
    """Return the ``{type, payload}`` message describing ``command``."""

    if isinstance(command, AddElement):
        return {"type": ADD_ELEMENT, "payload": element_to_wire(command.element)}
    if isinstance(command, UpdateElement):
        updates = {
            _WIRE_KEYS.get(key, key): (
                value.value if isinstance(value, ShapeKind) else value
            )
            for key, value in command.changes.items()
        }
        return {
            "type": UPDATE_ELEMENT,
            "payload": {"id": command.element_id, "updates": updates},
        }
    if isinstance(command, RemoveElement):
        return {"type": REMOVE_ELEMENT, "payload": command.element_id}
    if isinstance(command, ReplaceAll):
        return {
            "type": SET_STATE,
            "payload": [element_to_wire(element) for element in command.elements],
        }
    if isinstance(command, ClearAll):
        return {"type": CLEAR}
    raise TypeError(f"cannot encode {command!r}")


def decode_command(message: Mapping[str, Any]) -> SceneCommand | None:
    """Return the command carried by ``message``.

    Unknown message types yield ``None``. A known type with a malformed
    payload raises :class:`MessageDecodeError`.
    """

    if not isinstance(message, Mapping):
        raise MessageDecodeError("message must be an object")

    message_type = message.get("type")
    payload = message.get("payload")

    if message_type == ADD_ELEMENT:
        return AddElement(element_from_wire(payload))

    if message_type == UPDATE_ELEMENT:
        if not isinstance(payload, Mapping):
            raise MessageDecodeError("UPDATE_ELEMENT payload must be an object")
        element_id = payload.get("id")
        updates = payload.get("updates", {})
        if not isinstance(element_id, str) or not element_id:
            raise MessageDecodeError("UPDATE_ELEMENT payload requires an id")
        if not isinstance(updates, Mapping):
            raise MessageDecodeError("UPDATE_ELEMENT updates must be an object")
        changes = {
            _ATTRIBUTE_KEYS[key]: value
            for key, value in updates.items()
            if key in _ATTRIBUTE_KEYS
        }
        return UpdateElement(element_id, changes)

    if message_type == REMOVE_ELEMENT:
        if not isinstance(payload, str) or not payload:
            raise MessageDecodeError("REMOVE_ELEMENT payload must be an element id")
        return RemoveElement(payload)

    if message_type == SET_STATE:
        if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
            raise MessageDecodeError("SET_STATE payload must be a list of elements")
        return ReplaceAll([element_from_wire(item) for item in payload])

    if message_type == CLEAR:
        return ClearAll()

    return None


@dataclass(frozen=True)
class BroadcastMessage:
    """Envelope travelling on the shared channel."""

    type: str
    origin: str
    payload: Any = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def for_command(cls, command: SceneCommand, *, origin: str) -> "BroadcastMessage":
        wire = encode_command(command)
        return cls(type=wire["type"], payload=wire.get("payload"), origin=origin)

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"type": self.type}
        if self.payload is not None:
            wire["payload"] = self.payload
        return wire


MessageHandler = Callable[[BroadcastMessage], None]


class BroadcastChannel(Protocol):
    """Shared fan-out channel, FIFO per sender."""

    def subscribe(self, participant_id: str, handler: MessageHandler) -> None:
        """Deliver messages published by other participants to ``handler``."""

    def unsubscribe(self, participant_id: str) -> None:
        """Stop delivering messages to ``participant_id``."""

    def publish(self, message: BroadcastMessage) -> None:
        """Fan ``message`` out to every participant except its origin."""


class InMemoryBroadcastHub:
    """Process-local channel delivering messages synchronously in publish order.

    Delivery is best-effort: a failing subscriber is logged and skipped so
    the remaining participants still receive the message.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, MessageHandler] = {}

    @property
    def participants(self) -> Sequence[str]:
        return tuple(self._subscribers)

    def subscribe(self, participant_id: str, handler: MessageHandler) -> None:
        if participant_id in self._subscribers:
            raise ValueError(f"participant {participant_id!r} is already subscribed")
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._subscribers[participant_id] = handler

    def unsubscribe(self, participant_id: str) -> None:
        self._subscribers.pop(participant_id, None)

    def publish(self, message: BroadcastMessage) -> None:
        for participant_id, handler in tuple(self._subscribers.items()):
            if participant_id == message.origin:
                continue
            try:
                handler(message)
            except Exception:
                logger.warning(
                    "broadcast.delivery_failed",
                    participant=participant_id,
                    message_type=message.type,
                    exc_info=True,
                )


class BroadcastSynchronizer:
    """Bridges a local :class:`SceneStore` and a shared broadcast channel."""

    def __init__(
        self,
        store: SceneStore,
        channel: BroadcastChannel,
        *,
        participant_id: str | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._participant_id = participant_id or f"participant-{uuid.uuid4().hex}"
        self._connected = False
        self.ignored_loopbacks = 0

    @property
    def participant_id(self) -> str:
        return self._participant_id

    @property
    def store(self) -> SceneStore:
        return self._store

    @property
    def elements(self) -> SceneState:
        return self._store.elements

    def connect(self) -> None:
        if self._connected:
            return
        self._channel.subscribe(self._participant_id, self.receive)
        self._connected = True

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._channel.unsubscribe(self._participant_id)
        self._connected = False

    def publish_local(self, command: SceneCommand) -> SceneState:
        """Apply a locally originated command, then share it with peers."""

        elements = self._store.apply(command)
        message = BroadcastMessage.for_command(command, origin=self._participant_id)
        self._channel.publish(message)
        logger.debug(
            "broadcast.published",
            participant=self._participant_id,
            message_type=message.type,
        )
        return elements

    def receive(self, message: BroadcastMessage) -> None:
        """Apply a command that arrived from another participant."""

        if message.origin == self._participant_id:
            self.ignored_loopbacks += 1
            return

        try:
            command = decode_command(message.to_wire())
        except MessageDecodeError:
            logger.warning(
                "broadcast.malformed_message",
                participant=self._participant_id,
                origin=message.origin,
                message_type=message.type,
                exc_info=True,
            )
            return

        if command is None:
            logger.debug("broadcast.unknown_message", message_type=message.type)
            return

        try:
            self._store.apply(command)
        except (TypeError, ValueError):
            logger.warning(
                "broadcast.rejected_update",
                participant=self._participant_id,
                origin=message.origin,
                exc_info=True,
            )


__all__ = [
    "ADD_ELEMENT",
    "BroadcastChannel",
    "BroadcastMessage",
    "BroadcastSynchronizer",
    "CLEAR",
    "InMemoryBroadcastHub",
    "MESSAGE_TYPES",
    "MessageDecodeError",
    "MessageHandler",
    "REMOVE_ELEMENT",
    "SET_STATE",
    "UPDATE_ELEMENT",
    "decode_command",
    "element_from_wire",
    "element_to_wire",
    "encode_command",
]
