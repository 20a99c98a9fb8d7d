"""Conversation transcript shared between the loop, the room and the CLI."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Sequence, TextIO


@dataclass(frozen=True)
class ChatMessage:
    """One line of the visible conversation."""

    role: str
    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_final: bool = True

    def __post_init__(self) -> None:
        role = str(self.role).strip().lower()
        if role not in {"user", "model"}:
            raise ValueError(f"role must be 'user' or 'model', got {self.role!r}")
        object.__setattr__(self, "role", role)

        if not isinstance(self.text, str):
            raise TypeError(f"text must be a string, got {type(self.text)!r}")
        text = self.text.strip()
        if not text:
            raise ValueError("text must be a non-empty string")
        object.__setattr__(self, "text", text)


TranscriptListener = Callable[[ChatMessage], None]


class Transcript:
    """Append-only list of chat messages with change notification."""

    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []
        self._listeners: List[TranscriptListener] = []

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> Sequence[ChatMessage]:
        return tuple(self._messages)

    def append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        for listener in tuple(self._listeners):
            listener(message)
        return message

    def add(self, role: str, text: str) -> ChatMessage:
        return self.append(ChatMessage(role=role, text=text))

    def clear(self) -> None:
        self._messages.clear()

    def add_listener(self, listener: TranscriptListener) -> None:
        self._listeners.append(listener)


class TranscriptLogger:
    """Plain-text writer that records the conversation for debugging."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def __call__(self, message: ChatMessage) -> None:
        self.log_message(message)

    def log_message(self, message: ChatMessage) -> None:
        label = "User" if message.role == "user" else "Model"
        lines = message.text.splitlines() or [""]
        self._stream.write(f"{label}: {lines[0]}\n")
        for line in lines[1:]:
            self._stream.write(f"  {line}\n")
        self._stream.flush()


__all__ = ["ChatMessage", "Transcript", "TranscriptListener", "TranscriptLogger"]
