"""Abstractions for exchanging tool calls and images with a model service."""

from __future__ import annotations

import asyncio
import base64
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Mapping,
    MutableMapping,
    Sequence,
    TypeVar,
    Union,
)


def _validate_text(value: str, *, field_name: str) -> str:
    """Ensure text fields contain non-empty string values."""

    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")

    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")

    return stripped


@dataclass(frozen=True)
class ToolCall:
    """A structured request from the model naming an action and its arguments."""

    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "call_id", _validate_text(self.call_id, field_name="call_id")
        )
        object.__setattr__(self, "name", _validate_text(self.name, field_name="name"))
        object.__setattr__(
            self,
            "arguments",
            _frozen_generic_mapping(self.arguments, field_name="arguments"),
        )


@dataclass(frozen=True)
class ToolAcknowledgment:
    """Response part echoing a tool call id back to the model."""

    call_id: str
    name: str
    result: str = "success"

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "call_id", _validate_text(self.call_id, field_name="call_id")
        )
        object.__setattr__(self, "name", _validate_text(self.name, field_name="name"))
        object.__setattr__(self, "result", _validate_text(self.result, field_name="result"))

    @classmethod
    def for_call(cls, call: ToolCall) -> "ToolAcknowledgment":
        return cls(call_id=call.call_id, name=call.name)

    def as_payload(self) -> Mapping[str, str]:
        return {"result": self.result}


@dataclass(frozen=True)
class TextPart:
    text: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "text", _validate_text(self.text, field_name="text"))


@dataclass(frozen=True)
class ImagePart:
    """Inline image payload attached to a request."""

    data: bytes
    mime_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        if not isinstance(self.data, (bytes, bytearray)):
            raise TypeError(f"data must be bytes, got {type(self.data)!r}")
        if not self.data:
            raise ValueError("data must not be empty")
        object.__setattr__(self, "data", bytes(self.data))
        object.__setattr__(
            self, "mime_type", _validate_text(self.mime_type, field_name="mime_type")
        )

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def as_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.as_base64()}"


ModelPart = Union[ToolAcknowledgment, TextPart, ImagePart]


@dataclass(frozen=True)
class ModelTurn:
    """Container describing one response from the model service."""

    tool_calls: Sequence[ToolCall] = field(default_factory=tuple)
    text: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        calls = tuple(self.tool_calls)
        for call in calls:
            if not isinstance(call, ToolCall):
                raise TypeError(f"tool_calls must contain ToolCall values, got {call!r}")
        object.__setattr__(self, "tool_calls", calls)

        text = self.text
        if text is not None:
            if not isinstance(text, str):
                raise TypeError(f"text must be a string, got {type(text)!r}")
            text = text.strip() or None
        object.__setattr__(self, "text", text)
        object.__setattr__(
            self, "metadata", _frozen_str_mapping(self.metadata, field_name="metadata")
        )

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class LLMToolDescription:
    """Structured description of a tool interface exposed to the model."""

    name: str
    description: str | None = None
    parameters_schema: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        name = _validate_text(self.name, field_name="name")
        if self.description is not None:
            description = _validate_text(self.description, field_name="description")
        else:
            description = None

        schema_proxy = _frozen_generic_mapping(
            self.parameters_schema, field_name="parameters_schema"
        )

        object.__setattr__(self, "name", name)
        object.__setattr__(self, "description", description)
        object.__setattr__(self, "parameters_schema", schema_proxy)

    def schema_dict(self) -> dict[str, Any]:
        """Return a plain, JSON-serialisable copy of the parameter schema."""

        return _thaw(self.parameters_schema)


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(item) for item in value]
    return value


def _frozen_str_mapping(
    mapping: Mapping[str, str] | MutableMapping[str, str] | None, *, field_name: str
) -> Mapping[str, str]:
    """Validate that mapping values are strings and return an immutable view."""

    if mapping is None:
        data: Mapping[str, str] = {}
    else:
        data = {
            _validate_text(str(key), field_name=f"{field_name} key"): _validate_text(
                str(value), field_name=f"{field_name} value"
            )
            for key, value in mapping.items()
        }

    return MappingProxyType(dict(data))


def _frozen_generic_mapping(
    mapping: Mapping[str, Any] | MutableMapping[str, Any] | None, *, field_name: str
) -> Mapping[str, Any]:
    """Validate keys are strings and return an immutable view."""

    if mapping is None:
        data: Mapping[str, Any] = {}
    else:
        if not isinstance(mapping, Mapping):
            raise TypeError(f"{field_name} must be a mapping, got {type(mapping)!r}")
        data = {
            _validate_text(str(key), field_name=f"{field_name} key"): value
            for key, value in mapping.items()
        }

    return MappingProxyType(dict(data))


class LLMClient(ABC):
    """Stateful conversation with a model service.

    Implementations keep their own conversation history: every successful
    :meth:`send` appends the request parts and the model's reply so the next
    call continues the same chat.
    """

    @abstractmethod
    async def send(self, parts: Sequence[ModelPart]) -> ModelTurn:
        """Send ``parts`` as the next user turn and return the model's reply."""

    def reset(self) -> None:
        """Forget the conversation history."""

    async def aclose(self) -> None:
        """Release network resources held by the client."""


class LLMClientError(RuntimeError):
    """Base exception raised when the LLM client encounters a failure."""


class LLMErrorCategory(str, Enum):
    """High-level categories used to classify LLM failures."""

    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    FATAL = "fatal"

    def is_retryable(self) -> bool:
        """Return ``True`` when the category should trigger a retry."""

        return self in {self.TRANSIENT, self.RATE_LIMIT}


class LLMErrorClassifier:
    """Utility for mapping exceptions to :class:`LLMErrorCategory` values."""

    def __init__(
        self,
        *,
        default_category: LLMErrorCategory = LLMErrorCategory.FATAL,
        rules: Sequence[tuple[LLMErrorCategory, type[Exception]]] | None = None,
    ) -> None:
        self._default_category = default_category
        self._rules: list[tuple[type[Exception], LLMErrorCategory]] = []

        if rules is not None:
            for category, exc_type in rules:
                self.register(category, exc_type)

    def register(
        self, category: LLMErrorCategory, *exception_types: type[Exception]
    ) -> None:
        """Register one or more exception types for ``category``."""

        if not exception_types:
            raise ValueError("at least one exception type must be provided")

        for exc_type in exception_types:
            if not isinstance(exc_type, type) or not issubclass(exc_type, Exception):
                raise TypeError(
                    "exception_types must be Exception subclasses, " f"got {exc_type!r}"
                )
            self._rules.append((exc_type, category))

    def classify(self, error: Exception) -> LLMErrorCategory:
        """Return the category associated with ``error``."""

        for exc_type, category in self._rules:
            if isinstance(error, exc_type):
                return category
        return self._default_category


SleepFunction = Callable[[float], Awaitable[None]]

T = TypeVar("T")


@dataclass(frozen=True)
class LLMRetryPolicy:
    """Configuration controlling retry behaviour for model round trips."""

    max_attempts: int = 3
    initial_backoff: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0:
            raise ValueError("initial_backoff must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_backoff < 0:
            raise ValueError("max_backoff must be non-negative")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")

    def compute_backoff(
        self, attempt: int, *, random_func: Callable[[], float] | None = None
    ) -> float:
        """Return the backoff delay for ``attempt`` (1-indexed)."""

        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        base_delay = self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))
        delay = min(base_delay, self.max_backoff)

        if self.jitter <= 0 or delay == 0:
            return delay

        rng = random_func or random.random
        offset = (rng() * 2 - 1) * (delay * self.jitter)
        return max(0.0, delay + offset)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_policy: LLMRetryPolicy | None = None,
    classifier: LLMErrorClassifier | None = None,
    sleep: SleepFunction | None = None,
    random_func: Callable[[], float] | None = None,
) -> T:
    """Await ``operation`` with retry and backoff support.

    Errors are re-raised as soon as the classifier marks them fatal or the
    attempt budget is spent.
    """

    policy = retry_policy or LLMRetryPolicy()
    error_classifier = classifier or LLMErrorClassifier()
    sleep_fn = sleep or asyncio.sleep

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as error:
            category = error_classifier.classify(error)
            if not category.is_retryable() or attempt >= policy.max_attempts:
                raise

            delay = policy.compute_backoff(attempt, random_func=random_func)
            if delay > 0:
                await sleep_fn(delay)

            attempt += 1


__all__ = [
    "ImagePart",
    "LLMClient",
    "LLMClientError",
    "LLMErrorCategory",
    "LLMErrorClassifier",
    "LLMRetryPolicy",
    "LLMToolDescription",
    "ModelPart",
    "ModelTurn",
    "TextPart",
    "ToolAcknowledgment",
    "ToolCall",
    "call_with_retries",
]
