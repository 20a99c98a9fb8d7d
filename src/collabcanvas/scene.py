"""Scene elements, mutation commands, and the committed/draft scene slots."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Protocol, Sequence, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)


def _validate_text(value: str, *, field_name: str) -> str:
    """Ensure the provided value is a non-empty piece of text."""

    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")

    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")

    return stripped


def _validate_number(value: Any, *, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be a number, got {type(value)!r}")
    return float(value)


class ShapeKind(str, Enum):
    """Primitive kinds that can be placed on the canvas."""

    RECTANGLE = "rect"
    CIRCLE = "circle"
    TRIANGLE = "triangle"
    TEXT = "text"


@dataclass(frozen=True)
class SceneElement:
    """A single drawable primitive positioned in the 0-100 coordinate space.

    Only the size and content fields relevant to ``kind`` carry meaning:
    ``width``/``height`` for rectangles and triangles, ``radius`` for circles,
    and ``text``/``font_size`` for text. Renderers ignore everything else.
    """

    id: str
    kind: ShapeKind
    x: float
    y: float
    fill: str
    width: float | None = None
    height: float | None = None
    radius: float | None = None
    text: str | None = None
    font_size: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_text(self.id, field_name="id"))
        object.__setattr__(self, "kind", ShapeKind(self.kind))
        object.__setattr__(self, "x", _validate_number(self.x, field_name="x"))
        object.__setattr__(self, "y", _validate_number(self.y, field_name="y"))
        object.__setattr__(self, "fill", _validate_text(self.fill, field_name="fill"))
        for name in ("width", "height", "radius", "font_size"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _validate_number(value, field_name=name))
        if self.text is not None and not isinstance(self.text, str):
            raise TypeError("text must be a string when provided")


SceneState = Tuple[SceneElement, ...]

_PATCHABLE_FIELDS = frozenset(
    element_field.name for element_field in fields(SceneElement)
) - {"id"}


@dataclass(frozen=True)
class AddElement:
    element: SceneElement


@dataclass(frozen=True)
class UpdateElement:
    """Shallow merge of ``changes`` into the element identified by ``element_id``."""

    element_id: str
    changes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "changes", MappingProxyType(dict(self.changes)))


@dataclass(frozen=True)
class RemoveElement:
    element_id: str


@dataclass(frozen=True)
class ReplaceAll:
    elements: Sequence[SceneElement] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "elements", tuple(self.elements))


@dataclass(frozen=True)
class ClearAll:
    pass


SceneCommand = Union[AddElement, UpdateElement, RemoveElement, ReplaceAll, ClearAll]


def apply_command(state: Sequence[SceneElement], command: object) -> SceneState:
    """Return the scene produced by applying ``command`` to ``state``.

    The input is never mutated. Commands this function does not recognise
    leave the scene unchanged so newer peers can talk to older ones.
    """

    current = tuple(state)

    if isinstance(command, AddElement):
        return current + (command.element,)

    if isinstance(command, UpdateElement):
        changes = {
            key: value
            for key, value in command.changes.items()
            if key in _PATCHABLE_FIELDS
        }
        return tuple(
            replace(element, **changes) if element.id == command.element_id else element
            for element in current
        )

    if isinstance(command, RemoveElement):
        for index, element in enumerate(current):
            if element.id == command.element_id:
                return current[:index] + current[index + 1 :]
        return current

    if isinstance(command, ReplaceAll):
        return tuple(command.elements)

    if isinstance(command, ClearAll):
        return ()

    return current


class SceneView(Protocol):
    """Anything exposing a current tuple of elements, committed or draft."""

    @property
    def elements(self) -> SceneState:
        """Return the elements visible in this scene."""


class SceneDraft:
    """Private working copy used to stage edits before they become visible."""

    def __init__(self, elements: Iterable[SceneElement] = ()) -> None:
        self._elements: SceneState = tuple(elements)

    @property
    def elements(self) -> SceneState:
        return self._elements

    def apply(self, command: object) -> SceneState:
        self._elements = apply_command(self._elements, command)
        return self._elements

    def to_command(self) -> ReplaceAll:
        """Return the single command that promotes this draft wholesale."""

        return ReplaceAll(self._elements)


class SceneStore:
    """Holder of the committed scene shared by every local writer."""

    def __init__(self, elements: Iterable[SceneElement] = ()) -> None:
        self._elements: SceneState = tuple(elements)

    @property
    def elements(self) -> SceneState:
        return self._elements

    def apply(self, command: object) -> SceneState:
        """Replace the committed scene with the result of ``command``."""

        self._elements = apply_command(self._elements, command)
        logger.debug(
            "scene.command_applied",
            command=type(command).__name__,
            element_count=len(self._elements),
        )
        return self._elements

    def begin_draft(self) -> SceneDraft:
        """Return a draft seeded with the current committed elements."""

        return SceneDraft(self._elements)


__all__ = [
    "AddElement",
    "ClearAll",
    "RemoveElement",
    "ReplaceAll",
    "SceneCommand",
    "SceneDraft",
    "SceneElement",
    "SceneState",
    "SceneStore",
    "SceneView",
    "ShapeKind",
    "UpdateElement",
    "apply_command",
]
