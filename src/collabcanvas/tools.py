"""Tool schema exposed to the model and translation of tool calls into commands."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Sequence, Union

import structlog

from .llm import LLMToolDescription
from .scene import (
    AddElement,
    ClearAll,
    RemoveElement,
    SceneCommand,
    SceneElement,
    ShapeKind,
)

logger = structlog.get_logger(__name__)

DEFAULT_PROXIMITY_THRESHOLD = 20.0
DEFAULT_TEXT_COLOR = "black"
DEFAULT_FONT_SIZE = 5.0

IdFactory = Callable[[], str]


def new_element_id() -> str:
    return str(uuid.uuid4())


class ToolName(str, Enum):
    """Closed set of tools the model is allowed to call."""

    DRAW_SHAPE = "draw_shape"
    ADD_TEXT = "add_text"
    REMOVE_ELEMENT = "remove_element"
    CLEAR_BOARD = "clear_board"

    @classmethod
    def lookup(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class DrawShape:
    kind: ShapeKind
    x: float
    y: float
    size: float
    color: str


@dataclass(frozen=True)
class AddText:
    text: str
    x: float
    y: float
    color: str = DEFAULT_TEXT_COLOR
    font_size: float = DEFAULT_FONT_SIZE


@dataclass(frozen=True)
class RemoveNearest:
    x: float
    y: float


@dataclass(frozen=True)
class ClearBoard:
    pass


ToolInvocation = Union[DrawShape, AddText, RemoveNearest, ClearBoard]

_DRAWABLE_KINDS = {
    "rect": ShapeKind.RECTANGLE,
    "circle": ShapeKind.CIRCLE,
    "triangle": ShapeKind.TRIANGLE,
}


def _number(arguments: Mapping[str, Any], key: str) -> float | None:
    value = arguments.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(result):
        return None
    return result


def _text(arguments: Mapping[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def parse_tool_call(name: str, arguments: Mapping[str, Any]) -> ToolInvocation | None:
    """Interpret a raw tool call, returning ``None`` when it cannot be understood."""

    tool = ToolName.lookup(name)
    if tool is None:
        return None

    if tool is ToolName.DRAW_SHAPE:
        kind = _DRAWABLE_KINDS.get(str(arguments.get("type", "")).strip().lower())
        x = _number(arguments, "x")
        y = _number(arguments, "y")
        size = _number(arguments, "size")
        color = _text(arguments, "color")
        if kind is None or x is None or y is None or size is None or color is None:
            return None
        return DrawShape(kind=kind, x=x, y=y, size=size, color=color)

    if tool is ToolName.ADD_TEXT:
        text = _text(arguments, "text")
        x = _number(arguments, "x")
        y = _number(arguments, "y")
        if text is None or x is None or y is None:
            return None
        return AddText(
            text=text,
            x=x,
            y=y,
            color=_text(arguments, "color") or DEFAULT_TEXT_COLOR,
            font_size=_number(arguments, "fontSize") or DEFAULT_FONT_SIZE,
        )

    if tool is ToolName.REMOVE_ELEMENT:
        x = _number(arguments, "x")
        y = _number(arguments, "y")
        if x is None or y is None:
            return None
        return RemoveNearest(x=x, y=y)

    if tool is ToolName.CLEAR_BOARD:
        return ClearBoard()

    raise TypeError(f"unhandled tool {tool!r}")


def find_nearest_element(
    elements: Sequence[SceneElement],
    x: float,
    y: float,
    *,
    threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
) -> SceneElement | None:
    """Return the element closest to ``(x, y)`` within ``threshold`` units.

    A candidate must be strictly closer than every earlier candidate, so the
    first element encountered wins ties.
    """

    closest: SceneElement | None = None
    best = math.inf
    for element in elements:
        distance = math.hypot(element.x - x, element.y - y)
        if distance < best and distance < threshold:
            best = distance
            closest = element
    return closest


def command_for_invocation(
    invocation: ToolInvocation,
    current_elements: Sequence[SceneElement],
    *,
    id_factory: IdFactory = new_element_id,
    proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
) -> SceneCommand | None:
    """Translate a parsed invocation into a scene command."""

    if isinstance(invocation, DrawShape):
        width = height = radius = None
        if invocation.kind is ShapeKind.CIRCLE:
            radius = invocation.size / 2
        elif invocation.kind is ShapeKind.RECTANGLE:
            width = height = invocation.size
        else:
            width = invocation.size
        return AddElement(
            SceneElement(
                id=id_factory(),
                kind=invocation.kind,
                x=invocation.x,
                y=invocation.y,
                fill=invocation.color,
                width=width,
                height=height,
                radius=radius,
            )
        )

    if isinstance(invocation, AddText):
        return AddElement(
            SceneElement(
                id=id_factory(),
                kind=ShapeKind.TEXT,
                x=invocation.x,
                y=invocation.y,
                fill=invocation.color,
                text=invocation.text,
                font_size=invocation.font_size,
            )
        )

    if isinstance(invocation, RemoveNearest):
        target = find_nearest_element(
            current_elements,
            invocation.x,
            invocation.y,
            threshold=proximity_threshold,
        )
        if target is None:
            return None
        return RemoveElement(target.id)

    if isinstance(invocation, ClearBoard):
        return ClearAll()

    raise TypeError(f"unhandled tool invocation {invocation!r}")


def map_tool_call(
    name: str,
    arguments: Mapping[str, Any],
    current_elements: Sequence[SceneElement],
    *,
    id_factory: IdFactory = new_element_id,
    proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
) -> SceneCommand | None:
    """Map a model tool call onto a scene command.

    ``current_elements`` is only read; pass the scene the command will be
    applied to (draft or committed). ``None`` means the call maps to no
    change, either because the tool is unknown or because nothing matched.
    """

    invocation = parse_tool_call(name, arguments)
    if invocation is None:
        logger.debug("tools.unmapped_call", tool=name)
        return None

    command = command_for_invocation(
        invocation,
        current_elements,
        id_factory=id_factory,
        proximity_threshold=proximity_threshold,
    )
    if command is None:
        logger.debug("tools.no_matching_element", tool=name)
    return command


_COORDINATE = {"type": "number", "minimum": 0, "maximum": 100}

DRAW_SHAPE_TOOL = LLMToolDescription(
    name=ToolName.DRAW_SHAPE.value,
    description=(
        "Draw a basic geometric shape on the canvas. Coordinates are 0-100 percentages."
    ),
    parameters_schema={
        "type": "object",
        "properties": {
            "type": {
                "type": "string",
                "enum": ["rect", "circle", "triangle"],
                "description": "The type of shape",
            },
            "x": {**_COORDINATE, "description": "X coordinate (0-100)"},
            "y": {**_COORDINATE, "description": "Y coordinate (0-100)"},
            "size": {
                **_COORDINATE,
                "description": "Size of the shape (width/diameter) (0-100)",
            },
            "color": {"type": "string", "description": "CSS color name or hex"},
        },
        "required": ["type", "x", "y", "size", "color"],
    },
)

ADD_TEXT_TOOL = LLMToolDescription(
    name=ToolName.ADD_TEXT.value,
    description="Add text to the canvas.",
    parameters_schema={
        "type": "object",
        "properties": {
            "text": {"type": "string", "description": "The text content"},
            "x": {**_COORDINATE, "description": "X coordinate (0-100)"},
            "y": {**_COORDINATE, "description": "Y coordinate (0-100)"},
            "color": {"type": "string", "description": "Color of text"},
            "fontSize": {"type": "number", "description": "Font size (1-20)"},
        },
        "required": ["text", "x", "y"],
    },
)

REMOVE_ELEMENT_TOOL = LLMToolDescription(
    name=ToolName.REMOVE_ELEMENT.value,
    description="Remove the element at or closest to the specified X, Y coordinates.",
    parameters_schema={
        "type": "object",
        "properties": {
            "x": {**_COORDINATE, "description": "X coordinate (0-100) of the item to remove"},
            "y": {**_COORDINATE, "description": "Y coordinate (0-100) of the item to remove"},
        },
        "required": ["x", "y"],
    },
)

CLEAR_BOARD_TOOL = LLMToolDescription(
    name=ToolName.CLEAR_BOARD.value,
    description="Clear everything from the canvas.",
    parameters_schema={"type": "object", "properties": {}},
)

CANVAS_TOOLS: tuple[LLMToolDescription, ...] = (
    DRAW_SHAPE_TOOL,
    ADD_TEXT_TOOL,
    REMOVE_ELEMENT_TOOL,
    CLEAR_BOARD_TOOL,
)

SYSTEM_INSTRUCTION = """\
You are a collaborative creative assistant and a PERFECTIONIST.
You help users draw on a shared digital canvas (100x100 units).

CRITICAL VISUAL FEEDBACK LOOP:
1. When asked to draw, use the provided tools.
2. After you draw, you will receive an IMAGE of the canvas.
3. You MUST look at this image to verify if it is EXACTLY what the user wanted.

ERROR CORRECTION RULES:
- If the drawing is incorrect, you MUST FIX IT IMMEDIATELY.
- NEVER just draw a new correct shape on top of a wrong one. This creates a mess.
- YOU MUST DELETE THE MISTAKE FIRST using the 'remove_element' tool (at the location of the error).
- OR, if the board is cluttered with mistakes, use 'clear_board' and redraw the scene from scratch.
- Be precise with coordinates.

When asked "what is this?" describe what you see visually.
Be concise, enthusiastic, and helpful.
"""


__all__ = [
    "ADD_TEXT_TOOL",
    "AddText",
    "CANVAS_TOOLS",
    "CLEAR_BOARD_TOOL",
    "ClearBoard",
    "DEFAULT_FONT_SIZE",
    "DEFAULT_PROXIMITY_THRESHOLD",
    "DEFAULT_TEXT_COLOR",
    "DRAW_SHAPE_TOOL",
    "DrawShape",
    "IdFactory",
    "REMOVE_ELEMENT_TOOL",
    "RemoveNearest",
    "SYSTEM_INSTRUCTION",
    "ToolInvocation",
    "ToolName",
    "command_for_invocation",
    "find_nearest_element",
    "map_tool_call",
    "new_element_id",
    "parse_tool_call",
]
