"""Snapshot providers that turn a scene into an image for the model to inspect."""

from __future__ import annotations

import asyncio
import io
import math
from typing import Protocol, Sequence
from xml.sax.saxutils import escape, quoteattr

import structlog
from PIL import Image, ImageColor, ImageDraw, ImageFont

from .llm import ImagePart
from .scene import SceneElement, SceneView, ShapeKind

logger = structlog.get_logger(__name__)

BACKGROUND_COLOR = "#f8fafc"
SNAPSHOT_BACKGROUND_COLOR = "white"
OUTLINE_COLOR = "black"
OUTLINE_WIDTH = 0.5
DEFAULT_RECT_SIZE = 10.0
DEFAULT_RADIUS = 5.0
DEFAULT_FONT_SIZE = 5.0


class SnapshotProvider(Protocol):
    """Renders whichever scene it is bound to at call time."""

    async def get_snapshot(self) -> ImagePart | None:
        """Return an encoded image of the bound scene, or ``None`` on failure."""


def _triangle_points(element: SceneElement) -> list[tuple[float, float]]:
    width = element.width or DEFAULT_RECT_SIZE
    height = width * math.sqrt(3) / 2
    return [
        (element.x, element.y - height / 2),
        (element.x - width / 2, element.y + height / 2),
        (element.x + width / 2, element.y + height / 2),
    ]


def _rgb(color: str) -> tuple[int, int, int]:
    try:
        return ImageColor.getrgb(color)[:3]
    except ValueError:
        logger.debug("rendering.unknown_color", color=color)
        return (0, 0, 0)


def render_image(elements: Sequence[SceneElement], *, size: int = 1024) -> Image.Image:
    """Rasterise ``elements`` onto a square RGB image of ``size`` pixels."""

    scale = size / 100
    image = Image.new("RGB", (size, size), SNAPSHOT_BACKGROUND_COLOR)
    draw = ImageDraw.Draw(image)
    outline_width = max(1, round(OUTLINE_WIDTH * scale))

    for element in elements:
        fill = _rgb(element.fill)
        if element.kind is ShapeKind.RECTANGLE:
            width = element.width or DEFAULT_RECT_SIZE
            height = element.height or DEFAULT_RECT_SIZE
            box = [
                element.x * scale,
                element.y * scale,
                (element.x + width) * scale,
                (element.y + height) * scale,
            ]
            draw.rectangle(box, fill=fill, outline=OUTLINE_COLOR, width=outline_width)
        elif element.kind is ShapeKind.CIRCLE:
            radius = element.radius or DEFAULT_RADIUS
            box = [
                (element.x - radius) * scale,
                (element.y - radius) * scale,
                (element.x + radius) * scale,
                (element.y + radius) * scale,
            ]
            draw.ellipse(box, fill=fill, outline=OUTLINE_COLOR, width=outline_width)
        elif element.kind is ShapeKind.TRIANGLE:
            points = [(px * scale, py * scale) for px, py in _triangle_points(element)]
            draw.polygon(points, fill=fill, outline=OUTLINE_COLOR, width=outline_width)
        elif element.kind is ShapeKind.TEXT and element.text:
            font_size = max(1, round((element.font_size or DEFAULT_FONT_SIZE) * scale))
            font = ImageFont.load_default(size=font_size)
            left, top, right, bottom = draw.textbbox((0, 0), element.text, font=font)
            origin = (
                element.x * scale - (left + right) / 2,
                element.y * scale - (top + bottom) / 2,
            )
            draw.text(origin, element.text, fill=fill, font=font)
    return image


def render_jpeg(
    elements: Sequence[SceneElement], *, size: int = 1024, quality: int = 80
) -> bytes:
    buffer = io.BytesIO()
    render_image(elements, size=size).save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def render_svg(elements: Sequence[SceneElement]) -> str:
    """Return an SVG document of the scene in its native 100x100 space."""

    lines = [
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 100" '
        'preserveAspectRatio="none">',
        f'  <rect width="100" height="100" fill="{BACKGROUND_COLOR}" />',
    ]
    stroke = f'stroke="{OUTLINE_COLOR}" stroke-width="{OUTLINE_WIDTH}"'
    for element in elements:
        fill = quoteattr(element.fill)
        if element.kind is ShapeKind.RECTANGLE:
            lines.append(
                f'  <rect x="{element.x:g}" y="{element.y:g}" '
                f'width="{element.width or DEFAULT_RECT_SIZE:g}" '
                f'height="{element.height or DEFAULT_RECT_SIZE:g}" fill={fill} {stroke} />'
            )
        elif element.kind is ShapeKind.CIRCLE:
            lines.append(
                f'  <circle cx="{element.x:g}" cy="{element.y:g}" '
                f'r="{element.radius or DEFAULT_RADIUS:g}" fill={fill} {stroke} />'
            )
        elif element.kind is ShapeKind.TRIANGLE:
            points = " ".join(f"{px:g},{py:g}" for px, py in _triangle_points(element))
            lines.append(f'  <polygon points="{points}" fill={fill} {stroke} />')
        elif element.kind is ShapeKind.TEXT:
            lines.append(
                f'  <text x="{element.x:g}" y="{element.y:g}" fill={fill} '
                f'font-size="{element.font_size or DEFAULT_FONT_SIZE:g}" '
                f'text-anchor="middle" dominant-baseline="middle">'
                f"{escape(element.text or '')}</text>"
            )
    lines.append("</svg>")
    return "\n".join(lines)


class PillowSnapshotProvider:
    """Render the bound scene to a JPEG with Pillow off the event loop thread."""

    def __init__(self, scene: SceneView, *, size: int = 1024, quality: int = 80) -> None:
        if size < 1:
            raise ValueError("size must be a positive integer")
        if not 1 <= quality <= 95:
            raise ValueError("quality must be between 1 and 95")
        self._scene = scene
        self._size = size
        self._quality = quality

    async def get_snapshot(self) -> ImagePart | None:
        elements = self._scene.elements
        try:
            data = await asyncio.to_thread(
                render_jpeg, elements, size=self._size, quality=self._quality
            )
        except (OSError, ValueError):
            logger.warning("rendering.snapshot_failed", exc_info=True)
            return None
        return ImagePart(data=data, mime_type="image/jpeg")


__all__ = [
    "PillowSnapshotProvider",
    "SnapshotProvider",
    "render_image",
    "render_jpeg",
    "render_svg",
]
