"""Test configuration for the collaborative canvas project."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from collections.abc import Sequence
from typing import Any

import pytest

from collabcanvas.llm import (
    ImagePart,
    LLMClient,
    ModelPart,
    ModelTurn,
    TextPart,
    ToolCall,
)
from collabcanvas.scene import SceneView

FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


def tool_call(name: str, call_id: str | None = None, **arguments: Any) -> ToolCall:
    """Build a tool call with a predictable id."""

    return ToolCall(call_id=call_id or f"call-{name}", name=name, arguments=arguments)


def tool_turn(*calls: ToolCall, text: str | None = None) -> ModelTurn:
    return ModelTurn(tool_calls=calls, text=text)


class MockLLMClient(LLMClient):
    """Deterministic model client that replays queued turns."""

    def __init__(self, turns: Sequence[ModelTurn | str | Exception] | None = None) -> None:
        self.calls: list[list[ModelPart]] = []
        self.closed = False
        self._turns: list[ModelTurn | Exception] = []
        for turn in turns or ():
            self.queue(turn)

    def queue(self, turn: ModelTurn | str | Exception) -> None:
        """Append a reply (or an error to raise) for the next ``send``."""

        if isinstance(turn, str):
            turn = ModelTurn(text=turn)
        self._turns.append(turn)

    async def send(self, parts: Sequence[ModelPart]) -> ModelTurn:
        self.calls.append(list(parts))
        if not self._turns:
            raise AssertionError("MockLLMClient expected a queued turn but none remain")
        turn = self._turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    async def aclose(self) -> None:
        self.closed = True

    def prompts(self) -> list[str]:
        """Return the text parts sent so far, in order."""

        return [
            part.text
            for call in self.calls
            for part in call
            if isinstance(part, TextPart)
        ]


class StaticSnapshotProvider:
    """Snapshot provider that records the scene it saw and returns fixed bytes."""

    seen: list[tuple[Any, ...]] = []

    def __init__(self, scene: SceneView) -> None:
        self._scene = scene

    async def get_snapshot(self) -> ImagePart | None:
        StaticSnapshotProvider.seen.append(tuple(self._scene.elements))
        return ImagePart(data=FAKE_JPEG)


class RecordingSleep:
    """Async stand-in for :func:`asyncio.sleep` that never waits."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class IdSequence:
    def __init__(self, prefix: str = "el") -> None:
        self._prefix = prefix
        self._counter = 0

    def __call__(self) -> str:
        self._counter += 1
        return f"{self._prefix}-{self._counter}"


@pytest.fixture()
def mock_llm_client() -> MockLLMClient:
    return MockLLMClient()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def static_snapshots() -> type[StaticSnapshotProvider]:
    StaticSnapshotProvider.seen = []
    return StaticSnapshotProvider


@pytest.fixture()
def id_sequence() -> IdSequence:
    return IdSequence()


__all__ = [
    "FAKE_JPEG",
    "IdSequence",
    "MockLLMClient",
    "RecordingSleep",
    "StaticSnapshotProvider",
    "tool_call",
    "tool_turn",
]
