"""Tests for the canvas room that ties the scene, broadcast and model together."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from collabcanvas.broadcast import BroadcastSynchronizer, InMemoryBroadcastHub
from collabcanvas.llm_provider_registry import LLMProviderRegistry
from collabcanvas.room import CanvasRoom, describe_elements, model_factory_from_settings
from collabcanvas.scene import SceneElement, SceneStore, ShapeKind
from collabcanvas.session import ConnectionStatus, SessionStateError
from collabcanvas.settings import CanvasSettings
from collabcanvas.tools import CANVAS_TOOLS, SYSTEM_INSTRUCTION
from collabcanvas.verification import LoopBusyError, LoopPhase, LoopStatus

from conftest import MockLLMClient, tool_call, tool_turn

RED_CIRCLE = tool_call("draw_shape", type="circle", x=50, y=50, size=20, color="red")


def _room(client: MockLLMClient | None, hub: InMemoryBroadcastHub, **kwargs) -> CanvasRoom:
    factory = (lambda: client) if client is not None else None
    return CanvasRoom(client_factory=factory, hub=hub, participant_id="room", **kwargs)


def _peer(hub: InMemoryBroadcastHub) -> BroadcastSynchronizer:
    peer = BroadcastSynchronizer(SceneStore(), hub, participant_id="peer")
    peer.connect()
    return peer


def test_operator_edits_reach_other_participants() -> None:
    hub = InMemoryBroadcastHub()
    peer = _peer(hub)
    room = _room(None, hub)

    room.add_element(
        SceneElement(id="a", kind=ShapeKind.RECTANGLE, x=1, y=1, fill="red", width=5, height=5)
    )
    room.update_element("a", fill="green")
    room.add_element(SceneElement(id="b", kind=ShapeKind.TEXT, x=2, y=2, fill="black", text="hi"))
    room.remove_element("b")

    assert peer.elements == room.elements
    assert room.elements[0].fill == "green"

    room.clear_scene()
    assert peer.elements == ()
    assert "<rect" in room.render_svg()


def test_submit_instruction_commits_and_records_the_conversation(
    recording_sleep, static_snapshots, id_sequence
) -> None:
    hub = InMemoryBroadcastHub()
    peer = _peer(hub)
    client = MockLLMClient([tool_turn(RED_CIRCLE), "A red circle, centred."])
    statuses: list[ConnectionStatus] = []
    phases: list[LoopPhase] = []
    room = _room(
        client,
        hub,
        sleep=recording_sleep,
        snapshot_factory=static_snapshots,
        id_factory=id_sequence,
    )
    room.add_status_listener(statuses.append)
    room.add_phase_listener(phases.append)

    async def scenario():
        try:
            return await room.submit_instruction("Draw a red circle")
        finally:
            await room.close()

    outcome = asyncio.run(scenario())

    assert outcome.status is LoopStatus.COMMITTED
    assert [element.id for element in peer.elements] == ["el-1"]
    assert [(m.role, m.text) for m in room.transcript] == [
        ("user", "Draw a red circle"),
        ("model", "A red circle, centred."),
    ]
    assert statuses == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    ]
    assert phases[0] is LoopPhase.GENERATING
    assert phases[-1] is LoopPhase.IDLE
    assert client.closed
    assert hub.participants == ("peer",)


def test_settings_flow_into_the_loop(recording_sleep, static_snapshots) -> None:
    client = MockLLMClient([tool_turn(RED_CIRCLE), "Done."])
    room = _room(
        client,
        InMemoryBroadcastHub(),
        settings=CanvasSettings(settle_delay=0.25),
        sleep=recording_sleep,
        snapshot_factory=static_snapshots,
    )

    asyncio.run(room.submit_instruction("Draw"))

    assert recording_sleep.delays == [0.25]


def test_a_fresh_connection_starts_a_fresh_transcript(recording_sleep, static_snapshots) -> None:
    client = MockLLMClient(["Hello there."])
    room = _room(
        client, InMemoryBroadcastHub(), sleep=recording_sleep, snapshot_factory=static_snapshots
    )
    room.transcript.add("user", "left over from an earlier session")

    asyncio.run(room.submit_instruction("Hi"))

    assert [message.text for message in room.transcript] == ["Hi", "Hello there."]


def test_instructions_require_a_model_and_text() -> None:
    room = _room(None, InMemoryBroadcastHub())

    assert not room.has_model
    assert room.connection_status is ConnectionStatus.DISCONNECTED
    with pytest.raises(SessionStateError):
        asyncio.run(room.submit_instruction("Draw a cat"))
    with pytest.raises(ValueError):
        asyncio.run(room.submit_instruction("   "))


def test_attaching_a_second_model_is_rejected() -> None:
    room = _room(MockLLMClient(), InMemoryBroadcastHub())

    with pytest.raises(SessionStateError):
        room.attach_model(MockLLMClient)


def test_overlapping_instructions_are_rejected(static_snapshots) -> None:
    client = MockLLMClient([tool_turn(RED_CIRCLE), "Done."])

    async def scenario():
        gate = asyncio.Event()

        async def gated_sleep(delay: float) -> None:
            await gate.wait()

        room = _room(
            client, InMemoryBroadcastHub(), sleep=gated_sleep, snapshot_factory=static_snapshots
        )
        first = asyncio.create_task(room.submit_instruction("Draw a red circle"))
        while not room.is_busy:
            await asyncio.sleep(0)

        with pytest.raises(LoopBusyError):
            await room.submit_instruction("Draw a blue square")

        gate.set()
        return await first

    outcome = asyncio.run(scenario())

    assert outcome.committed
    assert len(client.calls) == 2


def test_simultaneous_instructions_admit_only_the_first(
    recording_sleep, static_snapshots
) -> None:
    client = MockLLMClient([tool_turn(RED_CIRCLE), "Done."])
    room = _room(
        client, InMemoryBroadcastHub(), sleep=recording_sleep, snapshot_factory=static_snapshots
    )

    async def scenario():
        return await asyncio.gather(
            room.submit_instruction("first"),
            room.submit_instruction("second"),
            return_exceptions=True,
        )

    first, second = asyncio.run(scenario())

    assert first.committed
    assert isinstance(second, LoopBusyError)
    assert [(m.role, m.text) for m in room.transcript] == [("user", "first"), ("model", "Done.")]
    assert not room.is_busy


def test_instruction_during_lazy_connect_is_busy(static_snapshots, recording_sleep) -> None:
    client = MockLLMClient(["Hello."])

    async def scenario():
        gate = asyncio.Event()

        async def slow_factory():
            await gate.wait()
            return client

        room = _room(
            None, InMemoryBroadcastHub(), sleep=recording_sleep, snapshot_factory=static_snapshots
        )
        room.attach_model(slow_factory)
        first = asyncio.create_task(room.submit_instruction("Hi"))
        while room.connection_status is not ConnectionStatus.CONNECTING:
            await asyncio.sleep(0)

        assert room.is_busy
        with pytest.raises(LoopBusyError):
            await room.submit_instruction("Hello again")

        gate.set()
        return room, await first

    room, outcome = asyncio.run(scenario())

    assert outcome.committed
    assert [message.text for message in room.transcript] == ["Hi", "Hello."]


def test_tool_calls_apply_directly_to_the_committed_scene(id_sequence) -> None:
    hub = InMemoryBroadcastHub()
    peer = _peer(hub)
    room = _room(None, hub, id_factory=id_sequence)

    drawn = room.apply_tool_call(RED_CIRCLE)
    removed = room.apply_tool_call(tool_call("remove_element", x=52, y=49))

    assert drawn.call_id == RED_CIRCLE.call_id
    assert drawn.result == removed.result == "success"
    assert room.elements == ()
    assert peer.elements == ()

    room.apply_tool_call(RED_CIRCLE)
    assert [element.id for element in peer.elements] == ["el-2"]
    assert peer.elements[0].radius == 10


def test_unmapped_tool_calls_are_still_acknowledged(id_sequence) -> None:
    hub = InMemoryBroadcastHub()
    peer = _peer(hub)
    room = _room(None, hub, id_factory=id_sequence)
    room.apply_tool_call(RED_CIRCLE)

    unknown = room.apply_tool_call(tool_call("wave_hands"))
    far_away = room.apply_tool_call(tool_call("remove_element", x=5, y=95))

    assert unknown.name == "wave_hands"
    assert unknown.result == far_away.result == "success"
    assert [element.id for element in room.elements] == ["el-1"]
    assert peer.elements == room.elements


def test_disconnect_cancels_an_in_flight_run(static_snapshots) -> None:
    client = MockLLMClient([tool_turn(RED_CIRCLE)])

    async def scenario() -> CanvasRoom:
        async def stalled_sleep(delay: float) -> None:
            await asyncio.Event().wait()

        room = _room(
            client, InMemoryBroadcastHub(), sleep=stalled_sleep, snapshot_factory=static_snapshots
        )
        first = asyncio.create_task(room.submit_instruction("Draw a red circle"))
        while room.phase is not LoopPhase.VERIFYING:
            await asyncio.sleep(0)

        await room.disconnect_model()

        with pytest.raises(asyncio.CancelledError):
            await first
        return room

    room = asyncio.run(scenario())

    assert room.elements == ()
    assert room.phase is LoopPhase.IDLE
    assert room.connection_status is ConnectionStatus.DISCONNECTED
    assert client.closed


class _ConfigClient(MockLLMClient):
    def __init__(self, **options) -> None:
        super().__init__()
        self.options = options


def _registry() -> LLMProviderRegistry:
    registry = LLMProviderRegistry()
    registry.register("fake", _ConfigClient)
    return registry


def test_model_factory_is_none_without_configuration() -> None:
    assert model_factory_from_settings(CanvasSettings()) is None


def test_model_factory_passes_tools_and_instruction() -> None:
    factory = model_factory_from_settings(
        CanvasSettings(llm_provider="fake", llm_model="vision-large"),
        registry=_registry(),
        option_strings=["temperature=0"],
    )

    assert factory is not None
    client = factory()
    assert client.options == {
        "tools": CANVAS_TOOLS,
        "system_instruction": SYSTEM_INSTRUCTION,
        "model": "vision-large",
        "temperature": 0,
    }


def test_model_factory_reads_config_files(tmp_path: Path) -> None:
    config = tmp_path / "model.json"
    config.write_text(
        json.dumps({"provider": "fake", "options": {"model": "from-file"}}), encoding="utf-8"
    )

    factory = model_factory_from_settings(
        CanvasSettings(llm_model="ignored"), registry=_registry(), config_path=config
    )

    assert factory is not None
    assert factory().options["model"] == "from-file"


def test_describe_elements_lists_one_line_per_element() -> None:
    lines = describe_elements(
        [
            SceneElement(id="circle-1", kind=ShapeKind.CIRCLE, x=50, y=50, fill="red", radius=10),
            SceneElement(id="label", kind=ShapeKind.TEXT, x=5, y=5, fill="black", text="Hi"),
        ]
    )

    assert len(lines) == 2
    assert lines[0].split() == ["circle", "red", "(50,", "50)", "r=10", "[circle-1]"]
    assert lines[1].split() == ["text", "black", "(5,", "5)", "'Hi'", "[label]"]
