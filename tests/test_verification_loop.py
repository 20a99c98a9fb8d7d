"""Tests for the draft/commit verification loop."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FAKE_JPEG, MockLLMClient, tool_call, tool_turn
from collabcanvas.broadcast import BroadcastSynchronizer, InMemoryBroadcastHub
from collabcanvas.llm import (
    ImagePart,
    LLMClientError,
    LLMErrorCategory,
    LLMErrorClassifier,
    LLMRetryPolicy,
    ModelTurn,
    TextPart,
    ToolAcknowledgment,
)
from collabcanvas.scene import AddElement, SceneElement, SceneStore, ShapeKind
from collabcanvas.verification import (
    ESCALATION_GUIDANCE,
    FAILURE_MESSAGE,
    FIRST_PASS_GUIDANCE,
    SNAPSHOT_UNAVAILABLE_NOTE,
    LoopBusyError,
    LoopPhase,
    LoopStatus,
    VerificationLoop,
    build_critique_prompt,
)

RED_CIRCLE = tool_call("draw_shape", type="circle", x=50, y=50, size=20, color="red")


def _synchronizer(hub: InMemoryBroadcastHub | None = None) -> BroadcastSynchronizer:
    synchronizer = BroadcastSynchronizer(
        SceneStore(), hub or InMemoryBroadcastHub(), participant_id="owner"
    )
    synchronizer.connect()
    return synchronizer


def _loop(
    synchronizer: BroadcastSynchronizer,
    client: MockLLMClient,
    recording_sleep,
    static_snapshots,
    **kwargs,
) -> VerificationLoop:
    return VerificationLoop(
        synchronizer,
        client,
        snapshot_factory=static_snapshots,
        sleep=recording_sleep,
        **kwargs,
    )


def test_red_circle_request_commits_a_single_circle(
    recording_sleep, static_snapshots, id_sequence
) -> None:
    hub = InMemoryBroadcastHub()
    synchronizer = _synchronizer(hub)
    observer = BroadcastSynchronizer(SceneStore(), hub, participant_id="observer")
    observer.connect()
    client = MockLLMClient([tool_turn(RED_CIRCLE), "Looks perfect!"])
    phases: list[LoopPhase] = []
    replies = []
    loop = _loop(
        synchronizer,
        client,
        recording_sleep,
        static_snapshots,
        id_factory=id_sequence,
        on_phase_change=phases.append,
        on_transcript=replies.append,
    )

    outcome = asyncio.run(loop.run("Draw a red circle in the middle"))

    assert outcome.status is LoopStatus.COMMITTED
    assert outcome.iterations == 1
    assert outcome.reply == "Looks perfect!"
    assert not outcome.reached_iteration_cap

    (element,) = synchronizer.elements
    assert element.kind is ShapeKind.CIRCLE
    assert (element.x, element.y, element.radius) == (50.0, 50.0, 10.0)
    assert element.fill == "red"
    assert observer.elements == synchronizer.elements

    assert loop.phase is LoopPhase.IDLE
    assert loop.draft is None
    assert phases == [LoopPhase.GENERATING, LoopPhase.VERIFYING, LoopPhase.IDLE]
    assert [message.text for message in replies] == ["Looks perfect!"]
    assert recording_sleep.delays == [0.8]


def test_later_iterations_remove_elements_that_only_exist_in_the_draft(
    recording_sleep, static_snapshots, id_sequence
) -> None:
    hub = InMemoryBroadcastHub()
    synchronizer = _synchronizer(hub)
    observer = BroadcastSynchronizer(SceneStore(), hub, participant_id="observer")
    observer.connect()
    client = MockLLMClient(
        [
            tool_turn(RED_CIRCLE),
            tool_turn(tool_call("remove_element", x=50, y=50)),
            "Removed it again.",
        ]
    )
    loop = _loop(synchronizer, client, recording_sleep, static_snapshots, id_factory=id_sequence)

    outcome = asyncio.run(loop.run("Draw a circle, then take it away"))

    assert outcome.status is LoopStatus.COMMITTED
    assert outcome.iterations == 2
    assert synchronizer.elements == ()
    assert observer.elements == ()
    assert [len(scene) for scene in static_snapshots.seen] == [1, 0]
    assert static_snapshots.seen[0][0].id == "el-1"


def test_critique_request_carries_acknowledgments_prompt_and_snapshot(
    recording_sleep, static_snapshots
) -> None:
    client = MockLLMClient(
        [
            tool_turn(RED_CIRCLE, tool_call("paint_bucket", call_id="odd", colour="blue")),
            "Done.",
        ]
    )
    loop = _loop(_synchronizer(), client, recording_sleep, static_snapshots)

    asyncio.run(loop.run("Draw a red circle"))

    first, second = client.calls
    assert first == [TextPart("Draw a red circle")]
    acknowledgments = [part for part in second if isinstance(part, ToolAcknowledgment)]
    assert [(ack.call_id, ack.result) for ack in acknowledgments] == [
        ("call-draw_shape", "success"),
        ("odd", "success"),
    ]
    prompt = next(part for part in second if isinstance(part, TextPart))
    assert FIRST_PASS_GUIDANCE.strip() in prompt.text
    image = next(part for part in second if isinstance(part, ImagePart))
    assert image.data == FAKE_JPEG


def test_snapshot_renders_the_draft_not_the_committed_scene(
    recording_sleep, static_snapshots
) -> None:
    synchronizer = _synchronizer()
    client = MockLLMClient([tool_turn(RED_CIRCLE), "ok"])
    loop = _loop(synchronizer, client, recording_sleep, static_snapshots)

    asyncio.run(loop.run("Draw"))

    (seen,) = static_snapshots.seen
    assert len(seen) == 1
    assert seen[0].fill == "red"


def test_committed_scene_is_untouched_while_the_model_works(
    recording_sleep, static_snapshots
) -> None:
    synchronizer = _synchronizer()
    observed: list[int] = []

    class WatchingClient(MockLLMClient):
        async def send(self, parts):
            observed.append(len(synchronizer.elements))
            return await super().send(parts)

    client = WatchingClient([tool_turn(RED_CIRCLE), tool_turn(RED_CIRCLE), "ok"])
    loop = _loop(synchronizer, client, recording_sleep, static_snapshots)

    asyncio.run(loop.run("Draw two circles"))

    assert observed == [0, 0, 0]
    assert len(synchronizer.elements) == 2


def test_loop_stops_after_five_iterations_and_commits(
    recording_sleep, static_snapshots
) -> None:
    turns = [
        tool_turn(tool_call("draw_shape", call_id=f"c{i}", type="rect", x=i, y=i, size=2, color="red"))
        for i in range(6)
    ]
    client = MockLLMClient(turns)
    synchronizer = _synchronizer()
    phases: list[LoopPhase] = []
    loop = _loop(
        synchronizer, client, recording_sleep, static_snapshots, on_phase_change=phases.append
    )

    outcome = asyncio.run(loop.run("Keep drawing"))

    assert outcome.committed
    assert outcome.iterations == 5
    assert outcome.reached_iteration_cap
    assert [call.call_id for call in outcome.unapplied_tool_calls] == ["c5"]
    assert len(client.calls) == 6
    assert len(synchronizer.elements) == 5
    assert phases == [
        LoopPhase.GENERATING,
        LoopPhase.VERIFYING,
        LoopPhase.FIXING,
        LoopPhase.IDLE,
    ]


def test_later_iterations_demand_removal_before_redrawing(
    recording_sleep, static_snapshots
) -> None:
    client = MockLLMClient([tool_turn(RED_CIRCLE), tool_turn(tool_call("clear_board")), "ok"])
    loop = _loop(_synchronizer(), client, recording_sleep, static_snapshots)

    asyncio.run(loop.run("Draw"))

    prompts = client.prompts()
    assert FIRST_PASS_GUIDANCE in prompts[1]
    assert ESCALATION_GUIDANCE in prompts[2]


def test_text_only_reply_commits_without_verification(
    recording_sleep, static_snapshots
) -> None:
    synchronizer = _synchronizer()
    synchronizer.publish_local(
        AddElement(SceneElement(id="keep", kind="rect", x=1, y=1, fill="blue", width=2, height=2))
    )
    client = MockLLMClient(["That is a blue square."])
    loop = _loop(synchronizer, client, recording_sleep, static_snapshots)

    outcome = asyncio.run(loop.run("What is this?"))

    assert outcome.iterations == 0
    assert outcome.reply == "That is a blue square."
    assert [element.id for element in synchronizer.elements] == ["keep"]
    assert recording_sleep.delays == []


def test_missing_snapshot_sends_text_only_critique(recording_sleep) -> None:
    class NoSnapshot:
        def __init__(self, scene) -> None:
            pass

        async def get_snapshot(self):
            return None

    client = MockLLMClient([tool_turn(RED_CIRCLE), "Fine."])
    synchronizer = _synchronizer()
    loop = VerificationLoop(
        synchronizer, client, snapshot_factory=NoSnapshot, sleep=recording_sleep
    )

    outcome = asyncio.run(loop.run("Draw"))

    assert outcome.committed
    assert not any(isinstance(part, ImagePart) for part in client.calls[1])
    assert SNAPSHOT_UNAVAILABLE_NOTE in client.prompts()[1]
    assert len(synchronizer.elements) == 1


def test_snapshot_errors_are_treated_as_missing(recording_sleep) -> None:
    class Exploding:
        def __init__(self, scene) -> None:
            pass

        async def get_snapshot(self):
            raise OSError("renderer crashed")

    client = MockLLMClient([tool_turn(RED_CIRCLE), "Fine."])
    loop = VerificationLoop(
        _synchronizer(), client, snapshot_factory=Exploding, sleep=recording_sleep
    )

    outcome = asyncio.run(loop.run("Draw"))

    assert outcome.committed


def test_model_failure_discards_draft_and_apologises(
    recording_sleep, static_snapshots
) -> None:
    synchronizer = _synchronizer()
    client = MockLLMClient([tool_turn(RED_CIRCLE), LLMClientError("service unavailable")])
    replies = []
    loop = _loop(
        synchronizer, client, recording_sleep, static_snapshots, on_transcript=replies.append
    )

    outcome = asyncio.run(loop.run("Draw"))

    assert outcome.status is LoopStatus.FAILED
    assert outcome.error == "service unavailable"
    assert synchronizer.elements == ()
    assert loop.phase is LoopPhase.IDLE
    assert loop.draft is None
    assert [message.text for message in replies] == [FAILURE_MESSAGE]


def test_transient_errors_are_retried_when_classified(
    recording_sleep, static_snapshots
) -> None:
    classifier = LLMErrorClassifier()
    classifier.register(LLMErrorCategory.TRANSIENT, TimeoutError)
    client = MockLLMClient([TimeoutError(), "Hello!"])
    loop = _loop(
        _synchronizer(),
        client,
        recording_sleep,
        static_snapshots,
        retry_policy=LLMRetryPolicy(max_attempts=2, initial_backoff=0.25),
        error_classifier=classifier,
    )

    outcome = asyncio.run(loop.run("Hi"))

    assert outcome.committed
    assert outcome.reply == "Hello!"
    assert recording_sleep.delays == [0.25]


def test_second_instruction_is_rejected_while_busy(static_snapshots) -> None:
    async def scenario() -> tuple[LoopPhase, LoopPhase]:
        gate = asyncio.Event()

        class SlowClient(MockLLMClient):
            async def send(self, parts):
                await gate.wait()
                return await super().send(parts)

        client = SlowClient(["done"])
        loop = VerificationLoop(_synchronizer(), client, snapshot_factory=static_snapshots)
        first = asyncio.create_task(loop.run("first"))
        await asyncio.sleep(0)
        busy_phase = loop.phase
        with pytest.raises(LoopBusyError):
            await loop.run("second")
        gate.set()
        await first
        return busy_phase, loop.phase

    busy_phase, final_phase = asyncio.run(scenario())

    assert busy_phase is LoopPhase.GENERATING
    assert final_phase is LoopPhase.IDLE


def test_cancellation_drops_the_draft_and_returns_to_idle(static_snapshots) -> None:
    synchronizer = _synchronizer()

    async def scenario() -> VerificationLoop:
        client = MockLLMClient([tool_turn(RED_CIRCLE), "never"])
        loop = VerificationLoop(
            synchronizer, client, snapshot_factory=static_snapshots, settle_delay=30
        )
        task = asyncio.create_task(loop.run("Draw"))
        while loop.phase is not LoopPhase.VERIFYING:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return loop

    loop = asyncio.run(scenario())

    assert loop.phase is LoopPhase.IDLE
    assert loop.draft is None
    assert synchronizer.elements == ()


def test_blank_instructions_are_rejected(static_snapshots) -> None:
    loop = VerificationLoop(_synchronizer(), MockLLMClient(), snapshot_factory=static_snapshots)

    with pytest.raises(ValueError):
        asyncio.run(loop.run("   "))


def test_constructor_validates_limits() -> None:
    with pytest.raises(ValueError):
        VerificationLoop(_synchronizer(), MockLLMClient(), max_iterations=0)
    with pytest.raises(ValueError):
        VerificationLoop(_synchronizer(), MockLLMClient(), settle_delay=-1)


def test_build_critique_prompt_escalates_from_second_iteration() -> None:
    assert build_critique_prompt(1).endswith(FIRST_PASS_GUIDANCE)
    assert build_critique_prompt(2).endswith(ESCALATION_GUIDANCE)
    assert build_critique_prompt(5, snapshot_available=False).endswith(
        SNAPSHOT_UNAVAILABLE_NOTE
    )
    with pytest.raises(ValueError):
        build_critique_prompt(0)


def test_model_turn_without_text_commits_silently(recording_sleep, static_snapshots) -> None:
    replies = []
    client = MockLLMClient([tool_turn(RED_CIRCLE), ModelTurn()])
    loop = _loop(
        _synchronizer(), client, recording_sleep, static_snapshots, on_transcript=replies.append
    )

    outcome = asyncio.run(loop.run("Draw"))

    assert outcome.committed
    assert outcome.reply is None
    assert replies == []
