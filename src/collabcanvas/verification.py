"""Draft/commit loop letting the model check its own drawing before it is shown.

A run stages every tool call against a private draft of the committed scene,
renders the draft, and asks the model to critique the picture. The model can
answer with more tool calls (applied to the same draft) or with text. When it
stops calling tools, or the iteration budget runs out, the draft replaces the
committed scene in a single broadcast command. Observers therefore never see
an intermediate frame.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Sequence

import structlog

from .broadcast import BroadcastSynchronizer
from .llm import (
    ImagePart,
    LLMClient,
    LLMErrorClassifier,
    LLMRetryPolicy,
    ModelPart,
    ModelTurn,
    TextPart,
    ToolAcknowledgment,
    ToolCall,
    call_with_retries,
)
from .rendering import PillowSnapshotProvider, SnapshotProvider
from .scene import SceneDraft, SceneState, SceneView
from .tools import (
    DEFAULT_PROXIMITY_THRESHOLD,
    IdFactory,
    map_tool_call,
    new_element_id,
)
from .transcript import ChatMessage

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_SETTLE_DELAY = 0.8

VERIFICATION_PROMPT = (
    "Here is the visual result. Critically evaluate if it matches the request."
)
FIRST_PASS_GUIDANCE = (
    " If correct, respond with text. If incorrect, call tools to fix "
    "(prioritize removing mistakes with 'remove_element' before redrawing)."
)
ESCALATION_GUIDANCE = (
    " CRITICAL: You have made multiple attempts. If the image is still wrong, "
    "do not attempt small tweaks. YOU MUST use 'remove_element' to delete the "
    "specific wrong items OR 'clear_board' to start over, then redraw correctly. "
    "Do not simply draw over mistakes. DELETE THEM."
)
SNAPSHOT_UNAVAILABLE_NOTE = (
    " (The rendered image could not be captured this time; judge from the tool "
    "calls you made.)"
)
FAILURE_MESSAGE = "Sorry, I encountered an error processing your request."


class LoopPhase(str, Enum):
    """Externally visible state of the verification loop."""

    IDLE = "idle"
    GENERATING = "generating"
    VERIFYING = "verifying"
    FIXING = "fixing"

    @property
    def is_busy(self) -> bool:
        return self is not LoopPhase.IDLE


class LoopStatus(str, Enum):
    COMMITTED = "committed"
    FAILED = "failed"


class LoopBusyError(RuntimeError):
    """Raised when an instruction arrives while another run is in flight."""


@dataclass(frozen=True)
class LoopOutcome:
    """Result of one verification loop run."""

    status: LoopStatus
    iterations: int
    elements: SceneState
    reply: str | None = None
    error: str | None = None
    unapplied_tool_calls: Sequence[ToolCall] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "elements", tuple(self.elements))
        object.__setattr__(self, "unapplied_tool_calls", tuple(self.unapplied_tool_calls))

    @property
    def committed(self) -> bool:
        return self.status is LoopStatus.COMMITTED

    @property
    def reached_iteration_cap(self) -> bool:
        return bool(self.unapplied_tool_calls)


def build_critique_prompt(iteration: int, *, snapshot_available: bool = True) -> str:
    """Return the self-check prompt for ``iteration`` (1-indexed).

    From the second iteration on the model has already tried to correct
    itself once, so the wording forbids further tweaks and demands removal
    or a clean redraw.
    """

    if iteration < 1:
        raise ValueError("iteration must be >= 1")
    prompt = VERIFICATION_PROMPT
    prompt += ESCALATION_GUIDANCE if iteration >= 2 else FIRST_PASS_GUIDANCE
    if not snapshot_available:
        prompt += SNAPSHOT_UNAVAILABLE_NOTE
    return prompt


SnapshotFactory = Callable[[SceneView], SnapshotProvider]
SleepFunction = Callable[[float], Awaitable[None]]
PhaseListener = Callable[[LoopPhase], None]
TranscriptSink = Callable[[ChatMessage], None]


class VerificationLoop:
    """Orchestrates generate → render → critique rounds for one scene owner."""

    def __init__(
        self,
        synchronizer: BroadcastSynchronizer,
        client: LLMClient,
        *,
        snapshot_factory: SnapshotFactory = PillowSnapshotProvider,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
        id_factory: IdFactory = new_element_id,
        retry_policy: LLMRetryPolicy | None = None,
        error_classifier: LLMErrorClassifier | None = None,
        sleep: SleepFunction | None = None,
        on_phase_change: PhaseListener | None = None,
        on_transcript: TranscriptSink | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if settle_delay < 0:
            raise ValueError("settle_delay must be non-negative")

        self._synchronizer = synchronizer
        self._client = client
        self._snapshot_factory = snapshot_factory
        self._max_iterations = max_iterations
        self._settle_delay = float(settle_delay)
        self._proximity_threshold = float(proximity_threshold)
        self._id_factory = id_factory
        self._retry_policy = retry_policy or LLMRetryPolicy(max_attempts=1)
        self._error_classifier = error_classifier
        self._sleep = sleep or asyncio.sleep
        self._on_phase_change = on_phase_change
        self._on_transcript = on_transcript
        self._phase = LoopPhase.IDLE
        self._draft: SceneDraft | None = None

    @property
    def phase(self) -> LoopPhase:
        return self._phase

    @property
    def is_busy(self) -> bool:
        return self._phase.is_busy

    @property
    def draft(self) -> SceneDraft | None:
        """The in-flight draft, or ``None`` while idle."""

        return self._draft

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run(self, instruction: str) -> LoopOutcome:
        """Carry one user instruction through to a committed scene.

        Raises:
            LoopBusyError: If another run is still in flight.
        """

        if not isinstance(instruction, str) or not instruction.strip():
            raise ValueError("instruction must be a non-empty string")
        if self.is_busy:
            raise LoopBusyError("a drawing request is already being processed")

        # Entering GENERATING before the first await is the admission signal.
        self._set_phase(LoopPhase.GENERATING)
        log = logger.bind(run_id=uuid.uuid4().hex[:12])
        iterations = 0

        try:
            draft = self._synchronizer.store.begin_draft()
            self._draft = draft
            log.info("verification.started", elements=len(draft.elements))
            turn = await self._send([TextPart(instruction)])

            while turn.has_tool_calls and iterations < self._max_iterations:
                iterations += 1
                acknowledgments = self._apply_tool_calls(draft, turn.tool_calls)
                self._set_phase(
                    LoopPhase.VERIFYING if iterations == 1 else LoopPhase.FIXING
                )

                await self._sleep(self._settle_delay)
                snapshot = await self._capture(draft, log)

                parts: List[ModelPart] = list(acknowledgments)
                parts.append(
                    TextPart(
                        build_critique_prompt(
                            iterations, snapshot_available=snapshot is not None
                        )
                    )
                )
                if snapshot is not None:
                    parts.append(snapshot)

                log.debug(
                    "verification.critique_requested",
                    iteration=iterations,
                    tool_calls=len(acknowledgments),
                    has_snapshot=snapshot is not None,
                )
                turn = await self._send(parts)

            elements = self._synchronizer.publish_local(draft.to_command())
            log.info(
                "verification.committed",
                iterations=iterations,
                elements=len(elements),
                cap_reached=turn.has_tool_calls,
            )
            if turn.text:
                self._emit(ChatMessage(role="model", text=turn.text))
            return LoopOutcome(
                status=LoopStatus.COMMITTED,
                iterations=iterations,
                elements=elements,
                reply=turn.text,
                unapplied_tool_calls=turn.tool_calls,
            )
        except asyncio.CancelledError:
            log.info("verification.cancelled", iterations=iterations)
            raise
        except Exception as exc:
            log.error("verification.failed", iterations=iterations, exc_info=True)
            self._emit(ChatMessage(role="model", text=FAILURE_MESSAGE))
            return LoopOutcome(
                status=LoopStatus.FAILED,
                iterations=iterations,
                elements=self._synchronizer.elements,
                error=str(exc) or type(exc).__name__,
            )
        finally:
            self._draft = None
            self._set_phase(LoopPhase.IDLE)

    def _apply_tool_calls(
        self, draft: SceneDraft, tool_calls: Sequence[ToolCall]
    ) -> List[ToolAcknowledgment]:
        acknowledgments: List[ToolAcknowledgment] = []
        for call in tool_calls:
            command = map_tool_call(
                call.name,
                call.arguments,
                draft.elements,
                id_factory=self._id_factory,
                proximity_threshold=self._proximity_threshold,
            )
            if command is not None:
                draft.apply(command)
            acknowledgments.append(ToolAcknowledgment.for_call(call))
        return acknowledgments

    async def _capture(self, draft: SceneDraft, log: Any) -> ImagePart | None:
        provider = self._snapshot_factory(draft)
        try:
            snapshot = await provider.get_snapshot()
        except Exception:
            log.warning("verification.snapshot_failed", exc_info=True)
            return None
        if snapshot is None:
            log.warning("verification.snapshot_missing")
        return snapshot

    async def _send(self, parts: Sequence[ModelPart]) -> ModelTurn:
        return await call_with_retries(
            lambda: self._client.send(parts),
            retry_policy=self._retry_policy,
            classifier=self._error_classifier,
            sleep=self._sleep,
        )

    def _set_phase(self, phase: LoopPhase) -> None:
        if phase is self._phase:
            return
        self._phase = phase
        if self._on_phase_change is not None:
            self._on_phase_change(phase)

    def _emit(self, message: ChatMessage) -> None:
        if self._on_transcript is not None:
            self._on_transcript(message)


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_SETTLE_DELAY",
    "ESCALATION_GUIDANCE",
    "FAILURE_MESSAGE",
    "FIRST_PASS_GUIDANCE",
    "LoopBusyError",
    "LoopOutcome",
    "LoopPhase",
    "LoopStatus",
    "PhaseListener",
    "SleepFunction",
    "SnapshotFactory",
    "TranscriptSink",
    "VERIFICATION_PROMPT",
    "VerificationLoop",
    "build_critique_prompt",
]
