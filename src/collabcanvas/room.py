"""The scene owner: one committed canvas, its observers and its model session."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, List, Sequence

import structlog

from .broadcast import BroadcastSynchronizer, InMemoryBroadcastHub
from .llm import LLMClient, ToolAcknowledgment, ToolCall
from .llm_provider_registry import LLMProviderRegistry
from .llm_providers import register_builtin_providers
from .rendering import PillowSnapshotProvider, render_svg
from .scene import (
    AddElement,
    ClearAll,
    RemoveElement,
    ReplaceAll,
    SceneElement,
    SceneState,
    SceneStore,
    SceneView,
    UpdateElement,
)
from .session import (
    ClientFactory,
    ConnectionStatus,
    ModelSessionHandle,
    SessionStateError,
)
from .settings import CanvasSettings
from .tools import (
    CANVAS_TOOLS,
    SYSTEM_INSTRUCTION,
    IdFactory,
    map_tool_call,
    new_element_id,
)
from .transcript import ChatMessage, Transcript
from .verification import (
    LoopBusyError,
    LoopOutcome,
    LoopPhase,
    PhaseListener,
    SleepFunction,
    SnapshotFactory,
    VerificationLoop,
)

logger = structlog.get_logger(__name__)


class CanvasRoom:
    """Compose the committed scene, the broadcast bridge and the model loop.

    Operator edits and model commits both go through the synchronizer, so
    every other participant on ``hub`` sees exactly the same commands the
    room applied locally.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        hub: InMemoryBroadcastHub | None = None,
        store: SceneStore | None = None,
        settings: CanvasSettings | None = None,
        participant_id: str | None = None,
        snapshot_factory: SnapshotFactory | None = None,
        id_factory: IdFactory = new_element_id,
        sleep: SleepFunction | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        self._settings = settings or CanvasSettings()
        self._hub = hub if hub is not None else InMemoryBroadcastHub()
        self._store = store if store is not None else SceneStore()
        self._synchronizer = BroadcastSynchronizer(
            self._store, self._hub, participant_id=participant_id
        )
        self._synchronizer.connect()
        self._transcript = transcript if transcript is not None else Transcript()
        self._snapshot_factory = snapshot_factory or self._default_snapshot_provider
        self._id_factory = id_factory
        self._sleep = sleep
        self._phase_listeners: List[PhaseListener] = []
        self._status_listeners: List[Callable[[ConnectionStatus], None]] = []
        self._session: ModelSessionHandle | None = None
        self._loop: VerificationLoop | None = None
        self._instruction_in_flight = False
        if client_factory is not None:
            self.attach_model(client_factory)

    # -- composition -----------------------------------------------------
    @property
    def settings(self) -> CanvasSettings:
        return self._settings

    @property
    def hub(self) -> InMemoryBroadcastHub:
        return self._hub

    @property
    def store(self) -> SceneStore:
        return self._store

    @property
    def synchronizer(self) -> BroadcastSynchronizer:
        return self._synchronizer

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    @property
    def elements(self) -> SceneState:
        return self._store.elements

    @property
    def has_model(self) -> bool:
        return self._session is not None

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._session is None:
            return ConnectionStatus.DISCONNECTED
        return self._session.status

    @property
    def phase(self) -> LoopPhase:
        if self._loop is None:
            return LoopPhase.IDLE
        return self._loop.phase

    @property
    def is_busy(self) -> bool:
        return self._instruction_in_flight or self.phase.is_busy

    def add_phase_listener(self, listener: PhaseListener) -> None:
        self._phase_listeners.append(listener)

    def add_status_listener(self, listener: Callable[[ConnectionStatus], None]) -> None:
        self._status_listeners.append(listener)

    # -- operator edits --------------------------------------------------
    def add_element(self, element: SceneElement) -> SceneState:
        return self._synchronizer.publish_local(AddElement(element))

    def update_element(self, element_id: str, **changes: Any) -> SceneState:
        return self._synchronizer.publish_local(UpdateElement(element_id, changes))

    def remove_element(self, element_id: str) -> SceneState:
        return self._synchronizer.publish_local(RemoveElement(element_id))

    def clear_scene(self) -> SceneState:
        return self._synchronizer.publish_local(ClearAll())

    def set_elements(self, elements: Iterable[SceneElement]) -> SceneState:
        return self._synchronizer.publish_local(ReplaceAll(tuple(elements)))

    def render_svg(self) -> str:
        return render_svg(self._store.elements)

    # -- model session ---------------------------------------------------
    def attach_model(self, client_factory: ClientFactory) -> ModelSessionHandle:
        """Use ``client_factory`` for future connections.

        Raises:
            SessionStateError: If a model session is already attached.
        """

        if self._session is not None:
            raise SessionStateError("a model session is already attached")
        self._session = ModelSessionHandle(
            client_factory, on_status_change=self._notify_status
        )
        return self._session

    async def connect_model(self) -> LLMClient:
        """Open the model session and start a fresh conversation."""

        session = self._require_session()
        already_connected = session.is_connected
        client = await session.connect()
        if not already_connected:
            self._loop = self._build_loop(client)
            self._transcript.clear()
        return client

    async def disconnect_model(self) -> None:
        """Cancel any in-flight run and release the model client."""

        if self._session is None:
            return
        await self._session.disconnect()
        self._loop = None

    async def submit_instruction(self, text: str) -> LoopOutcome:
        """Record ``text`` as a user message and run the verification loop.

        Connects lazily on first use.

        Raises:
            LoopBusyError: If a previous instruction is still being processed.
            SessionStateError: If no model is attached or connecting failed.
        """

        if not isinstance(text, str) or not text.strip():
            raise ValueError("instruction must be a non-empty string")
        session = self._require_session()
        if self.is_busy:
            raise LoopBusyError("a drawing request is already being processed")

        # Admission happens before the first await so a concurrent submit
        # cannot slip in while the session connects.
        self._instruction_in_flight = True
        try:
            if not session.is_connected or self._loop is None:
                await self.connect_model()
            loop = self._loop
            if loop is None:
                raise SessionStateError("model session is not connected")

            self._transcript.add("user", text)
            logger.info("room.instruction_received", length=len(text.strip()))
            return await session.start(loop.run(text))
        finally:
            self._instruction_in_flight = False

    def apply_tool_call(self, call: ToolCall) -> ToolAcknowledgment:
        """Apply a streamed tool call straight to the committed scene.

        Used by live sessions that skip the verification loop: the call is
        mapped against the committed elements and published at once. The
        model is always told the call succeeded, even when it mapped to no
        change.
        """

        command = map_tool_call(
            call.name,
            call.arguments,
            self._store.elements,
            id_factory=self._id_factory,
            proximity_threshold=self._settings.removal_threshold,
        )
        if command is None:
            logger.debug("room.tool_call_unmapped", tool=call.name, call_id=call.call_id)
        else:
            self._synchronizer.publish_local(command)
            logger.info(
                "room.tool_call_applied",
                tool=call.name,
                command=type(command).__name__,
            )
        return ToolAcknowledgment.for_call(call)

    async def close(self) -> None:
        await self.disconnect_model()
        self._synchronizer.disconnect()

    # -- internals -------------------------------------------------------
    def _require_session(self) -> ModelSessionHandle:
        if self._session is None:
            raise SessionStateError("no model is attached to this room")
        return self._session

    def _build_loop(self, client: LLMClient) -> VerificationLoop:
        settings = self._settings
        return VerificationLoop(
            self._synchronizer,
            client,
            snapshot_factory=self._snapshot_factory,
            max_iterations=settings.max_iterations,
            settle_delay=settings.settle_delay,
            proximity_threshold=settings.removal_threshold,
            id_factory=self._id_factory,
            sleep=self._sleep,
            on_phase_change=self._notify_phase,
            on_transcript=self._record_model_message,
        )

    def _default_snapshot_provider(self, scene: SceneView) -> PillowSnapshotProvider:
        return PillowSnapshotProvider(scene, size=self._settings.snapshot_size)

    def _record_model_message(self, message: ChatMessage) -> None:
        self._transcript.append(message)

    def _notify_phase(self, phase: LoopPhase) -> None:
        for listener in tuple(self._phase_listeners):
            listener(phase)

    def _notify_status(self, status: ConnectionStatus) -> None:
        logger.debug("room.connection_status", status=status.value)
        for listener in tuple(self._status_listeners):
            listener(status)


def model_factory_from_settings(
    settings: CanvasSettings,
    *,
    registry: LLMProviderRegistry | None = None,
    option_strings: Sequence[str] = (),
    config_path: str | Path | None = None,
) -> ClientFactory | None:
    """Return a lazy client factory for the configured provider, if any.

    Every client is created with the canvas tools and system instruction;
    explicit options override those defaults.
    """

    path = config_path if config_path is not None else settings.llm_config_path
    if path is None and settings.llm_provider is None:
        return None

    if registry is None:
        registry = LLMProviderRegistry()
        register_builtin_providers(registry)

    defaults: dict[str, Any] = {
        "tools": CANVAS_TOOLS,
        "system_instruction": SYSTEM_INSTRUCTION,
    }
    if settings.llm_model is not None:
        defaults["model"] = settings.llm_model

    if path is not None:
        return lambda: registry.create_from_config_file(path, defaults=defaults)
    provider = settings.llm_provider
    options = tuple(option_strings)
    return lambda: registry.create_from_cli(provider, options, defaults=defaults)


def describe_elements(elements: Sequence[SceneElement]) -> List[str]:
    """Return one human-readable line per element, for CLI listings."""

    lines = []
    for element in elements:
        if element.text is not None:
            detail = f"{element.text!r}"
        elif element.radius is not None:
            detail = f"r={element.radius:g}"
        else:
            detail = f"w={element.width or 0:g}"
        lines.append(
            f"{element.kind.value:<8} {element.fill:<10} "
            f"({element.x:g}, {element.y:g}) {detail}  [{element.id[:8]}]"
        )
    return lines


__all__ = ["CanvasRoom", "describe_elements", "model_factory_from_settings"]
