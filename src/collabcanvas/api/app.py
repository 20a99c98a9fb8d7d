"""FastAPI application exposing one canvas room to browsers and scripts."""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import BaseModel, Field, field_validator

from ..broadcast import (
    MESSAGE_TYPES,
    BroadcastMessage,
    MessageDecodeError,
    decode_command,
    element_to_wire,
    encode_command,
)
from ..llm_provider_registry import LLMProviderRegistry
from ..room import CanvasRoom, model_factory_from_settings
from ..scene import ReplaceAll, SceneState
from ..session import SessionStateError
from ..settings import CanvasSettings
from ..transcript import ChatMessage
from ..verification import LoopBusyError, LoopOutcome

logger = structlog.get_logger(__name__)

ERROR_MESSAGE_TYPE = "ERROR"
OUTBOX_LIMIT = 256
SLOW_CONSUMER_CLOSE_CODE = 1013


class SocketOutbox:
    """Bounded queue of frames waiting to be written to one socket.

    Once a frame does not fit the outbox is marked overflowed and refuses
    everything after it; the caller is expected to drop the socket.
    """

    def __init__(self, limit: int = OUTBOX_LIMIT) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError("outbox limit must be a positive integer")
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=limit)
        self._overflowed = False

    @property
    def limit(self) -> int:
        return self._queue.maxsize

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, frame: dict[str, Any]) -> bool:
        """Queue ``frame`` without waiting. Returns ``False`` once full."""

        if self._overflowed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._overflowed = True
            return False
        return True

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()


class ElementResource(BaseModel):
    """Wire representation of a scene element."""

    id: str
    type: str
    x: float
    y: float
    fill: str
    width: float | None = None
    height: float | None = None
    radius: float | None = None
    text: str | None = None
    fontSize: float | None = None


class SceneResponse(BaseModel):
    elements: list[ElementResource]
    phase: str
    connection: str


class SceneCommandRequest(BaseModel):
    """A broadcast message applied as an operator edit."""

    type: str = Field(..., description="One of the broadcast message tags.")
    payload: Any = Field(None, description="Tag-specific payload.")

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        tag = value.strip().upper()
        if tag not in MESSAGE_TYPES:
            raise ValueError(f"type must be one of {', '.join(MESSAGE_TYPES)}")
        return tag


class InstructionRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Drawing instruction for the model.")

    @field_validator("text")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("text must not be blank")
        return stripped


class InstructionResponse(BaseModel):
    status: str
    iterations: int
    reply: str | None = None
    error: str | None = None
    cap_reached: bool = False
    elements: list[ElementResource]


class ChatMessageResource(BaseModel):
    id: str
    role: str
    text: str
    isFinal: bool = True


class TranscriptResponse(BaseModel):
    messages: list[ChatMessageResource]


def _element_resources(elements: SceneState) -> list[ElementResource]:
    return [ElementResource(**element_to_wire(element)) for element in elements]


def _scene_response(room: CanvasRoom) -> SceneResponse:
    return SceneResponse(
        elements=_element_resources(room.elements),
        phase=room.phase.value,
        connection=room.connection_status.value,
    )


def _instruction_response(outcome: LoopOutcome) -> InstructionResponse:
    return InstructionResponse(
        status=outcome.status.value,
        iterations=outcome.iterations,
        reply=outcome.reply,
        error=outcome.error,
        cap_reached=outcome.reached_iteration_cap,
        elements=_element_resources(outcome.elements),
    )


def _message_resource(message: ChatMessage) -> ChatMessageResource:
    return ChatMessageResource(
        id=message.id, role=message.role, text=message.text, isFinal=message.is_final
    )


def _error_frame(detail: str) -> dict[str, Any]:
    return {"type": ERROR_MESSAGE_TYPE, "payload": detail}


def create_app(
    room: CanvasRoom | None = None,
    *,
    settings: CanvasSettings | None = None,
    registry: LLMProviderRegistry | None = None,
    outbox_limit: int = OUTBOX_LIMIT,
) -> FastAPI:
    """Create a FastAPI app serving ``room``.

    When no room is supplied one is built from ``settings`` (or the
    environment), attaching a model only if a provider is configured.
    ``outbox_limit`` caps the frames buffered per WebSocket; a socket that
    falls further behind is closed with code 1013.
    """

    if isinstance(outbox_limit, bool) or not isinstance(outbox_limit, int) or outbox_limit < 1:
        raise ValueError("outbox_limit must be a positive integer")

    if room is None:
        resolved_settings = settings or CanvasSettings.from_env()
        room = CanvasRoom(
            settings=resolved_settings,
            client_factory=model_factory_from_settings(
                resolved_settings, registry=registry
            ),
        )
    canvas = room

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await canvas.close()

    app = FastAPI(
        title="Collaborative Canvas API",
        version="0.1.0",
        description=(
            "Shared drawing canvas. A model draws through tool calls and checks "
            "its own work before the result is broadcast to every observer."
        ),
        lifespan=lifespan,
    )
    app.state.room = canvas

    @app.get("/api/scene", response_model=SceneResponse, response_model_exclude_none=True)
    async def get_scene() -> SceneResponse:
        return _scene_response(canvas)

    @app.post(
        "/api/scene/commands",
        response_model=SceneResponse,
        response_model_exclude_none=True,
    )
    async def apply_scene_command(payload: SceneCommandRequest) -> SceneResponse:
        try:
            command = decode_command(payload.model_dump())
        except MessageDecodeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if command is None:
            raise HTTPException(status_code=400, detail="unsupported command type")
        try:
            canvas.synchronizer.publish_local(command)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _scene_response(canvas)

    @app.post(
        "/api/instructions",
        response_model=InstructionResponse,
        response_model_exclude_none=True,
    )
    async def submit_instruction(payload: InstructionRequest) -> InstructionResponse:
        if not canvas.has_model:
            raise HTTPException(status_code=503, detail="no model is configured")
        try:
            outcome = await canvas.submit_instruction(payload.text)
        except LoopBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SessionStateError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _instruction_response(outcome)

    @app.get("/api/transcript", response_model=TranscriptResponse)
    async def get_transcript() -> TranscriptResponse:
        return TranscriptResponse(
            messages=[_message_resource(message) for message in canvas.transcript]
        )

    @app.get("/api/scene.svg")
    async def get_scene_svg() -> Response:
        return Response(content=canvas.render_svg(), media_type="image/svg+xml")

    @app.websocket("/api/ws")
    async def scene_socket(websocket: WebSocket) -> None:
        await websocket.accept()

        participant_id = f"ws-{uuid.uuid4().hex}"
        log = logger.bind(participant=participant_id)
        outbox = SocketOutbox(outbox_limit)

        async def pump() -> None:
            while True:
                frame = await outbox.get()
                await websocket.send_json(frame)

        async def receive_frames() -> None:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    return

                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    enqueue(_error_frame("message must be valid JSON"))
                    continue
                if not isinstance(frame, Mapping):
                    enqueue(_error_frame("message must be a JSON object"))
                    continue

                try:
                    command = decode_command(frame)
                except MessageDecodeError as exc:
                    enqueue(_error_frame(str(exc)))
                    continue
                if command is None:
                    log.debug("api.socket_unknown_message", message_type=frame.get("type"))
                    continue

                canvas.hub.publish(
                    BroadcastMessage.for_command(command, origin=participant_id)
                )

        sender = asyncio.create_task(pump())
        receiver = asyncio.create_task(receive_frames())

        def enqueue(frame: dict[str, Any]) -> None:
            if outbox.put(frame) or sender.done():
                return
            # A reader this far behind gets dropped instead of buffering forever.
            log.warning("api.socket_overflow", limit=outbox.limit)
            sender.cancel()

        def deliver(message: BroadcastMessage) -> None:
            enqueue(message.to_wire())

        enqueue(encode_command(ReplaceAll(canvas.elements)))
        canvas.hub.subscribe(participant_id, deliver)
        log.info("api.socket_opened")

        try:
            await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            canvas.hub.unsubscribe(participant_id)
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)
            if outbox.overflowed:
                await websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
            log.info("api.socket_closed", overflowed=outbox.overflowed)

    return app


__all__ = [
    "ChatMessageResource",
    "ElementResource",
    "InstructionRequest",
    "InstructionResponse",
    "OUTBOX_LIMIT",
    "SceneCommandRequest",
    "SceneResponse",
    "SocketOutbox",
    "TranscriptResponse",
    "create_app",
]
