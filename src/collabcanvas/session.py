"""Lifecycle of the connection between a canvas room and its model service.

The handle is an explicit state machine. Everything acquired while
connecting (the client itself, cleanup callbacks registered later, the
in-flight verification task) is released on every exit path by a single
:class:`contextlib.AsyncExitStack`, and tearing down twice is harmless.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Set, TypeVar, Union

import structlog

from .llm import LLMClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[], Union[LLMClient, Awaitable[LLMClient]]]
StatusListener = Callable[["ConnectionStatus"], None]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SessionStateError(RuntimeError):
    """Raised when the session is used in a state that does not allow it."""


class ModelSessionHandle:
    """Owns one model client and the work running against it."""

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        on_status_change: StatusListener | None = None,
    ) -> None:
        if not callable(client_factory):
            raise TypeError("client_factory must be callable")
        self._client_factory = client_factory
        self._on_status_change = on_status_change
        self._status = ConnectionStatus.DISCONNECTED
        self._client: LLMClient | None = None
        self._stack: AsyncExitStack | None = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def client(self) -> LLMClient:
        if self._client is None or not self.is_connected:
            raise SessionStateError("model session is not connected")
        return self._client

    async def connect(self) -> LLMClient:
        """Create the client. Returns the existing one when already connected.

        Raises:
            SessionStateError: If a connect is already under way or the
                client factory fails. The status is ERROR in the latter case.
        """

        if self._status is ConnectionStatus.CONNECTED and self._client is not None:
            return self._client
        if self._status is ConnectionStatus.CONNECTING:
            raise SessionStateError("model session is already connecting")

        self._set_status(ConnectionStatus.CONNECTING)
        stack = AsyncExitStack()
        try:
            client = self._client_factory()
            if inspect.isawaitable(client):
                client = await client
            if not isinstance(client, LLMClient):
                raise TypeError("client factory did not return an LLMClient")
            stack.push_async_callback(client.aclose)
        except Exception as exc:
            await stack.aclose()
            self._set_status(ConnectionStatus.ERROR)
            logger.error("session.connect_failed", exc_info=True)
            raise SessionStateError("could not connect to the model service") from exc
        except asyncio.CancelledError:
            await stack.aclose()
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise

        self._stack = stack
        self._client = client
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("session.connected", client=type(client).__name__)
        return client

    def add_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Run ``callback`` when the session is torn down."""

        if self._stack is None:
            raise SessionStateError("model session is not connected")
        self._stack.push_async_callback(callback)

    def start(self, coroutine: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Run ``coroutine`` as a task that disconnect will cancel."""

        if not self.is_connected:
            coroutine.close()
            raise SessionStateError("model session is not connected")
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def disconnect(self) -> None:
        """Cancel in-flight work and release the client. Safe to call repeatedly."""

        if self._status is ConnectionStatus.DISCONNECTED and self._stack is None:
            return

        stack, self._stack = self._stack, None
        self._client = None
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        try:
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if stack is not None:
                await stack.aclose()
        finally:
            self._set_status(ConnectionStatus.DISCONNECTED)
            logger.info("session.disconnected", cancelled_tasks=len(pending))

    async def __aenter__(self) -> "ModelSessionHandle":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._on_status_change is not None:
            self._on_status_change(status)


__all__ = [
    "ClientFactory",
    "ConnectionStatus",
    "ModelSessionHandle",
    "SessionStateError",
]
