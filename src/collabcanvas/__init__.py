"""Core package for the collaborative canvas."""

from .broadcast import (
    BroadcastMessage,
    BroadcastSynchronizer,
    InMemoryBroadcastHub,
    decode_command,
    encode_command,
)
from .llm import (
    ImagePart,
    LLMClient,
    LLMClientError,
    ModelTurn,
    TextPart,
    ToolAcknowledgment,
    ToolCall,
)
from .llm_provider_registry import LLMProviderRegistry, parse_cli_options
from .logging_config import configure_logging
from .rendering import PillowSnapshotProvider, render_svg
from .room import CanvasRoom, describe_elements, model_factory_from_settings
from .scene import (
    AddElement,
    ClearAll,
    RemoveElement,
    ReplaceAll,
    SceneDraft,
    SceneElement,
    SceneStore,
    ShapeKind,
    UpdateElement,
    apply_command,
)
from .session import ConnectionStatus, ModelSessionHandle, SessionStateError
from .settings import CanvasSettings
from .tools import CANVAS_TOOLS, SYSTEM_INSTRUCTION, map_tool_call
from .transcript import ChatMessage, Transcript, TranscriptLogger
from .verification import (
    LoopBusyError,
    LoopOutcome,
    LoopPhase,
    LoopStatus,
    VerificationLoop,
)

__all__ = [
    "SceneElement",
    "ShapeKind",
    "AddElement",
    "UpdateElement",
    "RemoveElement",
    "ReplaceAll",
    "ClearAll",
    "apply_command",
    "SceneStore",
    "SceneDraft",
    "map_tool_call",
    "CANVAS_TOOLS",
    "SYSTEM_INSTRUCTION",
    "BroadcastMessage",
    "BroadcastSynchronizer",
    "InMemoryBroadcastHub",
    "encode_command",
    "decode_command",
    "LLMClient",
    "LLMClientError",
    "ModelTurn",
    "ToolCall",
    "ToolAcknowledgment",
    "TextPart",
    "ImagePart",
    "LLMProviderRegistry",
    "parse_cli_options",
    "PillowSnapshotProvider",
    "render_svg",
    "VerificationLoop",
    "LoopBusyError",
    "LoopOutcome",
    "LoopPhase",
    "LoopStatus",
    "ConnectionStatus",
    "ModelSessionHandle",
    "SessionStateError",
    "CanvasRoom",
    "describe_elements",
    "model_factory_from_settings",
    "CanvasSettings",
    "ChatMessage",
    "Transcript",
    "TranscriptLogger",
    "configure_logging",
]
