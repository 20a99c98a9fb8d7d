"""Adapter mapping Anthropic's Messages API onto :class:`LLMClient`."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, MutableMapping, Sequence

import structlog

from ..llm import (
    ImagePart,
    LLMClient,
    LLMClientError,
    LLMToolDescription,
    ModelPart,
    ModelTurn,
    TextPart,
    ToolAcknowledgment,
    ToolCall,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 1024
SKIPPED_RESULT = "skipped"


def _require_str(value: str, *, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")
    return stripped


def _coerce_mapping(
    value: Mapping[str, Any] | MutableMapping[str, Any] | None,
) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError("default options must be a mapping of keyword arguments")
    return dict(value)


def _block_attr(block: Any, name: str, default: Any | None = None) -> Any:
    if isinstance(block, Mapping):
        return block.get(name, default)
    return getattr(block, name, default)


def _tool_result_block(call_id: str, result: str) -> Dict[str, Any]:
    return {
        "type": "tool_result",
        "tool_use_id": call_id,
        "content": json.dumps({"result": result}),
    }


class AnthropicMessagesClient(LLMClient):
    """Concrete :class:`LLMClient` built on top of the official async Anthropic SDK."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        client: Any | None = None,
        tools: Sequence[LLMToolDescription] = (),
        system_instruction: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        default_options: Mapping[str, Any] | MutableMapping[str, Any] | None = None,
        **client_options: Any,
    ) -> None:
        self._model = _require_str(model, field_name="model")
        self._default_options = _coerce_mapping(default_options)
        self._tools = tuple(tools)
        self._system_instruction = (
            _require_str(system_instruction, field_name="system_instruction")
            if system_instruction is not None
            else None
        )
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError("max_tokens must be a positive integer")
        self._max_tokens = max_tokens

        if client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as exc:  # pragma: no cover - depends on installed extras
                raise ImportError(
                    "AnthropicMessagesClient requires the 'anthropic' package. Install it with 'pip install anthropic'."
                ) from exc

            init_kwargs: dict[str, Any] = dict(client_options)
            if api_key is not None:
                init_kwargs["api_key"] = api_key
            client = AsyncAnthropic(**init_kwargs)
            self._owns_client = True
        else:
            if client_options:
                raise TypeError(
                    "client_options cannot be provided when supplying a client instance"
                )
            self._owns_client = False
        self._client = client
        self._history: List[Dict[str, Any]] = []
        self._pending_calls: List[str] = []

    @property
    def history(self) -> Sequence[Mapping[str, Any]]:
        return tuple(self._history)

    def reset(self) -> None:
        self._history.clear()
        self._pending_calls.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    def _build_content(self, parts: Sequence[ModelPart]) -> List[Dict[str, Any]]:
        # tool_result blocks must lead the user turn that follows a tool_use.
        acknowledged = {
            part.call_id for part in parts if isinstance(part, ToolAcknowledgment)
        }
        results: List[Dict[str, Any]] = [
            _tool_result_block(call_id, SKIPPED_RESULT)
            for call_id in self._pending_calls
            if call_id not in acknowledged
        ]
        blocks: List[Dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolAcknowledgment):
                results.append(_tool_result_block(part.call_id, part.result))
            elif isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": part.mime_type,
                            "data": part.as_base64(),
                        },
                    }
                )
            else:
                raise TypeError(f"unsupported model part {part!r}")
        return results + blocks

    async def send(self, parts: Sequence[ModelPart]) -> ModelTurn:
        content = self._build_content(parts)
        if not content:
            raise ValueError("parts must contain at least one message part")
        user_turn = {"role": "user", "content": content}

        request_kwargs = dict(self._default_options)
        request_kwargs.setdefault("max_tokens", self._max_tokens)
        if self._system_instruction is not None:
            request_kwargs["system"] = self._system_instruction
        if self._tools:
            request_kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description or tool.name,
                    "input_schema": tool.schema_dict(),
                }
                for tool in self._tools
            ]

        try:
            response = await self._client.messages.create(
                model=self._model,
                messages=[*self._history, user_turn],
                **request_kwargs,
            )
        except Exception as exc:
            raise LLMClientError("Anthropic completion failed") from exc

        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        assistant_blocks: List[Dict[str, Any]] = []
        for block in _block_attr(response, "content", None) or ():
            block_type = _block_attr(block, "type")
            if block_type == "text":
                text = str(_block_attr(block, "text", ""))
                text_parts.append(text)
                if text:
                    assistant_blocks.append({"type": "text", "text": text})
            elif block_type == "tool_use":
                call_id = _block_attr(block, "id")
                name = _block_attr(block, "name")
                arguments = _block_attr(block, "input", None) or {}
                tool_calls.append(ToolCall(call_id=call_id, name=name, arguments=arguments))
                assistant_blocks.append(
                    {"type": "tool_use", "id": call_id, "name": name, "input": dict(arguments)}
                )

        if assistant_blocks:
            self._history.append(user_turn)
            self._history.append({"role": "assistant", "content": assistant_blocks})
            self._pending_calls = [call.call_id for call in tool_calls]
        else:
            # The API rejects assistant turns without content, so the exchange
            # is dropped and any pending calls are skipped on the next send.
            logger.warning("anthropic.empty_response", model=self._model)

        metadata: dict[str, str] = {}
        response_id = _block_attr(response, "id")
        if isinstance(response_id, str) and response_id:
            metadata["id"] = response_id
        stop_reason = _block_attr(response, "stop_reason")
        if isinstance(stop_reason, str) and stop_reason:
            metadata["stop_reason"] = stop_reason

        return ModelTurn(
            tool_calls=tool_calls,
            text="".join(text_parts) or None,
            metadata=metadata,
        )


__all__ = ["AnthropicMessagesClient", "DEFAULT_MAX_TOKENS"]
