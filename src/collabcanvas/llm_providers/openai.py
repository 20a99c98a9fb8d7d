"""Adapter that exposes OpenAI's chat completion API via :class:`LLMClient`."""

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


def _extract_attr(container: Any, name: str, default: Any | None = None) -> Any:
    if isinstance(container, Mapping):
        return container.get(name, default)
    return getattr(container, name, default)


def _normalise_message_content(payload: Any) -> str | None:
    if payload is None or isinstance(payload, str):
        return payload
    if isinstance(payload, Sequence):
        text_parts: list[str] = []
        for item in payload:
            if isinstance(item, Mapping) and item.get("type") == "text":
                text_parts.append(str(item.get("text", "")))
        return "".join(text_parts) or None
    raise LLMClientError("OpenAI response carried unsupported message content")


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("openai.invalid_tool_arguments", raw=raw[:200])
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _tool_message(call_id: str, result: str) -> Dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": call_id,
        "content": json.dumps({"result": result}),
    }


def tool_schema(tool: LLMToolDescription) -> Dict[str, Any]:
    """Return the ``tools`` entry OpenAI expects for ``tool``."""

    function: Dict[str, Any] = {"name": tool.name, "parameters": tool.schema_dict()}
    if tool.description:
        function["description"] = tool.description
    return {"type": "function", "function": function}


class OpenAIChatClient(LLMClient):
    """Concrete :class:`LLMClient` powered by the async OpenAI Python SDK.

    The conversation lives in ``self._history``. A request only becomes part
    of the history once the API call succeeds, so a failed round trip can be
    retried without leaving a dangling user turn behind.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        organization: str | None = None,
        client: Any | None = None,
        tools: Sequence[LLMToolDescription] = (),
        system_instruction: str | None = None,
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

        if client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as exc:  # pragma: no cover - depends on installed extras
                raise ImportError(
                    "OpenAIChatClient requires the 'openai' package. Install it with 'pip install openai'."
                ) from exc

            init_kwargs: dict[str, Any] = dict(client_options)
            if api_key is not None:
                init_kwargs["api_key"] = api_key
            if organization is not None:
                init_kwargs["organization"] = organization
            client = AsyncOpenAI(**init_kwargs)
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

    def _build_messages(self, parts: Sequence[ModelPart]) -> List[Dict[str, Any]]:
        acknowledged = {
            part.call_id for part in parts if isinstance(part, ToolAcknowledgment)
        }
        messages: List[Dict[str, Any]] = [
            _tool_message(call_id, SKIPPED_RESULT)
            for call_id in self._pending_calls
            if call_id not in acknowledged
        ]
        content: List[Dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolAcknowledgment):
                messages.append(_tool_message(part.call_id, part.result))
            elif isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append(
                    {"type": "image_url", "image_url": {"url": part.as_data_url()}}
                )
            else:
                raise TypeError(f"unsupported model part {part!r}")
        if content:
            messages.append({"role": "user", "content": content})
        return messages

    async def send(self, parts: Sequence[ModelPart]) -> ModelTurn:
        new_messages = self._build_messages(parts)
        if not new_messages:
            raise ValueError("parts must contain at least one message part")

        payload: List[Dict[str, Any]] = []
        if self._system_instruction is not None:
            payload.append({"role": "system", "content": self._system_instruction})
        payload.extend(self._history)
        payload.extend(new_messages)

        request_kwargs = dict(self._default_options)
        if self._tools:
            request_kwargs["tools"] = [tool_schema(tool) for tool in self._tools]

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=payload,
                **request_kwargs,
            )
        except Exception as exc:
            raise LLMClientError("OpenAI completion failed") from exc

        choices = _extract_attr(response, "choices")
        if not choices:
            raise LLMClientError("OpenAI completion returned no choices")
        message_payload = _extract_attr(choices[0], "message")
        if message_payload is None:
            raise LLMClientError("OpenAI completion missing message payload")

        text = _normalise_message_content(_extract_attr(message_payload, "content"))
        tool_calls: List[ToolCall] = []
        raw_calls: List[Dict[str, Any]] = []
        for raw_call in _extract_attr(message_payload, "tool_calls") or ():
            function = _extract_attr(raw_call, "function")
            call_id = _extract_attr(raw_call, "id")
            name = _extract_attr(function, "name")
            raw_arguments = _extract_attr(function, "arguments", "")
            tool_calls.append(
                ToolCall(
                    call_id=call_id,
                    name=name,
                    arguments=_decode_arguments(raw_arguments),
                )
            )
            raw_calls.append(
                {
                    "id": call_id,
                    "type": "function",
                    "function": {
                        "name": name,
                        "arguments": (
                            raw_arguments
                            if isinstance(raw_arguments, str)
                            else json.dumps(raw_arguments)
                        ),
                    },
                }
            )

        assistant: Dict[str, Any] = {"role": "assistant", "content": text}
        if raw_calls:
            assistant["tool_calls"] = raw_calls
        self._history.extend(new_messages)
        self._history.append(assistant)
        self._pending_calls = [call.call_id for call in tool_calls]

        metadata: dict[str, str] = {}
        response_id = _extract_attr(response, "id")
        model_name = _extract_attr(response, "model")
        if isinstance(response_id, str) and response_id:
            metadata["id"] = response_id
        if isinstance(model_name, str) and model_name:
            metadata["model"] = model_name

        return ModelTurn(tool_calls=tool_calls, text=text, metadata=metadata)


__all__ = ["OpenAIChatClient", "tool_schema"]
