"""
Request builders and response parsers for each wire format.

Three formats cover all supported backends:
- openai: /chat/completions, used by OpenAI and any compatible server
- anthropic: /messages, system prompt lifted into a top-level field
- ollama: /api/chat, sampling parameters nested under "options"
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from mnemosyne.errors import MalformedResponseError, ToolError
from mnemosyne.llm.backends import BackendProfile, ResolvedParameters
from mnemosyne.llm.types import ChatResponse, FunctionCall, Message, TokenUsage, ToolSchema

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


@dataclass
class StreamEvent:
    """One parsed line of a streaming response."""

    content: str = ""
    done: bool = False
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


# =============================================================================
# Headers
# =============================================================================

def build_headers(profile: BackendProfile, api_key: Optional[str]) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if profile.wire_format == "anthropic":
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if api_key:
            headers["x-api-key"] = api_key
    elif api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


# =============================================================================
# Requests
# =============================================================================

def tool_schemas(profile: BackendProfile, tools: list[ToolSchema]) -> list[dict[str, Any]]:
    """Render tool definitions in the backend's schema format."""
    if profile.wire_format == "anthropic":
        return [
            {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
            for tool in tools
        ]
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def _openai_message(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id or "",
            "content": message.content,
        }
    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.role == "assistant" and message.tool_calls:
        data["content"] = message.content or None
        data["tool_calls"] = [
            {
                "id": call.id or f"call_{i}",
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for i, call in enumerate(message.tool_calls)
        ]
    return data


def _anthropic_message(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id or "",
                    "content": message.content,
                }
            ],
        }
    if message.role == "assistant" and message.tool_calls:
        blocks: list[dict[str, Any]] = []
        if message.content:
            blocks.append({"type": "text", "text": message.content})
        for i, call in enumerate(message.tool_calls):
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.id or f"toolu_{i}",
                    "name": call.name,
                    "input": call.arguments,
                }
            )
        return {"role": "assistant", "content": blocks}
    return {"role": message.role, "content": message.content}


def _ollama_message(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.role == "assistant" and message.tool_calls:
        data["tool_calls"] = [
            {"function": {"name": call.name, "arguments": call.arguments}}
            for call in message.tool_calls
        ]
    return data


def build_chat_request(
    profile: BackendProfile,
    model: str,
    messages: list[Message],
    params: ResolvedParameters,
    tools: Optional[list[ToolSchema]] = None,
    stream: bool = False,
) -> tuple[str, dict[str, Any]]:
    """
    Build the request path and JSON body for a chat call.

    Args:
        profile: Backend profile selecting the wire format
        model: Model name
        messages: Conversation in backend-neutral form
        params: Resolved sampling parameters
        tools: Tools to advertise, if any
        stream: Whether to request a streaming response

    Returns:
        Tuple of (path relative to base URL, JSON payload)
    """
    if profile.wire_format == "anthropic":
        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        payload: dict[str, Any] = {
            "model": model,
            "messages": [_anthropic_message(m) for m in messages if m.role != "system"],
            "temperature": params.temperature,
            params.token_parameter: params.max_tokens,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if tools:
            payload["tools"] = tool_schemas(profile, tools)
            payload["tool_choice"] = {"type": "auto"}
        return "/messages", payload

    if profile.wire_format == "ollama":
        payload = {
            "model": model,
            "messages": [_ollama_message(m) for m in messages],
            "stream": stream,
            "options": {
                "temperature": params.temperature,
                params.token_parameter: params.max_tokens,
            },
        }
        if tools:
            payload["tools"] = tool_schemas(profile, tools)
        return "/api/chat", payload

    payload = {
        "model": model,
        "messages": [_openai_message(m) for m in messages],
        "temperature": params.temperature,
        params.token_parameter: params.max_tokens,
        "stream": stream,
    }
    if tools:
        payload["tools"] = tool_schemas(profile, tools)
        payload["tool_choice"] = "auto"
    return "/chat/completions", payload


# =============================================================================
# Tool argument parsing
# =============================================================================

def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """
    Parse a tool-call argument string into a dict.

    Malformed JSON is repaired once (trailing commas and control characters
    removed) before giving up.

    Raises:
        ToolError: If the arguments cannot be parsed into an object
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}

    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        repaired = _CONTROL_CHARS.sub("", _TRAILING_COMMA.sub(r"\1", str(raw)))
        try:
            parsed = json.loads(repaired)
        except json.JSONDecodeError as e:
            raise ToolError(f"Could not parse tool arguments: {e.msg}", raw=str(raw)[:200]) from e
        logger.debug("Tool arguments parsed after repair")

    if not isinstance(parsed, dict):
        raise ToolError("Tool arguments must be a JSON object", raw=str(raw)[:200])
    return parsed


# =============================================================================
# Responses
# =============================================================================

def parse_chat_response(
    profile: BackendProfile,
    data: dict[str, Any],
    backend: str,
    model: str,
) -> ChatResponse:
    """
    Convert a backend response body into a ChatResponse.

    Raises:
        MalformedResponseError: If the body has neither content nor a tool call
        ToolError: If a tool call's arguments cannot be parsed (carries the
            response's token usage)
    """
    try:
        usage = _parse_usage(profile.wire_format, data)
        if profile.wire_format == "anthropic":
            response = _parse_anthropic(data, model, usage)
        elif profile.wire_format == "ollama":
            response = _parse_ollama(data, model, usage)
        else:
            response = _parse_openai(data, model, usage)
    except ToolError as e:
        # The call was still billed
        e.usage = usage
        raise
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise MalformedResponseError(
            f"Unexpected response structure: {e}", backend=backend, model=model
        ) from e

    if not response.content and response.function_call is None:
        raise MalformedResponseError(
            "Response contained neither content nor a tool call",
            backend=backend,
            model=model,
        )
    return response


def _parse_usage(wire_format: str, data: dict[str, Any]) -> TokenUsage:
    if wire_format == "ollama":
        return TokenUsage(
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
        )
    usage = data.get("usage") or {}
    if wire_format == "anthropic":
        return TokenUsage(
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
        )
    return TokenUsage(
        prompt_tokens=usage.get("prompt_tokens", 0),
        completion_tokens=usage.get("completion_tokens", 0),
    )


def _parse_openai(data: dict[str, Any], model: str, usage: TokenUsage) -> ChatResponse:
    choice = data["choices"][0]
    message = choice["message"]
    function_call = None
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        call = tool_calls[0]
        function_call = FunctionCall(
            name=call["function"]["name"],
            arguments=parse_tool_arguments(call["function"].get("arguments")),
            id=call.get("id"),
        )
    return ChatResponse(
        content=message.get("content") or "",
        model=data.get("model", model),
        finish_reason=choice.get("finish_reason"),
        usage=usage,
        function_call=function_call,
    )


def _parse_anthropic(data: dict[str, Any], model: str, usage: TokenUsage) -> ChatResponse:
    texts = []
    function_call = None
    for block in data["content"]:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use" and function_call is None:
            function_call = FunctionCall(
                name=block["name"],
                arguments=parse_tool_arguments(block.get("input")),
                id=block.get("id"),
            )
    return ChatResponse(
        content="".join(texts),
        model=data.get("model", model),
        finish_reason=data.get("stop_reason"),
        usage=usage,
        function_call=function_call,
    )


def _parse_ollama(data: dict[str, Any], model: str, usage: TokenUsage) -> ChatResponse:
    message = data["message"]
    function_call = None
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        call = tool_calls[0]["function"]
        function_call = FunctionCall(
            name=call["name"],
            arguments=parse_tool_arguments(call.get("arguments")),
        )
    return ChatResponse(
        content=message.get("content") or "",
        model=data.get("model", model),
        finish_reason=data.get("done_reason"),
        usage=usage,
        function_call=function_call,
    )


def extract_error_message(data: Any) -> Optional[str]:
    """Pull a human-readable message out of an error body."""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return data.get("message")


# =============================================================================
# Streaming
# =============================================================================

def parse_stream_line(profile: BackendProfile, line: str) -> Optional[StreamEvent]:
    """
    Parse one line of a streaming body.

    OpenAI and Anthropic stream server-sent events ("data: {...}");
    Ollama streams one JSON object per line.

    Returns:
        A StreamEvent, or None for blank/keep-alive/event-name lines
    """
    line = line.strip()
    if not line:
        return None

    if profile.wire_format == "ollama":
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable stream line: {line[:80]}")
            return None
        event = StreamEvent(
            content=(data.get("message") or {}).get("content", ""),
            done=bool(data.get("done")),
            finish_reason=data.get("done_reason"),
        )
        if event.done:
            event.usage = TokenUsage(
                prompt_tokens=data.get("prompt_eval_count", 0),
                completion_tokens=data.get("eval_count", 0),
            )
        return event

    if not line.startswith("data:"):
        return None
    body = line[len("data:"):].strip()
    if body == "[DONE]":
        return StreamEvent(done=True)
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        logger.debug(f"Skipping unparseable stream line: {body[:80]}")
        return None

    if profile.wire_format == "anthropic":
        kind = data.get("type")
        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return StreamEvent(content=delta.get("text", ""))
            return None
        if kind == "message_delta":
            usage = data.get("usage") or {}
            return StreamEvent(
                finish_reason=(data.get("delta") or {}).get("stop_reason"),
                usage=TokenUsage(completion_tokens=usage.get("output_tokens", 0)),
            )
        if kind == "message_stop":
            return StreamEvent(done=True)
        return None

    choices = data.get("choices") or []
    event = StreamEvent()
    if choices:
        event.content = (choices[0].get("delta") or {}).get("content") or ""
        event.finish_reason = choices[0].get("finish_reason")
    usage = data.get("usage")
    if usage:
        event.usage = TokenUsage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )
    return event
