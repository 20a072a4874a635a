"""Unit tests for llm.provider module (HTTP mocked with pytest-httpx)."""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from mnemosyne.errors import (
    ConfigurationError,
    CredentialError,
    InvalidCredentialsError,
    MalformedResponseError,
    ModelNotFoundError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
)
from mnemosyne.llm.provider import LLMProvider, ProviderConfig
from mnemosyne.llm.types import ChatOptions, Message, ToolSchema

OLLAMA_URL = "http://localhost:11434/api/chat"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"

HELLO = [Message(role="user", content="Hello")]


def ollama_reply(content: str) -> dict:
    return {
        "model": "llama3.1",
        "message": {"role": "assistant", "content": content},
        "done": True,
        "done_reason": "stop",
        "prompt_eval_count": 5,
        "eval_count": 2,
    }


def openai_reply(content: str) -> dict:
    return {
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 9, "completion_tokens": 1},
    }


class DroppingStream(httpx.AsyncByteStream):
    """Streams one line, then loses the connection."""

    async def __aiter__(self):
        yield b'{"message": {"content": "Hel"}, "done": false}\n'
        raise httpx.ReadError("connection reset by peer")


@pytest.fixture
def ollama_provider(ollama_config):
    return LLMProvider(ollama_config, timeout=5.0)


@pytest.fixture
def openai_provider(openai_config, key_manager):
    return LLMProvider(openai_config, key_manager, timeout=5.0)


@pytest.mark.unit
class TestProviderConfiguration:
    """Tests for LLMProvider construction."""

    def test_default_endpoint(self, ollama_provider):
        """Backends without base_url use the backend default."""
        assert ollama_provider.base_url == "http://localhost:11434"
        assert ollama_provider.get_info()["has_api_key"] is False

    def test_custom_backend_requires_base_url(self):
        """OpenAI-compatible custom backends have no default endpoint."""
        config = ProviderConfig(id="vllm", name="vLLM", backend="custom", model="qwen")

        with pytest.raises(ConfigurationError):
            LLMProvider(config)

    def test_hosted_backend_requires_key(self):
        """OpenAI without an API key is a configuration error."""
        config = ProviderConfig(id="oa", name="OpenAI", backend="openai", model="gpt-4o-mini")

        with pytest.raises(ConfigurationError):
            LLMProvider(config)

    def test_config_defaults_override_settings(self, ollama_config):
        """Provider-level temperature and max_tokens become defaults."""
        config = ollama_config.model_copy(update={"temperature": 0.2, "max_tokens": 64})

        provider = LLMProvider(config)

        assert provider.default_temperature == 0.2
        assert provider.default_max_tokens == 64

    def test_locked_session_blocks_requests(self, openai_config, locked_key_manager):
        """Without the master password the key cannot be decrypted."""
        provider = LLMProvider(openai_config, locked_key_manager)

        with pytest.raises(CredentialError):
            provider.ensure_decryptable()


@pytest.mark.unit
class TestProviderChat:
    """Tests for LLMProvider.chat and chat_with_functions."""

    @pytest.mark.asyncio
    async def test_ollama_chat(self, ollama_provider, httpx_mock: HTTPXMock):
        """A plain chat returns content and usage."""
        httpx_mock.add_response(url=OLLAMA_URL, json=ollama_reply("Hi there"))

        response = await ollama_provider.chat(HELLO, ChatOptions(temperature=0.1))

        assert response.content == "Hi there"
        assert response.usage.total_tokens == 7
        body = json.loads(httpx_mock.get_request().content)
        assert body["options"]["temperature"] == 0.1
        assert body["messages"] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_openai_sends_decrypted_key(self, openai_provider, httpx_mock: HTTPXMock):
        """The API key is decrypted per request and sent as a bearer token."""
        httpx_mock.add_response(url=OPENAI_URL, json=openai_reply("Hello!"))

        response = await openai_provider.chat(HELLO)

        assert response.content == "Hello!"
        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer sk-test-0123456789abcdefghij"

    @pytest.mark.asyncio
    async def test_anthropic_headers(self, anthropic_config, key_manager, httpx_mock: HTTPXMock):
        """Anthropic requests use x-api-key and the version header."""
        httpx_mock.add_response(
            url=ANTHROPIC_URL,
            json={"content": [{"type": "text", "text": "Hi"}], "stop_reason": "end_turn", "usage": {}},
        )

        await LLMProvider(anthropic_config, key_manager).chat(HELLO)

        request = httpx_mock.get_request()
        assert request.headers["x-api-key"] == "sk-ant-REDACTED"
        assert request.headers["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_reasoning_model_parameters(self, openai_config, key_manager, httpx_mock: HTTPXMock):
        """Reasoning models get max_completion_tokens and temperature 1."""
        provider = LLMProvider(openai_config.model_copy(update={"model": "o3-mini"}), key_manager)
        httpx_mock.add_response(url=OPENAI_URL, json=openai_reply("Done"))

        await provider.chat(HELLO, ChatOptions(temperature=0.3, max_tokens=100))

        body = json.loads(httpx_mock.get_request().content)
        assert body["temperature"] == 1.0
        assert body["max_completion_tokens"] == 100
        assert "max_tokens" not in body

    @pytest.mark.asyncio
    async def test_chat_with_functions(self, openai_provider, httpx_mock: HTTPXMock):
        """Tool calls are parsed into function_call."""
        httpx_mock.add_response(
            url=OPENAI_URL,
            json={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {"id": "c1", "function": {"name": "search_notes", "arguments": '{"query": "keys"}'}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            },
        )
        tools = [ToolSchema(name="search_notes", description="Search")]

        response = await openai_provider.chat_with_functions(HELLO, tools)

        assert response.function_call.name == "search_notes"
        assert response.function_call.arguments == {"query": "keys"}
        body = json.loads(httpx_mock.get_request().content)
        assert body["tools"][0]["function"]["name"] == "search_notes"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [
            (401, InvalidCredentialsError),
            (403, InvalidCredentialsError),
            (429, RateLimitError),
            (404, ModelNotFoundError),
            (500, ProviderConnectionError),
            (503, ProviderConnectionError),
            (400, ProviderError),
        ],
    )
    async def test_status_mapping(self, ollama_provider, httpx_mock: HTTPXMock, status, error):
        """HTTP failures map to typed provider errors."""
        httpx_mock.add_response(url=OLLAMA_URL, status_code=status, json={"error": "nope"})

        with pytest.raises(error) as exc_info:
            await ollama_provider.chat(HELLO)

        assert exc_info.value.context["status_code"] == status
        assert exc_info.value.context["backend"] == "ollama"
        assert "nope" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, ollama_provider, httpx_mock: HTTPXMock):
        """The Retry-After header is kept on the error."""
        httpx_mock.add_response(url=OLLAMA_URL, status_code=429, headers={"Retry-After": "7"})

        with pytest.raises(RateLimitError) as exc_info:
            await ollama_provider.chat(HELLO)

        assert exc_info.value.context["retry_after"] == "7"

    @pytest.mark.asyncio
    async def test_connection_failure(self, ollama_provider, httpx_mock: HTTPXMock):
        """Transport errors become ProviderConnectionError."""
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderConnectionError):
            await ollama_provider.chat(HELLO)

    @pytest.mark.asyncio
    async def test_non_json_body(self, ollama_provider, httpx_mock: HTTPXMock):
        """A non-JSON success body is malformed."""
        httpx_mock.add_response(url=OLLAMA_URL, text="<html>proxy</html>")

        with pytest.raises(MalformedResponseError):
            await ollama_provider.chat(HELLO)


@pytest.mark.unit
class TestProviderStream:
    """Tests for LLMProvider.stream."""

    @pytest.mark.asyncio
    async def test_stream_delivers_tokens(self, ollama_provider, httpx_mock: HTTPXMock):
        """Tokens arrive in order, followed by one terminal chunk."""
        lines = [
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True, "done_reason": "stop", "prompt_eval_count": 3, "eval_count": 2},
        ]
        httpx_mock.add_response(url=OLLAMA_URL, content="\n".join(json.dumps(line) for line in lines).encode())
        received = []

        response = await ollama_provider.stream(HELLO, received.append)

        assert [c.content for c in received] == ["Hel", "lo", ""]
        assert received[-1].done and not received[-1].interrupted
        assert response.content == "Hello"
        assert response.finish_reason == "stop"
        assert response.usage.total_tokens == 5

    @pytest.mark.asyncio
    async def test_stream_interrupted(self, ollama_provider):
        """A dropped connection delivers the partial text, then raises."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, stream=DroppingStream()))
        ollama_provider._client = lambda: httpx.AsyncClient(base_url=ollama_provider.base_url, transport=transport)
        received = []

        with pytest.raises(ProviderConnectionError) as exc_info:
            await ollama_provider.stream(HELLO, received.append)

        assert [c.content for c in received] == ["Hel", "Hel"]
        assert received[-1].done and received[-1].interrupted
        assert exc_info.value.context["partial_content"] == "Hel"

    @pytest.mark.asyncio
    async def test_stream_http_error(self, ollama_provider, httpx_mock: HTTPXMock):
        """HTTP errors raise before any token is delivered."""
        httpx_mock.add_response(url=OLLAMA_URL, status_code=404, json={"error": "model 'x' not found"})
        received = []

        with pytest.raises(ModelNotFoundError):
            await ollama_provider.stream(HELLO, received.append)

        assert received == []


@pytest.mark.unit
class TestProviderTest:
    """Tests for LLMProvider.test."""

    @pytest.mark.asyncio
    async def test_ok_reply(self, ollama_provider, httpx_mock: HTTPXMock):
        """An "OK" reply passes; the request uses the rule's token budget."""
        httpx_mock.add_response(url=OLLAMA_URL, json=ollama_reply("OK."))

        assert await ollama_provider.test() is True
        body = json.loads(httpx_mock.get_request().content)
        assert body["options"]["num_predict"] == 10

    @pytest.mark.asyncio
    async def test_unexpected_reply(self, ollama_provider, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=OLLAMA_URL, json=ollama_reply("Hello, how can I help?"))

        assert await ollama_provider.test() is False

    @pytest.mark.asyncio
    async def test_failure_returns_false(self, ollama_provider, httpx_mock: HTTPXMock):
        """Provider errors are reported as a failed test, not raised."""
        httpx_mock.add_response(url=OLLAMA_URL, status_code=401)

        assert await ollama_provider.test() is False
