"""
Uniform chat client over heterogeneous model backends.

A provider is bound to one ProviderConfig. Its API key stays encrypted in
the config and is decrypted through the KeyManager for each request, so
locking the session immediately disables every provider.
"""

import logging
from typing import Any, Callable, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from mnemosyne.errors import (
    ConfigurationError,
    CredentialError,
    InvalidCredentialsError,
    MalformedResponseError,
    MnemosyneError,
    ModelNotFoundError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
)
from mnemosyne.llm.backends import BackendProfile, get_backend, resolve_parameters
from mnemosyne.llm.payloads import (
    build_chat_request,
    build_headers,
    extract_error_message,
    parse_chat_response,
    parse_stream_line,
)
from mnemosyne.llm.types import (
    ChatOptions,
    ChatResponse,
    Message,
    StreamChunk,
    TokenUsage,
    ToolSchema,
)
from mnemosyne.security.key_manager import EncryptedPayload, KeyManager

logger = logging.getLogger(__name__)

TEST_PROMPT = 'Respond with just "OK"'

StreamCallback = Callable[[StreamChunk], None]


class ProviderConfig(BaseModel):
    """Persisted configuration of one model provider."""

    id: str = Field(..., min_length=1, description="Stable provider identifier")
    name: str = Field(..., min_length=1, description="Display name")
    backend: Literal["openai", "anthropic", "ollama", "custom"] = Field(
        ..., description="Backend kind selecting wire format and parameter rules"
    )
    model: str = Field(..., min_length=1, description="Model name sent to the backend")
    base_url: Optional[str] = Field(default=None, description="Endpoint override")
    encrypted_api_key: Optional[EncryptedPayload] = Field(
        default=None, description="API key encrypted under the master password"
    )
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    enabled: bool = Field(default=True)


class LLMProvider:
    """
    Chat client for one configured provider.

    Usage:
        provider = LLMProvider(config, key_manager)
        response = await provider.chat([Message("user", "Hello")])
    """

    def __init__(
        self,
        config: ProviderConfig,
        key_manager: Optional[KeyManager] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            config: Provider configuration
            key_manager: Key manager used to decrypt the API key per request
            timeout: Request timeout in seconds (default from settings)

        Raises:
            ConfigurationError: If the backend is unknown, the endpoint is
                missing, or a required API key is absent
        """
        from mnemosyne.config import settings

        self.config = config
        self.profile: BackendProfile = get_backend(config.backend)
        self.key_manager = key_manager
        self.timeout = timeout or settings.llm_timeout
        self.default_temperature = (
            config.temperature if config.temperature is not None else settings.llm_temperature
        )
        self.default_max_tokens = config.max_tokens or settings.llm_max_tokens

        base_url = config.base_url or self.profile.default_base_url
        if not base_url:
            raise ConfigurationError(
                f"Provider '{config.id}' needs a base_url for backend '{config.backend}'",
                provider_id=config.id,
            )
        self.base_url = base_url.rstrip("/")

        if self.profile.requires_api_key and config.encrypted_api_key is None:
            raise ConfigurationError(
                f"Provider '{config.id}' requires an API key",
                provider_id=config.id,
                backend=config.backend,
            )

    @property
    def backend(self) -> str:
        return self.config.backend

    @property
    def model(self) -> str:
        return self.config.model

    def get_info(self) -> dict[str, Any]:
        return {
            "id": self.config.id,
            "name": self.config.name,
            "backend": self.backend,
            "model": self.model,
            "base_url": self.base_url,
            "has_api_key": self.config.encrypted_api_key is not None,
        }

    # ==========================================================================
    # Credentials
    # ==========================================================================
    def _api_key(self) -> Optional[str]:
        payload = self.config.encrypted_api_key
        if payload is None:
            return None
        if self.key_manager is None:
            raise CredentialError(
                f"Provider '{self.config.id}' has an encrypted key but no key manager",
                provider_id=self.config.id,
            )
        return self.key_manager.decrypt(payload)

    def ensure_decryptable(self) -> None:
        """
        Check that the API key can be decrypted in the current session.

        Raises:
            CredentialError: If the session is locked or decryption fails
        """
        self._api_key()

    # ==========================================================================
    # HTTP
    # ==========================================================================
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        try:
            detail = extract_error_message(response.json())
        except ValueError:
            detail = None
        detail = detail or response.text[:200] or response.reason_phrase
        common = {"backend": self.backend, "model": self.model, "status_code": status}

        if status in (401, 403):
            raise InvalidCredentialsError(f"Authentication failed: {detail}", **common)
        if status == 429:
            raise RateLimitError(
                f"Rate limit exceeded: {detail}",
                retry_after=response.headers.get("retry-after"),
                **common,
            )
        if status == 404:
            raise ModelNotFoundError(f"Model or endpoint not found: {detail}", **common)
        if status >= 500:
            raise ProviderConnectionError(f"Backend error {status}: {detail}", **common)
        raise ProviderError(f"Request failed with HTTP {status}: {detail}", **common)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = build_headers(self.profile, self._api_key())
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ProviderConnectionError(
                f"Could not reach {self.base_url}: {e}", backend=self.backend, model=self.model
            ) from e

        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Response body is not JSON", backend=self.backend, model=self.model
            ) from e

    # ==========================================================================
    # Chat
    # ==========================================================================
    async def chat(
        self,
        messages: list[Message],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """
        Send a conversation and return the model's reply.

        Raises:
            CredentialError: If the API key cannot be decrypted
            InvalidCredentialsError: On HTTP 401/403
            RateLimitError: On HTTP 429
            ModelNotFoundError: On HTTP 404
            ProviderConnectionError: On network failure, timeout or 5xx
            MalformedResponseError: If the reply has no content
        """
        return await self._complete(messages, options, tools=None)

    async def chat_with_functions(
        self,
        messages: list[Message],
        tools: list[ToolSchema],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """
        Send a conversation with callable tools advertised.

        Returns:
            ChatResponse whose function_call is set when the model requested a tool

        Raises:
            ToolError: If the requested tool call's arguments cannot be parsed
        """
        return await self._complete(messages, options, tools=tools)

    async def _complete(
        self,
        messages: list[Message],
        options: Optional[ChatOptions],
        tools: Optional[list[ToolSchema]],
    ) -> ChatResponse:
        params = resolve_parameters(
            self.profile, self.model, options, self.default_temperature, self.default_max_tokens
        )
        path, payload = build_chat_request(self.profile, self.model, messages, params, tools=tools)
        logger.debug(
            f"Chat request to {self.backend}/{self.model} "
            f"({len(messages)} messages, {len(tools or [])} tools)"
        )
        data = await self._post(path, payload)
        return parse_chat_response(self.profile, data, self.backend, self.model)

    async def stream(
        self,
        messages: list[Message],
        on_token: StreamCallback,
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """
        Stream a reply, delivering content to on_token as it arrives.

        The callback always receives a terminal chunk with done=True. If the
        connection drops mid-stream, that terminal chunk carries the partial
        content received so far and interrupted=True, and the error is raised
        after it.

        Raises:
            ProviderConnectionError: If the connection fails or drops
        """
        params = resolve_parameters(
            self.profile, self.model, options, self.default_temperature, self.default_max_tokens
        )
        path, payload = build_chat_request(self.profile, self.model, messages, params, stream=True)
        headers = build_headers(self.profile, self._api_key())

        parts: list[str] = []
        finish_reason: Optional[str] = None
        usage = TokenUsage()
        try:
            async with self._client() as client:
                async with client.stream("POST", path, json=payload, headers=headers) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        self._raise_for_status(response)
                    async for line in response.aiter_lines():
                        event = parse_stream_line(self.profile, line)
                        if event is None:
                            continue
                        if event.content:
                            parts.append(event.content)
                            on_token(StreamChunk(content=event.content))
                        if event.finish_reason:
                            finish_reason = event.finish_reason
                        if event.usage is not None:
                            usage = usage + event.usage
                        if event.done:
                            break
        except httpx.TransportError as e:
            partial = "".join(parts)
            logger.warning(f"Stream from {self.backend}/{self.model} interrupted after {len(partial)} chars")
            on_token(StreamChunk(content=partial, done=True, interrupted=True))
            raise ProviderConnectionError(
                f"Stream interrupted: {e}",
                backend=self.backend,
                model=self.model,
                partial_content=partial,
            ) from e

        on_token(StreamChunk(content="", done=True))
        return ChatResponse(
            content="".join(parts),
            model=self.model,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def test(self) -> bool:
        """
        Send a minimal prompt to check connectivity and credentials.

        Returns:
            True if the backend answered with content containing "OK"
        """
        rule = self.profile.rule_for(self.model)
        try:
            response = await self.chat(
                [Message(role="user", content=TEST_PROMPT)],
                ChatOptions(max_tokens=rule.test_max_tokens),
            )
        except MnemosyneError as e:
            logger.warning(f"Provider test failed for {self.config.id}: {e}")
            return False
        return "ok" in response.content.lower()
