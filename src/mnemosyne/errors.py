"""
Error taxonomy shared by all Mnemosyne components.

Every error carries a machine-readable ``code`` and a ``context`` dict
(provider, model, operation, ...) so callers can render a precise message.

Hierarchy:
    MnemosyneError
    ├── ConfigurationError
    ├── CredentialError
    │   ├── DecryptionFailed
    │   └── InvalidCredentialsError
    ├── ProviderError
    │   ├── RateLimitError
    │   ├── ModelNotFoundError
    │   ├── ProviderConnectionError
    │   └── MalformedResponseError
    ├── RetrievalError
    │   ├── DimensionMismatch
    │   └── StoreNotInitializedError
    ├── StoreIOError
    └── ToolError
        └── ScopeViolation
"""

from typing import Any


class MnemosyneError(Exception):
    """Base class for all errors raised by the core."""

    code = "MNEMOSYNE_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses and logs."""
        return {"error": self.code, "message": self.message, "context": self.context}


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(MnemosyneError):
    """Invalid or missing agent/provider configuration."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, problems: list[str] | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.problems = problems or []


# =============================================================================
# Credentials
# =============================================================================

class CredentialError(MnemosyneError):
    """Credential handling failed (locked session, bad key, bad password)."""

    code = "CREDENTIAL_ERROR"


class DecryptionFailed(CredentialError):
    """Authenticated decryption failed: wrong password or corrupted payload."""

    code = "DECRYPTION_FAILED"


class InvalidCredentialsError(CredentialError):
    """The backend rejected the API key."""

    code = "INVALID_CREDENTIALS"

    def __init__(self, message: str, *, backend: str, model: str, **context: Any) -> None:
        super().__init__(message, backend=backend, model=model, **context)
        self.backend = backend
        self.model = model


# =============================================================================
# Providers
# =============================================================================

class ProviderError(MnemosyneError):
    """A model backend call failed."""

    code = "PROVIDER_ERROR"
    retryable = False

    def __init__(self, message: str, *, backend: str, model: str, **context: Any) -> None:
        super().__init__(message, backend=backend, model=model, **context)
        self.backend = backend
        self.model = model


class RateLimitError(ProviderError):
    """The backend throttled the request (HTTP 429)."""

    code = "RATE_LIMITED"
    retryable = True


class ModelNotFoundError(ProviderError):
    """The requested model does not exist or is unavailable."""

    code = "MODEL_NOT_FOUND"


class ProviderConnectionError(ProviderError):
    """Network failure, timeout or dropped connection."""

    code = "CONNECTION_FAILED"
    retryable = True


class MalformedResponseError(ProviderError):
    """The response carried neither content nor a tool call."""

    code = "MALFORMED_RESPONSE"


# =============================================================================
# Retrieval
# =============================================================================

class RetrievalError(MnemosyneError):
    """Vector store or retriever failure affecting one batch or query."""

    code = "RETRIEVAL_ERROR"


class DimensionMismatch(RetrievalError):
    """A vector does not match the store's configured dimension."""

    code = "DIMENSION_MISMATCH"


class StoreNotInitializedError(RetrievalError):
    """The vector store or embedder has not been set up."""

    code = "STORE_NOT_INITIALIZED"


class StoreIOError(MnemosyneError):
    """Persisting or loading state failed. Never swallowed."""

    code = "STORE_IO_ERROR"


# =============================================================================
# Tools
# =============================================================================

class ToolError(MnemosyneError):
    """A tool call could not be parsed or executed."""

    code = "TOOL_EXECUTION_FAILED"

    usage = None
    """Token usage of the model response the bad call came from, if any."""


class ScopeViolation(ToolError):
    """A tool argument points outside the agent's folder scope."""

    code = "SCOPE_VIOLATION"
