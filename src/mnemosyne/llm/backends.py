"""
Per-backend configuration table.

Each backend has a wire format, a default endpoint and an ordered list of
model-name rules. A rule decides how sampling parameters are sent for the
models it matches (some families lock temperature and rename the token
limit parameter). Callers never see the difference.
"""

import re
from dataclasses import dataclass
from typing import Literal, Optional

from mnemosyne.errors import ConfigurationError
from mnemosyne.llm.types import ChatOptions

WireFormat = Literal["openai", "anthropic", "ollama"]


@dataclass(frozen=True)
class ParameterRule:
    """How sampling parameters are mapped for matching models."""

    pattern: re.Pattern
    token_parameter: str = "max_tokens"
    fixed_temperature: Optional[float] = None
    test_max_tokens: int = 10

    def matches(self, model: str) -> bool:
        return bool(self.pattern.search(model))


@dataclass(frozen=True)
class BackendProfile:
    """Static description of one backend."""

    name: str
    wire_format: WireFormat
    default_base_url: Optional[str]
    requires_api_key: bool
    rules: tuple[ParameterRule, ...] = ()
    default_rule: ParameterRule = ParameterRule(pattern=re.compile(".*"))

    def rule_for(self, model: str) -> ParameterRule:
        """First matching rule for a model, else the default rule."""
        for rule in self.rules:
            if rule.matches(model):
                return rule
        return self.default_rule


@dataclass(frozen=True)
class ResolvedParameters:
    """Sampling parameters after backend rules were applied."""

    temperature: float
    max_tokens: int
    token_parameter: str


# Reasoning model families only accept temperature 1 and max_completion_tokens
OPENAI_REASONING_RULE = ParameterRule(
    pattern=re.compile(r"^(gpt-5|o1|o3|o4)", re.IGNORECASE),
    token_parameter="max_completion_tokens",
    fixed_temperature=1.0,
    test_max_tokens=1000,
)

BACKENDS: dict[str, BackendProfile] = {
    "openai": BackendProfile(
        name="openai",
        wire_format="openai",
        default_base_url="https://api.openai.com/v1",
        requires_api_key=True,
        rules=(OPENAI_REASONING_RULE,),
    ),
    "anthropic": BackendProfile(
        name="anthropic",
        wire_format="anthropic",
        default_base_url="https://api.anthropic.com/v1",
        requires_api_key=True,
    ),
    "ollama": BackendProfile(
        name="ollama",
        wire_format="ollama",
        default_base_url="http://localhost:11434",
        requires_api_key=False,
        default_rule=ParameterRule(pattern=re.compile(".*"), token_parameter="num_predict"),
    ),
    # Any OpenAI-compatible server (vLLM, LM Studio, HF router, ...)
    "custom": BackendProfile(
        name="custom",
        wire_format="openai",
        default_base_url=None,
        requires_api_key=False,
        rules=(OPENAI_REASONING_RULE,),
    ),
}


def get_backend(name: str) -> BackendProfile:
    """
    Look up a backend profile.

    Raises:
        ConfigurationError: If the backend is unknown
    """
    try:
        return BACKENDS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown LLM backend: {name}",
            backend=name,
            available=sorted(BACKENDS),
        ) from None


def resolve_parameters(
    profile: BackendProfile,
    model: str,
    options: Optional[ChatOptions],
    default_temperature: float,
    default_max_tokens: int,
) -> ResolvedParameters:
    """
    Apply per-call options, provider defaults and the backend's model rule.

    Args:
        profile: Backend profile
        model: Active model name
        options: Per-call overrides
        default_temperature: Provider-level temperature
        default_max_tokens: Provider-level token limit

    Returns:
        Parameters ready to be written into a request payload
    """
    rule = profile.rule_for(model)
    temperature = default_temperature
    max_tokens = default_max_tokens
    if options is not None:
        if options.temperature is not None:
            temperature = options.temperature
        if options.max_tokens is not None:
            max_tokens = options.max_tokens
    if rule.fixed_temperature is not None:
        temperature = rule.fixed_temperature
    return ResolvedParameters(
        temperature=temperature,
        max_tokens=max_tokens,
        token_parameter=rule.token_parameter,
    )
