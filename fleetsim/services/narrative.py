"""
Incident narrative generation.

The AI narrative is a capability, not a library: the incident agent depends
only on the NarrativeProvider protocol. PydanticAINarrativeProvider is the
production implementation built on Pydantic AI.
"""

from typing import Any, Generic, Protocol, TypeVar, cast

import structlog
from pydantic_ai import Agent

from fleetsim.config import NarrativeConfig

logger = structlog.get_logger(__name__)

ValueT = TypeVar("ValueT")


class Result(Generic[ValueT]):
    """
    Outcome of a narrative request: the text, or the reason it is missing.

    A missing narrative is an expected outcome, so the incident agent branches
    on the Result instead of catching exceptions from the provider call.
    """

    def __init__(self, value: ValueT | None = None, error: Exception | None = None) -> None:
        if (value is None) == (error is None):
            raise ValueError("Result needs exactly one of value or error")
        self._value = value
        self._error = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: Exception) -> "Result[ValueT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return not self.is_ok()

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return cast(ValueT, self._value)

    def unwrap_or(self, default: ValueT) -> ValueT:
        return default if self._error is not None else cast(ValueT, self._value)

    def unwrap_err(self) -> Exception:
        if self._error is None:
            raise ValueError("Result holds a value, not an error")
        return self._error


class NarrativeProvider(Protocol):
    """
    Anything that can turn an incident prompt into narrative text.

    Implementations may raise; callers bound the call with a timeout and
    substitute a fallback narrative on failure.
    """

    async def generate_narrative(self, prompt: str) -> str: ...


class PydanticAINarrativeProvider:
    """
    Narrative provider backed by a Pydantic AI agent with free-form text output.
    """

    def __init__(self, config: NarrativeConfig) -> None:
        self.config = config
        self.logger = logger.bind(component="narrative_provider", model=config.model_name)

        self.agent = Agent(
            model=self.config.model_name,
            output_type=str,
            system_prompt=self._build_system_prompt(),
            retries=self.config.max_retries,
            model_settings={
                "temperature": self.config.temperature,
                "max_tokens": self.config.max_tokens,
            },
        )

    def _build_system_prompt(self) -> str:
        return """You are a Senior Site Reliability Engineer on call for a large server fleet.

Given the problems detected on one server, write an incident report.

Structure your response as:
1. SITUATION: What is happening and how severe it is
2. LIKELY CAUSES: The most plausible explanations, most likely first
3. IMMEDIATE ACTIONS: Concrete commands or steps to run right now
4. FOLLOW-UP: What to change so it does not happen again

Be specific and actionable. Don't just say "check the logs" -
say "check journalctl -u nginx for worker crashes in the last 30 minutes"."""

    async def generate_narrative(self, prompt: str) -> str:
        result = await self.agent.run(prompt)
        narrative = cast(str, cast(Any, result).output)
        self.logger.debug("narrative_generated", preview=narrative[:200])
        return narrative


def build_narrative_provider(config: NarrativeConfig) -> NarrativeProvider | None:
    """Build the configured provider, or None when no API key is set."""
    if not config.enabled:
        logger.info("narrative_provider_disabled", reason="no_api_key")
        return None
    return PydanticAINarrativeProvider(config)
