"""Structured Content Generator Agent for producing lesson candidates.

Wraps exactly one chat-completion call per ``generate()``. The reply is
returned as a raw, untrusted candidate; validation and retries belong to the
feedback controller, never to this agent.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import anthropic
import openai

from lessonforge.agents.base import Agent, AgentExecutionError, AgentInput
from lessonforge.schemas.session import ConversationMessage, MessageRole


logger = logging.getLogger(__name__)

DEFAULT_OPENAI_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_CHAT_MODEL = "claude-3-5-sonnet-latest"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 4096

# A reply that is one fenced block, optionally tagged (```typescript).
_FENCED_REPLY = re.compile(r"^\s*```[\w+-]*[ \t]*\r?\n(.*?)\r?\n?```\s*$", re.DOTALL)


class GenerationError(AgentExecutionError):
    """Raised when the language model call fails; fatal to the session."""
    pass


def strip_code_fences(raw: str) -> str:
    """Remove a markdown fence wrapped around the whole reply.

    Models asked for bare code still answer with ```typescript blocks now and
    then. Replies without a surrounding fence are returned unchanged.
    """
    match = _FENCED_REPLY.match(raw)
    if match:
        return match.group(1)
    return raw


class ChatBackend(ABC):
    """One chat-completion provider."""

    #: Provider name used in errors and logs
    name: str = "chat"

    @abstractmethod
    async def complete(self, messages: Sequence[ConversationMessage]) -> Optional[str]:
        """Send ``messages`` and return the reply text."""
        pass


class OpenAIChatBackend(ChatBackend):
    """Chat backend on ``openai.AsyncOpenAI``.

    The client is created on first use so a missing API key surfaces as a
    GenerationError inside the session rather than at construction time.
    """

    name = "openai"

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_CHAT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        client: Any = None,
        api_key: Optional[str] = None
    ):
        self.model = model
        self.temperature = temperature
        self.client = client
        self.api_key = api_key

    def _get_client(self) -> Any:
        if self.client is None:
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise GenerationError(
                    "MISSING_API_KEY",
                    "OPENAI_API_KEY is not set",
                    {"provider": self.name}
                )
            self.client = openai.AsyncOpenAI(api_key=api_key)
        return self.client

    async def complete(self, messages: Sequence[ConversationMessage]) -> Optional[str]:
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[message.to_provider_dict() for message in messages],
            temperature=self.temperature,
        )
        if not response.choices:
            return None
        return response.choices[0].message.content


class AnthropicChatBackend(ChatBackend):
    """Chat backend on ``anthropic.AsyncAnthropic``.

    System messages are passed through the ``system`` parameter; consecutive
    user messages are sent as-is and combined into one turn by the API.
    """

    name = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_ANTHROPIC_CHAT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Any = None,
        api_key: Optional[str] = None
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client
        self.api_key = api_key

    def _get_client(self) -> Any:
        if self.client is None:
            api_key = self.api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise GenerationError(
                    "MISSING_API_KEY",
                    "ANTHROPIC_API_KEY is not set",
                    {"provider": self.name}
                )
            self.client = anthropic.AsyncAnthropic(api_key=api_key)
        return self.client

    async def complete(self, messages: Sequence[ConversationMessage]) -> Optional[str]:
        client = self._get_client()
        system = "\n\n".join(m.content for m in messages if m.role == MessageRole.SYSTEM)
        turns = [m.to_provider_dict() for m in messages if m.role != MessageRole.SYSTEM]

        response = await client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=turns,
        )
        texts = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        return "".join(texts)


class ContentGeneratorInput(AgentInput):
    """Input for Structured Content Generator Agent.

    Attributes:
        messages: Conversation transcript to send to the model
        timeout_seconds: Optional bound for this call, overriding the default
    """

    def __init__(self, messages: Sequence[ConversationMessage], timeout_seconds: Optional[float] = None):
        self.messages = messages
        self.timeout_seconds = timeout_seconds


class StructuredContentGenerator(Agent):
    """Agent responsible for one language model call per attempt.

    Every failure (provider error, transport error, timeout, empty reply or
    missing credentials) is raised as GenerationError. There is no retry
    here: a failed call ends the enclosing session.
    """

    stage_name = "StructuredContentGenerator"

    def __init__(self, backend: ChatBackend, timeout_seconds: Optional[float] = 120.0):
        """Initialize the generator.

        Args:
            backend: Chat provider to call
            timeout_seconds: Default per-call bound, None for no bound
        """
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def execute(self, input_data: ContentGeneratorInput) -> str:
        self._require_valid_input(input_data, "ContentGeneratorInput with a non-empty transcript")
        return await self.generate(input_data.messages, timeout_seconds=input_data.timeout_seconds)

    def validate_input(self, input_data: Any) -> bool:
        if not isinstance(input_data, ContentGeneratorInput):
            return False
        messages = list(input_data.messages)
        return bool(messages) and all(isinstance(m, ConversationMessage) for m in messages)

    async def generate(
        self,
        messages: Sequence[ConversationMessage],
        timeout_seconds: Optional[float] = None
    ) -> str:
        """Call the model once with the full transcript.

        Args:
            messages: Transcript in order; sent unchanged
            timeout_seconds: Extra bound for this call (e.g. what is left of
                a session deadline); the tighter of this and the agent's
                bound applies

        Returns:
            Candidate text with any surrounding markdown fence removed

        Raises:
            GenerationError: On any failure of the call
        """
        transcript: List[ConversationMessage] = list(messages)
        bounds = [t for t in (self.timeout_seconds, timeout_seconds) if t is not None]
        timeout = min(bounds) if bounds else None

        logger.debug(f"Calling {self.backend.name} with {len(transcript)} message(s)")
        try:
            raw = await asyncio.wait_for(self.backend.complete(transcript), timeout=timeout)
        except GenerationError:
            raise
        except asyncio.TimeoutError as e:
            raise GenerationError(
                "LLM_TIMEOUT",
                f"{self.backend.name} call did not finish within {timeout}s",
                {"provider": self.backend.name, "timeout_seconds": timeout}
            ) from e
        except Exception as e:
            raise GenerationError(
                "LLM_CALL_FAILED",
                f"{self.backend.name} call failed: {e}",
                {"provider": self.backend.name, "exception_type": type(e).__name__}
            ) from e

        if raw is None or not raw.strip():
            raise GenerationError(
                "LLM_EMPTY_RESPONSE",
                f"{self.backend.name} returned an empty reply",
                {"provider": self.backend.name}
            )

        return strip_code_fences(raw)
