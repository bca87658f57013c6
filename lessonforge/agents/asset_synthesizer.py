"""Concurrent Asset Synthesizer Agent.

Dispatches one media-generation call per AssetPrompt, all at once, and waits
for every call to settle. Individual failures are counted and never abort
the stage: a failed call contributes to ``failure_count`` and nothing else.
"""

import asyncio
import base64
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import openai
from pydantic import ValidationError

from lessonforge.agents.base import Agent, AgentExecutionError
from lessonforge.orchestrator.logger import StructuredJSONLogger
from lessonforge.schemas.assets import AssetPrompt, AssetResult, EnrichmentOutcome


logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "dall-e-3"
DEFAULT_SIZE_HINT = "1024x1024"


class AssetGenerationError(AgentExecutionError):
    """Raised for one failed asset call; isolated to that call."""
    pass


@dataclass(frozen=True)
class GeneratedAsset:
    """Raw reply of a media backend."""
    data: bytes
    media_type: str


class AssetBackend(ABC):
    """One media-generation provider."""

    name: str = "assets"

    @abstractmethod
    async def generate_asset(self, prompt_text: str, size_hint: str) -> GeneratedAsset:
        """Generate one asset for ``prompt_text``.

        Raises:
            AssetGenerationError: Or any provider exception, on failure
        """
        pass


class OpenAIImageBackend(AssetBackend):
    """Image backend on ``openai.AsyncOpenAI().images.generate``.

    Replies are requested as base64 and decoded to PNG bytes.
    """

    name = "openai-images"

    def __init__(self, model: str = DEFAULT_IMAGE_MODEL, client: Any = None, api_key: Optional[str] = None):
        self.model = model
        self.client = client
        self.api_key = api_key

    def _get_client(self) -> Any:
        if self.client is None:
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise AssetGenerationError(
                    "MISSING_API_KEY",
                    "OPENAI_API_KEY is not set",
                    {"provider": self.name}
                )
            self.client = openai.AsyncOpenAI(api_key=api_key)
        return self.client

    async def generate_asset(self, prompt_text: str, size_hint: str) -> GeneratedAsset:
        client = self._get_client()
        response = await client.images.generate(
            model=self.model,
            prompt=prompt_text,
            n=1,
            size=size_hint,
            response_format="b64_json",
        )
        if not response.data or not response.data[0].b64_json:
            raise AssetGenerationError(
                "ASSET_EMPTY_RESPONSE",
                "Image backend returned no image data",
                {"provider": self.name}
            )
        return GeneratedAsset(data=base64.b64decode(response.data[0].b64_json), media_type="image/png")


class ConcurrentAssetSynthesizer(Agent):
    """Agent responsible for settle-all asset synthesis.

    All calls are launched before any is awaited and joined with
    ``asyncio.gather(..., return_exceptions=True)``, so a failing call never
    cancels or hides its siblings. Each call is bounded by
    ``call_timeout_seconds``.

    ``successes`` are recorded in completion order; consumers merge results
    by ``block_index``.
    """

    stage_name = "ConcurrentAssetSynthesizer"

    def __init__(
        self,
        backend: AssetBackend,
        size_hint: str = DEFAULT_SIZE_HINT,
        call_timeout_seconds: Optional[float] = 120.0,
        event_logger: Optional[StructuredJSONLogger] = None
    ):
        """Initialize the synthesizer.

        Args:
            backend: Media provider to call once per prompt
            size_hint: Size passed to every call, e.g. "1024x1024"
            call_timeout_seconds: Per-call bound, None for no bound
            event_logger: Optional structured logger for asset_failure events
        """
        self.backend = backend
        self.size_hint = size_hint
        self.call_timeout_seconds = call_timeout_seconds
        self.event_logger = event_logger

    async def execute(self, input_data: Sequence[AssetPrompt]) -> EnrichmentOutcome:
        return await self.synthesize(input_data)

    def validate_input(self, input_data: Any) -> bool:
        """Prompts must be AssetPrompts bound to distinct blocks."""
        if not isinstance(input_data, (list, tuple)):
            return False
        if not all(isinstance(prompt, AssetPrompt) for prompt in input_data):
            return False
        indices = [prompt.block_index for prompt in input_data]
        return len(indices) == len(set(indices))

    async def synthesize(
        self,
        prompts: Sequence[AssetPrompt],
        request_id: Optional[str] = None
    ) -> EnrichmentOutcome:
        """Generate every asset concurrently and aggregate the outcome.

        Args:
            prompts: Directives from the extractor, at most one per block
            request_id: Optional request identifier for log entries

        Returns:
            EnrichmentOutcome with len(successes) + failure_count == len(prompts)

        Raises:
            AgentExecutionError: If prompts are malformed (precondition only;
                individual call failures never raise)
        """
        self._require_valid_input(prompts, "a sequence of AssetPrompt with distinct block indices")
        prompts = list(prompts)
        if not prompts:
            return EnrichmentOutcome(successes=[], failure_count=0)

        start_time = time.time()
        completed: List[AssetResult] = []
        tasks = [
            asyncio.create_task(self._synthesize_one(prompt, completed))
            for prompt in prompts
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        failed_indices: List[int] = []
        for prompt, outcome in zip(prompts, outcomes):
            if isinstance(outcome, BaseException):
                failed_indices.append(prompt.block_index)
                self._record_failure(prompt, outcome, request_id)

        logger.info(
            f"Asset synthesis settled: {len(completed)} succeeded, {len(failed_indices)} failed "
            f"in {(time.time() - start_time) * 1000:.2f}ms"
        )
        return EnrichmentOutcome(
            successes=completed,
            failure_count=len(failed_indices),
            failed_block_indices=sorted(failed_indices)
        )

    async def _synthesize_one(self, prompt: AssetPrompt, completed: List[AssetResult]) -> AssetResult:
        """Run one call; append the result to ``completed`` when it succeeds."""
        context = {"block_index": prompt.block_index, "media_kind": prompt.media_kind.value}
        try:
            asset = await asyncio.wait_for(
                self.backend.generate_asset(prompt.prompt_text, self.size_hint),
                timeout=self.call_timeout_seconds
            )
        except AssetGenerationError:
            raise
        except asyncio.TimeoutError as e:
            raise AssetGenerationError(
                "ASSET_TIMEOUT",
                f"Asset call did not finish within {self.call_timeout_seconds}s",
                context
            ) from e
        except Exception as e:
            raise AssetGenerationError(
                "ASSET_CALL_FAILED",
                f"{self.backend.name} call failed: {e}",
                {**context, "exception_type": type(e).__name__}
            ) from e

        try:
            result = AssetResult(
                block_index=prompt.block_index,
                data=getattr(asset, "data", None),
                media_type=getattr(asset, "media_type", None)
            )
        except ValidationError as e:
            raise AssetGenerationError(
                "INVALID_ASSET",
                f"Backend returned an unusable asset ({e.error_count()} problem(s))",
                context
            ) from e

        completed.append(result)
        return result

    def _record_failure(self, prompt: AssetPrompt, error: BaseException, request_id: Optional[str]) -> None:
        if isinstance(error, AgentExecutionError):
            error_code, message = error.error_code, error.message
        else:
            error_code, message = type(error).__name__, str(error)

        logger.warning(f"Asset for block {prompt.block_index} failed [{error_code}]: {message}")
        if self.event_logger is not None:
            self.event_logger.log_asset_failure(
                block_index=prompt.block_index,
                media_kind=prompt.media_kind.value,
                error_code=error_code,
                error_message=message,
                stage=self.stage_name,
                request_id=request_id
            )
