"""Pipeline Orchestrator for lesson generation.

This module sequences the pipeline for one content request:
RetryFeedbackController (generate -> validate)* -> AssetPromptExtractor ->
ConcurrentAssetSynthesizer, and moves the request through its lifecycle:

    generating -> content_ready -> asset_enriching -> complete | degraded
    generating -> failed

Error Handling Strategy:
- **Retry with feedback**: Validation failures are fed back to the model until
  the attempt budget is spent (ValidationExhausted)
- **Abort**: A GenerationError ends the session at once (GenerationError)
- **Continue**: Asset failures are counted; the request ends degraded with
  its content intact
- **Ignore**: Persistence writes run as background tasks; their failures are
  logged and never change the outcome

Run from the command line with ``python -m lessonforge.orchestrator.pipeline``.
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel

from lessonforge.agents.asset_extractor import AssetPromptExtractor
from lessonforge.agents.asset_synthesizer import (
    DEFAULT_IMAGE_MODEL,
    ConcurrentAssetSynthesizer,
    OpenAIImageBackend,
)
from lessonforge.agents.base import AgentExecutionError
from lessonforge.agents.content_generator import (
    DEFAULT_ANTHROPIC_CHAT_MODEL,
    DEFAULT_OPENAI_CHAT_MODEL,
    DEFAULT_TEMPERATURE,
    AnthropicChatBackend,
    ChatBackend,
    OpenAIChatBackend,
    StructuredContentGenerator,
)
from lessonforge.agents.persistence import (
    FileSystemPersistenceGateway,
    PersistenceGateway,
    StatusUpdate,
)
from lessonforge.agents.schema_validator import SchemaValidatorAgent
from lessonforge.orchestrator.feedback_loop import RetryFeedbackController
from lessonforge.orchestrator.logger import StructuredJSONLogger
from lessonforge.schemas.assets import EnrichmentOutcome
from lessonforge.schemas.lesson import LessonDocument
from lessonforge.schemas.session import (
    ContentRequest,
    FailureReason,
    GenerationSession,
    RequestStatus,
    SessionFailure,
    SessionState,
)


logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic")


@dataclass
class PipelineConfig:
    """Configuration for pipeline execution.

    Attributes:
        max_attempts: Generation attempts per session
        provider: Chat provider, "openai" or "anthropic"
        chat_model: Chat model name; provider default if None
        image_model: Image model name
        temperature: Sampling temperature for generation
        asset_size_hint: Size passed to every asset call
        generation_timeout_seconds: Bound on one generation call (None: unbounded)
        asset_timeout_seconds: Bound on one asset call (None: unbounded)
        session_timeout_seconds: Bound on a whole session (None: unbounded)
        base_output_dir: Base directory for per-request output
    """
    max_attempts: int = 5
    provider: str = "openai"
    chat_model: Optional[str] = None
    image_model: str = DEFAULT_IMAGE_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    asset_size_hint: str = "1024x1024"
    generation_timeout_seconds: Optional[float] = 120.0
    asset_timeout_seconds: Optional[float] = 120.0
    session_timeout_seconds: Optional[float] = 600.0
    base_output_dir: str = "output"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.provider not in PROVIDERS:
            raise ValueError(f"provider must be one of {', '.join(PROVIDERS)}, got '{self.provider}'")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """Build a config from ``LESSONFORGE_*`` environment variables.

        Unset variables keep their defaults. A timeout of 0 or less means no
        bound. API keys are not part of the config; backends read
        OPENAI_API_KEY / ANTHROPIC_API_KEY themselves.

        Raises:
            ValueError: If a variable holds an unparseable value
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(name: str) -> Optional[str]:
            value = env.get(f"LESSONFORGE_{name}")
            return value.strip() if value is not None and value.strip() else None

        def _number(name: str, convert, default):
            raw = _get(name)
            if raw is None:
                return default
            try:
                return convert(raw)
            except ValueError:
                raise ValueError(f"LESSONFORGE_{name} must be a number, got '{raw}'") from None

        def _timeout(name: str, default: Optional[float]) -> Optional[float]:
            value = _number(name, float, default)
            if value is not None and value <= 0:
                return None
            return value

        return cls(
            max_attempts=_number("MAX_ATTEMPTS", int, defaults.max_attempts),
            provider=(_get("PROVIDER") or defaults.provider).lower(),
            chat_model=_get("CHAT_MODEL") or defaults.chat_model,
            image_model=_get("IMAGE_MODEL") or defaults.image_model,
            temperature=_number("TEMPERATURE", float, defaults.temperature),
            asset_size_hint=_get("ASSET_SIZE") or defaults.asset_size_hint,
            generation_timeout_seconds=_timeout("GENERATION_TIMEOUT", defaults.generation_timeout_seconds),
            asset_timeout_seconds=_timeout("ASSET_TIMEOUT", defaults.asset_timeout_seconds),
            session_timeout_seconds=_timeout("SESSION_TIMEOUT", defaults.session_timeout_seconds),
            base_output_dir=_get("OUTPUT_DIR") or defaults.base_output_dir,
        )

    def to_log_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def build_chat_backend(config: PipelineConfig) -> ChatBackend:
    """Chat backend for the configured provider."""
    if config.provider == "anthropic":
        return AnthropicChatBackend(
            model=config.chat_model or DEFAULT_ANTHROPIC_CHAT_MODEL,
            temperature=config.temperature
        )
    return OpenAIChatBackend(
        model=config.chat_model or DEFAULT_OPENAI_CHAT_MODEL,
        temperature=config.temperature
    )


class PipelineResult(BaseModel):
    """Outcome of processing one request.

    ``document`` is set only for an accepted session; ``failure`` only for a
    failed one. ``enrichment`` is set once asset synthesis has run.
    """

    request: ContentRequest
    session: GenerationSession
    document: Optional[LessonDocument] = None
    enrichment: Optional[EnrichmentOutcome] = None
    failure: Optional[SessionFailure] = None

    @property
    def status(self) -> RequestStatus:
        return self.request.status

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly overview used by the CLI."""
        summary: Dict[str, Any] = {
            "request_id": self.request.request_id,
            "status": self.request.status.value,
            "attempts": self.session.attempts,
        }
        if self.document is not None:
            summary["title"] = self.document.title
            summary["block_count"] = len(self.document.blocks)
        if self.enrichment is not None:
            summary["assets_generated"] = len(self.enrichment.successes)
            summary["assets_failed"] = self.enrichment.failure_count
        if self.failure is not None:
            summary["failure_reason"] = self.failure.reason.value
            summary["failure_message"] = self.failure.message
            summary["diagnostics"] = self.failure.diagnostics
        return summary


class Orchestrator:
    """Main orchestrator for the lesson pipeline.

    Stages can be injected (scripted stand-ins in tests); anything not given
    is built from the config.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        controller: Optional[RetryFeedbackController] = None,
        extractor: Optional[AssetPromptExtractor] = None,
        synthesizer: Optional[ConcurrentAssetSynthesizer] = None,
        gateway: Optional[PersistenceGateway] = None,
        event_logger: Optional[StructuredJSONLogger] = None
    ):
        """Initialize the orchestrator.

        Args:
            config: Pipeline configuration (uses defaults if not provided)
            controller: Generation session controller
            extractor: Asset directive extractor
            synthesizer: Concurrent asset synthesizer
            gateway: Persistence gateway for status records
            event_logger: Structured logger shared by all stages
        """
        self.config = config or PipelineConfig()
        self.event_logger = event_logger or StructuredJSONLogger()

        if controller is None:
            generator = StructuredContentGenerator(
                build_chat_backend(self.config),
                timeout_seconds=self.config.generation_timeout_seconds
            )
            controller = RetryFeedbackController(
                generator,
                SchemaValidatorAgent(),
                event_logger=self.event_logger,
                session_timeout_seconds=self.config.session_timeout_seconds
            )
        self.controller = controller
        self.extractor = extractor or AssetPromptExtractor()
        self.synthesizer = synthesizer or ConcurrentAssetSynthesizer(
            OpenAIImageBackend(model=self.config.image_model),
            size_hint=self.config.asset_size_hint,
            call_timeout_seconds=self.config.asset_timeout_seconds,
            event_logger=self.event_logger
        )
        self.gateway = gateway or FileSystemPersistenceGateway(self.config.base_output_dir)

        self._pending_writes: Set[asyncio.Task] = set()
        self._last_write: Dict[str, asyncio.Task] = {}

    def create_request(self, outline: str, request_id: Optional[str] = None) -> ContentRequest:
        """Create a new request in ``generating`` status.

        Raises:
            pydantic.ValidationError: If the outline is blank
        """
        return ContentRequest(request_id=request_id or uuid.uuid4().hex, outline=outline)

    async def process(self, request: ContentRequest) -> PipelineResult:
        """Run the pipeline for one request.

        Args:
            request: Request in ``generating`` status; its status is advanced
                in place

        Returns:
            PipelineResult; the request ends complete, degraded or failed

        Raises:
            ValueError: If the request is not in ``generating`` status
        """
        if request.status != RequestStatus.GENERATING:
            raise ValueError(
                f"Request {request.request_id} is '{request.status.value}', expected 'generating'"
            )

        start_time = time.time()
        request_id = request.request_id
        self._persist(request_id, StatusUpdate(status=RequestStatus.GENERATING))

        session = await self._run_generation(request)

        if session.state != SessionState.ACCEPTED:
            failure = session.failure
            request.transition_to(RequestStatus.FAILED)
            self._persist(request_id, StatusUpdate(
                status=RequestStatus.FAILED,
                diagnostics=failure.diagnostics,
                failure_reason=failure.reason.value
            ))
            self.event_logger.log_pipeline_error(
                error_type=failure.reason.value,
                error_message=failure.message,
                stage="generation",
                request_id=request_id
            )
            self.event_logger.log_pipeline_complete(
                status=request.status.value,
                duration_seconds=time.time() - start_time,
                request_id=request_id,
                attempts=session.attempts
            )
            return PipelineResult(request=request, session=session, failure=failure)

        document = session.document
        request.transition_to(RequestStatus.CONTENT_READY)
        self._persist(request_id, StatusUpdate(status=RequestStatus.CONTENT_READY, document=document))

        request.transition_to(RequestStatus.ASSET_ENRICHING)
        self._persist(request_id, StatusUpdate(status=RequestStatus.ASSET_ENRICHING, document=document))

        enrichment = await self._run_enrichment(document, request_id)

        if enrichment is not None and enrichment.is_complete:
            request.transition_to(RequestStatus.COMPLETE)
        else:
            request.transition_to(RequestStatus.DEGRADED)
        self._persist(request_id, StatusUpdate(
            status=request.status,
            document=document,
            assets=enrichment.successes if enrichment is not None else []
        ))

        self.event_logger.log_pipeline_complete(
            status=request.status.value,
            duration_seconds=time.time() - start_time,
            request_id=request_id,
            attempts=session.attempts
        )
        return PipelineResult(request=request, session=session, document=document, enrichment=enrichment)

    async def _run_generation(self, request: ContentRequest) -> GenerationSession:
        """Run the session; an unexpected controller error becomes an aborted session.

        The controller's partial session is lost in that case, so the failure
        message says the attempt count is unknown instead of reporting zero.
        """
        try:
            return await self.controller.run_session(
                request.outline,
                max_attempts=self.config.max_attempts,
                request_id=request.request_id
            )
        except Exception as e:
            logger.error(f"Generation session for {request.request_id} crashed: {e}", exc_info=True)
            return GenerationSession(
                outline=request.outline,
                max_attempts=self.config.max_attempts,
                state=SessionState.ABORTED,
                failure=SessionFailure(
                    reason=FailureReason.GENERATION_ERROR,
                    message=f"Generation session crashed (attempt count unknown): {e}"
                )
            )

    async def _run_enrichment(self, document: LessonDocument, request_id: str) -> Optional[EnrichmentOutcome]:
        """Extract directives and synthesize assets.

        Returns:
            The outcome, or None if the extraction/synthesis precondition was
            violated (the request then ends degraded)
        """
        start_time = time.time()
        stage = self.extractor.stage_name
        try:
            prompts = self.extractor.extract(document)
            self.event_logger.log_enrichment_start(len(prompts), request_id=request_id)
            stage = self.synthesizer.stage_name
            outcome = await self.synthesizer.synthesize(prompts, request_id=request_id)
        except AgentExecutionError as e:
            self.event_logger.log_pipeline_error(
                error_type=e.error_code,
                error_message=e.message,
                stage=stage,
                request_id=request_id
            )
            return None

        self.event_logger.log_enrichment_complete(
            success_count=len(outcome.successes),
            failure_count=outcome.failure_count,
            duration_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        return outcome

    def _persist(self, request_id: str, update: StatusUpdate) -> None:
        """Fire a status write without waiting for it.

        Writes for one request are chained so they land in lifecycle order.
        """
        previous = self._last_write.get(request_id)
        task = asyncio.create_task(self._write_status(request_id, update, previous))
        self._pending_writes.add(task)
        self._last_write[request_id] = task
        task.add_done_callback(lambda done: self._forget_write(request_id, done))

    def _forget_write(self, request_id: str, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if self._last_write.get(request_id) is task:
            del self._last_write[request_id]

    async def _write_status(
        self,
        request_id: str,
        update: StatusUpdate,
        previous: Optional[asyncio.Task]
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await self.gateway.record_status(request_id, update)
        except Exception as e:
            logger.warning(
                f"Persistence write for {request_id} ({update.status.value}) failed: {e}"
            )

    async def drain_persistence(self) -> None:
        """Wait until every pending status write has finished."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def close(self) -> None:
        self.event_logger.close()


def configure_logging(log_file: Optional[str] = None) -> None:
    """Console (and optional file) logging for the ``lessonforge`` package."""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    package_logger = logging.getLogger("lessonforge")
    package_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(log_format))
    package_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(log_format))
        package_logger.addHandler(file_handler)

    package_logger.setLevel(logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m lessonforge.orchestrator.pipeline",
        description="Generate a validated lesson from an outline and synthesize its assets."
    )
    parser.add_argument("outline", help="Topic outline for the lesson")
    parser.add_argument("--max-attempts", type=int, default=None, help="Generation attempts (default 5)")
    parser.add_argument("--provider", choices=PROVIDERS, default=None, help="Chat provider")
    parser.add_argument("--output-dir", default=None, help="Base output directory")
    parser.add_argument("--log-file", default=None, help="Also write console logs to this file")
    return parser


async def _run_cli(outline: str, config: PipelineConfig) -> PipelineResult:
    orchestrator = Orchestrator(
        config,
        event_logger=StructuredJSONLogger(output_directory=config.base_output_dir)
    )
    try:
        request = orchestrator.create_request(outline)
        result = await orchestrator.process(request)
        await orchestrator.drain_persistence()
        return result
    finally:
        orchestrator.close()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns 0 unless the request failed."""
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides: Dict[str, Any] = {}
    if args.max_attempts is not None:
        overrides["max_attempts"] = args.max_attempts
    if args.provider is not None:
        overrides["provider"] = args.provider
    if args.output_dir is not None:
        overrides["base_output_dir"] = args.output_dir

    try:
        config = dataclasses.replace(PipelineConfig.from_env(), **overrides)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(args.log_file)
    try:
        result = asyncio.run(_run_cli(args.outline, config))
    except ValueError as e:
        parser.error(str(e))

    print(json.dumps(result.summary(), indent=2))
    return 1 if result.status == RequestStatus.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
