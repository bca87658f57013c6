"""Unit tests for Pipeline Orchestrator.

Stages are real where they are pure (validator, extractor) and scripted where
they would call a provider (generator, asset backend). Status writes go to an
InMemoryPersistenceGateway and are drained before assertions.
"""

import json

import pytest
from pydantic import ValidationError

from lessonforge.agents.asset_extractor import AssetPromptExtractor
from lessonforge.agents.asset_synthesizer import (
    AssetBackend,
    ConcurrentAssetSynthesizer,
    GeneratedAsset,
)
from lessonforge.agents.base import AgentExecutionError
from lessonforge.agents.content_generator import AnthropicChatBackend, GenerationError, OpenAIChatBackend
from lessonforge.agents.persistence import FileSystemPersistenceGateway, InMemoryPersistenceGateway, PersistenceError
from lessonforge.agents.schema_validator import SchemaValidatorAgent
from lessonforge.orchestrator import pipeline
from lessonforge.orchestrator.feedback_loop import RetryFeedbackController
from lessonforge.orchestrator.logger import StructuredJSONLogger
from lessonforge.orchestrator.pipeline import (
    Orchestrator,
    PipelineConfig,
    PipelineResult,
    build_chat_backend,
)
from lessonforge.schemas.session import (
    ContentRequest,
    FailureReason,
    GenerationSession,
    RequestStatus,
    SessionFailure,
    SessionState,
)


VALID_CANDIDATE = """const lesson: GeneratedLessonContent = {
  title: "Loops",
  blocks: [
    { kind: "explanation", body: "A loop repeats code.", svgGenerationPrompt: "a loop flowchart" },
    { kind: "quiz", questions: [{ question: "Repeat?", options: ["yes", "no"], answer: 0 }] },
    { kind: "image", alt: "A track", imageGenerationPrompt: "a running track" },
  ],
};"""

INVALID_CANDIDATE = 'const lesson: GeneratedLessonContent = { title: "Loops", blocks: [{ kind: "video" }] };'

GENERATION_STATUSES = [
    RequestStatus.GENERATING,
    RequestStatus.CONTENT_READY,
    RequestStatus.ASSET_ENRICHING,
]


class ScriptedGenerator:
    """Replays candidates in order; an exception in the script is raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def generate(self, messages, timeout_seconds=None):
        reply = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(reply, Exception):
            raise reply
        return reply


class ScriptedAssetBackend(AssetBackend):
    name = "scripted-assets"

    def __init__(self, fail_for_substring=None):
        self.fail_for_substring = fail_for_substring

    async def generate_asset(self, prompt_text, size_hint):
        if self.fail_for_substring and self.fail_for_substring in prompt_text:
            raise RuntimeError("provider rejected prompt")
        return GeneratedAsset(data=prompt_text.encode("utf-8"), media_type="image/png")


class CrashingController:
    async def run_session(self, outline, max_attempts=5, request_id=None):
        raise RuntimeError("controller bug")


class BrokenExtractor(AssetPromptExtractor):
    def extract(self, document):
        raise AgentExecutionError("UNSUPPORTED_BLOCK_KIND", "Block 0 is not a known lesson block")


def make_orchestrator(generator, asset_backend=None, gateway=None, max_attempts=3, **overrides):
    event_logger = StructuredJSONLogger()
    controller = RetryFeedbackController(generator, SchemaValidatorAgent(), event_logger=event_logger)
    synthesizer = ConcurrentAssetSynthesizer(
        asset_backend or ScriptedAssetBackend(),
        event_logger=event_logger
    )
    components = {
        "controller": controller,
        "synthesizer": synthesizer,
        "gateway": gateway or InMemoryPersistenceGateway(),
        "event_logger": event_logger,
    }
    components.update(overrides)
    return Orchestrator(PipelineConfig(max_attempts=max_attempts), **components)


class TestPipelineConfig:
    """Tests for configuration defaults and environment loading."""

    def test_defaults(self):
        config = PipelineConfig()

        assert config.max_attempts == 5
        assert config.provider == "openai"
        assert config.asset_size_hint == "1024x1024"
        assert config.to_log_dict()["base_output_dir"] == "output"

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"provider": "local"}])
    def test_invalid_values_are_rejected(self, kwargs):
        with pytest.raises(ValueError):
            PipelineConfig(**kwargs)

    def test_from_env(self):
        config = PipelineConfig.from_env({
            "LESSONFORGE_MAX_ATTEMPTS": "3",
            "LESSONFORGE_PROVIDER": "Anthropic",
            "LESSONFORGE_CHAT_MODEL": "claude-test",
            "LESSONFORGE_TEMPERATURE": "0.7",
            "LESSONFORGE_ASSET_SIZE": "512x512",
            "LESSONFORGE_SESSION_TIMEOUT": "0",
            "LESSONFORGE_ASSET_TIMEOUT": "30",
            "LESSONFORGE_OUTPUT_DIR": "/tmp/lessons",
        })

        assert config.max_attempts == 3
        assert config.provider == "anthropic"
        assert config.chat_model == "claude-test"
        assert config.temperature == 0.7
        assert config.asset_size_hint == "512x512"
        assert config.session_timeout_seconds is None
        assert config.asset_timeout_seconds == 30.0
        assert config.generation_timeout_seconds == 120.0
        assert config.base_output_dir == "/tmp/lessons"

    def test_from_env_ignores_blank_values(self):
        assert PipelineConfig.from_env({"LESSONFORGE_MAX_ATTEMPTS": "  "}) == PipelineConfig()

    def test_from_env_rejects_bad_numbers(self):
        with pytest.raises(ValueError) as exc_info:
            PipelineConfig.from_env({"LESSONFORGE_MAX_ATTEMPTS": "five"})
        assert "LESSONFORGE_MAX_ATTEMPTS" in str(exc_info.value)

    def test_build_chat_backend(self):
        assert isinstance(build_chat_backend(PipelineConfig()), OpenAIChatBackend)
        backend = build_chat_backend(PipelineConfig(provider="anthropic", chat_model="claude-test"))
        assert isinstance(backend, AnthropicChatBackend)
        assert backend.model == "claude-test"


class TestOrchestratorProcess:
    """Tests for request lifecycle and status persistence."""

    @pytest.mark.asyncio
    async def test_complete_request(self):
        gateway = InMemoryPersistenceGateway()
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE), gateway=gateway)
        request = orchestrator.create_request("Intro to loops", request_id="req-1")

        result = await orchestrator.process(request)
        await orchestrator.drain_persistence()

        assert result.status == RequestStatus.COMPLETE
        assert request.status == RequestStatus.COMPLETE
        assert result.document.title == "Loops"
        assert sorted(result.enrichment.by_block_index()) == [0, 2]
        assert result.failure is None
        assert gateway.history("req-1") == GENERATION_STATUSES + [RequestStatus.COMPLETE]
        final = gateway.latest("req-1")
        assert final.document == result.document
        assert {a.block_index for a in final.assets} == {0, 2}

    @pytest.mark.asyncio
    async def test_asset_failure_degrades_request(self):
        gateway = InMemoryPersistenceGateway()
        orchestrator = make_orchestrator(
            ScriptedGenerator(VALID_CANDIDATE),
            asset_backend=ScriptedAssetBackend(fail_for_substring="running track"),
            gateway=gateway
        )

        result = await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()

        assert result.status == RequestStatus.DEGRADED
        assert result.document is not None
        assert result.enrichment.failure_count == 1
        assert result.enrichment.failed_block_indices == [2]
        assert gateway.history("req-1") == GENERATION_STATUSES + [RequestStatus.DEGRADED]
        assert [a.block_index for a in gateway.latest("req-1").assets] == [0]

    @pytest.mark.asyncio
    async def test_validation_exhausted_fails_request(self):
        gateway = InMemoryPersistenceGateway()
        generator = ScriptedGenerator(INVALID_CANDIDATE)
        orchestrator = make_orchestrator(generator, gateway=gateway, max_attempts=3)

        result = await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()

        assert generator.calls == 3
        assert result.status == RequestStatus.FAILED
        assert result.document is None
        assert result.enrichment is None
        assert result.failure.reason == FailureReason.VALIDATION_EXHAUSTED
        assert gateway.history("req-1") == [RequestStatus.GENERATING, RequestStatus.FAILED]
        final = gateway.latest("req-1")
        assert final.failure_reason == "ValidationExhausted"
        assert final.diagnostics == result.failure.diagnostics
        assert "[union_tag_invalid]" in final.diagnostics[0]

    @pytest.mark.asyncio
    async def test_generation_error_fails_request(self):
        generator = ScriptedGenerator(INVALID_CANDIDATE, GenerationError("LLM_TIMEOUT", "too slow"))
        orchestrator = make_orchestrator(generator)

        result = await orchestrator.process(orchestrator.create_request("Intro to loops"))

        assert generator.calls == 2
        assert result.status == RequestStatus.FAILED
        assert result.failure.reason == FailureReason.GENERATION_ERROR
        assert result.session.state == SessionState.ABORTED

    @pytest.mark.asyncio
    async def test_controller_crash_fails_request(self):
        gateway = InMemoryPersistenceGateway()
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE), gateway=gateway, controller=CrashingController())

        result = await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()

        assert result.status == RequestStatus.FAILED
        assert result.failure.reason == FailureReason.GENERATION_ERROR
        assert result.failure.message == "Generation session crashed (attempt count unknown): controller bug"
        assert result.summary()["failure_message"] == result.failure.message
        assert gateway.history("req-1") == [RequestStatus.GENERATING, RequestStatus.FAILED]

    @pytest.mark.asyncio
    async def test_extractor_failure_degrades_request(self):
        gateway = InMemoryPersistenceGateway()
        orchestrator = make_orchestrator(
            ScriptedGenerator(VALID_CANDIDATE),
            gateway=gateway,
            extractor=BrokenExtractor()
        )

        result = await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()

        assert result.status == RequestStatus.DEGRADED
        assert result.enrichment is None
        assert result.document is not None
        assert gateway.history("req-1") == GENERATION_STATUSES + [RequestStatus.DEGRADED]

    @pytest.mark.asyncio
    async def test_enrichment_error_names_the_failing_stage(self, tmp_path):
        event_logger = StructuredJSONLogger(output_directory=str(tmp_path))
        orchestrator = make_orchestrator(
            ScriptedGenerator(VALID_CANDIDATE),
            extractor=BrokenExtractor(),
            event_logger=event_logger
        )

        await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()
        event_logger.close()

        entries = [
            json.loads(line)
            for line in (tmp_path / "pipeline.log").read_text(encoding="utf-8").splitlines()
        ]
        errors = [e for e in entries if e["event"] == "pipeline_error"]
        assert len(errors) == 1
        assert errors[0]["stage"] == "AssetPromptExtractor"
        assert errors[0]["error_type"] == "UNSUPPORTED_BLOCK_KIND"

    @pytest.mark.asyncio
    async def test_persistence_failures_do_not_change_outcome(self):
        gateway = InMemoryPersistenceGateway(fail_with=PersistenceError("store offline"))
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE), gateway=gateway)

        result = await orchestrator.process(orchestrator.create_request("Intro to loops"))
        await orchestrator.drain_persistence()

        assert result.status == RequestStatus.COMPLETE
        assert gateway.writes == []

    @pytest.mark.asyncio
    async def test_request_must_be_generating(self):
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE))
        request = ContentRequest(request_id="req-1", outline="Loops", status=RequestStatus.COMPLETE)

        with pytest.raises(ValueError):
            await orchestrator.process(request)

    @pytest.mark.asyncio
    async def test_file_system_gateway_end_state(self, tmp_path):
        gateway = FileSystemPersistenceGateway(base_output_dir=str(tmp_path))
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE), gateway=gateway)

        await orchestrator.process(orchestrator.create_request("Intro to loops", request_id="req-1"))
        await orchestrator.drain_persistence()

        status = json.loads((tmp_path / "req-1" / "status.json").read_text(encoding="utf-8"))
        assert status["status"] == "complete"
        assert [a["file"] for a in status["assets"]] == ["block_0.png", "block_2.png"]

    def test_create_request(self):
        orchestrator = make_orchestrator(ScriptedGenerator(VALID_CANDIDATE))

        first = orchestrator.create_request("Loops")
        second = orchestrator.create_request("Loops")

        assert first.status == RequestStatus.GENERATING
        assert first.request_id != second.request_id
        with pytest.raises(ValidationError):
            orchestrator.create_request("   ")


class TestPipelineResult:

    def test_summary_for_failed_request(self):
        request = ContentRequest(request_id="req-1", outline="Loops", status=RequestStatus.FAILED)
        session = GenerationSession(outline="Loops", max_attempts=1, attempts=1, state=SessionState.ABORTED)
        failure = SessionFailure(reason=FailureReason.GENERATION_ERROR, message="[LLM_TIMEOUT] slow")

        summary = PipelineResult(request=request, session=session, failure=failure).summary()

        assert summary == {
            "request_id": "req-1",
            "status": "failed",
            "attempts": 1,
            "failure_reason": "GenerationError",
            "failure_message": "[LLM_TIMEOUT] slow",
            "diagnostics": [],
        }


class TestCommandLine:

    def test_main_prints_summary(self, monkeypatch, capsys):
        captured = {}

        async def fake_run_cli(outline, config):
            captured["outline"] = outline
            captured["config"] = config
            request = ContentRequest(request_id="req-1", outline=outline, status=RequestStatus.FAILED)
            session = GenerationSession(outline=outline, max_attempts=config.max_attempts)
            return PipelineResult(request=request, session=session)

        monkeypatch.setattr(pipeline, "_run_cli", fake_run_cli)
        monkeypatch.setattr(pipeline, "configure_logging", lambda log_file=None: None)
        monkeypatch.delenv("LESSONFORGE_MAX_ATTEMPTS", raising=False)

        exit_code = pipeline.main(["Intro to loops", "--max-attempts", "2", "--output-dir", "out"])

        assert exit_code == 1
        assert captured["outline"] == "Intro to loops"
        assert captured["config"].max_attempts == 2
        assert captured["config"].base_output_dir == "out"
        assert json.loads(capsys.readouterr().out)["status"] == "failed"

    def test_invalid_max_attempts_exits_with_usage_error(self, monkeypatch):
        monkeypatch.setattr(pipeline, "configure_logging", lambda log_file=None: None)

        with pytest.raises(SystemExit) as exc_info:
            pipeline.main(["Intro to loops", "--max-attempts", "0"])

        assert exc_info.value.code == 2
