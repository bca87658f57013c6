"""Unit tests for Pydantic schema models."""

import pytest
from pydantic import ValidationError

from lessonforge.schemas import (
    BLOCK_TYPES,
    SCHEMA_CONTRACT,
    AssetPrompt,
    AssetResult,
    CodeBlock,
    ContentRequest,
    ConversationMessage,
    Diagnostic,
    EnrichmentOutcome,
    ExplanationBlock,
    GenerationSession,
    ImageBlock,
    InvalidTransitionError,
    LessonDocument,
    MediaKind,
    MessageRole,
    QuizBlock,
    QuizQuestion,
    RequestStatus,
    SessionFailure,
    FailureReason,
    ValidationResult,
)


MINIMAL_LESSON = {
    "title": "Loops",
    "blocks": [
        {"kind": "explanation", "body": "A loop repeats code."},
        {"kind": "quiz", "questions": [{"question": "How many?", "options": ["1", "2"], "answer": 1}]},
        {"kind": "code", "language": "ts", "code": "for (;;) {}"},
        {"kind": "image", "alt": "A track", "url": "https://example.com/track.png"},
    ],
}


class TestLessonDocument:
    """Tests for LessonDocument and its block union."""

    def test_valid_document(self):
        document = LessonDocument.model_validate(MINIMAL_LESSON)

        assert [type(b) for b in document.blocks] == [ExplanationBlock, QuizBlock, CodeBlock, ImageBlock]
        assert document.blocks[1].questions[0].answer == 1

    def test_empty_block_list_is_allowed(self):
        assert LessonDocument(title="Loops", blocks=[]).blocks == []

    def test_blank_title_raises_error(self):
        with pytest.raises(ValidationError) as exc_info:
            LessonDocument(title="   ", blocks=[])
        assert "title cannot be empty" in str(exc_info.value)

    def test_unknown_property_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            LessonDocument.model_validate({**MINIMAL_LESSON, "author": "me"})
        assert exc_info.value.errors()[0]["type"] == "extra_forbidden"

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            LessonDocument.model_validate({"title": "Loops", "blocks": [{"kind": "video"}]})
        assert exc_info.value.errors()[0]["type"] == "union_tag_invalid"

    def test_no_type_coercion(self):
        with pytest.raises(ValidationError):
            ExplanationBlock(kind="explanation", body=42)

    def test_document_is_frozen(self):
        document = LessonDocument.model_validate(MINIMAL_LESSON)
        with pytest.raises(ValidationError):
            document.title = "Other"

    def test_block_types_cover_the_union(self):
        assert set(BLOCK_TYPES) == {ExplanationBlock, QuizBlock, CodeBlock, ImageBlock}

    def test_schema_contract_lists_every_kind(self):
        for kind in ("explanation", "quiz", "code", "image"):
            assert f'kind: "{kind}";' in SCHEMA_CONTRACT
        assert "interface GeneratedLessonContent" in SCHEMA_CONTRACT


class TestQuizQuestion:

    @pytest.mark.parametrize("answer", [0, 2])
    def test_answer_within_options(self, answer):
        question = QuizQuestion(question="q", options=["a", "b", "c"], answer=answer)
        assert question.answer == answer

    @pytest.mark.parametrize("answer", [-1, 3])
    def test_answer_out_of_range(self, answer):
        with pytest.raises(ValidationError) as exc_info:
            QuizQuestion(question="q", options=["a", "b", "c"], answer=answer)
        assert f"answer {answer} is not a valid index into 3 option(s)" in str(exc_info.value)

    def test_boolean_answer_is_rejected(self):
        with pytest.raises(ValidationError):
            QuizQuestion(question="q", options=["a", "b"], answer=True)

    def test_empty_options_reject_every_answer(self):
        with pytest.raises(ValidationError):
            QuizQuestion(question="q", options=[], answer=0)


class TestCodeBlock:

    @pytest.mark.parametrize("language", ["ts", "js", "python"])
    def test_supported_languages(self, language):
        assert CodeBlock(kind="code", language=language, code="x").language == language

    def test_unsupported_language(self):
        with pytest.raises(ValidationError):
            CodeBlock(kind="code", language="rust", code="x")


class TestContentRequest:
    """Tests for the request lifecycle."""

    def test_defaults_to_generating(self):
        request = ContentRequest(request_id="r1", outline="Loops")
        assert request.status == RequestStatus.GENERATING
        assert not request.is_terminal

    @pytest.mark.parametrize("field", ["request_id", "outline"])
    def test_blank_fields_are_rejected(self, field):
        values = {"request_id": "r1", "outline": "Loops", field: "  "}
        with pytest.raises(ValidationError):
            ContentRequest(**values)

    @pytest.mark.parametrize("path", [
        [RequestStatus.CONTENT_READY, RequestStatus.ASSET_ENRICHING, RequestStatus.COMPLETE],
        [RequestStatus.CONTENT_READY, RequestStatus.ASSET_ENRICHING, RequestStatus.DEGRADED],
        [RequestStatus.FAILED],
    ])
    def test_allowed_paths(self, path):
        request = ContentRequest(request_id="r1", outline="Loops")
        for status in path:
            request.transition_to(status)
        assert request.status == path[-1]
        assert request.is_terminal

    @pytest.mark.parametrize("current,target", [
        (RequestStatus.GENERATING, RequestStatus.COMPLETE),
        (RequestStatus.GENERATING, RequestStatus.ASSET_ENRICHING),
        (RequestStatus.CONTENT_READY, RequestStatus.FAILED),
        (RequestStatus.COMPLETE, RequestStatus.DEGRADED),
        (RequestStatus.FAILED, RequestStatus.GENERATING),
    ])
    def test_forbidden_transitions(self, current, target):
        request = ContentRequest(request_id="r1", outline="Loops", status=current)
        with pytest.raises(InvalidTransitionError):
            request.transition_to(target)
        assert request.status == current


class TestGenerationSession:

    def test_append_message_and_remaining_attempts(self):
        session = GenerationSession(outline="Loops", max_attempts=3)
        message = session.append_message(MessageRole.USER, "hello")

        assert session.transcript == [message]
        assert message.to_provider_dict() == {"role": "user", "content": "hello"}
        assert session.attempts_remaining == 3
        assert not session.is_finished

    def test_messages_are_frozen(self):
        message = ConversationMessage(role=MessageRole.SYSTEM, content="x")
        with pytest.raises(ValidationError):
            message.content = "y"

    def test_document_and_failure_are_exclusive(self):
        with pytest.raises(ValidationError):
            GenerationSession(
                outline="Loops",
                max_attempts=1,
                document=LessonDocument(title="Loops", blocks=[]),
                failure=SessionFailure(reason=FailureReason.GENERATION_ERROR, message="x")
            )

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            GenerationSession(outline="Loops", max_attempts=0)


class TestValidationResult:

    def test_accepted(self):
        document = LessonDocument(title="Loops", blocks=[])
        result = ValidationResult.accepted(document)
        assert result.valid
        assert result.diagnostics == []

    def test_rejected_sorts_and_renders(self):
        result = ValidationResult.rejected([
            Diagnostic(line=5, column=1, path="blocks[1]", code="missing", message="Field required"),
            Diagnostic(line=2, column=3, code="NON_LITERAL", message="Only literal values are allowed"),
        ])

        assert result.diagnostics == [
            "2:3 Only literal values are allowed [NON_LITERAL]",
            "5:1 blocks[1]: Field required [missing]",
        ]

    def test_invalid_without_diagnostics_is_rejected(self):
        with pytest.raises(ValidationError):
            ValidationResult(valid=False)

    def test_valid_without_document_is_rejected(self):
        with pytest.raises(ValidationError):
            ValidationResult(valid=True)


class TestAssetSchemas:

    def test_blank_prompt_text_is_rejected(self):
        with pytest.raises(ValidationError):
            AssetPrompt(prompt_text="  ", block_index=0, media_kind=MediaKind.IMAGE)

    def test_negative_block_index_is_rejected(self):
        with pytest.raises(ValidationError):
            AssetPrompt(prompt_text="x", block_index=-1, media_kind=MediaKind.IMAGE)

    def test_empty_asset_data_is_rejected(self):
        with pytest.raises(ValidationError):
            AssetResult(block_index=0, data=b"", media_type="image/png")

    def test_outcome_counts_and_merge(self):
        outcome = EnrichmentOutcome(
            successes=[
                AssetResult(block_index=4, data=b"b", media_type="image/png"),
                AssetResult(block_index=1, data=b"a", media_type="image/png"),
            ],
            failure_count=1,
            failed_block_indices=[2],
        )

        assert outcome.total == 3
        assert not outcome.is_complete
        assert sorted(outcome.by_block_index()) == [1, 4]

    def test_outcome_rejects_duplicate_successes(self):
        result = AssetResult(block_index=1, data=b"a", media_type="image/png")
        with pytest.raises(ValidationError):
            EnrichmentOutcome(successes=[result, result])

    def test_outcome_rejects_inconsistent_failure_count(self):
        with pytest.raises(ValidationError):
            EnrichmentOutcome(failure_count=2, failed_block_indices=[0])
