"""Pydantic schemas for data contracts between agents."""

from lessonforge.schemas.assets import AssetPrompt, AssetResult, EnrichmentOutcome, MediaKind
from lessonforge.schemas.lesson import (
    BLOCK_TYPES,
    SCHEMA_CONTRACT,
    SCHEMA_VERSION,
    CodeBlock,
    ExplanationBlock,
    ImageBlock,
    LessonBlock,
    LessonDocument,
    QuizBlock,
    QuizQuestion,
)
from lessonforge.schemas.session import (
    AttemptRecord,
    ContentRequest,
    ConversationMessage,
    FailureReason,
    GenerationSession,
    InvalidTransitionError,
    MessageRole,
    RequestStatus,
    SessionFailure,
    SessionState,
)
from lessonforge.schemas.validation import Diagnostic, ValidationResult

__all__ = [
    # Lesson
    "SCHEMA_VERSION",
    "SCHEMA_CONTRACT",
    "BLOCK_TYPES",
    "ExplanationBlock",
    "QuizQuestion",
    "QuizBlock",
    "CodeBlock",
    "ImageBlock",
    "LessonBlock",
    "LessonDocument",
    # Session
    "RequestStatus",
    "InvalidTransitionError",
    "ContentRequest",
    "MessageRole",
    "ConversationMessage",
    "SessionState",
    "FailureReason",
    "SessionFailure",
    "AttemptRecord",
    "GenerationSession",
    # Validation
    "Diagnostic",
    "ValidationResult",
    # Assets
    "MediaKind",
    "AssetPrompt",
    "AssetResult",
    "EnrichmentOutcome",
]
