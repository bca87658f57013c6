"""Request, conversation and session state schemas."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lessonforge.schemas.lesson import LessonDocument


class RequestStatus(str, Enum):
    """Lifecycle status of a content request."""
    GENERATING = "generating"
    CONTENT_READY = "content_ready"
    ASSET_ENRICHING = "asset_enriching"
    COMPLETE = "complete"
    DEGRADED = "degraded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.GENERATING: frozenset({RequestStatus.CONTENT_READY, RequestStatus.FAILED}),
    RequestStatus.CONTENT_READY: frozenset({RequestStatus.ASSET_ENRICHING}),
    RequestStatus.ASSET_ENRICHING: frozenset({RequestStatus.COMPLETE, RequestStatus.DEGRADED}),
    RequestStatus.COMPLETE: frozenset(),
    RequestStatus.DEGRADED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a request is moved to a status its current status cannot reach."""

    def __init__(self, current: RequestStatus, target: RequestStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move request from '{current.value}' to '{target.value}'")


class ContentRequest(BaseModel):
    """
    In-memory projection of a lesson request.

    The caller owns the persisted record; the pipeline only moves this
    projection through its lifecycle.
    """

    request_id: str = Field(..., description="Identifier assigned by the caller")
    outline: str = Field(..., description="Topic outline the lesson is generated from")
    status: RequestStatus = Field(
        default=RequestStatus.GENERATING,
        description="Current lifecycle status"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp when the request was created"
    )

    @field_validator("request_id", "outline")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Ensure identifier and outline are not blank."""
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: RequestStatus) -> None:
        """Move the request to ``target``, enforcing the lifecycle."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, target)
        self.status = target


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"


class ConversationMessage(BaseModel):
    """One message of a generation transcript."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str

    def to_provider_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class SessionState(str, Enum):
    """States of the generate-then-validate loop."""
    AWAITING_GENERATION = "AWAITING_GENERATION"
    AWAITING_VALIDATION = "AWAITING_VALIDATION"
    ACCEPTED = "ACCEPTED"
    EXHAUSTED = "EXHAUSTED"
    ABORTED = "ABORTED"


class FailureReason(str, Enum):
    VALIDATION_EXHAUSTED = "ValidationExhausted"
    GENERATION_ERROR = "GenerationError"


class SessionFailure(BaseModel):
    """Terminal failure of a generation session."""

    reason: FailureReason
    message: str
    diagnostics: List[str] = Field(
        default_factory=list,
        description="Diagnostics of the last rejected attempt, if any"
    )


class AttemptRecord(BaseModel):
    """Outcome of one generate-then-validate cycle."""

    attempt: int = Field(..., ge=1)
    candidate: Optional[str] = Field(None, description="Raw candidate text, None if generation failed")
    diagnostics: List[str] = Field(default_factory=list)
    accepted: bool = False


class GenerationSession(BaseModel):
    """
    Explicit state of one generation session.

    The transcript is append-only: later attempts see every earlier feedback
    message, so nothing here reorders or truncates it.
    """

    outline: str
    max_attempts: int = Field(..., ge=1)
    state: SessionState = SessionState.AWAITING_GENERATION
    attempts: int = Field(0, ge=0, description="Generator calls issued so far")
    transcript: List[ConversationMessage] = Field(default_factory=list)
    attempt_log: List[AttemptRecord] = Field(default_factory=list)
    document: Optional[LessonDocument] = None
    failure: Optional[SessionFailure] = None

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempts

    @property
    def is_finished(self) -> bool:
        return self.state in (SessionState.ACCEPTED, SessionState.EXHAUSTED, SessionState.ABORTED)

    def append_message(self, role: MessageRole, content: str) -> ConversationMessage:
        """Append a message to the transcript and return it."""
        message = ConversationMessage(role=role, content=content)
        self.transcript.append(message)
        return message

    @model_validator(mode="after")
    def validate_outcome(self) -> "GenerationSession":
        """A session cannot hold both an accepted document and a failure."""
        if self.document is not None and self.failure is not None:
            raise ValueError("session cannot have both a document and a failure")
        return self
