"""Retry feedback controller: the generate-then-validate loop.

One session is a bounded sequence of attempts. Each attempt calls the
generator with the whole transcript and validates the candidate. A rejected
candidate is fed back as one new user message holding every diagnostic and
the verbatim candidate, so the next attempt sees exactly what went wrong.

State machine::

    AWAITING_GENERATION -> AWAITING_VALIDATION -> ACCEPTED
                                               -> AWAITING_GENERATION (attempts left)
                                               -> EXHAUSTED
    AWAITING_GENERATION -> ABORTED (GenerationError)

All state lives in an explicit GenerationSession, so the loop can be driven
and inspected with scripted generators and validators.
"""

import time
from typing import Callable, Optional, Sequence, Union

from lessonforge.agents.content_generator import GenerationError
from lessonforge.orchestrator.logger import StructuredJSONLogger
from lessonforge.schemas.lesson import SCHEMA_CONTRACT, LessonDocument
from lessonforge.schemas.session import (
    AttemptRecord,
    FailureReason,
    GenerationSession,
    MessageRole,
    SessionFailure,
    SessionState,
)


DEFAULT_MAX_ATTEMPTS = 5


def build_system_prompt() -> str:
    """Fixed instructions: output format, schema contract and content guidelines."""
    return f"""You are an expert educator who writes short interactive lessons.

Respond with exactly one TypeScript declaration and nothing else:

const lesson: GeneratedLessonContent = {{ ... }};

The value must satisfy this schema:

{SCHEMA_CONTRACT}
CONTENT GUIDELINES:
1. Use 6-8 blocks that build on one another.
2. Mix block kinds: explanations, at least one quiz, and a code sample where it helps.
3. To request a diagram, set svgGenerationPrompt on an explanation block to a short description of the picture.
4. To request an illustration, add an image block with alt text and an imageGenerationPrompt.
5. Quiz answers are zero-based indexes into options.

OUTPUT RULES:
- Use only literal values: strings, numbers, booleans, arrays and objects.
- Do NOT wrap the code in markdown fences.
- Do NOT add comments, imports or any other statements.
"""


def build_outline_message(outline: str) -> str:
    return f'Lesson outline: "{outline}"'


def build_feedback_message(diagnostics: Sequence[str], candidate: str) -> str:
    """Feedback for one rejected attempt.

    Args:
        diagnostics: Every diagnostic of the attempt, in order
        candidate: The rejected candidate, included verbatim

    Returns:
        Message text for the next user turn
    """
    joined = "\n".join(diagnostics)
    return (
        "The previous TypeScript code failed with these errors:\n"
        f"{joined}\n\n"
        "Previous generated code:\n"
        f"```typescript\n{candidate}\n```\n\n"
        "Please regenerate valid code that fixes these issues."
    )


class RetryFeedbackController:
    """Drives one generation session to acceptance, exhaustion or abort.

    ``generator`` needs ``async generate(messages, timeout_seconds=None) -> str``
    (StructuredContentGenerator) and ``validator`` needs
    ``validate(candidate) -> ValidationResult`` (SchemaValidatorAgent).
    Attempts run strictly one after another.
    """

    def __init__(
        self,
        generator,
        validator,
        event_logger: Optional[StructuredJSONLogger] = None,
        session_timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the controller.

        Args:
            generator: Candidate producer, one call per attempt
            validator: Candidate checker
            event_logger: Structured logger; console-only if None
            session_timeout_seconds: Optional deadline for the whole session
            clock: Monotonic clock used for the deadline
        """
        self.generator = generator
        self.validator = validator
        self.event_logger = event_logger or StructuredJSONLogger()
        self.session_timeout_seconds = session_timeout_seconds
        self.clock = clock

    async def run(
        self,
        outline: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        request_id: Optional[str] = None
    ) -> Union[LessonDocument, SessionFailure]:
        """Run a session and return its document or its failure."""
        session = await self.run_session(outline, max_attempts=max_attempts, request_id=request_id)
        if session.state == SessionState.ACCEPTED:
            return session.document
        return session.failure

    async def run_session(
        self,
        outline: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        request_id: Optional[str] = None
    ) -> GenerationSession:
        """Run a session and return its full state.

        Args:
            outline: Lesson outline sent as the first user message
            max_attempts: Upper bound on generator calls
            request_id: Optional request identifier for log entries

        Returns:
            Finished GenerationSession (ACCEPTED, EXHAUSTED or ABORTED)

        Raises:
            ValueError: If max_attempts < 1
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        session = GenerationSession(outline=outline, max_attempts=max_attempts)
        session.append_message(MessageRole.SYSTEM, build_system_prompt())
        session.append_message(MessageRole.USER, build_outline_message(outline))
        self.event_logger.log_session_start(outline, max_attempts, request_id=request_id)

        deadline = None
        if self.session_timeout_seconds is not None:
            deadline = self.clock() + self.session_timeout_seconds

        while True:
            try:
                call_timeout = self._remaining_budget(deadline)
            except GenerationError as e:
                # No call was made, so the last attempt stays the last record.
                return self._abort(session, session.attempts, e, request_id, record_attempt=False)

            attempt = session.attempts + 1
            self.event_logger.log_attempt_start(attempt, max_attempts, request_id=request_id)
            start_time = time.time()

            try:
                session.attempts = attempt
                candidate = await self.generator.generate(
                    list(session.transcript),
                    timeout_seconds=call_timeout
                )
            except GenerationError as e:
                return self._abort(session, attempt, e, request_id)

            session.state = SessionState.AWAITING_VALIDATION
            result = self.validator.validate(candidate)
            duration_ms = (time.time() - start_time) * 1000

            if result.valid:
                session.attempt_log.append(
                    AttemptRecord(attempt=attempt, candidate=candidate, accepted=True)
                )
                session.document = result.compiled_document
                session.state = SessionState.ACCEPTED
                self.event_logger.log_attempt_accepted(
                    attempt,
                    duration_ms,
                    len(result.compiled_document.blocks),
                    request_id=request_id
                )
                return session

            session.attempt_log.append(
                AttemptRecord(attempt=attempt, candidate=candidate, diagnostics=result.diagnostics)
            )
            self.event_logger.log_attempt_rejected(
                attempt,
                result.diagnostics,
                session.attempts_remaining,
                duration_ms,
                request_id=request_id
            )

            if session.attempts_remaining == 0:
                session.failure = SessionFailure(
                    reason=FailureReason.VALIDATION_EXHAUSTED,
                    message=f"No valid lesson after {max_attempts} attempt(s)",
                    diagnostics=result.diagnostics
                )
                session.state = SessionState.EXHAUSTED
                return session

            session.append_message(MessageRole.USER, build_feedback_message(result.diagnostics, candidate))
            session.state = SessionState.AWAITING_GENERATION

    def _remaining_budget(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise GenerationError(
                "SESSION_DEADLINE_EXCEEDED",
                f"Session exceeded its {self.session_timeout_seconds}s deadline",
                {"session_timeout_seconds": self.session_timeout_seconds}
            )
        return remaining

    def _abort(
        self,
        session: GenerationSession,
        attempt: int,
        error: GenerationError,
        request_id: Optional[str],
        record_attempt: bool = True
    ) -> GenerationSession:
        if record_attempt:
            session.attempt_log.append(AttemptRecord(attempt=attempt, candidate=None))
        session.failure = SessionFailure(
            reason=FailureReason.GENERATION_ERROR,
            message=str(error)
        )
        session.state = SessionState.ABORTED
        self.event_logger.log_attempt_failure(
            attempt,
            error.error_code,
            error.message,
            request_id=request_id
        )
        return session
