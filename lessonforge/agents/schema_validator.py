"""Schema Validator Agent for checking generated lesson candidates.

This agent turns raw model output into a trusted ``LessonDocument`` or a list
of diagnostics. Validation runs in three steps:

1. A cheap pre-filter (empty text, bad encoding, missing declaration markers)
2. Static reading of the declaration literal (see ``declaration_reader``)
3. Strict structural/type checking against the pydantic lesson schema

The candidate is never executed. Every step is pure, so the agent is safe to
call repeatedly on model-influenced input and yields identical diagnostics for
identical input.
"""

import re
from typing import Any, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from lessonforge.agents.base import Agent, AgentInput
from lessonforge.agents.declaration_reader import (
    DeclarationReader,
    DeclarationSyntaxError,
    ParsedDeclaration,
    Path,
)
from lessonforge.schemas.lesson import DECLARATION_NAME, DECLARATION_TYPE, LessonDocument
from lessonforge.schemas.validation import Diagnostic, ValidationResult


MAX_CANDIDATE_LENGTH = 200_000

_DECLARATION_MARKER = re.compile(rf"\bconst\s+{DECLARATION_NAME}\b")


class SchemaValidatorInput(AgentInput):
    """Input for Schema Validator Agent.

    Attributes:
        candidate: Raw candidate text (or bytes) from one generation attempt
    """

    def __init__(self, candidate: Union[str, bytes]):
        self.candidate = candidate


class SchemaValidatorAgent(Agent):
    """Agent responsible for validating generated lesson candidates.

    Produces a ValidationResult: either ``valid`` with the compiled, frozen
    LessonDocument, or invalid with diagnostics sorted by
    (line, column, path, message).
    """

    stage_name = "SchemaValidator"

    def execute(self, input_data: SchemaValidatorInput) -> ValidationResult:
        """Validate the candidate carried by ``input_data``.

        Args:
            input_data: SchemaValidatorInput with the candidate text

        Returns:
            ValidationResult for the candidate

        Raises:
            AgentExecutionError: If input_data is not a SchemaValidatorInput
        """
        self._require_valid_input(input_data, "SchemaValidatorInput with str or bytes candidate")
        return self.validate(input_data.candidate)

    def validate_input(self, input_data: Any) -> bool:
        return (
            isinstance(input_data, SchemaValidatorInput)
            and isinstance(input_data.candidate, (str, bytes))
        )

    def validate(self, candidate: Union[str, bytes]) -> ValidationResult:
        """Validate one candidate.

        Args:
            candidate: Raw candidate text; bytes must be UTF-8

        Returns:
            ValidationResult, never raises for bad candidate content
        """
        text, rejection = self._prefilter(candidate)
        if rejection is not None:
            return ValidationResult.rejected([rejection])

        try:
            declaration = DeclarationReader.read(text)
        except DeclarationSyntaxError as e:
            return ValidationResult.rejected([
                Diagnostic(line=e.line, column=e.column, path="", code=e.code, message=e.message)
            ])

        try:
            document = LessonDocument.model_validate(declaration.value)
        except ValidationError as e:
            return ValidationResult.rejected(self._extract_diagnostics(e, declaration))

        return ValidationResult.accepted(document)

    def _prefilter(self, candidate: Union[str, bytes]) -> Tuple[str, Optional[Diagnostic]]:
        """Reject candidates that are not worth reading.

        Returns:
            (text, None) when the candidate should be read, otherwise
            ("", Diagnostic) with the single rejection reason
        """
        if isinstance(candidate, bytes):
            try:
                candidate = candidate.decode("utf-8")
            except UnicodeDecodeError:
                return "", self._rejection("INVALID_ENCODING", "Candidate is not valid UTF-8 text")
        elif not isinstance(candidate, str):
            return "", self._rejection(
                "INVALID_ENCODING",
                f"Candidate must be text, got {type(candidate).__name__}"
            )
        else:
            try:
                candidate.encode("utf-8")
            except UnicodeEncodeError:
                return "", self._rejection("INVALID_ENCODING", "Candidate contains characters that are not valid text")

        if not candidate.strip():
            return "", self._rejection("EMPTY_CANDIDATE", "Candidate is empty")
        if len(candidate) > MAX_CANDIDATE_LENGTH:
            return "", self._rejection(
                "CANDIDATE_TOO_LARGE",
                f"Candidate is {len(candidate)} characters, limit is {MAX_CANDIDATE_LENGTH}"
            )
        if not _DECLARATION_MARKER.search(candidate) or DECLARATION_TYPE not in candidate:
            return "", self._rejection(
                "MISSING_DECLARATION",
                f"Expected a declaration 'const {DECLARATION_NAME}: {DECLARATION_TYPE} = {{...}}'"
            )
        return candidate, None

    @staticmethod
    def _rejection(code: str, message: str) -> Diagnostic:
        return Diagnostic(line=1, column=1, path="", code=code, message=message)

    def _extract_diagnostics(
        self,
        validation_error: ValidationError,
        declaration: ParsedDeclaration
    ) -> List[Diagnostic]:
        """Map pydantic errors onto positioned diagnostics.

        Args:
            validation_error: Pydantic ValidationError from LessonDocument
            declaration: The declaration the errors refer to

        Returns:
            One Diagnostic per pydantic error
        """
        diagnostics: List[Diagnostic] = []

        for error in validation_error.errors():
            value_path, rendered = _split_location(error["loc"], declaration.value)
            error_type = error["type"]

            if error_type == "union_tag_invalid":
                # Point at the offending tag rather than the whole block.
                value_path = value_path + ("kind",)
                rendered = rendered + ["kind"]

            message = error["msg"]
            if error_type == "value_error" and message.startswith("Value error, "):
                message = message[len("Value error, "):]

            line, column = declaration.position_of(value_path)
            diagnostics.append(Diagnostic(
                line=line,
                column=column,
                path=render_path(rendered),
                code=error_type,
                message=message
            ))

        return diagnostics


def _split_location(loc: Sequence[Union[str, int]], data: Any) -> Tuple[Path, List[Union[str, int]]]:
    """Split a pydantic error location into a value path and a display path.

    The value path is the longest prefix of ``loc`` that exists in ``data``.
    The display path is ``loc`` with discriminator tags removed: pydantic
    inserts the block's ``kind`` right after its list index.
    """
    node = data
    resolved: List[Union[str, int]] = []
    rendered: List[Union[str, int]] = []
    descending = True
    after_index = False

    for part in loc:
        if (
            descending
            and after_index
            and isinstance(part, str)
            and isinstance(node, dict)
            and node.get("kind") == part
        ):
            after_index = False
            continue

        rendered.append(part)
        after_index = isinstance(part, int)
        if not descending:
            continue

        if isinstance(node, dict) and isinstance(part, str) and part in node:
            node = node[part]
            resolved.append(part)
        elif isinstance(node, list) and isinstance(part, int) and 0 <= part < len(node):
            node = node[part]
            resolved.append(part)
        else:
            descending = False

    return tuple(resolved), rendered


def render_path(parts: Sequence[Union[str, int]]) -> str:
    """Render ``("blocks", 2, "questions", 0)`` as ``blocks[2].questions[0]``."""
    rendered = ""
    for part in parts:
        if isinstance(part, int):
            rendered += f"[{part}]"
        elif rendered:
            rendered += f".{part}"
        else:
            rendered = str(part)
    return rendered
