"""Schema validation result contracts."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from lessonforge.schemas.lesson import LessonDocument


class Diagnostic(BaseModel):
    """Single validation message tied to a position in the candidate text."""

    model_config = ConfigDict(frozen=True)

    line: int = Field(..., ge=1)
    column: int = Field(..., ge=1)
    path: str = Field("", description="Dotted path of the offending value, empty at top level")
    code: str = Field(..., description="Machine-readable diagnostic code")
    message: str

    def sort_key(self):
        return (self.line, self.column, self.path, self.message)

    def __str__(self) -> str:
        location = f"{self.line}:{self.column}"
        if self.path:
            return f"{location} {self.path}: {self.message} [{self.code}]"
        return f"{location} {self.message} [{self.code}]"


class ValidationResult(BaseModel):
    """
    Outcome of validating one candidate.

    Either ``valid`` with a compiled document, or invalid with at least one
    diagnostic; never both.
    """

    valid: bool
    compiled_document: Optional[LessonDocument] = None
    diagnostics: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_consistency(self) -> "ValidationResult":
        if self.valid:
            if self.compiled_document is None or self.diagnostics:
                raise ValueError("valid result needs a compiled document and no diagnostics")
        else:
            if self.compiled_document is not None or not self.diagnostics:
                raise ValueError("invalid result needs diagnostics and no compiled document")
        return self

    @classmethod
    def accepted(cls, document: LessonDocument) -> "ValidationResult":
        return cls(valid=True, compiled_document=document)

    @classmethod
    def rejected(cls, diagnostics: List[Diagnostic]) -> "ValidationResult":
        ordered = sorted(diagnostics, key=Diagnostic.sort_key)
        return cls(valid=False, diagnostics=[str(d) for d in ordered])
