"""Lesson document schema enforced on every generated candidate.

The block list is a tagged union discriminated by ``kind``. All models are
strict (no type coercion), reject unknown properties and are frozen, so a
compiled ``LessonDocument`` is the one artifact downstream stages can trust.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SCHEMA_VERSION = "2"

# Name the generated declaration must bind and the type it must be declared as.
DECLARATION_NAME = "lesson"
DECLARATION_TYPE = "GeneratedLessonContent"


class _SchemaModel(BaseModel):
    """Base for all lesson schema models."""

    model_config = ConfigDict(strict=True, extra="forbid", frozen=True)


class ExplanationBlock(_SchemaModel):
    """Prose block, optionally carrying an inline SVG or a diagram directive."""

    kind: Literal["explanation"]
    heading: Optional[str] = Field(None, description="Optional block heading")
    body: str = Field(..., description="Explanation text")
    svgDiagram: Optional[str] = Field(
        None,
        description="Inline SVG markup supplied directly by the model"
    )
    svgGenerationPrompt: Optional[str] = Field(
        None,
        description="Directive asking for a generated diagram for this block"
    )


class QuizQuestion(_SchemaModel):
    """Single multiple-choice question."""

    question: str
    options: List[str]
    answer: int = Field(..., description="Index into options of the correct answer")
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def validate_answer_index(self) -> "QuizQuestion":
        """Ensure answer points at an existing option."""
        if not 0 <= self.answer < len(self.options):
            raise ValueError(
                f"answer {self.answer} is not a valid index into "
                f"{len(self.options)} option(s)"
            )
        return self


class QuizBlock(_SchemaModel):
    """Quiz made of one or more questions."""

    kind: Literal["quiz"]
    description: Optional[str] = None
    questions: List[QuizQuestion]


class CodeBlock(_SchemaModel):
    """Code sample with optional expected output."""

    kind: Literal["code"]
    language: Literal["ts", "js", "python"]
    code: str
    output: Optional[str] = None


class ImageBlock(_SchemaModel):
    """Image placeholder, either linked or produced from a directive."""

    kind: Literal["image"]
    alt: str
    url: Optional[str] = None
    imageGenerationPrompt: Optional[str] = Field(
        None,
        description="Directive asking for a generated image for this block"
    )


LessonBlock = Annotated[
    Union[ExplanationBlock, QuizBlock, CodeBlock, ImageBlock],
    Field(discriminator="kind"),
]

# Every variant of the union; consumers that dispatch on block type are
# tested against this tuple so a new kind cannot be silently skipped.
BLOCK_TYPES = (ExplanationBlock, QuizBlock, CodeBlock, ImageBlock)


class LessonDocument(_SchemaModel):
    """
    Compiled lesson document.

    Produced only by the schema validator from a candidate that passed every
    structural and type check.
    """

    title: str
    blocks: List[LessonBlock]

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Ensure title is not blank."""
        if not v.strip():
            raise ValueError("title cannot be empty")
        return v

    model_config = ConfigDict(
        strict=True,
        extra="forbid",
        frozen=True,
        json_schema_extra={
            "example": {
                "title": "Intro to loops",
                "blocks": [
                    {
                        "kind": "explanation",
                        "heading": "What is a loop?",
                        "body": "A loop repeats a block of code...",
                        "svgGenerationPrompt": "a flowchart of a for loop"
                    },
                    {
                        "kind": "quiz",
                        "questions": [
                            {
                                "question": "How many times does range(3) iterate?",
                                "options": ["2", "3", "4"],
                                "answer": 1
                            }
                        ]
                    }
                ]
            }
        }
    )


SCHEMA_CONTRACT = f"""// lesson schema version {SCHEMA_VERSION}
interface {DECLARATION_TYPE} {{
  title: string;
  blocks: GeneratedLessonBlock[];
}}

type GeneratedLessonBlock =
  | ExplanationBlock
  | QuizBlock
  | CodeBlock
  | ImageBlock;

interface ExplanationBlock {{
  kind: "explanation";
  heading?: string;
  body: string;
  svgDiagram?: string;
  svgGenerationPrompt?: string;
}}

interface QuizBlock {{
  kind: "quiz";
  description?: string;
  questions: {{
    question: string;
    options: string[];
    answer: number; // index into options
    explanation?: string;
  }}[];
}}

interface CodeBlock {{
  kind: "code";
  language: "ts" | "js" | "python";
  code: string;
  output?: string;
}}

interface ImageBlock {{
  kind: "image";
  alt: string;
  url?: string;
  imageGenerationPrompt?: string;
}}
"""
