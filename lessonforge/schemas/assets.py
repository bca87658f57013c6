"""Asset directive and enrichment outcome schemas."""

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MediaKind(str, Enum):
    DIAGRAM = "diagram"
    IMAGE = "image"


class AssetPrompt(BaseModel):
    """Media-generation directive bound to the block it came from."""

    model_config = ConfigDict(frozen=True)

    prompt_text: str = Field(..., description="Prompt sent to the media backend")
    block_index: int = Field(
        ...,
        ge=0,
        description="Position of the originating block in LessonDocument.blocks"
    )
    media_kind: MediaKind

    @field_validator("prompt_text")
    @classmethod
    def validate_prompt_text(cls, v: str) -> str:
        """Ensure prompt_text is not empty."""
        if not v or not v.strip():
            raise ValueError("prompt_text cannot be empty")
        return v


class AssetResult(BaseModel):
    """Successfully generated asset for one block."""

    model_config = ConfigDict(frozen=True)

    block_index: int = Field(..., ge=0)
    data: bytes = Field(..., description="Raw asset bytes")
    media_type: str = Field(..., description="MIME type of data, e.g. image/png")

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: bytes) -> bytes:
        """Ensure no empty asset is ever recorded."""
        if not v:
            raise ValueError("data cannot be empty")
        return v

    @field_validator("media_type")
    @classmethod
    def validate_media_type(cls, v: str) -> str:
        """Ensure media_type looks like a MIME type."""
        if "/" not in v:
            raise ValueError(f"media_type must be a MIME type, got '{v}'")
        return v


class EnrichmentOutcome(BaseModel):
    """
    Aggregate of one enrichment pass.

    ``successes`` are in completion order, which is unspecified; consumers
    merge by ``block_index`` through ``by_block_index()``.
    """

    successes: List[AssetResult] = Field(default_factory=list)
    failure_count: int = Field(0, ge=0)
    failed_block_indices: List[int] = Field(
        default_factory=list,
        description="Block indices whose asset could not be generated, ascending"
    )

    @model_validator(mode="after")
    def validate_counts(self) -> "EnrichmentOutcome":
        """Keep failure_count consistent with the recorded failed indices."""
        if self.failed_block_indices and len(self.failed_block_indices) != self.failure_count:
            raise ValueError(
                f"failure_count {self.failure_count} does not match "
                f"{len(self.failed_block_indices)} failed block indices"
            )
        indices = [result.block_index for result in self.successes]
        if len(indices) != len(set(indices)):
            raise ValueError("successes contain duplicate block indices")
        return self

    @property
    def total(self) -> int:
        return len(self.successes) + self.failure_count

    @property
    def is_complete(self) -> bool:
        return self.failure_count == 0

    def by_block_index(self) -> Dict[int, AssetResult]:
        """Index-keyed view of the successful assets."""
        return {result.block_index: result for result in self.successes}
