"""Asset Prompt Extractor Agent.

Walks a compiled lesson and emits one media directive per block that asks for
a generated asset. Each directive keeps the position of its block so results
can be merged back by index after concurrent synthesis.
"""

from typing import Any, List, Optional

from lessonforge.agents.base import Agent, AgentExecutionError
from lessonforge.schemas.assets import AssetPrompt, MediaKind
from lessonforge.schemas.lesson import CodeBlock, ExplanationBlock, ImageBlock, LessonDocument, QuizBlock


DIAGRAM_PROMPT_TEMPLATE = "Generate a simple **svg** for the following: {directive}"
IMAGE_PROMPT_TEMPLATE = "Generate a png for the following image: {directive}"


class AssetPromptExtractor(Agent):
    """Agent responsible for extracting media directives from a lesson.

    Rules per block kind:
    - explanation with a non-blank ``svgGenerationPrompt`` -> one diagram prompt
    - image with a non-blank ``imageGenerationPrompt`` -> one image prompt
    - quiz and code -> nothing

    Any other block object is a precondition violation and raises
    UNSUPPORTED_BLOCK_KIND.
    """

    stage_name = "AssetPromptExtractor"

    def execute(self, input_data: LessonDocument) -> List[AssetPrompt]:
        return self.extract(input_data)

    def validate_input(self, input_data: Any) -> bool:
        return isinstance(input_data, LessonDocument)

    def extract(self, document: LessonDocument) -> List[AssetPrompt]:
        """Extract directives in block order.

        Args:
            document: Compiled lesson; never modified

        Returns:
            AssetPrompts whose block_index is the block's position in
            document.blocks

        Raises:
            AgentExecutionError: If document is not a LessonDocument or holds
                a block of an unknown kind
        """
        self._require_valid_input(document, "a compiled LessonDocument")

        prompts: List[AssetPrompt] = []
        for index, block in enumerate(document.blocks):
            prompt = self._prompt_for_block(index, block)
            if prompt is not None:
                prompts.append(prompt)
        return prompts

    def _prompt_for_block(self, index: int, block: Any) -> Optional[AssetPrompt]:
        if isinstance(block, ExplanationBlock):
            if _has_directive(block.svgGenerationPrompt):
                return AssetPrompt(
                    prompt_text=DIAGRAM_PROMPT_TEMPLATE.format(directive=block.svgGenerationPrompt),
                    block_index=index,
                    media_kind=MediaKind.DIAGRAM
                )
            return None
        elif isinstance(block, ImageBlock):
            if _has_directive(block.imageGenerationPrompt):
                return AssetPrompt(
                    prompt_text=IMAGE_PROMPT_TEMPLATE.format(directive=block.imageGenerationPrompt),
                    block_index=index,
                    media_kind=MediaKind.IMAGE
                )
            return None
        elif isinstance(block, (QuizBlock, CodeBlock)):
            return None

        raise AgentExecutionError(
            "UNSUPPORTED_BLOCK_KIND",
            f"Block {index} is not a known lesson block",
            {"block_index": index, "block_type": type(block).__name__}
        )


def _has_directive(value: Optional[str]) -> bool:
    return value is not None and bool(value.strip())
