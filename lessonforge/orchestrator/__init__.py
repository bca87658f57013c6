"""Pipeline orchestration components.

This package avoids importing ``lessonforge.orchestrator.pipeline`` at module
import time. Doing so would pre-load the module before
``python -m lessonforge.orchestrator.pipeline`` executes it, which triggers
runpy's "found in sys.modules" RuntimeWarning.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lessonforge.orchestrator.feedback_loop import RetryFeedbackController
    from lessonforge.orchestrator.pipeline import Orchestrator, PipelineConfig, PipelineResult

__all__ = ["Orchestrator", "PipelineConfig", "PipelineResult", "RetryFeedbackController"]


def __getattr__(name: str):
    """Lazily expose orchestrator symbols without eager pipeline imports."""
    if name == "RetryFeedbackController":
        from lessonforge.orchestrator.feedback_loop import RetryFeedbackController

        return RetryFeedbackController
    if name in __all__:
        from lessonforge.orchestrator.pipeline import Orchestrator, PipelineConfig, PipelineResult

        mapping = {
            "Orchestrator": Orchestrator,
            "PipelineConfig": PipelineConfig,
            "PipelineResult": PipelineResult,
        }
        return mapping[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
