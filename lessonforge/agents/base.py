"""Base Agent interface for the lesson generation pipeline

This module defines the core Agent interface that all pipeline agents implement.
Each agent has a single responsibility and explicit input/output contracts.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class AgentInput(ABC):
    """Base class for agent input data

    All agent-specific input classes should inherit from this base class.
    """
    pass


class AgentExecutionError(Exception):
    """Exception raised for unrecoverable agent execution failures

    Attributes:
        error_code: Machine-readable error code
        message: Human-readable error message
        context: Additional context about the failure
    """

    def __init__(self, error_code: str, message: str, context: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.context = context or {}
        super().__init__(f"[{error_code}] {message}")


class Agent(ABC):
    """Base interface for all pipeline agents

    Each agent implements a single stage of the lesson pipeline with explicit
    inputs, outputs, and failure modes. Agents are designed to be composable
    and testable in isolation, with scripted stand-ins for external services.

    The agent interface provides two core methods:
    - execute(): Perform the agent's primary task
    - validate_input(): Verify input conforms to the expected type
    """

    #: Reported as the `stage` of asset_failure and pipeline_error log entries
    stage_name: str = "Agent"

    @abstractmethod
    def execute(self, input_data: Any) -> Any:
        """Execute the agent's primary task

        Args:
            input_data: Agent-specific input object conforming to expected schema

        Returns:
            Agent-specific output object (or an awaitable of it for I/O-bound agents)

        Raises:
            AgentExecutionError: For unrecoverable failures that should abort the stage
        """
        pass

    def validate_input(self, input_data: Any) -> bool:
        """Validate input conforms to expected schema

        Args:
            input_data: Agent-specific input object to validate

        Returns:
            True if input is valid, False otherwise

        Note:
            This method should perform type/shape checks only, not business logic.
            It should be fast and deterministic.
        """
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement validate_input()"
        )

    def _require_valid_input(self, input_data: Any, expected: str) -> None:
        """Raise INVALID_INPUT if validate_input() rejects input_data."""
        if not self.validate_input(input_data):
            raise AgentExecutionError(
                error_code="INVALID_INPUT",
                message=f"Input must be {expected}",
                context={"input_type": type(input_data).__name__}
            )
