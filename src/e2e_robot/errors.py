"""Error taxonomy for the execution primitive, stage agents and orchestrator."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from e2e_robot.pipeline.stages import PipelineStage


class ExecutionErrorKind(str, Enum):
    """Why a single backend call failed."""

    TIMEOUT = "timeout"
    BACKEND_FAILURE = "backend_failure"
    SIDE_EFFECT_NOT_CONFIRMED = "side_effect_not_confirmed"


class StageErrorKind(str, Enum):
    """Why a stage agent failed."""

    INVALID_INPUT = "invalid_input"
    EXECUTION_FAILED = "execution_failed"
    VALIDATION_FAILED = "validation_failed"


class E2ERobotError(Exception):
    """Base exception for all pipeline errors."""


class ExecutionError(E2ERobotError):
    """Raised by the execution primitive when a call cannot be confirmed."""

    def __init__(self, kind: ExecutionErrorKind, message: str, *, retryable: bool = True) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.retryable = retryable


class StageError(E2ERobotError):
    """Raised by a stage agent.

    ``cause`` holds the :class:`ExecutionError` for ``execution_failed``.
    """

    def __init__(
        self,
        kind: StageErrorKind,
        stage: PipelineStage,
        message: str,
        *,
        cause: ExecutionError | None = None,
    ) -> None:
        super().__init__(f"[{stage.value}] {kind.value}: {message}")
        self.kind = kind
        self.stage = stage
        self.message = message
        self.cause = cause

    @property
    def error_kind(self) -> str:
        """Most specific kind: the execution error kind when one caused this."""
        if self.kind == StageErrorKind.EXECUTION_FAILED and self.cause is not None:
            return self.cause.kind.value
        return self.kind.value


class PipelineFailed(E2ERobotError):
    """Terminal failure of a pipeline run at ``stage``."""

    def __init__(self, stage: PipelineStage, cause: StageError) -> None:
        super().__init__(f"Pipeline failed at {stage.value}: {cause.message}")
        self.stage = stage
        self.cause = cause

    @property
    def error_kind(self) -> str:
        return self.cause.error_kind
