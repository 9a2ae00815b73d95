"""e2e-robot - resumable, artifact-driven end-to-end web testing with Claude Code."""

from importlib.metadata import PackageNotFoundError, version

from e2e_robot.pipeline.orchestrator import PipelineOrchestrator, PipelineOutcome
from e2e_robot.pipeline.stages import PipelineConfig, PipelineStage
from e2e_robot.schemas import ExecutionRequest, ExecutionResult, TestRunReport

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "PipelineConfig",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "PipelineStage",
    "TestRunReport",
]

try:
    __version__ = version("e2e-robot")
except PackageNotFoundError:
    __version__ = "0.0.0"
