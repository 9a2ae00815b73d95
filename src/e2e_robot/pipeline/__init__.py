"""Resumable five-stage web-test pipeline.

    Website analysis → Scenarios → Test cases → Run tests → Results analysis

Each stage leaves one artifact in the work directory; the
:class:`ArtifactInspector` derives where a run resumes from those files.

Usage::

    from e2e_robot.pipeline.orchestrator import PipelineOrchestrator
    from e2e_robot.pipeline import PipelineConfig

    pipeline = PipelineOrchestrator(
        work_dir="/path/to/output",
        config=PipelineConfig(target_url="https://example.com"),
    )
    outcome = pipeline.run()

The orchestrator is not re-exported here because the stage agents import
this package.
"""

from e2e_robot.pipeline.inspector import ArtifactCheck, ArtifactInspector, RunState
from e2e_robot.pipeline.profile import TestProfile
from e2e_robot.pipeline.stages import (
    STAGE_ARTIFACTS,
    STAGE_ORDER,
    PipelineConfig,
    PipelineStage,
    StageConfig,
    parse_stage,
    stage_number,
)

__all__ = [
    "STAGE_ARTIFACTS",
    "STAGE_ORDER",
    "ArtifactCheck",
    "ArtifactInspector",
    "PipelineConfig",
    "PipelineStage",
    "RunState",
    "StageConfig",
    "TestProfile",
    "parse_stage",
    "stage_number",
]
