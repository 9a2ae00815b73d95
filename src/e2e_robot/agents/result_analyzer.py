"""Stage 5: review every artifact and write the results analysis."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from e2e_robot.agents.base import Artifact, StageAgent, embed
from e2e_robot.pipeline.stages import PipelineStage


class ResultAnalyzer(StageAgent):
    stage = PipelineStage.ANALYZE_RESULTS

    def prompt_values(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
    ) -> dict[str, Any]:
        return {"results": embed(inputs[PipelineStage.RUN_TESTS].content)}
