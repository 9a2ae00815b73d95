"""Stage 2: derive numbered test scenarios from the website analysis."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from e2e_robot.agents.base import Artifact, StageAgent, embed
from e2e_robot.pipeline.stages import PipelineStage


class ScenarioGenerator(StageAgent):
    stage = PipelineStage.GENERATE_SCENARIOS

    def prompt_values(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
    ) -> dict[str, Any]:
        return {
            "analysis": embed(inputs[PipelineStage.ANALYZE_WEBSITE].content),
            "profile": self.profile().render(),
        }
