"""Stage 1: explore the target site and document it."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from e2e_robot.agents.base import Artifact, StageAgent, invalid_input
from e2e_robot.pipeline.stages import PipelineStage


class WebsiteAnalyzer(StageAgent):
    stage = PipelineStage.ANALYZE_WEBSITE

    def validate_inputs(self) -> None:
        if not self.profile().target_url:
            raise invalid_input(self.stage, "no target URL configured")

    def prompt_values(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
    ) -> dict[str, Any]:
        profile = self.profile()
        return {"target_url": profile.target_url, "profile": profile.render()}
