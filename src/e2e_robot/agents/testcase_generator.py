"""Stage 3: compile scenarios into a Playwright TypeScript test file."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from e2e_robot.agents.base import Artifact, StageAgent, embed
from e2e_robot.pipeline.stages import PipelineStage


class TestCaseGenerator(StageAgent):
    __test__ = False

    stage = PipelineStage.GENERATE_TEST_CASES

    def prompt_values(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
    ) -> dict[str, Any]:
        return {
            "scenarios": embed(inputs[PipelineStage.GENERATE_SCENARIOS].content),
            "target_url": self.profile().target_url or "(see the website analysis)",
        }
