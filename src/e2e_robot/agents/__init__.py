"""Stage agents, one per pipeline stage."""

from typing import Any

from e2e_robot.agent_runner import AgentBackend
from e2e_robot.agents.base import Artifact, StageAgent
from e2e_robot.agents.result_analyzer import ResultAnalyzer
from e2e_robot.agents.scenario_generator import ScenarioGenerator
from e2e_robot.agents.test_runner import TestRunner
from e2e_robot.agents.testcase_generator import TestCaseGenerator
from e2e_robot.agents.website_analyzer import WebsiteAnalyzer
from e2e_robot.pipeline.stages import PipelineConfig, PipelineStage

AGENT_CLASSES: dict[PipelineStage, type[StageAgent]] = {
    PipelineStage.ANALYZE_WEBSITE: WebsiteAnalyzer,
    PipelineStage.GENERATE_SCENARIOS: ScenarioGenerator,
    PipelineStage.GENERATE_TEST_CASES: TestCaseGenerator,
    PipelineStage.RUN_TESTS: TestRunner,
    PipelineStage.ANALYZE_RESULTS: ResultAnalyzer,
}


def build_agents(
    backend: AgentBackend, config: PipelineConfig, **kwargs: Any
) -> dict[PipelineStage, StageAgent]:
    """Instantiate one agent per stage sharing *backend* and *config*."""
    return {stage: cls(backend, config, **kwargs) for stage, cls in AGENT_CLASSES.items()}


__all__ = [
    "AGENT_CLASSES",
    "Artifact",
    "ResultAnalyzer",
    "ScenarioGenerator",
    "StageAgent",
    "TestCaseGenerator",
    "TestRunner",
    "WebsiteAnalyzer",
    "build_agents",
]
