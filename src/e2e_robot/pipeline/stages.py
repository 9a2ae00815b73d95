"""Pipeline stage definitions and configuration.

Each stage in the pipeline has:
- A single artifact file it must leave in the work directory
- The upstream artifacts it requires (and the ones it reads as context)
- A wall-clock timeout and an attempt budget
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from e2e_robot.claude_code import DEFAULT_MCP_COMMAND
from e2e_robot.pipeline.profile import TestProfile


class PipelineStage(str, Enum):
    """The stages of the web-test pipeline, in execution order."""

    ANALYZE_WEBSITE = "analyze_website"
    GENERATE_SCENARIOS = "generate_scenarios"
    GENERATE_TEST_CASES = "generate_test_cases"
    RUN_TESTS = "run_tests"
    ANALYZE_RESULTS = "analyze_results"


STAGE_ORDER: list[PipelineStage] = list(PipelineStage)

# Artifact each stage leaves in the work directory
STAGE_ARTIFACTS: dict[PipelineStage, str] = {
    PipelineStage.ANALYZE_WEBSITE: "website-analysis.md",
    PipelineStage.GENERATE_SCENARIOS: "test-scenarios.md",
    PipelineStage.GENERATE_TEST_CASES: "generated-tests.spec.ts",
    PipelineStage.RUN_TESTS: "test-results.json",
    PipelineStage.ANALYZE_RESULTS: "results-analysis.md",
}

# Upstream artifacts that must be valid before a stage may run
STAGE_INPUTS: dict[PipelineStage, tuple[PipelineStage, ...]] = {
    PipelineStage.ANALYZE_WEBSITE: (),
    PipelineStage.GENERATE_SCENARIOS: (PipelineStage.ANALYZE_WEBSITE,),
    PipelineStage.GENERATE_TEST_CASES: (PipelineStage.GENERATE_SCENARIOS,),
    PipelineStage.RUN_TESTS: (PipelineStage.GENERATE_TEST_CASES,),
    PipelineStage.ANALYZE_RESULTS: (PipelineStage.RUN_TESTS,),
}

# Upstream artifacts included as context when present
STAGE_CONTEXT: dict[PipelineStage, tuple[PipelineStage, ...]] = {
    PipelineStage.ANALYZE_WEBSITE: (),
    PipelineStage.GENERATE_SCENARIOS: (),
    PipelineStage.GENERATE_TEST_CASES: (PipelineStage.ANALYZE_WEBSITE,),
    PipelineStage.RUN_TESTS: (PipelineStage.GENERATE_SCENARIOS,),
    PipelineStage.ANALYZE_RESULTS: (
        PipelineStage.ANALYZE_WEBSITE,
        PipelineStage.GENERATE_SCENARIOS,
        PipelineStage.GENERATE_TEST_CASES,
    ),
}

# Wall-clock ceiling per stage, in seconds
DEFAULT_STAGE_TIMEOUTS: dict[PipelineStage, float] = {
    PipelineStage.ANALYZE_WEBSITE: 900.0,
    PipelineStage.GENERATE_SCENARIOS: 600.0,
    PipelineStage.GENERATE_TEST_CASES: 600.0,
    PipelineStage.RUN_TESTS: 1800.0,    # real browser runs
    PipelineStage.ANALYZE_RESULTS: 600.0,
}
DEFAULT_QUERY_TIMEOUT = 120.0

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def stage_number(stage: PipelineStage) -> int:
    """1-based position of *stage* in the pipeline."""
    return STAGE_ORDER.index(stage) + 1


def parse_stage(value: str | int | PipelineStage) -> PipelineStage:
    """Accept a stage value, enum name, or 1-based number."""
    if isinstance(value, PipelineStage):
        return value
    text = str(value).strip()
    if text.isdigit():
        index = int(text)
        if 1 <= index <= len(STAGE_ORDER):
            return STAGE_ORDER[index - 1]
        raise ValueError(f"Stage number must be between 1 and {len(STAGE_ORDER)}, got {index}")
    normalized = text.lower().replace("-", "_")
    for stage in STAGE_ORDER:
        if normalized in {stage.value, stage.name.lower()}:
            return stage
    choices = ", ".join(stage.value for stage in STAGE_ORDER)
    raise ValueError(f"Unknown stage {value!r}. Choose one of: {choices}")


def artifact_path(work_dir: str | Path, stage: PipelineStage) -> Path:
    return Path(work_dir) / STAGE_ARTIFACTS[stage]


class StageConfig(BaseModel):
    """Per-stage override of the pipeline defaults."""

    stage: PipelineStage
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1)
    custom_instruction: str = ""  # appended to the catalog prompt for this stage


class PipelineConfig(BaseModel):
    """Full configuration for one pipeline run."""

    target_url: str = ""
    profile: TestProfile = Field(default_factory=TestProfile)

    # Backend
    backend: str = "claude_code"
    claude_binary: str = "claude"
    model: str = ""
    max_turns: int = Field(default=0, ge=0)  # 0 = unlimited
    playwright_mcp: bool = True
    mcp_command: str = DEFAULT_MCP_COMMAND

    # Retry policy and timeouts
    max_attempts: int = Field(default=2, ge=1)
    stage_timeouts: dict[PipelineStage, float] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS)
    )
    query_timeout_seconds: float = Field(default=DEFAULT_QUERY_TIMEOUT, gt=0)
    stages: list[StageConfig] = Field(default_factory=list)

    # Calibration
    calibration_enabled: bool = True
    calibration_path: str = ""  # blank = ~/.e2e_robot/calibration.json

    # Validation
    require_passing_tests: bool = False

    @field_validator("target_url")
    @classmethod
    def _validate_target_url(cls, value: str) -> str:
        url = (value or "").strip()
        if not url:
            return ""
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"target_url must be an http(s) URL, got {url!r}")
        return url

    @field_validator("stage_timeouts")
    @classmethod
    def _validate_timeouts(cls, value: dict[PipelineStage, float]) -> dict[PipelineStage, float]:
        merged = dict(DEFAULT_STAGE_TIMEOUTS)
        for stage, seconds in value.items():
            if seconds <= 0:
                raise ValueError(f"timeout for {stage.value} must be positive")
            merged[stage] = float(seconds)
        return merged

    def stage_config(self, stage: PipelineStage) -> StageConfig:
        for override in self.stages:
            if override.stage == stage:
                return override
        return StageConfig(stage=stage)

    def timeout_for(self, stage: PipelineStage) -> float:
        override = self.stage_config(stage).timeout_seconds
        return float(override) if override is not None else self.stage_timeouts[stage]

    def attempts_for(self, stage: PipelineStage) -> int:
        override = self.stage_config(stage).max_attempts
        return int(override) if override is not None else self.max_attempts

    @classmethod
    def from_env(cls, **overrides: Any) -> PipelineConfig:
        """Build a config from ``E2E_ROBOT_*`` variables plus explicit overrides.

        Overrides whose value is ``None`` are ignored so CLI flags that were
        not given fall through to the environment.
        """
        values: dict[str, Any] = {}
        string_vars = {
            "E2E_ROBOT_TARGET_URL": "target_url",
            "E2E_ROBOT_BACKEND": "backend",
            "E2E_ROBOT_CLAUDE_BIN": "claude_binary",
            "E2E_ROBOT_MODEL": "model",
            "E2E_ROBOT_MCP_COMMAND": "mcp_command",
            "E2E_ROBOT_CALIBRATION_PATH": "calibration_path",
            "E2E_ROBOT_MAX_TURNS": "max_turns",
            "E2E_ROBOT_MAX_ATTEMPTS": "max_attempts",
            "E2E_ROBOT_QUERY_TIMEOUT": "query_timeout_seconds",
        }
        for env_name, field_name in string_vars.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw

        bool_vars = {
            "E2E_ROBOT_CALIBRATION": "calibration_enabled",
            "E2E_ROBOT_REQUIRE_PASSING_TESTS": "require_passing_tests",
            "E2E_ROBOT_PLAYWRIGHT_MCP": "playwright_mcp",
        }
        for env_name, field_name in bool_vars.items():
            raw = os.getenv(env_name, "").strip().lower()
            if raw in _TRUTHY:
                values[field_name] = True
            elif raw in _FALSY:
                values[field_name] = False

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
