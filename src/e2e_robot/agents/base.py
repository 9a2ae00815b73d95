"""Common machinery for the five stage agents.

An agent turns upstream artifacts into one instruction, hands it to the
execution primitive and then checks the produced file.  Agents never retry;
that is the orchestrator's job.
"""

from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

from e2e_robot.agent_runner import AgentBackend
from e2e_robot.errors import ExecutionError, StageError, StageErrorKind
from e2e_robot.executor import ClaudeExecutor, DisplaySink
from e2e_robot.file_io import read_text_lenient
from e2e_robot.pipeline.inspector import ArtifactInspector
from e2e_robot.pipeline.profile import TestProfile
from e2e_robot.pipeline.stages import (
    STAGE_ARTIFACTS,
    STAGE_CONTEXT,
    STAGE_INPUTS,
    PipelineConfig,
    PipelineStage,
)
from e2e_robot.prompts import PromptCatalog
from e2e_robot.schemas import ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

MAX_EMBEDDED_CHARS = 60_000

_CONTEXT_TITLES: dict[PipelineStage, str] = {
    PipelineStage.ANALYZE_WEBSITE: "Website analysis",
    PipelineStage.GENERATE_SCENARIOS: "Test scenarios",
    PipelineStage.GENERATE_TEST_CASES: "Test file",
    PipelineStage.RUN_TESTS: "Test results",
    PipelineStage.ANALYZE_RESULTS: "Results analysis",
}


@dataclass(frozen=True)
class Artifact:
    """A stage output that exists on disk and passed its check."""

    stage: PipelineStage
    path: Path
    content: str
    result: ExecutionResult | None = None


def embed(text: str, limit: int = MAX_EMBEDDED_CHARS) -> str:
    """Clip very large artifacts before embedding them in an instruction."""
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n[... truncated {len(text) - limit} characters ...]"


class StageAgent(abc.ABC):
    """Base class for stage agents.

    Subclasses set :attr:`stage` and implement :meth:`prompt_values`.
    """

    stage: ClassVar[PipelineStage]

    def __init__(
        self,
        backend: AgentBackend,
        config: PipelineConfig,
        *,
        catalog: PromptCatalog | None = None,
        display: DisplaySink | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.catalog = catalog or PromptCatalog()
        self.display = display

    @property
    def artifact_name(self) -> str:
        return STAGE_ARTIFACTS[self.stage]

    def profile(self) -> TestProfile:
        """Test profile with the configured target URL filled in."""
        url = self.config.target_url or self.config.profile.target_url
        return self.config.profile.model_copy(update={"target_url": url})

    @abc.abstractmethod
    def prompt_values(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
    ) -> dict[str, Any]:
        """Template values for this stage's catalog prompt."""

    def validate_inputs(self) -> None:  # noqa: B027 - optional hook
        """Raise ``invalid_input`` for problems that do not involve upstream files."""

    # ------------------------------------------------------------------

    def run(
        self,
        work_dir: str | Path,
        prior_artifacts: Mapping[PipelineStage, Artifact] | None = None,
        *,
        hint: str = "",
        cancel_event: threading.Event | None = None,
    ) -> Artifact:
        """Produce this stage's artifact in *work_dir*."""
        work_dir = Path(work_dir).resolve()
        inspector = ArtifactInspector(
            work_dir, require_passing_tests=self.config.require_passing_tests
        )
        self.validate_inputs()
        inputs = self._collect_inputs(inspector, prior_artifacts or {})
        context = self._collect_context(inspector)
        artifact_path = inspector.artifact_path(self.stage).resolve()

        instruction = self.build_instruction(inputs, context, artifact_path, hint=hint)
        request = ExecutionRequest(
            instruction=instruction,
            expected_file=self.artifact_name,
            timeout_seconds=self.config.timeout_for(self.stage),
            label=self.stage.value,
        )
        executor = ClaudeExecutor(
            self.backend,
            work_dir,
            default_timeout=self.config.timeout_for(self.stage),
            display=self.display,
        )
        try:
            result = executor.execute(request, cancel_event=cancel_event)
        except ExecutionError as exc:
            raise StageError(
                StageErrorKind.EXECUTION_FAILED, self.stage, exc.message, cause=exc
            ) from exc

        check = inspector.check(self.stage)
        if not check.valid:
            raise StageError(
                StageErrorKind.VALIDATION_FAILED,
                self.stage,
                f"{self.artifact_name}: {check.reason}",
            )
        content = read_text_lenient(artifact_path) or ""
        logger.info("%s produced %s (%d chars)", self.stage.value, self.artifact_name, len(content))
        return Artifact(stage=self.stage, path=artifact_path, content=content, result=result)

    def build_instruction(
        self,
        inputs: Mapping[PipelineStage, Artifact],
        context: str,
        artifact_path: Path,
        *,
        hint: str = "",
    ) -> str:
        values = self.prompt_values(inputs, context, artifact_path)
        values.setdefault("artifact_path", artifact_path)
        values.setdefault("write_rule", self.catalog.fragment("write_rule", artifact_path=artifact_path))
        values.setdefault("context", context)
        text = self.catalog.render_stage(self.stage.value, **values)

        custom = self.config.stage_config(self.stage).custom_instruction.strip()
        if custom:
            text += "\n\n" + self.catalog.fragment("custom_instruction", text=custom)
        if hint.strip():
            text += "\n\n" + hint.strip()
        return text

    # ------------------------------------------------------------------

    def _collect_inputs(
        self,
        inspector: ArtifactInspector,
        prior_artifacts: Mapping[PipelineStage, Artifact],
    ) -> dict[PipelineStage, Artifact]:
        inputs: dict[PipelineStage, Artifact] = {}
        for upstream in STAGE_INPUTS[self.stage]:
            check = inspector.check(upstream)
            if not check.valid:
                raise StageError(
                    StageErrorKind.INVALID_INPUT,
                    self.stage,
                    f"required input {STAGE_ARTIFACTS[upstream]} is {check.reason}",
                )
            prior = prior_artifacts.get(upstream)
            path = inspector.artifact_path(upstream).resolve()
            # Disk wins over what the caller remembers.
            content = read_text_lenient(path)
            if content is None:
                content = prior.content if prior is not None else ""
            inputs[upstream] = Artifact(stage=upstream, path=path, content=content)
        return inputs

    def _collect_context(self, inspector: ArtifactInspector) -> str:
        sections: list[str] = []
        for upstream in STAGE_CONTEXT[self.stage]:
            if not inspector.check(upstream).valid:
                continue
            content = read_text_lenient(inspector.artifact_path(upstream))
            if content:
                sections.append(f"=== {_CONTEXT_TITLES[upstream]} ===\n{embed(content)}")
        return "\n\n".join(sections)


def invalid_input(stage: PipelineStage, message: str) -> StageError:
    return StageError(StageErrorKind.INVALID_INPUT, stage, message)
