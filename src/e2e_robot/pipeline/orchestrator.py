"""Pipeline orchestrator: runs stages in order with stage-local retries.

The orchestrator owns the retry policy.  After every agent return it asks
the inspector again, so a stage whose artifact is not valid on disk is never
treated as done, whatever the agent reported.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from e2e_robot.agent_runner import AgentBackend, get_backend_class
from e2e_robot.agents import Artifact, StageAgent, build_agents
from e2e_robot.calibrator import Calibrator
from e2e_robot.claude_code import ClaudeCodeBackend
from e2e_robot.errors import (
    ExecutionError,
    ExecutionErrorKind,
    PipelineFailed,
    StageError,
    StageErrorKind,
)
from e2e_robot.executor import ClaudeExecutor, DisplaySink
from e2e_robot.file_io import exclusive_path
from e2e_robot.history_log import RunHistory
from e2e_robot.pipeline.inspector import ArtifactInspector, RunState, log_run_state
from e2e_robot.pipeline.profile import save_profile
from e2e_robot.pipeline.stages import (
    STAGE_ARTIFACTS,
    STAGE_ORDER,
    PipelineConfig,
    PipelineStage,
    parse_stage,
    stage_number,
)
from e2e_robot.prompts import PromptCatalog

logger = logging.getLogger(__name__)


def create_backend(config: PipelineConfig) -> AgentBackend:
    """Instantiate the registered backend named by ``config.backend``."""
    cls = get_backend_class(config.backend)
    if issubclass(cls, ClaudeCodeBackend):
        return cls(
            claude_binary=config.claude_binary,
            max_turns=config.max_turns,
            model=config.model,
            playwright_mcp=config.playwright_mcp,
            mcp_command=config.mcp_command,
        )
    return cls()


@dataclass
class StageAttempt:
    """One agent invocation and how it ended."""

    stage: PipelineStage
    attempt: int
    success: bool
    error_kind: str | None = None
    error_message: str = ""
    duration_seconds: float = 0.0


@dataclass
class PipelineOutcome:
    """Terminal result of one :meth:`PipelineOrchestrator.execute_from_step` call."""

    status: Literal["completed", "failed"]
    state: RunState
    run_id: str = ""
    started_from: PipelineStage | None = None
    completed_stages: list[PipelineStage] = field(default_factory=list)
    attempts: list[StageAttempt] = field(default_factory=list)
    failure: PipelineFailed | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def failed_stage(self) -> PipelineStage | None:
        return self.failure.stage if self.failure is not None else None

    @property
    def error_kind(self) -> str | None:
        return self.failure.error_kind if self.failure is not None else None

    @property
    def error_message(self) -> str:
        return self.failure.cause.message if self.failure is not None else ""

    def attempts_for(self, stage: PipelineStage) -> int:
        return sum(1 for attempt in self.attempts if attempt.stage == stage)

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise self.failure


class PipelineOrchestrator:
    """Drives the five-stage pipeline for one work directory.

    Parameters
    ----------
    work_dir:
        Directory holding the stage artifacts.  Created on first execution.
    config:
        Pipeline configuration (target, budgets, backend selection, ...).
    backend:
        Backend instance; built from ``config.backend`` when omitted.
    agents:
        Stage agents keyed by stage; built from *backend* when omitted.
    calibrator:
        Optional :class:`Calibrator`.  When omitted and
        ``config.calibration_enabled`` is set, one is created.
    log_callback:
        Optional callback ``(level, message)`` for real-time progress.
    display:
        Optional sink for interpreted backend events.
    """

    def __init__(
        self,
        work_dir: str | Path,
        config: PipelineConfig | None = None,
        *,
        backend: AgentBackend | None = None,
        agents: Mapping[PipelineStage, StageAgent] | None = None,
        calibrator: Calibrator | None = None,
        catalog: PromptCatalog | None = None,
        log_callback: Callable[[str, str], None] | None = None,
        display: DisplaySink | None = None,
    ) -> None:
        self.work_dir = Path(work_dir).resolve()
        self.config = config or PipelineConfig()
        self.catalog = catalog or PromptCatalog()
        self.backend = backend or create_backend(self.config)
        self.agents = dict(
            agents or build_agents(self.backend, self.config, catalog=self.catalog, display=display)
        )
        if calibrator is None and self.config.calibration_enabled:
            calibrator = Calibrator(
                self.config.calibration_path or None,
                default_budget=self.config.max_attempts,
                catalog=self.catalog,
            )
        self.calibrator = calibrator
        self.inspector = ArtifactInspector(
            self.work_dir, require_passing_tests=self.config.require_passing_tests
        )
        self.history = RunHistory(self.work_dir)
        self._stop_event = threading.Event()
        self._log_callback = log_callback

    # ------------------------------------------------------------------
    # Public controls
    # ------------------------------------------------------------------

    def analyze(self) -> RunState:
        """Derive the current RunState from disk (never cached)."""
        return self.inspector.analyze()

    def run(self) -> PipelineOutcome:
        """Resume from wherever the work directory says the run stands."""
        state = self.analyze()
        log_run_state(state)
        if state.next_step is None:
            self._log("info", "All artifacts are already valid; nothing to do")
            return PipelineOutcome(status="completed", state=state)
        return self.execute_from_step(state.next_step)

    def execute_from_step(self, start: PipelineStage | str | int) -> PipelineOutcome:
        """Run *start* and every later stage.

        Raises :class:`RuntimeError` when another run already holds this
        work directory.  Stage failures are reported in the outcome.
        """
        start_stage = parse_stage(start)
        with exclusive_path(self.work_dir):
            return self._execute(start_stage)

    def stop(self) -> None:
        """Abandon the in-flight call and make no further attempts.

        The request is sticky: it also holds for a run that has not reached
        its first call yet, and for later runs on this instance.
        """
        self._stop_event.set()
        self._log("warn", "Stop requested")

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def check_backend(self) -> bool:
        """Quick availability check of the configured backend."""
        executor = ClaudeExecutor(
            self.backend, self.work_dir, default_timeout=self.config.query_timeout_seconds
        )
        return executor.check_availability(self.config.query_timeout_seconds)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log(self, level: str, message: str) -> None:
        if self._log_callback:
            self._log_callback(level, message)
        getattr(logger, level if level != "warn" else "warning", logger.info)(
            "[pipeline] %s", message
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, start: PipelineStage) -> PipelineOutcome:
        run_id = self.history.new_run()
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if self.config.target_url:
            profile = self.config.profile.model_copy(update={"target_url": self.config.target_url})
            save_profile(self.work_dir, profile)

        stages = STAGE_ORDER[STAGE_ORDER.index(start):]
        outcome = PipelineOutcome(
            status="completed",
            state=self.analyze(),
            run_id=run_id,
            started_from=start,
        )
        self._log(
            "info",
            f"Pipeline started at step {stage_number(start)} ({start.value}) in {self.work_dir}",
        )
        self.history.record(
            "run_started",
            summary=f"from {start.value}",
            start=start.value,
            target_url=self.config.target_url,
            started_at=dt.datetime.now(dt.timezone.utc).isoformat(),
        )

        prior: dict[PipelineStage, Artifact] = {}
        for stage in stages:
            artifact, error = self._run_stage(stage, prior, outcome)
            if error is not None:
                outcome.failure = PipelineFailed(stage, error)
                outcome.status = "failed"
                break
            prior[stage] = artifact
            outcome.completed_stages.append(stage)
            self.history.record("stage_completed", summary=stage.value, stage=stage.value)

        outcome.state = self.analyze()
        if outcome.failure is not None:
            self._log("error", str(outcome.failure))
        else:
            self._log("info", f"Pipeline completed; artifacts in {self.work_dir}")
        self.history.record(
            "run_finished",
            summary=outcome.status,
            status=outcome.status,
            failed_stage=outcome.failed_stage.value if outcome.failed_stage else None,
            error_kind=outcome.error_kind,
            error_message=outcome.error_message,
        )
        return outcome

    def _budget(self, stage: PipelineStage) -> int:
        if self.calibrator is not None and self.config.stage_config(stage).max_attempts is None:
            return self.calibrator.retry_budget(stage)
        return self.config.attempts_for(stage)

    def _run_stage(
        self,
        stage: PipelineStage,
        prior: Mapping[PipelineStage, Artifact],
        outcome: PipelineOutcome,
    ) -> tuple[Artifact | None, StageError | None]:
        agent = self.agents[stage]
        budget = self._budget(stage)
        last_error: StageError | None = None

        for attempt in range(1, budget + 1):
            if self._stop_event.is_set():
                return None, last_error or self._stopped_error(stage)

            hint = self.calibrator.instruction_hint(stage, last_error) if self.calibrator else ""
            self._log(
                "info",
                f"Step {stage_number(stage)} {stage.value}: attempt {attempt}/{budget}",
            )
            started = time.monotonic()
            try:
                artifact = agent.run(
                    self.work_dir, prior, hint=hint, cancel_event=self._stop_event
                )
                error = None
            except StageError as exc:
                artifact = None
                error = exc
            if error is None:
                # The agent's word is not enough: re-check the file.
                check = self.inspector.check(stage)
                if not check.valid:
                    error = StageError(
                        StageErrorKind.VALIDATION_FAILED,
                        stage,
                        f"{STAGE_ARTIFACTS[stage]}: {check.reason}",
                    )
            duration = time.monotonic() - started

            outcome.attempts.append(
                StageAttempt(
                    stage=stage,
                    attempt=attempt,
                    success=error is None,
                    error_kind=error.error_kind if error else None,
                    error_message=error.message if error else "",
                    duration_seconds=duration,
                )
            )
            self.history.record(
                "stage_attempt",
                summary=f"{stage.value} #{attempt}: {'ok' if error is None else error.error_kind}",
                stage=stage.value,
                attempt=attempt,
                success=error is None,
                error_kind=error.error_kind if error else None,
                duration_seconds=round(duration, 2),
            )

            stopped = self._stop_event.is_set()
            if self.calibrator is not None and not stopped:
                self.calibrator.record(stage, error is None, error.error_kind if error else None)

            if error is None:
                self._log("info", f"Step {stage_number(stage)} {stage.value}: done ({duration:.1f}s)")
                return artifact, None

            last_error = error
            self._log("warn", f"Step {stage_number(stage)} {stage.value} failed: {error}")
            if not self._is_retryable(error) or stopped:
                break

        return None, last_error

    @staticmethod
    def _is_retryable(error: StageError) -> bool:
        if error.kind == StageErrorKind.INVALID_INPUT:
            return False
        return not (error.cause is not None and not error.cause.retryable)

    @staticmethod
    def _stopped_error(stage: PipelineStage) -> StageError:
        cause = ExecutionError(ExecutionErrorKind.TIMEOUT, "cancelled by stop request")
        return StageError(StageErrorKind.EXECUTION_FAILED, stage, cause.message, cause=cause)
