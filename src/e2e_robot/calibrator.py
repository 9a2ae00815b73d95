"""Calibrator: per-stage success statistics that tune retries and instructions.

Statistics persist in a small JSON file shared by every run on the machine
(default ``~/.e2e_robot/calibration.json``).  The orchestrator records one
sample per stage attempt and asks for a retry budget and a hint before
each attempt.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from e2e_robot.errors import ExecutionErrorKind, StageError, StageErrorKind
from e2e_robot.file_io import atomic_write_text, locked_path, read_text_lenient
from e2e_robot.pipeline.stages import STAGE_ARTIFACTS, PipelineStage
from e2e_robot.prompts import PromptCatalog

logger = logging.getLogger(__name__)

DEFAULT_CALIBRATION_PATH = Path.home() / ".e2e_robot" / "calibration.json"
MIN_SAMPLES = 3
_ERROR_EXCERPT_CHARS = 600


class StageStats(BaseModel):
    attempts: int = 0
    successes: int = 0
    failures_by_kind: dict[str, int] = Field(default_factory=dict)

    @property
    def success_rate(self) -> float | None:
        if self.attempts <= 0:
            return None
        return self.successes / self.attempts


class CalibrationData(BaseModel):
    version: int = 1
    stages: dict[str, StageStats] = Field(default_factory=dict)


class Calibrator:
    """Learns from past attempts how hard each stage is.

    Parameters
    ----------
    path:
        JSON statistics file.  Created on first :meth:`record`.
    default_budget:
        Attempts used while a stage has fewer than ``min_samples`` samples.
    max_budget:
        Upper bound for :meth:`retry_budget`.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        default_budget: int = 2,
        max_budget: int = 5,
        min_samples: int = MIN_SAMPLES,
        catalog: PromptCatalog | None = None,
    ) -> None:
        self.path = Path(path) if path else DEFAULT_CALIBRATION_PATH
        self.default_budget = max(1, int(default_budget))
        self.max_budget = max(self.default_budget, int(max_budget))
        self.min_samples = max(1, int(min_samples))
        self.catalog = catalog or PromptCatalog()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def load(self) -> CalibrationData:
        text = read_text_lenient(self.path)
        if text is None:
            return CalibrationData()
        try:
            return CalibrationData.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring corrupt calibration file %s: %s", self.path, exc)
            return CalibrationData()

    def stats(self, stage: PipelineStage) -> StageStats:
        return self.load().stages.get(stage.value, StageStats())

    def record(self, stage: PipelineStage, success: bool, error_kind: str | None = None) -> None:
        """Add one attempt outcome for *stage*."""
        with self._lock, locked_path(self.path):
            data = self.load()
            entry = data.stages.setdefault(stage.value, StageStats())
            entry.attempts += 1
            if success:
                entry.successes += 1
            else:
                kind = error_kind or "unknown"
                entry.failures_by_kind[kind] = entry.failures_by_kind.get(kind, 0) + 1
            try:
                atomic_write_text(self.path, data.model_dump_json(indent=2) + "\n")
            except OSError as exc:
                logger.warning("Could not save calibration data to %s: %s", self.path, exc)
                return
        logger.debug(
            "Calibration %s: %s (%d/%d)",
            stage.value,
            "success" if success else f"failure ({error_kind})",
            entry.successes,
            entry.attempts,
        )

    def success_rate(self, stage: PipelineStage) -> float | None:
        """Observed success ratio, or ``None`` with no samples."""
        return self.stats(stage).success_rate

    def retry_budget(self, stage: PipelineStage) -> int:
        """Number of attempts to allow for *stage*.

        The default holds until ``min_samples`` attempts were seen.  After
        that, unreliable stages earn extra attempts and reliable ones lose one.
        """
        stats = self.stats(stage)
        rate = stats.success_rate
        budget = self.default_budget
        if rate is not None and stats.attempts >= self.min_samples:
            if rate < 0.25:
                budget += 2
            elif rate < 0.5:
                budget += 1
            elif rate >= 0.95:
                budget -= 1
        return max(1, min(self.max_budget, budget))

    def instruction_hint(self, stage: PipelineStage, last_error: StageError | None = None) -> str:
        """Extra guidance appended to the stage instruction."""
        artifact = STAGE_ARTIFACTS[stage]
        parts: list[str] = []
        if last_error is not None:
            kind = last_error.error_kind
            excerpt = last_error.message[:_ERROR_EXCERPT_CHARS]
            if kind == ExecutionErrorKind.SIDE_EFFECT_NOT_CONFIRMED.value:
                parts.append(self.catalog.hint(kind, artifact_path=artifact))
            elif kind == StageErrorKind.VALIDATION_FAILED.value:
                parts.append(self.catalog.hint(kind, artifact_path=artifact, error=excerpt))
            elif kind in {ExecutionErrorKind.TIMEOUT.value, ExecutionErrorKind.BACKEND_FAILURE.value}:
                parts.append(self.catalog.hint(kind))
            parts.append(self.catalog.hint("retry_error", error=excerpt))
        else:
            rate = self.success_rate(stage)
            if rate is not None and self.stats(stage).attempts >= self.min_samples and rate < 0.5:
                parts.append(self.catalog.hint("low_success_rate", artifact_path=artifact))
        return "\n\n".join(part for part in parts if part)

    def summary(self) -> dict[str, dict[str, object]]:
        """Statistics for every recorded stage, for display."""
        data = self.load()
        return {
            key: {
                "attempts": value.attempts,
                "successes": value.successes,
                "success_rate": value.success_rate,
                "failures_by_kind": dict(value.failures_by_kind),
            }
            for key, value in sorted(data.stages.items())
        }
