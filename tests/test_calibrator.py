"""Tests for the calibrator's statistics, retry budgets and hints."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from e2e_robot.calibrator import Calibrator
from e2e_robot.errors import ExecutionError, ExecutionErrorKind, StageError, StageErrorKind
from e2e_robot.pipeline.stages import PipelineStage

pytestmark = pytest.mark.unit

STAGE = PipelineStage.GENERATE_SCENARIOS


def _calibrator(tmp_path: Path, **kwargs) -> Calibrator:
    return Calibrator(tmp_path / "calibration.json", **kwargs)


def _record(calibrator: Calibrator, successes: int, failures: int, kind: str = "timeout") -> None:
    for _ in range(successes):
        calibrator.record(STAGE, True)
    for _ in range(failures):
        calibrator.record(STAGE, False, kind)


class TestRecord:
    def test_record_persists_counts(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path)
        _record(calibrator, 2, 1, kind="side_effect_not_confirmed")
        data = json.loads((tmp_path / "calibration.json").read_text(encoding="utf-8"))
        assert data["stages"]["generate_scenarios"] == {
            "attempts": 3,
            "successes": 2,
            "failures_by_kind": {"side_effect_not_confirmed": 1},
        }
        assert calibrator.success_rate(STAGE) == pytest.approx(2 / 3)

    def test_statistics_survive_a_new_instance(self, tmp_path: Path):
        _record(_calibrator(tmp_path), 1, 0)
        assert _calibrator(tmp_path).stats(STAGE).attempts == 1

    def test_no_samples(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path)
        assert calibrator.success_rate(STAGE) is None
        assert calibrator.summary() == {}

    def test_corrupt_file_is_ignored(self, tmp_path: Path, caplog):
        (tmp_path / "calibration.json").write_text("{oops", encoding="utf-8")
        calibrator = _calibrator(tmp_path)
        with caplog.at_level("WARNING"):
            assert calibrator.stats(STAGE).attempts == 0
        assert "corrupt calibration" in caplog.text
        calibrator.record(STAGE, True)
        assert calibrator.stats(STAGE).successes == 1

    def test_unwritable_location_is_logged_not_raised(self, tmp_path: Path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        calibrator = Calibrator(blocker / "calibration.json")
        with caplog.at_level("WARNING", logger="e2e_robot.calibrator"):
            calibrator.record(STAGE, False, "timeout")
        assert "Could not save calibration data" in caplog.text
        assert calibrator.stats(STAGE).attempts == 0
        assert calibrator.retry_budget(STAGE) == calibrator.default_budget


class TestRetryBudget:
    def test_default_until_enough_samples(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path, default_budget=2)
        _record(calibrator, 0, 2)
        assert calibrator.retry_budget(STAGE) == 2

    @pytest.mark.parametrize(
        ("successes", "failures", "budget"),
        [(0, 4, 4), (1, 3, 3), (3, 3, 2), (20, 0, 1)],
    )
    def test_budget_follows_success_rate(self, tmp_path: Path, successes, failures, budget):
        calibrator = _calibrator(tmp_path, default_budget=2)
        _record(calibrator, successes, failures)
        assert calibrator.retry_budget(STAGE) == budget

    def test_budget_is_capped(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path, default_budget=2, max_budget=3)
        _record(calibrator, 0, 5)
        assert calibrator.retry_budget(STAGE) == 3

    def test_budget_never_drops_below_one(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path, default_budget=1)
        _record(calibrator, 10, 0)
        assert calibrator.retry_budget(STAGE) == 1


class TestInstructionHint:
    def test_no_error_and_healthy_stage_gives_no_hint(self, tmp_path: Path):
        assert _calibrator(tmp_path).instruction_hint(STAGE) == ""

    def test_low_success_rate_hint(self, tmp_path: Path):
        calibrator = _calibrator(tmp_path)
        _record(calibrator, 0, 3)
        hint = calibrator.instruction_hint(STAGE)
        assert "often fails" in hint
        assert "test-scenarios.md" in hint

    def test_side_effect_hint_names_the_write_tool(self, tmp_path: Path):
        cause = ExecutionError(ExecutionErrorKind.SIDE_EFFECT_NOT_CONFIRMED, "file missing")
        error = StageError(StageErrorKind.EXECUTION_FAILED, STAGE, cause.message, cause=cause)
        hint = _calibrator(tmp_path).instruction_hint(STAGE, error)
        assert "Write tool" in hint
        assert "test-scenarios.md" in hint
        assert "file missing" in hint

    def test_validation_hint_carries_reason(self, tmp_path: Path):
        error = StageError(
            StageErrorKind.VALIDATION_FAILED, STAGE, "test-scenarios.md: no scenario headings"
        )
        hint = _calibrator(tmp_path).instruction_hint(STAGE, error)
        assert "did not have the required" in hint
        assert "no scenario headings" in hint

    def test_timeout_hint(self, tmp_path: Path):
        cause = ExecutionError(ExecutionErrorKind.TIMEOUT, "call exceeded 600s")
        error = StageError(StageErrorKind.EXECUTION_FAILED, STAGE, cause.message, cause=cause)
        assert "ran out of time" in _calibrator(tmp_path).instruction_hint(STAGE, error)


def test_summary(tmp_path: Path) -> None:
    calibrator = _calibrator(tmp_path)
    _record(calibrator, 1, 1)
    assert calibrator.summary() == {
        "generate_scenarios": {
            "attempts": 2,
            "successes": 1,
            "success_rate": 0.5,
            "failures_by_kind": {"timeout": 1},
        }
    }
