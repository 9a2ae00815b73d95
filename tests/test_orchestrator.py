"""Tests for the pipeline orchestrator: resume, retries, stop and locking."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from e2e_robot.agents.base import Artifact
from e2e_robot.calibrator import Calibrator
from e2e_robot.claude_code import ClaudeCodeBackend
from e2e_robot.errors import PipelineFailed
from e2e_robot.file_io import exclusive_path
from e2e_robot.pipeline.orchestrator import PipelineOrchestrator, create_backend
from e2e_robot.pipeline.profile import PROFILE_FILE, TestProfile
from e2e_robot.pipeline.stages import STAGE_ARTIFACTS, STAGE_ORDER, PipelineConfig, PipelineStage, StageConfig

pytestmark = pytest.mark.unit

URL = "https://example.com"


def _config(**kwargs) -> PipelineConfig:
    kwargs.setdefault("calibration_enabled", False)
    return PipelineConfig(target_url=URL, **kwargs)


def _orchestrator(work_dir: Path, backend, config: PipelineConfig | None = None, **kwargs):
    return PipelineOrchestrator(work_dir, config or _config(), backend=backend, **kwargs)


class _ClaimingAgent:
    """Reports success after writing *content*, valid or not."""

    def __init__(self, stage: PipelineStage, content: str) -> None:
        self.stage = stage
        self.content = content
        self.calls = 0

    def run(self, work_dir, prior_artifacts=None, *, hint="", cancel_event=None) -> Artifact:
        self.calls += 1
        path = Path(work_dir) / STAGE_ARTIFACTS[self.stage]
        path.write_text(self.content, encoding="utf-8")
        return Artifact(self.stage, path, self.content)


class TestFullRun:
    def test_fresh_directory_runs_all_five_stages(self, tmp_path: Path, script):
        work_dir = tmp_path / "run"
        backend = script.Backend(script.pipeline_steps())
        outcome = _orchestrator(work_dir, backend).run()

        assert outcome.succeeded
        assert outcome.status == "completed"
        assert outcome.started_from == PipelineStage.ANALYZE_WEBSITE
        assert outcome.completed_stages == STAGE_ORDER
        assert len(backend.calls) == 5
        assert outcome.state.complete
        assert outcome.failure is None
        outcome.raise_for_failure()
        for name in STAGE_ARTIFACTS.values():
            assert (work_dir / name).is_file()

    def test_profile_is_saved_with_target_url(self, tmp_path: Path, script):
        config = _config(profile=TestProfile(site_name="Shop", test_requirements=["search works"]))
        _orchestrator(tmp_path, script.Backend(script.pipeline_steps()), config).run()
        saved = json.loads((tmp_path / PROFILE_FILE).read_text(encoding="utf-8"))
        assert saved["target_url"] == URL
        assert saved["site_name"] == "Shop"
        assert saved["test_requirements"] == ["search works"]

    def test_complete_directory_makes_no_calls(self, tmp_path: Path, script):
        script.populate(tmp_path, 5)
        backend = script.Backend([])
        outcome = _orchestrator(tmp_path, backend).run()
        assert outcome.succeeded
        assert outcome.completed_stages == []
        assert backend.calls == []

    def test_log_callback_receives_progress(self, tmp_path: Path, script):
        messages: list[tuple[str, str]] = []
        orchestrator = _orchestrator(
            tmp_path,
            script.Backend(script.pipeline_steps()),
            log_callback=lambda level, msg: messages.append((level, msg)),
        )
        orchestrator.run()
        assert ("info", f"Pipeline completed; artifacts in {tmp_path.resolve()}") in messages
        assert any("Step 1 analyze_website: attempt 1/2" in msg for _, msg in messages)


class TestResume:
    def test_analyze_is_idempotent(self, tmp_path: Path, script):
        script.populate(tmp_path, 3)
        (tmp_path / "test-results.json").write_text("{broken", encoding="utf-8")
        before = {path.name: path.read_bytes() for path in tmp_path.iterdir()}
        orchestrator = _orchestrator(tmp_path, script.Backend([]))

        first = orchestrator.analyze()
        assert orchestrator.analyze() == first
        assert first.next_step == PipelineStage.RUN_TESTS
        assert {path.name: path.read_bytes() for path in tmp_path.iterdir()} == before

    def test_resumes_after_valid_artifacts(self, tmp_path: Path, script):
        script.populate(tmp_path, 2)
        steps = script.pipeline_steps()[2:]
        backend = script.Backend(steps)
        outcome = _orchestrator(tmp_path, backend).run()

        assert outcome.succeeded
        assert outcome.started_from == PipelineStage.GENERATE_TEST_CASES
        assert outcome.completed_stages == STAGE_ORDER[2:]
        assert len(backend.calls) == 3

    def test_invalid_artifact_is_regenerated(self, tmp_path: Path, script):
        script.populate(tmp_path, 2)
        (tmp_path / "test-scenarios.md").write_text("# Notes\n\nnothing useful", encoding="utf-8")
        backend = script.Backend(script.pipeline_steps()[1:])
        outcome = _orchestrator(tmp_path, backend).run()
        assert outcome.started_from == PipelineStage.GENERATE_SCENARIOS
        assert len(backend.calls) == 4

    def test_execute_from_explicit_step_reruns_later_stages(self, tmp_path: Path, script):
        script.populate(tmp_path, 5)
        rerun = [
            script.writes("test-results.json", json.dumps({"success": False, "tests": [{"name": "search", "status": "failed"}]})),
            script.writes("results-analysis.md", "# Rerun\n\n## Summary\nNo tests ran.\n"),
        ]
        backend = script.Backend(rerun)
        outcome = _orchestrator(tmp_path, backend).execute_from_step(4)
        assert outcome.succeeded
        assert outcome.completed_stages == [PipelineStage.RUN_TESTS, PipelineStage.ANALYZE_RESULTS]

    def test_unknown_start_step(self, tmp_path: Path, script):
        with pytest.raises(ValueError):
            _orchestrator(tmp_path, script.Backend([])).execute_from_step("deploy")


class TestRetries:
    def test_retry_after_unconfirmed_write(self, tmp_path: Path, script):
        steps = [script.replies(), *script.pipeline_steps()]
        backend = script.Backend(steps)
        outcome = _orchestrator(tmp_path, backend).run()

        assert outcome.succeeded
        assert outcome.attempts_for(PipelineStage.ANALYZE_WEBSITE) == 2
        first = outcome.attempts[0]
        assert not first.success
        assert first.error_kind == "side_effect_not_confirmed"
        assert len(backend.calls) == 6

    def test_budget_exhaustion_fails_the_run(self, tmp_path: Path, script):
        script.populate(tmp_path, 1)
        backend = script.Backend([script.replies(), script.replies()])
        outcome = _orchestrator(tmp_path, backend).run()

        assert outcome.status == "failed"
        assert not outcome.succeeded
        assert outcome.failed_stage == PipelineStage.GENERATE_SCENARIOS
        assert outcome.error_kind == "side_effect_not_confirmed"
        assert outcome.error_message
        assert outcome.attempts_for(PipelineStage.GENERATE_SCENARIOS) == 2
        assert outcome.state.next_step == PipelineStage.GENERATE_SCENARIOS
        with pytest.raises(PipelineFailed) as exc_info:
            outcome.raise_for_failure()
        assert exc_info.value.stage == PipelineStage.GENERATE_SCENARIOS

    def test_valid_analysis_then_unconfirmed_test_cases(self, tmp_path: Path, script):
        script.populate(tmp_path, 1)
        scenarios = script.writes("test-scenarios.md", script.texts[PipelineStage.GENERATE_SCENARIOS])
        backend = script.Backend([scenarios, script.replies(), script.replies()])
        outcome = _orchestrator(tmp_path, backend).run()

        assert outcome.started_from == PipelineStage.GENERATE_SCENARIOS
        assert outcome.completed_stages == [PipelineStage.GENERATE_SCENARIOS]
        assert isinstance(outcome.failure, PipelineFailed)
        assert outcome.failure.stage == PipelineStage.GENERATE_TEST_CASES
        assert outcome.failed_stage == PipelineStage.GENERATE_TEST_CASES
        assert outcome.error_kind == "side_effect_not_confirmed"
        assert (tmp_path / "test-scenarios.md").is_file()
        assert not (tmp_path / "generated-tests.spec.ts").exists()
        assert outcome.state.next_step == PipelineStage.GENERATE_TEST_CASES
        assert len(backend.calls) == 3

    def test_agent_success_is_rechecked_on_disk(self, tmp_path: Path, script):
        agents = {stage: _ClaimingAgent(stage, "no title, no sections") for stage in STAGE_ORDER}
        outcome = _orchestrator(tmp_path, script.Backend([]), agents=agents).run()

        assert outcome.failed_stage == PipelineStage.ANALYZE_WEBSITE
        assert outcome.error_kind == "validation_failed"
        assert "website-analysis.md" in outcome.error_message
        assert outcome.completed_stages == []
        assert agents[PipelineStage.ANALYZE_WEBSITE].calls == 2
        assert all(agents[stage].calls == 0 for stage in STAGE_ORDER[1:])
        assert outcome.state.next_step == PipelineStage.ANALYZE_WEBSITE

    def test_validation_failure_is_retried(self, tmp_path: Path, script):
        script.populate(tmp_path, 2)
        bad = script.writes("generated-tests.spec.ts", "console.log('not a test');")
        steps = [bad, *script.pipeline_steps()[2:]]
        outcome = _orchestrator(tmp_path, script.Backend(steps)).run()
        assert outcome.succeeded
        assert outcome.attempts[0].error_kind == "validation_failed"

    def test_usage_limit_is_not_retried(self, tmp_path: Path, script):
        backend = script.Backend([script.fails("Claude usage limit reached. Try again later.")])
        outcome = _orchestrator(tmp_path, backend).run()
        assert outcome.failed_stage == PipelineStage.ANALYZE_WEBSITE
        assert outcome.error_kind == "backend_failure"
        assert len(backend.calls) == 1

    def test_invalid_input_is_fatal_without_calls(self, tmp_path: Path, script):
        backend = script.Backend([])
        config = PipelineConfig(calibration_enabled=False)
        outcome = _orchestrator(tmp_path, backend, config).run()
        assert outcome.error_kind == "invalid_input"
        assert outcome.attempts_for(PipelineStage.ANALYZE_WEBSITE) == 1
        assert backend.calls == []

    def test_stage_override_sets_the_budget(self, tmp_path: Path, script):
        config = _config(
            max_attempts=1,
            stages=[StageConfig(stage=PipelineStage.ANALYZE_WEBSITE, max_attempts=3)],
        )
        steps = [script.replies(), script.replies(), *script.pipeline_steps()]
        outcome = _orchestrator(tmp_path, script.Backend(steps), config).run()
        assert outcome.succeeded
        assert outcome.attempts_for(PipelineStage.ANALYZE_WEBSITE) == 3

    def test_failed_stage_stops_the_pipeline(self, tmp_path: Path, script):
        backend = script.Backend([script.fails(), script.fails()])
        outcome = _orchestrator(tmp_path, backend).run()
        assert outcome.completed_stages == []
        assert not (tmp_path / "test-scenarios.md").exists()


class TestCalibration:
    def test_attempts_are_recorded_and_hint_reaches_retry(self, tmp_path: Path, script):
        calibrator = Calibrator(tmp_path / "calibration.json")
        work_dir = tmp_path / "run"
        backend = script.Backend([script.replies(), *script.pipeline_steps()])
        outcome = _orchestrator(work_dir, backend, calibrator=calibrator).run()

        assert outcome.succeeded
        stats = calibrator.stats(PipelineStage.ANALYZE_WEBSITE)
        assert stats.attempts == 2
        assert stats.successes == 1
        assert stats.failures_by_kind == {"side_effect_not_confirmed": 1}
        assert "Replying with the content" in backend.calls[1]["instruction"]

    def test_config_enables_default_calibrator(self, tmp_path: Path, script):
        config = _config(calibration_enabled=True, calibration_path=str(tmp_path / "cal.json"))
        orchestrator = _orchestrator(tmp_path / "run", script.Backend([]), config)
        assert orchestrator.calibrator is not None
        assert orchestrator.calibrator.path == tmp_path / "cal.json"

    def test_disabled_calibration(self, tmp_path: Path, script):
        assert _orchestrator(tmp_path, script.Backend([])).calibrator is None

    def test_unwritable_calibration_does_not_abort_the_run(self, tmp_path: Path, script):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        calibrator = Calibrator(blocker / "calibration.json")
        work_dir = tmp_path / "run"
        orchestrator = _orchestrator(
            work_dir, script.Backend(script.pipeline_steps()), calibrator=calibrator
        )
        outcome = orchestrator.run()

        assert outcome.succeeded
        assert orchestrator.history.entries()[-1]["event"] == "run_finished"

    def test_stage_override_beats_calibrated_budget(self, tmp_path: Path, script):
        calibrator = Calibrator(tmp_path / "calibration.json", default_budget=3)
        config = _config(stages=[StageConfig(stage=PipelineStage.ANALYZE_WEBSITE, max_attempts=1)])
        backend = script.Backend([script.replies()])
        outcome = _orchestrator(tmp_path / "run", backend, config, calibrator=calibrator).run()

        assert outcome.failed_stage == PipelineStage.ANALYZE_WEBSITE
        assert outcome.attempts_for(PipelineStage.ANALYZE_WEBSITE) == 1


class TestStopAndLocking:
    def test_stop_during_a_call_ends_the_run(self, tmp_path: Path, script):
        holder: dict[str, PipelineOrchestrator] = {}

        def _stopping_step(work_dir: Path, instruction: str):
            holder["orchestrator"].stop()
            return script.Run([script.text_event("working")], exit_code=-15, cancelled=True)

        calibrator = Calibrator(tmp_path / "calibration.json")
        backend = script.Backend([_stopping_step])
        orchestrator = _orchestrator(tmp_path / "run", backend, calibrator=calibrator)
        holder["orchestrator"] = orchestrator
        outcome = orchestrator.run()

        assert orchestrator.stop_requested
        assert outcome.failed_stage == PipelineStage.ANALYZE_WEBSITE
        assert outcome.error_kind == "timeout"
        assert len(backend.calls) == 1
        assert backend.calls[0]["cancel_event"] is not None
        assert calibrator.stats(PipelineStage.ANALYZE_WEBSITE).attempts == 0

    def test_stop_before_the_run_starts_is_honoured(self, tmp_path: Path, script):
        backend = script.Backend([])
        orchestrator = _orchestrator(tmp_path, backend)
        orchestrator.stop()
        outcome = orchestrator.run()

        assert outcome.failed_stage == PipelineStage.ANALYZE_WEBSITE
        assert outcome.error_kind == "timeout"
        assert backend.calls == []
        assert orchestrator.history.entries()[-1]["event"] == "run_finished"

    def test_second_run_on_same_directory_is_rejected(self, tmp_path: Path, script):
        held = threading.Event()
        release = threading.Event()

        def _hold() -> None:
            with exclusive_path(tmp_path.resolve()):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=_hold)
        thread.start()
        try:
            assert held.wait(5)
            backend = script.Backend([])
            with pytest.raises(RuntimeError, match="already in use"):
                _orchestrator(tmp_path, backend).execute_from_step(1)
            assert backend.calls == []
        finally:
            release.set()
            thread.join(5)

    def test_lock_is_released_after_a_run(self, tmp_path: Path, script):
        orchestrator = _orchestrator(tmp_path, script.Backend(script.pipeline_steps()))
        assert orchestrator.run().succeeded
        with exclusive_path(tmp_path.resolve()):
            pass


def test_history_records_the_run(tmp_path: Path, script) -> None:
    backend = script.Backend([script.replies(), *script.pipeline_steps()])
    orchestrator = _orchestrator(tmp_path, backend)
    outcome = orchestrator.run()

    entries = orchestrator.history.entries()
    events = [entry["event"] for entry in entries]
    assert events[0] == "run_started"
    assert events[-1] == "run_finished"
    assert events.count("stage_attempt") == 6
    assert events.count("stage_completed") == 5
    assert {entry["run_id"] for entry in entries} == {outcome.run_id}
    assert entries[-1]["context"]["status"] == "completed"


def test_create_backend_uses_config(tmp_path: Path) -> None:
    config = PipelineConfig(claude_binary="/opt/claude", model="sonnet", max_turns=12)
    backend = create_backend(config)
    assert isinstance(backend, ClaudeCodeBackend)
    assert backend.claude_binary == "/opt/claude"
    assert backend.model == "sonnet"
    assert backend.max_turns == 12


def test_unknown_backend_name() -> None:
    with pytest.raises(KeyError):
        create_backend(PipelineConfig(backend="nope"))
