"""Shared pytest configuration, scripted backend and artifact fixtures."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

import e2e_robot.prompts.catalog as catalog_module
from e2e_robot.agent_runner import AgentBackend, BackendRun
from e2e_robot.pipeline.stages import STAGE_ARTIFACTS, STAGE_ORDER, PipelineStage


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path_factory) -> None:
    """Keep user prompt overrides and E2E_ROBOT_* variables out of tests."""
    override_dir = tmp_path_factory.mktemp("overrides")
    monkeypatch.setattr(catalog_module, "_USER_OVERRIDE", override_dir / "none.yaml")
    for name in (
        "E2E_ROBOT_TARGET_URL",
        "E2E_ROBOT_BACKEND",
        "E2E_ROBOT_CLAUDE_BIN",
        "E2E_ROBOT_MODEL",
        "E2E_ROBOT_MCP_COMMAND",
        "E2E_ROBOT_CALIBRATION_PATH",
        "E2E_ROBOT_MAX_TURNS",
        "E2E_ROBOT_MAX_ATTEMPTS",
        "E2E_ROBOT_QUERY_TIMEOUT",
        "E2E_ROBOT_CALIBRATION",
        "E2E_ROBOT_REQUIRE_PASSING_TESTS",
        "E2E_ROBOT_PLAYWRIGHT_MCP",
        "E2E_ROBOT_PROMPT_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)


# ── Valid artifact contents ──────────────────────────────────────

ANALYSIS_MD = """# Website Analysis: Example

## Overview
A small demo site with a search box.

## Interactive Elements
- Search input (role=searchbox)
"""

SCENARIOS_MD = """# Test Scenarios

## Test Objectives
Cover search.

## Scenario 1: Search returns results
- **Steps**:
  1. Type "shoes" into the search box
- **Expected result**: results are listed
"""

TESTS_TS = """import { test, expect } from '@playwright/test';

test('search returns results', async ({ page }) => {
  await page.goto('https://example.com');
  await expect(page.getByRole('searchbox')).toBeVisible();
});
"""

RESULTS_JSON = json.dumps(
    {
        "schema_version": 1,
        "success": True,
        "tests": [{"name": "search returns results", "status": "passed", "duration_ms": 900}],
    }
)

RESULTS_ANALYSIS_MD = """# Test Results Analysis

## Summary
All tests passed.
"""

ARTIFACT_TEXTS: dict[PipelineStage, str] = {
    PipelineStage.ANALYZE_WEBSITE: ANALYSIS_MD,
    PipelineStage.GENERATE_SCENARIOS: SCENARIOS_MD,
    PipelineStage.GENERATE_TEST_CASES: TESTS_TS,
    PipelineStage.RUN_TESTS: RESULTS_JSON,
    PipelineStage.ANALYZE_RESULTS: RESULTS_ANALYSIS_MD,
}


def populate(work_dir: Path, count: int) -> Path:
    """Write valid artifacts for the first *count* stages."""
    work_dir.mkdir(parents=True, exist_ok=True)
    for stage in STAGE_ORDER[:count]:
        (work_dir / STAGE_ARTIFACTS[stage]).write_text(ARTIFACT_TEXTS[stage], encoding="utf-8")
    return work_dir


# ── Scripted backend ─────────────────────────────────────────────


def text_event(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def write_event(path: str | Path, tool_id: str = "toolu_1", tool: str = "Write") -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": tool_id,
                    "name": tool,
                    "input": {"file_path": str(path), "content": "..."},
                }
            ]
        },
    }


def result_event(
    text: str = "Saved.", *, is_error: bool = False, subtype: str = "success"
) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": subtype,
        "is_error": is_error,
        "result": text,
        "num_turns": 2,
        "total_cost_usd": 0.01,
        "usage": {"input_tokens": 100, "output_tokens": 20},
    }


class ScriptedRun(BackendRun):
    """Replays a fixed list of raw events."""

    def __init__(
        self,
        events: list[dict[str, Any]],
        *,
        exit_code: int = 0,
        timed_out: bool = False,
        cancelled: bool = False,
        stderr_text: str = "",
        error: Exception | None = None,
    ) -> None:
        self.events = list(events)
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.cancelled = cancelled
        self.stderr_text = stderr_text
        self.error = error
        self.closed = False

    def __iter__(self) -> Iterator[dict[str, Any]]:
        if self.error is not None:
            raise self.error
        yield from self.events

    def close(self) -> None:
        self.closed = True


Step = Callable[[Path, str], ScriptedRun]


def writes(name: str, content: str, *, claim: bool = True) -> Step:
    """Step that writes *name* in the work dir and reports success."""

    def _step(work_dir: Path, instruction: str) -> ScriptedRun:
        path = work_dir / name
        path.write_text(content, encoding="utf-8")
        events = [write_event(path)] if claim else []
        return ScriptedRun([*events, result_event()])

    return _step


def replies(text: str = "Here is the document.", *, claim_path: Path | None = None) -> Step:
    """Step that answers successfully without touching the filesystem."""

    def _step(work_dir: Path, instruction: str) -> ScriptedRun:
        events = [text_event(text)]
        if claim_path is not None:
            events.append(write_event(claim_path))
        return ScriptedRun([*events, result_event(text)])

    return _step


def fails(text: str = "Internal error", *, subtype: str = "error_during_execution") -> Step:
    """Step whose result event reports a backend error."""

    def _step(work_dir: Path, instruction: str) -> ScriptedRun:
        return ScriptedRun([result_event(text, is_error=True, subtype=subtype)], exit_code=1)

    return _step


def times_out() -> Step:
    def _step(work_dir: Path, instruction: str) -> ScriptedRun:
        return ScriptedRun([text_event("still working")], exit_code=-9, timed_out=True)

    return _step


class ScriptedBackend(AgentBackend):
    """Backend that plays one scripted step per call and records the calls."""

    name = "Scripted"

    def __init__(self, steps: list[Step] | None = None) -> None:
        self.steps = list(steps or [])
        self.calls: list[dict[str, Any]] = []
        self.runs: list[ScriptedRun] = []

    def start(
        self,
        work_dir: str | Path,
        instruction: str,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> ScriptedRun:
        self.calls.append(
            {
                "work_dir": Path(work_dir),
                "instruction": instruction,
                "timeout_seconds": timeout_seconds,
                "cancel_event": cancel_event,
            }
        )
        if not self.steps:
            raise AssertionError(f"unexpected backend call #{len(self.calls)}")
        run = self.steps.pop(0)(Path(work_dir), instruction)
        self.runs.append(run)
        return run


def pipeline_steps() -> list[Step]:
    """One successful step per stage, in pipeline order."""
    return [writes(STAGE_ARTIFACTS[stage], ARTIFACT_TEXTS[stage]) for stage in STAGE_ORDER]


@pytest.fixture
def script() -> SimpleNamespace:
    """Helpers for building scripted backends and work directories."""
    return SimpleNamespace(
        Backend=ScriptedBackend,
        Run=ScriptedRun,
        writes=writes,
        replies=replies,
        fails=fails,
        times_out=times_out,
        text_event=text_event,
        write_event=write_event,
        result_event=result_event,
        pipeline_steps=pipeline_steps,
        populate=populate,
        texts=ARTIFACT_TEXTS,
    )
