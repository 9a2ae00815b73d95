"""Artifact Inspector: derive where a run should resume from the work directory.

The work directory is the only source of truth.  Nothing is cached between
calls and nothing is ever written: a missing directory simply means no
artifacts exist yet.

Each stage artifact has a versioned (v1) structural check:

- **website-analysis.md**: Markdown with an H1 title and a ``##`` section
- **test-scenarios.md**: at least one scenario heading
- **generated-tests.spec.ts**: imports ``@playwright/test`` and declares a test
- **test-results.json**: a valid :class:`TestRunReport`
- **results-analysis.md**: Markdown with an H1 title and a ``##`` section
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from e2e_robot.file_io import read_text_lenient
from e2e_robot.pipeline.stages import STAGE_ARTIFACTS, STAGE_ORDER, PipelineStage, stage_number
from e2e_robot.reports import normalize_report

logger = logging.getLogger(__name__)

CHECK_VERSION = 1

_H1_RE = re.compile(r"^#[ \t]+\S", re.MULTILINE)
_H2_RE = re.compile(r"^##[ \t]+\S", re.MULTILINE)
_SCENARIO_HEADING_RE = re.compile(
    r"^#{2,4}[ \t]+(?:\*\*)?(?:(?:test[ \t]+)?scenario\b|sc-?\d+|场景[ \t]*\d+)",
    re.MULTILINE | re.IGNORECASE,
)
_PLAYWRIGHT_IMPORT_RE = re.compile(
    r"""(?:from\s+|require\(\s*)['"]@playwright/test['"]"""
)
_TEST_CALL_RE = re.compile(r"(?<![\w.$])test(?:\.(?:only|skip|fixme|fail|slow))?\s*\(")


class ArtifactCheck(BaseModel):
    """Result of checking one stage artifact."""

    model_config = ConfigDict(frozen=True)

    stage: PipelineStage
    path: str
    exists: bool
    valid: bool
    reason: str = ""


class RunState(BaseModel):
    """Where a run stands, derived from the files on disk."""

    model_config = ConfigDict(frozen=True)

    work_dir: str
    next_step: PipelineStage | None
    reason: str
    existing_files: list[str] = Field(default_factory=list)
    checks: list[ArtifactCheck] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.next_step is None


# ── Per-stage validators (return an error reason, or "" when valid) ─


def _check_markdown_document(text: str) -> str:
    if not text.strip():
        return "file is empty"
    if not _H1_RE.search(text):
        return "missing a '# ' title"
    if not _H2_RE.search(text):
        return "missing any '## ' section"
    return ""


def _check_scenarios(text: str) -> str:
    if not text.strip():
        return "file is empty"
    if not _SCENARIO_HEADING_RE.search(text):
        return "no scenario headings (e.g. '## Scenario 1: ...')"
    return ""


def _check_test_cases(text: str) -> str:
    if not text.strip():
        return "file is empty"
    if not _PLAYWRIGHT_IMPORT_RE.search(text):
        return "does not import from '@playwright/test'"
    if not _TEST_CALL_RE.search(text):
        return "declares no test(...) cases"
    return ""


class ArtifactInspector:
    """Read-only inspector for one work directory."""

    def __init__(self, work_dir: str | Path, *, require_passing_tests: bool = False) -> None:
        self.work_dir = Path(work_dir)
        self.require_passing_tests = require_passing_tests
        self._validators: dict[PipelineStage, Callable[[str], str]] = {
            PipelineStage.ANALYZE_WEBSITE: _check_markdown_document,
            PipelineStage.GENERATE_SCENARIOS: _check_scenarios,
            PipelineStage.GENERATE_TEST_CASES: _check_test_cases,
            PipelineStage.RUN_TESTS: self._check_test_results,
            PipelineStage.ANALYZE_RESULTS: _check_markdown_document,
        }

    def artifact_path(self, stage: PipelineStage) -> Path:
        return self.work_dir / STAGE_ARTIFACTS[stage]

    def check(self, stage: PipelineStage) -> ArtifactCheck:
        """Check a single stage artifact.  Never raises for file problems."""
        path = self.artifact_path(stage)
        if not path.exists():
            return ArtifactCheck(
                stage=stage, path=str(path), exists=False, valid=False, reason="missing"
            )
        if not path.is_file():
            return ArtifactCheck(
                stage=stage, path=str(path), exists=True, valid=False, reason="not a regular file"
            )
        text = read_text_lenient(path)
        if text is None:
            return ArtifactCheck(
                stage=stage,
                path=str(path),
                exists=True,
                valid=False,
                reason="unreadable or not valid UTF-8",
            )
        problem = self._validators[stage](text)
        return ArtifactCheck(
            stage=stage,
            path=str(path),
            exists=True,
            valid=not problem,
            reason=problem or f"valid (v{CHECK_VERSION})",
        )

    def is_valid(self, stage: PipelineStage) -> bool:
        return self.check(stage).valid

    def analyze(self) -> RunState:
        """Return the first stage whose artifact is missing or invalid."""
        existing = [
            name for name in STAGE_ARTIFACTS.values() if (self.work_dir / name).is_file()
        ]
        if not self.work_dir.is_dir():
            return RunState(
                work_dir=str(self.work_dir),
                next_step=STAGE_ORDER[0],
                reason="work directory does not exist yet",
            )

        checks: list[ArtifactCheck] = []
        for stage in STAGE_ORDER:
            result = self.check(stage)
            checks.append(result)
            if not result.valid:
                return RunState(
                    work_dir=str(self.work_dir),
                    next_step=stage,
                    reason=f"{STAGE_ARTIFACTS[stage]}: {result.reason}",
                    existing_files=existing,
                    checks=checks,
                )
        return RunState(
            work_dir=str(self.work_dir),
            next_step=None,
            reason="all artifacts present and valid",
            existing_files=existing,
            checks=checks,
        )

    def _check_test_results(self, text: str) -> str:
        if not text.strip():
            return "file is empty"
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            return f"invalid JSON ({exc.msg} at line {exc.lineno})"
        try:
            report = normalize_report(data)
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            where = ".".join(str(part) for part in first.get("loc", ())) or "report"
            return f"schema mismatch at {where}: {first.get('msg', 'invalid')}"
        except ValueError as exc:
            return str(exc)
        if report.schema_version != CHECK_VERSION:
            return f"unsupported schema_version {report.schema_version}"
        if self.require_passing_tests and not report.success:
            failed = report.computed_summary().failed
            return f"report marks the run as failed ({failed} failing test(s))"
        return ""


# ── Operator-facing projection ─────────────────────────────────────


def format_run_state(state: RunState) -> str:
    """Render a RunState as a short multi-line report."""
    lines = [f"Work directory: {state.work_dir}"]
    if state.next_step is None:
        lines.append("Status: complete")
    else:
        lines.append(
            f"Next step: {stage_number(state.next_step)}. {state.next_step.value}"
        )
    lines.append(f"Reason: {state.reason}")
    for check in state.checks:
        mark = "ok" if check.valid else "--"
        lines.append(
            f"  [{mark}] {stage_number(check.stage)}. {STAGE_ARTIFACTS[check.stage]}: {check.reason}"
        )
    return "\n".join(lines)


def log_run_state(state: RunState, log: logging.Logger | None = None) -> None:
    for line in format_run_state(state).splitlines():
        (log or logger).info("%s", line)
