"""Pydantic models for structured data throughout the pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Backend stream events
# ---------------------------------------------------------------------------


class ToolEventKind(str, Enum):
    """Kinds of events produced by the message interpreter."""

    TOOL_INVOCATION = "tool_invocation"
    TOOL_ERROR = "tool_error"
    TEXT_DELTA = "text_delta"
    STREAM_END = "stream_end"


class ToolEvent(BaseModel):
    """A single interpreted event from one backend call."""

    kind: ToolEventKind
    tool_name: str = ""
    tool_use_id: str = ""
    file_path: str = ""
    text: str = ""
    is_error: bool = False
    subtype: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


class UsageInfo(BaseModel):
    """Token / cost usage reported by the backend."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    num_turns: int = 0
    model: str | None = None


# ---------------------------------------------------------------------------
# Execution primitive
# ---------------------------------------------------------------------------


class ExecutionRequest(BaseModel):
    """One natural-language instruction for the backend.

    ``expected_file`` is the artifact the instruction must produce, relative
    to the work directory (or absolute).  ``None`` marks a pure query.
    """

    model_config = ConfigDict(frozen=True)

    instruction: str
    expected_file: str | None = None
    timeout_seconds: float | None = None
    label: str = "request"

    @field_validator("instruction")
    @classmethod
    def _instruction_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("instruction must be a non-empty string")
        return value


class ExecutionResult(BaseModel):
    """Outcome of a confirmed backend call."""

    text: str = ""
    side_effect_confirmed: bool = False
    write_claimed: bool = False
    expected_path: str | None = None
    tool_invocations: int = 0
    tool_errors: int = 0
    usage: UsageInfo = Field(default_factory=UsageInfo)
    duration_seconds: float = 0.0
    response_path: str | None = None


# ---------------------------------------------------------------------------
# test-results.json (schema version 1)
# ---------------------------------------------------------------------------

TestStatus = Literal["passed", "failed", "skipped"]


class TestCaseRecord(BaseModel):
    """One executed test case inside a run report."""

    __test__ = False  # Prevent pytest from collecting this model as a test class.

    name: str
    status: TestStatus
    error: str | None = None
    duration_ms: float | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class TestRunSummary(BaseModel):
    """Aggregate counters for a run report."""

    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class TestRunReport(BaseModel):
    """Machine-readable report written by the test runner stage."""

    __test__ = False

    schema_version: int = 1
    success: bool
    tests: list[TestCaseRecord] = Field(min_length=1)
    summary: TestRunSummary | None = None
    timestamp: str | None = None
    attempts: int | None = None
    notes: str | None = None

    def computed_summary(self) -> TestRunSummary:
        """Return the summary recomputed from the individual test records."""
        counts = {"passed": 0, "failed": 0, "skipped": 0}
        for record in self.tests:
            counts[record.status] += 1
        return TestRunSummary(total=len(self.tests), **counts)
