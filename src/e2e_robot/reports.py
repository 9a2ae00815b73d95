"""Load ``test-results.json`` in either accepted shape.

The run-tests stage is asked for the schema-v1 :class:`TestRunReport`, but
the backend sometimes saves Playwright's own JSON reporter output instead.
That shape (``suites -> specs -> tests -> results``) is normalized here so
both are judged by the same rules.
"""

from __future__ import annotations

from typing import Any

from e2e_robot.schemas import TestCaseRecord, TestRunReport, TestRunSummary


def _status(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in {"passed", "expected"}:
        return "passed"
    if value == "skipped":
        return "skipped"
    return "failed"


def _walk_suites(suites: Any, records: list[TestCaseRecord]) -> None:
    if not isinstance(suites, list):
        return
    for suite in suites:
        if not isinstance(suite, dict):
            continue
        for spec in suite.get("specs") or []:
            if not isinstance(spec, dict):
                continue
            for test in spec.get("tests") or []:
                if not isinstance(test, dict):
                    continue
                results = [r for r in test.get("results") or [] if isinstance(r, dict)]
                # Retries append results; the last one decides.
                final = results[-1] if results else {}
                error = final.get("error")
                message = error.get("message") if isinstance(error, dict) else None
                records.append(
                    TestCaseRecord(
                        name=str(spec.get("title") or test.get("title") or "unnamed test"),
                        status=_status(final.get("status") or test.get("status")),
                        error=message,
                        duration_ms=final.get("duration"),
                    )
                )
        _walk_suites(suite.get("suites"), records)


def from_playwright_json(data: dict[str, Any]) -> TestRunReport:
    """Convert Playwright's JSON reporter output to a schema-v1 report."""
    records: list[TestCaseRecord] = []
    _walk_suites(data.get("suites"), records)
    counts = {"passed": 0, "failed": 0, "skipped": 0}
    for record in records:
        counts[record.status] += 1
    stats = data.get("stats") if isinstance(data.get("stats"), dict) else {}
    success = bool(records) and counts["failed"] == 0
    if stats and "unexpected" in stats:
        success = success and not stats.get("unexpected")
    return TestRunReport(
        success=success,
        tests=records,
        summary=TestRunSummary(total=len(records), **counts),
        timestamp=stats.get("startTime"),
        notes="normalized from Playwright JSON reporter output",
    )


def normalize_report(data: Any) -> TestRunReport:
    """Validate *data* as a run report, accepting Playwright's native shape.

    Raises :class:`pydantic.ValidationError` or :class:`ValueError`.
    """
    if not isinstance(data, dict):
        raise ValueError("report must be a JSON object")
    if "tests" not in data and "suites" in data:
        return from_playwright_json(data)
    return TestRunReport.model_validate(data)
