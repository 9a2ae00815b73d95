"""Execution Primitive: one instruction in, one confirmed side effect out.

The backend's own report is never trusted on its own.  When a request
names an expected file, the file is snapshotted before the call and
re-checked afterwards; only a file that now exists and differs from the
snapshot confirms the call.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from e2e_robot.agent_runner import AgentBackend
from e2e_robot.errors import ExecutionError, ExecutionErrorKind
from e2e_robot.file_io import FileSnapshot, atomic_write_text, snapshot_file
from e2e_robot.messages import StreamOutcome, interpret_events
from e2e_robot.prompt_logging import log_prompt
from e2e_robot.schemas import ExecutionRequest, ExecutionResult, ToolEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0
PIPELINE_DIR = ".pipeline"
RESPONSES_DIR = "responses"

_USAGE_LIMIT_MARKERS = (
    "usage limit reached",
    "api usage limit",
    "rate limit exceeded",
    "quota exceeded",
    "monthly limit reached",
    "api limit exceeded",
)

DisplaySink = Callable[[ToolEvent], None]


def verify_side_effect(before: FileSnapshot, path: Path) -> FileSnapshot:
    """Confirm that *path* was created or changed since *before*.

    Returns the new snapshot; raises ``side_effect_not_confirmed`` when the
    file is absent or byte-identical to its pre-call state.
    """
    after = snapshot_file(path)
    if not after.exists:
        raise ExecutionError(
            ExecutionErrorKind.SIDE_EFFECT_NOT_CONFIRMED,
            f"expected file {path} does not exist after the call",
        )
    if before.exists and after.sha256 == before.sha256:
        raise ExecutionError(
            ExecutionErrorKind.SIDE_EFFECT_NOT_CONFIRMED,
            f"expected file {path} is unchanged by the call",
        )
    return after


def _usage_limit_hit(texts: Iterable[str]) -> bool:
    for text in texts:
        lowered = (text or "").lower()
        if any(marker in lowered for marker in _USAGE_LIMIT_MARKERS):
            return True
    return False


def _recording(events: Iterable[dict[str, Any]], sink: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    for event in events:
        sink.append(event)
        yield event


class ClaudeExecutor:
    """Drive a backend for a single :class:`ExecutionRequest`.

    Parameters
    ----------
    backend:
        Any registered :class:`AgentBackend`.
    work_dir:
        Directory the backend runs in; relative expected files resolve here.
    default_timeout:
        Ceiling used when a request does not carry its own.
    display:
        Optional sink receiving every interpreted event (presentation only).
    persist_responses:
        Write raw responses and events under ``.pipeline/responses``.
    """

    def __init__(
        self,
        backend: AgentBackend,
        work_dir: str | Path,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        display: DisplaySink | None = None,
        persist_responses: bool = True,
    ) -> None:
        self.backend = backend
        self.work_dir = Path(work_dir).resolve()
        self.default_timeout = float(default_timeout)
        self.display = display
        self.persist_responses = persist_responses

    @property
    def responses_dir(self) -> Path:
        return self.work_dir / PIPELINE_DIR / RESPONSES_DIR

    def resolve_expected(self, expected_file: str | None) -> Path | None:
        if not expected_file:
            return None
        path = Path(expected_file)
        if not path.is_absolute():
            path = self.work_dir / path
        return path.resolve()

    # ------------------------------------------------------------------

    def execute(
        self,
        request: ExecutionRequest,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run *request* and return only once its side effect is confirmed."""
        expected_path = self.resolve_expected(request.expected_file)
        before = snapshot_file(expected_path) if expected_path is not None else None
        timeout = (
            self.default_timeout if request.timeout_seconds is None else float(request.timeout_seconds)
        )
        self.work_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            "Executing %s (expected=%s, timeout=%.0fs)",
            request.label,
            expected_path.name if expected_path is not None else "none",
            timeout,
        )
        log_prompt(logger, request.instruction, label=f"{request.label} instruction")

        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, "cancelled before the call started")

        start = time.monotonic()
        outcome = StreamOutcome()
        raw_events: list[dict[str, Any]] = []
        response_path: Path | None = None
        try:
            run = self.backend.start(
                self.work_dir,
                request.instruction,
                timeout_seconds=timeout,
                cancel_event=cancel_event,
            )
        except OSError as exc:
            raise ExecutionError(
                ExecutionErrorKind.BACKEND_FAILURE, f"failed to start {self.backend.name}: {exc}"
            ) from exc

        try:
            for event in interpret_events(_recording(run, raw_events)):
                outcome.add(event)
                if self.display is not None:
                    self.display(event)
        except OSError as exc:
            raise ExecutionError(
                ExecutionErrorKind.BACKEND_FAILURE, f"failed to run {self.backend.name}: {exc}"
            ) from exc
        finally:
            run.close()
            if self.persist_responses:
                response_path = self._persist(request.label, outcome, raw_events)
        duration = time.monotonic() - start

        if run.cancelled:
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, "call cancelled by stop request")
        if run.timed_out:
            raise ExecutionError(
                ExecutionErrorKind.TIMEOUT, f"call exceeded {timeout:.0f}s and was abandoned"
            )

        failure_texts = [outcome.end.text if outcome.end else "", run.stderr_text]
        failure_texts.extend(ev.text for ev in outcome.tool_errors)
        if not outcome.succeeded or run.exit_code != 0:
            if _usage_limit_hit(failure_texts):
                raise ExecutionError(
                    ExecutionErrorKind.BACKEND_FAILURE,
                    "backend usage limit reached",
                    retryable=False,
                )
            if not outcome.succeeded:
                raise ExecutionError(ExecutionErrorKind.BACKEND_FAILURE, outcome.error_summary())
            detail = f": {run.stderr_text[:500]}" if run.stderr_text else ""
            raise ExecutionError(
                ExecutionErrorKind.BACKEND_FAILURE,
                f"{self.backend.name} exited with status {run.exit_code}{detail}",
            )

        write_claimed = False
        confirmed = False
        if expected_path is not None and before is not None:
            write_claimed = outcome.claimed_write(expected_path, base_dir=self.work_dir)
            try:
                verify_side_effect(before, expected_path)
            except ExecutionError:
                if write_claimed:
                    logger.warning(
                        "%s claimed a write to %s but the file shows no change",
                        request.label,
                        expected_path.name,
                    )
                raise
            confirmed = True
            if not write_claimed:
                logger.info(
                    "%s changed %s without a write-tool call; accepting the filesystem",
                    request.label,
                    expected_path.name,
                )

        logger.info(
            "%s finished in %.1fs (tools=%d, tool_errors=%d, cost=$%.4f)",
            request.label,
            duration,
            len(outcome.invocations),
            len(outcome.tool_errors),
            outcome.usage.cost_usd,
        )
        return ExecutionResult(
            text=outcome.text,
            side_effect_confirmed=confirmed,
            write_claimed=write_claimed,
            expected_path=str(expected_path) if expected_path is not None else None,
            tool_invocations=len(outcome.invocations),
            tool_errors=len(outcome.tool_errors),
            usage=outcome.usage,
            duration_seconds=duration,
            response_path=str(response_path) if response_path is not None else None,
        )

    def check_availability(self, timeout_seconds: float = 120.0) -> bool:
        """Ask the backend for a trivial answer; True when it responds."""
        request = ExecutionRequest(
            instruction='Respond with exactly "OK" and nothing else. Do not use any tools.',
            timeout_seconds=timeout_seconds,
            label="availability",
        )
        try:
            result = self.execute(request)
        except ExecutionError as exc:
            logger.warning("Backend %s unavailable: %s", self.backend.name, exc)
            return False
        return bool(result.text.strip())

    # ------------------------------------------------------------------

    def _persist(
        self,
        label: str,
        outcome: StreamOutcome,
        raw_events: list[dict[str, Any]],
    ) -> Path | None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        safe_label = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in label) or "request"
        base = self.responses_dir / f"{safe_label}-{stamp}"
        text_path = base.with_suffix(".md")
        try:
            atomic_write_text(text_path, outcome.text + ("\n" if outcome.text else ""))
            atomic_write_text(
                base.with_suffix(".jsonl"),
                "".join(json.dumps(event, ensure_ascii=False) + "\n" for event in raw_events),
            )
        except OSError as exc:
            logger.warning("Could not persist response for %s: %s", label, exc)
            return None
        return text_path
