"""Shared helpers for CLI backend implementations."""

from __future__ import annotations

import errno
import json
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import suppress
from pathlib import Path
from typing import Any

from e2e_robot.agent_runner import BackendRun

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_MAX_CAPTURED_STDOUT_LINES = 20_000
_DEFAULT_MAX_CAPTURED_STDERR_LINES = 10_000
_COMMAND_LINE_LENGTH_ERROR_SUBSTRINGS = (
    "argument list too long",
    "command line is too long",
    "filename or extension is too long",
)
_COMMAND_LINE_LENGTH_ERROR_CODES = {errno.E2BIG, 206}


def _isolation_kwargs() -> dict[str, object]:
    """Run the child in its own process group so cancellation can signal all of it."""
    if os.name == "nt":
        return {"creationflags": int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def coerce_float(value: Any) -> float:
    """Lenient float for usage counters; invalid and non-finite values become 0.0."""
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def coerce_int(value: Any) -> int:
    """Lenient int for usage counters (``"12.7"`` -> 12, garbage -> 0)."""
    if isinstance(value, int):
        return int(value)
    return int(coerce_float(value))


def is_command_line_too_long_error(exc: BaseException) -> bool:
    """Return True when an exception indicates argv length exceeded OS limits."""
    message = str(exc or "").strip().lower()
    if any(token in message for token in _COMMAND_LINE_LENGTH_ERROR_SUBSTRINGS):
        return True

    for attr_name in ("winerror", "errno"):
        raw_code = getattr(exc, attr_name, None)
        try:
            code = int(raw_code)
        except (TypeError, ValueError, OverflowError):
            continue
        if code in _COMMAND_LINE_LENGTH_ERROR_CODES:
            return True
    return False


class StreamingJsonProcess(BackendRun):
    """Run a subprocess and yield its stdout JSONL events as they arrive.

    The wall-clock ``timeout_seconds`` ceiling and the optional
    ``inactivity_timeout_seconds`` both abandon the call and mark it
    ``timed_out``.  Setting ``cancel_event`` marks it ``cancelled``.  In
    every case the child process group is terminated.

    Iteration spawns the process, so an :class:`OSError` from a missing
    binary surfaces on the first ``next()``.  When the OS rejects an
    over-long argv and ``stdin_fallback_cmd`` is given, the process is
    spawned once more with that command and ``stdin_fallback_text`` on
    stdin.
    """

    def __init__(
        self,
        cmd: list[str],
        *,
        cwd: Path,
        env: dict[str, str],
        timeout_seconds: float = 0,
        inactivity_timeout_seconds: float = 0,
        cancel_event: threading.Event | None = None,
        stdin_text: str | None = None,
        stdin_fallback_cmd: list[str] | None = None,
        stdin_fallback_text: str | None = None,
        process_name: str = "backend",
        max_stdout_lines: int = _DEFAULT_MAX_CAPTURED_STDOUT_LINES,
        max_stderr_lines: int = _DEFAULT_MAX_CAPTURED_STDERR_LINES,
    ) -> None:
        self.cmd = list(cmd)
        self.cwd = cwd
        self.env = env
        self.timeout_seconds = max(0.0, float(timeout_seconds or 0))
        self.inactivity_timeout_seconds = max(0.0, float(inactivity_timeout_seconds or 0))
        self.cancel_event = cancel_event
        self.stdin_text = stdin_text
        self.stdin_fallback_cmd = list(stdin_fallback_cmd) if stdin_fallback_cmd else None
        self.stdin_fallback_text = stdin_fallback_text
        self.process_name = process_name
        self.raw_lines: deque[str] = deque(maxlen=max(1, int(max_stdout_lines)))
        self.stderr_lines: deque[str] = deque(maxlen=max(1, int(max_stderr_lines)))
        self.exit_code = -1
        self.timed_out = False
        self.cancelled = False
        self._generator: Iterator[dict[str, Any]] | None = None

    @property
    def stderr_text(self) -> str:  # type: ignore[override]
        return "\n".join(self.stderr_lines).strip()

    def __iter__(self) -> Iterator[dict[str, Any]]:
        if self._generator is not None:
            raise RuntimeError(f"{self.process_name} stream cannot be restarted")
        self._generator = self._stream()
        return self._generator

    def close(self) -> None:
        if self._generator is not None:
            self._generator.close()  # type: ignore[attr-defined]

    # ------------------------------------------------------------------

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        self.raw_lines.append(line)
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from %s: %s", self.process_name, line[:200])
            return None
        return data if isinstance(data, dict) else None

    def _spawn(self) -> subprocess.Popen[str]:
        try:
            return self._popen()
        except OSError as exc:
            if self.stdin_fallback_cmd is None or not is_command_line_too_long_error(exc):
                raise
        logger.warning(
            "%s argv exceeded command-line limits; retrying with stdin prompt transport.",
            self.process_name,
        )
        self.cmd = self.stdin_fallback_cmd
        self.stdin_text = self.stdin_fallback_text or ""
        self.stdin_fallback_cmd = None
        return self._popen()

    def _popen(self) -> subprocess.Popen[str]:
        return subprocess.Popen(
            self.cmd,
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.PIPE if self.stdin_text is not None else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=self.env,
            **_isolation_kwargs(),
        )

    def _stream(self) -> Iterator[dict[str, Any]]:
        proc = self._spawn()
        if proc.stdout is None or proc.stderr is None:
            raise RuntimeError(f"{self.process_name} subprocess pipes are unexpectedly unavailable")

        stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
        done_sentinel = object()

        def _pump_stream(stream_name: str, stream: Any) -> None:
            try:
                for line in stream:
                    stream_queue.put((stream_name, line.rstrip("\n\r")))
            except ValueError:  # pragma: no cover - stream closed during shutdown
                pass
            finally:
                stream_queue.put((stream_name, done_sentinel))

        def _pump_stdin(stream: Any, text: str) -> None:
            try:
                stream.write(text)
                if text and not text.endswith("\n"):
                    stream.write("\n")
                stream.flush()
            except OSError:  # pragma: no cover - child exited before reading stdin
                logger.debug("%s stdin write failed", self.process_name)
            finally:
                with suppress(OSError):
                    stream.close()

        threads: list[threading.Thread] = []
        if self.stdin_text is not None and proc.stdin is not None:
            threads.append(
                threading.Thread(target=_pump_stdin, args=(proc.stdin, self.stdin_text), daemon=True)
            )
        threads.append(
            threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True)
        )
        threads.append(
            threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True)
        )
        for thread in threads:
            thread.start()

        started = time.monotonic()
        last_activity = started
        closed_streams: set[str] = set()

        try:
            while len(closed_streams) < 2:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    self.cancelled = True
                    break

                now = time.monotonic()
                if self.timeout_seconds and now - started >= self.timeout_seconds:
                    self.timed_out = True
                    break
                if (
                    self.inactivity_timeout_seconds
                    and now - last_activity >= self.inactivity_timeout_seconds
                ):
                    self.timed_out = True
                    break

                wait_seconds = 0.25
                if self.timeout_seconds:
                    remaining = self.timeout_seconds - (now - started)
                    wait_seconds = max(0.05, min(wait_seconds, remaining))

                try:
                    stream_name, payload = stream_queue.get(timeout=wait_seconds)
                except queue.Empty:
                    if proc.poll() is not None and not any(
                        t.is_alive() for t in threads[-2:]
                    ):
                        break
                    continue

                if payload is done_sentinel:
                    closed_streams.add(stream_name)
                    continue

                last_activity = time.monotonic()
                line = str(payload)
                if not line:
                    continue
                if stream_name == "stdout":
                    event = self._parse_line(line)
                    if event is not None:
                        yield event
                else:
                    self.stderr_lines.append(line)

            if self.timed_out or self.cancelled:
                reason = "timeout" if self.timed_out else "cancellation"
                logger.warning("%s abandoned after %s", self.process_name, reason)
                _terminate_process_with_fallback(proc, process_name=self.process_name, reason=reason)
            else:
                _wait_for_process(proc)
                # Drain lines buffered just before process exit.
                while True:
                    try:
                        stream_name, payload = stream_queue.get_nowait()
                    except queue.Empty:
                        break
                    if payload is done_sentinel or not payload:
                        continue
                    line = str(payload)
                    if stream_name == "stdout":
                        event = self._parse_line(line)
                        if event is not None:
                            yield event
                    else:
                        self.stderr_lines.append(line)
        finally:
            if proc.poll() is None:
                _terminate_process_with_fallback(
                    proc, process_name=self.process_name, reason="consumer exit"
                )
            for thread in threads:
                thread.join(timeout=1.0)
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                if stream is not None and not stream.closed:
                    with suppress(OSError):
                        stream.close()
            self.exit_code = proc.returncode if proc.returncode is not None else -1


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str], *, process_name: str, reason: str, grace_seconds: float = 1.5
) -> None:
    """SIGTERM the child's process group, then SIGKILL it after *grace_seconds*."""
    for sig_name, wait_seconds in (("SIGTERM", grace_seconds), ("SIGKILL", 5.0)):
        if proc.poll() is not None:
            return
        if os.name != "nt" and proc.pid > 0:
            with suppress(OSError):
                os.killpg(os.getpgid(proc.pid), getattr(signal, sig_name))
        with suppress(OSError):
            if sig_name == "SIGKILL":
                proc.kill()
            else:
                proc.terminate()
        try:
            proc.wait(timeout=wait_seconds)
            return
        except subprocess.TimeoutExpired:
            logger.warning("%s ignored %s during %s", process_name, sig_name, reason)
