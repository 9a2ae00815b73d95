"""Append-only run history for one work directory.

Entries are JSON lines in ``<work_dir>/.pipeline/history.jsonl``.  When the
file grows past ``max_bytes`` it is moved aside with a timestamp suffix.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from e2e_robot.file_io import append_text, read_text_lenient

logger = logging.getLogger(__name__)

_DEFAULT_MAX_BYTES = 1_200_000
HISTORY_FILE = "history.jsonl"


def _truncate(text: str, max_len: int) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


class RunHistory:
    """Run history log (``run_started``, ``stage_attempt``, ...)."""

    def __init__(self, work_dir: str | Path, *, max_bytes: int = _DEFAULT_MAX_BYTES) -> None:
        self.work_dir = Path(work_dir).resolve()
        self.path = self.work_dir / ".pipeline" / HISTORY_FILE
        self.max_bytes = max(4096, int(max_bytes))
        self.run_id = f"run_{uuid.uuid4().hex[:12]}"
        self._lock = threading.Lock()

    def new_run(self) -> str:
        self.run_id = f"run_{uuid.uuid4().hex[:12]}"
        return self.run_id

    def record(self, event: str, *, summary: str = "", **context: Any) -> None:
        payload = {
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "run_id": self.run_id,
            "event": _truncate(event, 80),
            "summary": _truncate(summary, 800),
            "context": {k: self._sanitize(v) for k, v in context.items()},
        }
        try:
            with self._lock:
                self._rotate_if_needed()
                append_text(self.path, json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not append history entry: %s", exc)

    def entries(self) -> list[dict[str, Any]]:
        """Parsed entries of the active history file; bad lines are skipped."""
        text = read_text_lenient(self.path) or ""
        result: list[dict[str, Any]] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                result.append(item)
        return result

    def _rotate_if_needed(self) -> None:
        if not self.path.exists() or self.path.stat().st_size < self.max_bytes:
            return
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.path.with_name(f"history-{stamp}.jsonl")
        idx = 1
        while target.exists():
            idx += 1
            target = self.path.with_name(f"history-{stamp}-{idx}.jsonl")
        self.path.replace(target)

    @staticmethod
    def _sanitize(value: Any) -> Any:
        if isinstance(value, (str, int, float, bool)) or value is None:
            return _truncate(value, 500) if isinstance(value, str) else value
        if isinstance(value, dict):
            return {str(k): RunHistory._sanitize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [RunHistory._sanitize(v) for v in value[:50]]
        return _truncate(str(value), 500)
