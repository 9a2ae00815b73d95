"""Message Interpreter: raw Claude stream-json events -> :class:`ToolEvent`.

This is the control path.  The executor decides success or failure from
what this module yields; presentation lives in :mod:`message_display`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from e2e_robot.runner_common import coerce_float, coerce_int
from e2e_robot.schemas import ToolEvent, ToolEventKind, UsageInfo

logger = logging.getLogger(__name__)

WRITE_LIKE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})
TRUNCATED_SUBTYPE = "truncated"


def is_write_like(tool_name: str) -> bool:
    """Return True for tools that create or modify a file."""
    name = (tool_name or "").strip()
    if name in WRITE_LIKE_TOOLS:
        return True
    lowered = name.lower()
    # MCP file tools, e.g. "mcp__fs__write_file".
    return any(key in lowered for key in ("write", "edit", "create"))


def _tool_input_path(tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return ""
    for key in ("file_path", "path", "notebook_path", "filename"):
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _block_text(content: Any) -> str:
    """Flatten a tool_result ``content`` (string or list of blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return ""


def _error_text(data: dict[str, Any]) -> str:
    for key in ("error", "message", "text", "detail"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = value.get("message") or value.get("text") or value.get("detail")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return "backend reported an error"


def _message_blocks(data: dict[str, Any]) -> list[dict[str, Any]]:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def extract_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage and cost from a Claude Code ``result`` event."""
    usage_raw: dict[str, Any] = {}
    top_level_usage = data.get("usage")
    if isinstance(top_level_usage, dict):
        usage_raw = top_level_usage
    if not usage_raw:
        result = data.get("result")
        if isinstance(result, dict) and isinstance(result.get("usage"), dict):
            usage_raw = result["usage"]

    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens", 0)))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens", 0)))
    cache_read = max(0, coerce_int(usage_raw.get("cache_read_input_tokens", 0)))
    cache_creation = max(0, coerce_int(usage_raw.get("cache_creation_input_tokens", 0)))

    total_tokens = max(0, coerce_int(usage_raw.get("total_tokens", 0)))
    if total_tokens <= 0:
        total_tokens = input_tokens + output_tokens + cache_read + cache_creation

    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cost_usd=max(0.0, coerce_float(data.get("total_cost_usd", 0.0))),
        num_turns=max(0, coerce_int(data.get("num_turns", 0))),
        model=data.get("model") or usage_raw.get("model"),
    )


def interpret_events(raw_events: Iterable[dict[str, Any]]) -> Iterator[ToolEvent]:
    """Classify raw backend events lazily.

    The generator always finishes with exactly one ``stream_end`` event.
    When the backend stream stops before a ``result`` event arrives, the
    final event is synthesized with ``is_error=True`` and subtype
    ``truncated``.  Events after the first ``result`` are drained and
    ignored so the backend process can exit on its own.
    """
    ended = False
    for data in raw_events:
        if ended or not isinstance(data, dict):
            continue
        etype = str(data.get("type") or "").strip().lower()

        if etype == "assistant":
            for block in _message_blocks(data):
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    yield ToolEvent(kind=ToolEventKind.TEXT_DELTA, text=str(block["text"]), raw=data)
                elif block_type == "tool_use":
                    yield ToolEvent(
                        kind=ToolEventKind.TOOL_INVOCATION,
                        tool_name=str(block.get("name") or ""),
                        tool_use_id=str(block.get("id") or ""),
                        file_path=_tool_input_path(block.get("input")),
                        raw=block,
                    )
        elif etype == "user":
            for block in _message_blocks(data):
                if block.get("type") == "tool_result" and block.get("is_error"):
                    yield ToolEvent(
                        kind=ToolEventKind.TOOL_ERROR,
                        tool_use_id=str(block.get("tool_use_id") or ""),
                        text=_block_text(block.get("content")) or str(block.get("text") or ""),
                        is_error=True,
                        raw=block,
                    )
        elif etype == "result":
            ended = True
            result = data.get("result")
            text = result if isinstance(result, str) else ""
            subtype = str(data.get("subtype") or "")
            is_error = bool(data.get("is_error")) or subtype.startswith("error")
            yield ToolEvent(
                kind=ToolEventKind.STREAM_END,
                text=text,
                is_error=is_error,
                subtype=subtype,
                raw=data,
            )
        elif etype == "error" or (etype not in {"system", "stream_event"} and "error" in data):
            yield ToolEvent(
                kind=ToolEventKind.TOOL_ERROR,
                text=_error_text(data),
                is_error=True,
                raw=data,
            )
        else:
            logger.debug("Skipping backend event type %r", etype or "(none)")

    if not ended:
        yield ToolEvent(
            kind=ToolEventKind.STREAM_END,
            text="backend stream ended without a result event",
            is_error=True,
            subtype=TRUNCATED_SUBTYPE,
        )


@dataclass
class StreamOutcome:
    """Aggregate of every :class:`ToolEvent` seen during one call."""

    text_parts: list[str] = field(default_factory=list)
    invocations: list[ToolEvent] = field(default_factory=list)
    tool_errors: list[ToolEvent] = field(default_factory=list)
    end: ToolEvent | None = None
    usage: UsageInfo = field(default_factory=UsageInfo)

    def add(self, event: ToolEvent) -> None:
        if event.kind == ToolEventKind.TEXT_DELTA:
            self.text_parts.append(event.text)
        elif event.kind == ToolEventKind.TOOL_INVOCATION:
            self.invocations.append(event)
        elif event.kind == ToolEventKind.TOOL_ERROR:
            self.tool_errors.append(event)
        elif event.kind == ToolEventKind.STREAM_END and self.end is None:
            self.end = event
            if event.raw:
                self.usage = extract_usage(event.raw)

    @property
    def text(self) -> str:
        """Final response text, falling back to the concatenated deltas."""
        if self.end is not None and self.end.text and not self.end.is_error:
            return self.end.text
        return "\n".join(part for part in self.text_parts if part).strip()

    @property
    def succeeded(self) -> bool:
        return self.end is not None and not self.end.is_error

    @property
    def failed_tool_ids(self) -> set[str]:
        return {ev.tool_use_id for ev in self.tool_errors if ev.tool_use_id}

    def claimed_write(self, path: Path, *, base_dir: Path | None = None) -> bool:
        """Whether a non-failed write-like invocation targeted *path*."""
        target = path.resolve()
        failed = self.failed_tool_ids
        for event in self.invocations:
            if not event.file_path or not is_write_like(event.tool_name):
                continue
            if event.tool_use_id and event.tool_use_id in failed:
                continue
            candidate = Path(event.file_path)
            if not candidate.is_absolute() and base_dir is not None:
                candidate = base_dir / candidate
            if candidate.resolve() == target:
                return True
        return False

    def error_summary(self) -> str:
        """Best description of why the call failed."""
        if self.end is not None and self.end.is_error:
            detail = self.end.text or self.end.subtype or "error result"
            return f"backend reported failure ({self.end.subtype or 'error'}): {detail}"[:1000]
        if self.tool_errors:
            return f"tool error: {self.tool_errors[-1].text}"[:1000]
        return "backend reported failure"
