"""Human-readable rendering of :class:`ToolEvent` streams.

Presentation only: nothing here feeds back into control flow.
"""

from __future__ import annotations

import logging
import re

from e2e_robot.schemas import ToolEvent, ToolEventKind

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_COUNT_RE = re.compile(r"(\d+)\s+(failed|passed)")


def truncate(text: str, max_length: int = 200) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def clean_console_text(text: str) -> str:
    """Strip ANSI escapes and control characters from tool output."""
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", text or "")).strip()


def detect_error_type(text: str) -> tuple[str, str]:
    """Classify a tool error into ``(type, summary)`` for operators."""
    clean = clean_console_text(text)
    lowered = clean.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout", "operation or test run took too long"
    if "not visible" in lowered:
        return "element not visible", "target element hidden or not rendered"
    if "tobelessthan" in lowered or "expect(" in lowered:
        return "assertion failed", "a test assertion did not hold"
    counts = dict((kind, num) for num, kind in _COUNT_RE.findall(lowered))
    if "failed" in counts and "passed" in counts:
        return "partial failure", f"{counts['passed']} passed, {counts['failed']} failed"
    return "execution error", "the tool reported an error"


def _short_id(value: str) -> str:
    return f"{value[:8]}..." if len(value) > 8 else value


def format_event(event: ToolEvent) -> str:
    """Multi-line description of one event."""
    if event.kind == ToolEventKind.TEXT_DELTA:
        return f'Claude: "{truncate(clean_console_text(event.text))}"'

    if event.kind == ToolEventKind.TOOL_INVOCATION:
        line = f"Tool call: {event.tool_name or 'unknown'}"
        if event.tool_use_id:
            line += f" (id {_short_id(event.tool_use_id)})"
        if event.file_path:
            line += f"\n   file: {event.file_path}"
        tool_input = event.raw.get("input")
        if isinstance(tool_input, dict) and tool_input:
            line += f"\n   params: {', '.join(sorted(tool_input))}"
        return line

    if event.kind == ToolEventKind.TOOL_ERROR:
        error_type, summary = detect_error_type(event.text)
        line = "Tool error"
        if event.tool_use_id:
            line += f" (id {_short_id(event.tool_use_id)})"
        line += f"\n   type: {error_type}\n   summary: {summary}"
        detail = clean_console_text(event.text)
        if detail:
            line += f"\n   detail: {truncate(detail, 300)}"
        return line

    raw = event.raw
    status = "failed" if event.is_error else "completed"
    line = f"Session {status}"
    if event.subtype:
        line += f" ({event.subtype})"
    duration_ms = raw.get("duration_ms")
    if isinstance(duration_ms, (int, float)):
        line += f"\n   duration: {duration_ms / 1000:.1f}s"
    if raw.get("num_turns"):
        line += f"\n   turns: {raw['num_turns']}"
    cost = raw.get("total_cost_usd")
    if isinstance(cost, (int, float)):
        line += f"\n   cost: ${cost:.4f}"
    if event.is_error and event.text:
        line += f"\n   detail: {truncate(clean_console_text(event.text), 300)}"
    return line


def format_event_compact(event: ToolEvent) -> str:
    """One-line description of one event."""
    if event.kind == ToolEventKind.TEXT_DELTA:
        return "Claude: responding..."
    if event.kind == ToolEventKind.TOOL_INVOCATION:
        target = f" {event.file_path}" if event.file_path else ""
        return f"Claude: {event.tool_name or 'tool'}{target}"
    if event.kind == ToolEventKind.TOOL_ERROR:
        return f"Tool error: {detect_error_type(event.text)[0]}"
    turns = event.raw.get("num_turns") or 0
    return f"{'failed' if event.is_error else 'done'} ({turns} turns)"


class TranscriptLogger:
    """Display sink that writes formatted events to a logger."""

    def __init__(self, log: logging.Logger | None = None, *, compact: bool = False) -> None:
        self.log = log or logger
        self.compact = compact

    def __call__(self, event: ToolEvent) -> None:
        text = format_event_compact(event) if self.compact else format_event(event)
        level = logging.WARNING if event.is_error else logging.INFO
        if event.kind == ToolEventKind.TEXT_DELTA:
            level = logging.DEBUG
        self.log.log(level, "%s", text)
