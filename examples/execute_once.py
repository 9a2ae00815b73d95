#!/usr/bin/env python3
"""Example: one confirmed Claude Code call that must write a file.

Usage:
    python examples/execute_once.py /path/to/work_dir notes.md "Write a haiku about testing to notes.md"
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from e2e_robot.claude_code import ClaudeCodeBackend
from e2e_robot.errors import ExecutionError
from e2e_robot.executor import ClaudeExecutor
from e2e_robot.message_display import TranscriptLogger
from e2e_robot.schemas import ExecutionRequest


def main() -> None:
    if len(sys.argv) < 4:
        print("Usage: execute_once.py <work_dir> <expected_file> <instruction>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)-8s  %(message)s")
    work_dir, expected_file, instruction = sys.argv[1], sys.argv[2], sys.argv[3]

    backend = ClaudeCodeBackend(playwright_mcp=False)
    executor = ClaudeExecutor(backend, work_dir, default_timeout=300, display=TranscriptLogger())
    request = ExecutionRequest(instruction=instruction, expected_file=expected_file, label="example")
    print(f"Running Claude Code in {work_dir!r} ...")
    try:
        result = executor.execute(request)
    except ExecutionError as exc:
        print(f"\nFailed ({exc.kind.value}): {exc.message}")
        sys.exit(1)

    print(f"\nConfirmed:     {result.side_effect_confirmed}")
    print(f"Write claimed: {result.write_claimed}")
    print(f"Duration:      {result.duration_seconds:.1f}s")
    print(f"Tool calls:    {result.tool_invocations} ({result.tool_errors} errors)")
    print(f"\nFinal message:\n{result.text[:500]}")
    print(f"\nUsage: {result.usage.model_dump_json(indent=2)}")


if __name__ == "__main__":
    main()
