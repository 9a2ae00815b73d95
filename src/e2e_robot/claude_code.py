"""Backend for the Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path

from e2e_robot.agent_runner import AgentBackend, register_backend
from e2e_robot.prompt_logging import prompt_metadata
from e2e_robot.runner_common import StreamingJsonProcess, coerce_int, resolve_binary

logger = logging.getLogger(__name__)


DEFAULT_MCP_COMMAND = "npx @playwright/mcp@latest"
_WINDOWS_COMMAND_LINE_LIMIT = 32767
_WINDOWS_CMD_EXE_LIMIT = 8191
_COMMAND_LINE_SAFETY_MARGIN = 2048
# Linux caps a single argv string at 131072 bytes (MAX_ARG_STRLEN).
_POSIX_PROMPT_ARG_LIMIT_BYTES = 100_000


class ClaudeCodeBackend(AgentBackend):
    """Spawn ``claude -p`` in ``stream-json`` mode.

    Claude Code's non-interactive mode works as follows::

        claude -p "prompt" --output-format stream-json --verbose

    Each stdout line is one JSON event (``system``, ``assistant``,
    ``user``, ``result``).  Permission prompts are skipped because nobody
    is around to answer them, and the Playwright MCP server is attached so
    the model can drive a browser.

    Parameters
    ----------
    claude_binary:
        Path or name of the Claude Code CLI binary.
    env_overrides:
        Extra environment variables forwarded to the child process.
    max_turns:
        Maximum agent turns (``--max-turns``).  ``0`` means unlimited.
    model:
        Override the model Claude Code uses (``--model``).
    playwright_mcp:
        Attach the Playwright MCP server via ``--mcp-config``.
    mcp_command:
        Command line that launches the MCP server.
    inactivity_timeout:
        Seconds without any output before the call is abandoned.  ``0``
        leaves only the wall-clock ceiling in force.
    """

    name = "Claude Code"

    def __init__(
        self,
        claude_binary: str = "claude",
        env_overrides: dict[str, str] | None = None,
        max_turns: int = 0,
        model: str = "",
        playwright_mcp: bool = True,
        mcp_command: str = DEFAULT_MCP_COMMAND,
        inactivity_timeout: float = 0,
    ) -> None:
        self.claude_binary = claude_binary
        self.env_overrides = env_overrides or {}
        self.max_turns = max(0, coerce_int(max_turns))
        self.model = (model or "").strip()
        self.playwright_mcp = bool(playwright_mcp)
        self.mcp_command = (mcp_command or DEFAULT_MCP_COMMAND).strip()
        self.inactivity_timeout = max(0.0, float(inactivity_timeout or 0))

    def start(
        self,
        work_dir: str | Path,
        instruction: str,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> StreamingJsonProcess:
        cwd = Path(work_dir).resolve()
        use_stdin = self._should_pipe_prompt_via_stdin(instruction)
        meta = prompt_metadata(instruction)
        logger.info(
            "Running Claude Code CLI (cwd=%s, prompt_transport=%s, prompt_len=%s, prompt_sha256=%s)",
            cwd,
            "stdin" if use_stdin else "argv",
            meta["length_chars"],
            meta["sha256"],
        )
        cmd = self.build_command("" if use_stdin else instruction)
        return StreamingJsonProcess(
            cmd,
            cwd=cwd,
            env={**os.environ, **self.env_overrides},
            timeout_seconds=timeout_seconds,
            inactivity_timeout_seconds=self.inactivity_timeout,
            cancel_event=cancel_event,
            stdin_text=instruction if use_stdin else None,
            stdin_fallback_cmd=None if use_stdin else self.build_command(""),
            stdin_fallback_text=None if use_stdin else instruction,
            process_name="Claude Code",
        )

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def build_command(self, prompt: str) -> list[str]:
        """Return the argv for one call; an empty *prompt* is read from stdin."""
        cmd = [resolve_binary(self.claude_binary), "-p"]
        if prompt:
            cmd.append(prompt)
        # stream-json requires --verbose in print mode.
        cmd.extend(["--output-format", "stream-json", "--verbose"])
        cmd.append("--dangerously-skip-permissions")

        if self.max_turns > 0:
            cmd.extend(["--max-turns", str(self.max_turns)])
        if self.model:
            cmd.extend(["--model", self.model])
        if self.playwright_mcp:
            cmd.extend(["--mcp-config", self.mcp_config_json()])
        return cmd

    def mcp_config_json(self) -> str:
        """Inline ``--mcp-config`` payload declaring the Playwright server."""
        parts = shlex.split(self.mcp_command, posix=os.name != "nt")
        if not parts:
            parts = shlex.split(DEFAULT_MCP_COMMAND)
        config = {
            "mcpServers": {
                "playwright": {"command": parts[0], "args": parts[1:]},
            }
        }
        return json.dumps(config, separators=(",", ":"))

    def _should_pipe_prompt_via_stdin(self, prompt: str) -> bool:
        """Return True when prompt should be supplied via stdin instead of argv."""
        if not prompt:
            return False
        if os.name != "nt":
            return len(prompt.encode("utf-8")) >= _POSIX_PROMPT_ARG_LIMIT_BYTES

        candidate_cmd = self.build_command(prompt)
        try:
            estimated = len(subprocess.list2cmdline(candidate_cmd))
        except (TypeError, ValueError):
            estimated = sum(len(part) for part in candidate_cmd) + len(candidate_cmd) + 1

        launcher = (candidate_cmd[0] or "").strip().lower()
        limit = (
            _WINDOWS_CMD_EXE_LIMIT
            if launcher.endswith((".cmd", ".bat"))
            else _WINDOWS_COMMAND_LINE_LIMIT
        )
        return estimated >= (limit - _COMMAND_LINE_SAFETY_MARGIN)


# ── Register with the backend registry ───────────────────────────
register_backend("claude_code", ClaudeCodeBackend)
