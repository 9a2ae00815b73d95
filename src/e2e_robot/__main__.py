"""CLI entrypoint for e2e-robot."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from e2e_robot.pipeline.stages import STAGE_ORDER, stage_number

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or the project root."""
    _project_root = Path(__file__).resolve().parent.parent.parent  # src/e2e_robot/__main__.py
    for dir_ in (Path.cwd(), Path.cwd().parent, _project_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="e2e-robot",
        description="e2e-robot - resumable end-to-end web testing driven by Claude Code.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command")

    # analyze
    analyze_p = sub.add_parser("analyze", help="Show which artifacts are valid and where a run resumes.")
    analyze_p.add_argument("--work-dir", required=True, help="Directory holding the artifacts.")
    analyze_p.add_argument(
        "--require-passing-tests",
        action="store_true",
        default=None,
        help="Treat a test report with success=false as invalid.",
    )

    # run
    steps = ", ".join(f"{stage_number(s)}={s.value}" for s in STAGE_ORDER)
    run_p = sub.add_parser("run", help="Run (or resume) the pipeline.")
    run_p.add_argument("--work-dir", required=True, help="Directory holding the artifacts.")
    run_p.add_argument("--url", default=None, help="Target site URL (http or https).")
    run_p.add_argument(
        "--from-step",
        default=None,
        help=f"Force a start step instead of resuming ({steps}).",
    )
    run_p.add_argument("--config", default=None, help="YAML or JSON file with PipelineConfig fields.")
    run_p.add_argument("--site-name", default=None, help="Human-readable site name.")
    run_p.add_argument(
        "--requirement",
        action="append",
        default=None,
        help="Test requirement (repeatable).",
    )
    run_p.add_argument(
        "--test-type",
        action="append",
        default=None,
        help="Test type such as functional, ux, responsive (repeatable).",
    )
    run_p.add_argument("--max-test-cases", type=int, default=None, help="Upper bound on scenarios.")
    run_p.add_argument("--priority", choices=["low", "medium", "high"], default=None)
    run_p.add_argument("--max-attempts", type=int, default=None, help="Attempts per stage.")
    run_p.add_argument("--model", default=None, help="Claude model override.")
    run_p.add_argument("--claude-bin", default=None, help="Path to the claude executable.")
    run_p.add_argument("--max-turns", type=int, default=None, help="Agent turn limit (0 = none).")
    run_p.add_argument(
        "--no-mcp",
        action="store_true",
        help="Do not attach the Playwright MCP server.",
    )
    run_p.add_argument("--no-calibration", action="store_true", help="Disable the calibrator.")
    run_p.add_argument("--calibration-path", default=None, help="Calibration statistics file.")
    run_p.add_argument(
        "--require-passing-tests",
        action="store_true",
        default=None,
        help="Treat a test report with success=false as invalid.",
    )
    run_p.add_argument("--compact", action="store_true", help="One line per backend event.")

    # check
    check_p = sub.add_parser("check", help="Check that the Claude CLI answers a trivial query.")
    check_p.add_argument("--claude-bin", default=None, help="Path to the claude executable.")
    check_p.add_argument("--work-dir", default=".", help="Directory used for the availability check.")

    # stats
    stats_p = sub.add_parser("stats", help="Show calibration statistics per stage.")
    stats_p.add_argument("--calibration-path", default=None, help="Calibration statistics file.")
    stats_p.add_argument("--json", action="store_true", help="Print raw JSON.")

    sub.add_parser("list-prompts", help="List the stage prompts in the catalog.")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.command == "analyze":
        return _analyze(args)
    if args.command == "run":
        return _run_pipeline(args)
    if args.command == "check":
        return _check(args)
    if args.command == "stats":
        return _stats(args)
    if args.command == "list-prompts":
        return _list_prompts()

    parser.print_help()
    print(
        "\nTip: run 'e2e-robot run --work-dir <dir> --url <url>' to start a pipeline,\n"
        "     or 'e2e-robot analyze --work-dir <dir>' to see where it would resume.",
        file=sys.stderr,
    )
    return EXIT_USAGE


def _analyze(args: argparse.Namespace) -> int:
    """Print the run state of a work directory."""
    from e2e_robot.pipeline.inspector import ArtifactInspector, format_run_state

    inspector = ArtifactInspector(
        args.work_dir, require_passing_tests=bool(args.require_passing_tests)
    )
    print(format_run_state(inspector.analyze()))
    return EXIT_OK


def _load_config_file(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping of config fields")
    return data


def build_config(args: argparse.Namespace) -> Any:
    """Merge config file, environment, saved profile and CLI flags."""
    from e2e_robot.pipeline.profile import load_profile
    from e2e_robot.pipeline.stages import PipelineConfig

    values: dict[str, Any] = {}
    if args.config:
        values.update(_load_config_file(Path(args.config).expanduser()))

    saved = load_profile(args.work_dir)
    profile = dict(values.pop("profile", None) or (saved.model_dump() if saved else {}))
    for attr, key in (
        ("site_name", "site_name"),
        ("requirement", "test_requirements"),
        ("test_type", "test_types"),
        ("max_test_cases", "max_test_cases"),
        ("priority", "priority"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            profile[key] = value
    if profile:
        values["profile"] = profile

    url = args.url or values.get("target_url") or profile.get("target_url") or None
    overrides = {
        "target_url": url,
        "max_attempts": args.max_attempts,
        "model": args.model,
        "claude_binary": args.claude_bin,
        "max_turns": args.max_turns,
        "calibration_path": args.calibration_path,
        "require_passing_tests": args.require_passing_tests,
        "playwright_mcp": False if args.no_mcp else None,
        "calibration_enabled": False if args.no_calibration else None,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return PipelineConfig.from_env(**values)


def _run_pipeline(args: argparse.Namespace) -> int:
    """Run or resume the pipeline and print a summary."""
    from e2e_robot.message_display import TranscriptLogger
    from e2e_robot.pipeline.orchestrator import PipelineOrchestrator
    from e2e_robot.pipeline.stages import parse_stage

    try:
        config = build_config(args)
        start = parse_stage(args.from_step) if args.from_step else None
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if not config.target_url:
        print("Error: --url is required for a new work directory.", file=sys.stderr)
        return EXIT_USAGE

    try:
        pipeline = PipelineOrchestrator(
            args.work_dir,
            config,
            display=TranscriptLogger(compact=args.compact),
        )
    except KeyError as exc:
        print(f"Error: {exc.args[0] if exc.args else exc}", file=sys.stderr)
        return EXIT_USAGE

    result: dict[str, Any] = {}

    def _worker() -> None:
        try:
            result["outcome"] = (
                pipeline.execute_from_step(start) if start is not None else pipeline.run()
            )
        except Exception as exc:
            logger.exception("Pipeline run aborted")
            result["error"] = exc

    worker = threading.Thread(target=_worker, name="e2e-robot-pipeline", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        pipeline.stop()
        worker.join()

    error = result.get("error")
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        # RuntimeError is raised for a work dir that is already in use.
        return EXIT_USAGE if isinstance(error, RuntimeError) else EXIT_FAILED
    outcome = result["outcome"]

    print("\n" + "=" * 60)
    print("  e2e-robot - Pipeline Summary")
    print("=" * 60)
    print(f"  Work dir:    {pipeline.work_dir}")
    print(f"  Target:      {config.target_url}")
    print(f"  Status:      {outcome.status}")
    if outcome.started_from is not None:
        print(f"  Started at:  {stage_number(outcome.started_from)}. {outcome.started_from.value}")
    if outcome.failure is not None:
        print(f"  Failed at:   {outcome.failed_stage.value} ({outcome.error_kind})")
        print(f"  Error:       {outcome.error_message}")
    print("=" * 60)
    if outcome.attempts:
        print(f"\n  {'Stage':<22}  {'Try':>3}  {'Status':<8}  {'Time':>7}  Error")
        print(f"  {'-' * 22}  {'-' * 3}  {'-' * 8}  {'-' * 7}  {'-' * 20}")
        for attempt in outcome.attempts:
            status = "OK" if attempt.success else "FAIL"
            print(
                f"  {attempt.stage.value:<22}  "
                f"{attempt.attempt:>3}  "
                f"{status:<8}  "
                f"{attempt.duration_seconds:>6.1f}s  "
                f"{attempt.error_kind or ''}"
            )
    print()
    return EXIT_OK if outcome.succeeded else EXIT_FAILED


def _check(args: argparse.Namespace) -> int:
    """Check the Claude CLI with a trivial query."""
    from e2e_robot.claude_code import ClaudeCodeBackend
    from e2e_robot.executor import ClaudeExecutor

    backend = ClaudeCodeBackend(claude_binary=args.claude_bin or "claude", playwright_mcp=False)
    executor = ClaudeExecutor(backend, Path(args.work_dir), persist_responses=False)
    if executor.check_availability():
        print("Claude CLI is available.")
        return EXIT_OK
    print("Claude CLI is not available; see the log above.", file=sys.stderr)
    return EXIT_FAILED


def _stats(args: argparse.Namespace) -> int:
    """Print calibration statistics."""
    from e2e_robot.calibrator import Calibrator

    calibrator = Calibrator(args.calibration_path or None)
    summary = calibrator.summary()
    if args.json:
        print(json.dumps(summary, indent=2))
        return EXIT_OK

    print(f"\n  Calibration - {calibrator.path}")
    print("  " + "=" * 58)
    if not summary:
        print("  No attempts recorded yet.")
    for stage in STAGE_ORDER:
        entry = summary.get(stage.value)
        if entry is None:
            continue
        rate = entry["success_rate"]
        rate_text = f"{rate:.0%}" if isinstance(rate, float) else "-"
        print(
            f"  {stage_number(stage)}. {stage.value:<22} "
            f"{entry['successes']}/{entry['attempts']} ok ({rate_text}), "
            f"next budget {calibrator.retry_budget(stage)}"
        )
        for kind, count in sorted(entry["failures_by_kind"].items()):
            print(f"       {kind}: {count}")
    print()
    return EXIT_OK


def _list_prompts() -> int:
    """List all stage prompts in the catalog."""
    from e2e_robot.prompts import PromptCatalog

    catalog = PromptCatalog()
    keys = catalog.list_stages()

    print(f"\n  Prompt Catalog - {len(keys)} stages")
    print("  " + "=" * 58)
    for key in keys:
        meta = catalog.stage_meta(key)
        content = catalog.stage(key)
        preview = content[:80].replace("\n", " ").strip()
        print(f"\n  [stages.{key}]")
        print(f"    {meta['name']}")
        print(f"    {preview}...")
        print(f"    ({len(content)} chars)")

    print(f"\n  Edit: {Path(__file__).resolve().parent / 'prompts' / 'templates.yaml'}")
    print(f"  Override: {Path.home() / '.e2e_robot' / 'prompt_overrides.yaml'}")
    print()
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
