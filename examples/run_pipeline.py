#!/usr/bin/env python3
"""Example: run (or resume) the full five-step pipeline from Python.

Usage:
    python examples/run_pipeline.py ./runs/shop https://shop.example --requirement "search works"
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from e2e_robot.pipeline.orchestrator import PipelineOrchestrator
from e2e_robot.pipeline.profile import TestProfile
from e2e_robot.pipeline.stages import PipelineConfig


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the e2e-robot pipeline.")
    parser.add_argument("work_dir", help="Directory for the artifacts")
    parser.add_argument("url", help="Target site URL")
    parser.add_argument("--requirement", action="append", default=[], help="Test requirement")
    parser.add_argument("--max-attempts", type=int, default=2, help="Attempts per stage (default 2)")
    parser.add_argument("--from-step", default=None, help="Force a start step")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    config = PipelineConfig(
        target_url=args.url,
        max_attempts=args.max_attempts,
        profile=TestProfile(test_requirements=args.requirement),
    )
    pipeline = PipelineOrchestrator(args.work_dir, config)
    print(pipeline.analyze().reason)

    outcome = pipeline.execute_from_step(args.from_step) if args.from_step else pipeline.run()

    print(f"\nStatus: {outcome.status}")
    for attempt in outcome.attempts:
        mark = "ok" if attempt.success else attempt.error_kind
        print(f"  {attempt.stage.value:<22} #{attempt.attempt}  {mark}")
    if not outcome.succeeded:
        print(f"\nFailed at {outcome.failed_stage.value}: {outcome.error_message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
