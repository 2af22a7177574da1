"""
Scheduler entry point for one pipeline stage.

Asks the stage coordinator whether a stage may start for a run date (waiting
for its upstream stage if needed), or reports a running stage's outcome.
Prints the JSON result; exits 0 when the stage may proceed, 3 otherwise.

Usage:
    python run_stage.py --pipeline regulatory --stage extract
    python run_stage.py --pipeline news --stage review --date 2026-03-02
    python run_stage.py --pipeline regulatory --stage extract --complete RUN_ID
    python run_stage.py --pipeline regulatory --stage extract --fail RUN_ID --error "timeout"
"""

import sys
import json
import argparse
import logging
from datetime import date
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

EXIT_PROCEED = 0
EXIT_BLOCKED = 3


def parse_args(argv=None):
    from execution.regulatory_truth.stage_coordinator import PIPELINES

    parser = argparse.ArgumentParser(description="Gate a pipeline stage on its upstream stage")
    parser.add_argument("--pipeline", required=True, choices=sorted(PIPELINES))
    parser.add_argument("--stage", required=True)
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Run date (YYYY-MM-DD)")
    outcome = parser.add_mutually_exclusive_group()
    outcome.add_argument("--complete", metavar="RUN_ID", help="Mark a running stage completed")
    outcome.add_argument("--fail", metavar="RUN_ID", help="Mark a running stage failed")
    parser.add_argument("--summary", default="{}", help="JSON summary for --complete")
    parser.add_argument("--error", action="append", default=[], help="Error message for --fail (repeatable)")
    return parser.parse_args(argv)


def run(args, ctx) -> int:
    from execution.regulatory_truth.stage_coordinator import StageTransitionError

    coordinator = ctx.coordinator(args.pipeline)

    if args.complete or args.fail:
        run_id = args.complete or args.fail
        try:
            if args.complete:
                coordinator.complete(run_id, json.loads(args.summary))
            else:
                coordinator.fail(run_id, args.error)
        except StageTransitionError as e:
            print(json.dumps({"ok": False, "runId": run_id, "reason": str(e)}))
            return EXIT_BLOCKED
        print(json.dumps({"ok": True, "runId": run_id}))
        return EXIT_PROCEED

    try:
        result = coordinator.try_start(args.stage, args.date)
    except ValueError as e:
        logger.error(str(e))
        return 2
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    return EXIT_PROCEED if result.can_proceed else EXIT_BLOCKED


def main(argv=None) -> int:
    from execution.regulatory_truth.context import AppContext

    args = parse_args(argv)
    ctx = AppContext.from_env()
    try:
        return run(args, ctx)
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
