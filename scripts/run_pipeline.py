#!/usr/bin/env python3
"""
Run a pipeline definition locally and print its events as they happen.
"""

import argparse
import logging
from pathlib import Path
import sys

# Add parent directory to path to import conveyor modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from conveyor.config import Config  # noqa: E402
from conveyor.events import Event, EventType  # noqa: E402
from conveyor.pipeline import CommandRunner, PipelineExecutor, PipelineLoader  # noqa: E402
from conveyor.pipeline.schema import ExecutionStatus  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a pipeline YAML definition")
    parser.add_argument(
        "pipeline",
        help="Path to the pipeline YAML file",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory (overrides the definition's working_directory)",
    )
    parser.add_argument(
        "--approval-mode",
        default=Config.APPROVAL_MODE,
        choices=["advisory", "blocking"],
        help="How approval stages behave (default: %(default)s)",
    )
    parser.add_argument(
        "--auto-approve",
        default=None,
        metavar="NAME",
        help="Approve every waiting stage as NAME",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=Config.DEFAULT_TIMEOUT_MS,
        help="Timeout for command stages that don't set one",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=Config.RETRY_DELAY_SECONDS,
        help="Seconds between attempts of a failing command stage",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print events as JSON lines",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args()


def _describe(event: Event) -> str:
    stage_execution = event.data.get("stageExecution")
    if stage_execution:
        line = f"{event.type.value:<24} {stage_execution['stageId']} [{stage_execution['status']}]"
        if event.type == EventType.STAGE_RETRYING:
            line += f" attempt {event.data['attempt']}/{event.data['maxAttempts']}: {event.data['error']}"
        elif stage_execution.get("error"):
            line += f" {stage_execution['error']}"
        return line
    return f"{event.type.value:<24} [{event.data.get('status')}]"


def main() -> int:
    args = _parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    loader = PipelineLoader()
    try:
        pipeline = loader.load_from_yaml(args.pipeline)
    except Exception as exc:
        print(f"[error] Could not load {args.pipeline}: {exc}")
        return 2

    for warning in loader.validate_pipeline(pipeline):
        print(f"[warn] {warning}")

    executor = PipelineExecutor(
        command_runner=CommandRunner(
            allowlist=Config.COMMAND_ALLOWLIST,
            kill_grace_seconds=Config.KILL_GRACE_SECONDS,
        ),
        approval_mode=args.approval_mode,
        default_timeout_ms=args.timeout_ms,
        retry_delay_seconds=args.retry_delay,
    )

    def on_event(event: Event) -> None:
        if args.json:
            print(event.to_json(), flush=True)
        else:
            print(_describe(event), flush=True)

        if event.type == EventType.STAGE_WAITING_APPROVAL and args.auto_approve:
            executor.approve_stage(event.data["stageExecution"]["id"], args.auto_approve)

    # Subscribed before starting so execution:started is not missed
    executor.subscribe(None, on_event)

    execution_id = executor.execute_config(pipeline, working_directory=args.cwd)
    try:
        execution = executor.wait_for_completion(execution_id)
    except KeyboardInterrupt:
        print("\n[info] Cancelling...")
        executor.cancel_execution(execution_id)
        execution = executor.wait_for_completion(execution_id)
    finally:
        executor.shutdown(wait=False)

    if not args.json:
        print()
        for stage_execution in execution.stage_executions:
            print(f"  {stage_execution.stage_id:<20} {stage_execution.status.value}")
        print(f"Execution {execution.id}: {execution.status.value}")

    return 0 if execution.status == ExecutionStatus.SUCCESS else 1


if __name__ == "__main__":
    sys.exit(main())
