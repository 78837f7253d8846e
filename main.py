"""CLI entry point: python main.py validate workflows.json"""

import argparse
import json
import sys
import time

from src.approval_engine import EscalationScheduler, compute_stats, validate_workflow
from src.approval_engine.serialization import workflow_from_dict
from src.logging_config import LoggingConfig, configure_logging
from src.settings import get_settings


def _load_definitions(path):
    with open(path) as f:
        payload = json.load(f)
    return payload if isinstance(payload, list) else [payload]


def cmd_validate(args):
    failures = 0
    for index, data in enumerate(_load_definitions(args.file)):
        try:
            workflow = workflow_from_dict(data)
        except (KeyError, ValueError) as e:
            print(f"  [{index}] malformed definition: {e}")
            failures += 1
            continue
        errors = validate_workflow(workflow)
        if errors:
            failures += 1
            print(f"  [{index}] {workflow.workflow_id}: INVALID")
            for error in errors:
                print(f"      - {error}")
        else:
            print(f"  [{index}] {workflow.workflow_id}: ok ({workflow.total_steps} steps)")
    return 1 if failures else 0


def cmd_workflows(args, engine):
    for workflow in engine.definitions.list_workflows(include_inactive=args.all):
        state = "active" if workflow.is_active else "inactive"
        print(
            f"  {workflow.workflow_id:<24} v{workflow.version:<3} "
            f"{workflow.request_type.value:<22} {workflow.total_steps} step(s)  {state}"
        )
    return 0


def cmd_stats(args, engine):
    stats = compute_stats(engine.list_requests(), top_n=args.top)
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


def cmd_scheduler(args, engine):
    scheduler = EscalationScheduler(engine, interval_seconds=args.interval)
    print(f"Escalation scheduler running every {scheduler.interval_seconds}s (Ctrl+C to stop)")
    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    print(f"Stopped after {scheduler.ticks} tick(s)")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Approval workflow and delegation engine"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Validate workflow definitions in a JSON file")
    p_validate.add_argument("file", help="JSON file with one definition or a list of them")

    p_workflows = sub.add_parser("workflows", help="List registered workflows")
    p_workflows.add_argument("--all", action="store_true", help="Include inactive workflows")

    p_stats = sub.add_parser("stats", help="Print approval statistics")
    p_stats.add_argument("--top", type=int, default=5, help="Number of top approvers")

    p_scheduler = sub.add_parser("scheduler", help="Run the escalation scheduler loop")
    p_scheduler.add_argument(
        "--interval", type=float, default=None,
        help="Tick interval in seconds (default: from settings)",
    )

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(LoggingConfig.from_settings(settings))

    if args.command == "validate":
        return cmd_validate(args)

    from src.api.app import build_engine

    engine = build_engine(settings)
    if args.command == "workflows":
        return cmd_workflows(args, engine)
    if args.command == "stats":
        return cmd_stats(args, engine)
    return cmd_scheduler(args, engine)


if __name__ == "__main__":
    sys.exit(main())
