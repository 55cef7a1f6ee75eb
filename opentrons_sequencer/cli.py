"""
Command line entry point.

    opentrons-sequencer run sequence.yaml --robot http://10.0.0.5:31950
    opentrons-sequencer render sequence.yaml --item 1
    opentrons-sequencer serve --port 8000

`run` exits 0 when every item succeeded, 1 when the robot is unreachable or
at the first failing item, and 2 when the sequence definition itself is
unusable.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import sys
from pathlib import Path
from typing import List, Optional

from opentrons_sequencer.common.config import Settings, configure_logging, get_settings
from opentrons_sequencer.common.errors import RobotError, SequenceDefinitionError, TemplateError
from opentrons_sequencer.protocol.sequence import load_sequence
from opentrons_sequencer.runner.http_handler import RobotAPI
from opentrons_sequencer.runner.orchestrator import FeedbackHook, RunOrchestrator

EXIT_OK = 0
EXIT_SEQUENCE_FAILED = 1
EXIT_BAD_INPUT = 2


def load_hook(target: str) -> FeedbackHook:
    """Import a feedback hook given as `package.module:function`."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise SequenceDefinitionError(f"Hook must look like 'module:function', got {target!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise SequenceDefinitionError(f"Cannot load hook {target!r}: {e}") from e


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opentrons-sequencer",
        description="Upload and run a sequence of protocols on an Opentrons robot.",
    )
    parser.add_argument("--log-level", default=settings.log_level,
                        help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a sequence definition on a robot")
    run.add_argument("sequence", type=Path, help="YAML or JSON sequence definition")
    run.add_argument("--robot", default=settings.robot_url,
                     help="Robot base URL (default: %(default)s)")
    run.add_argument("--poll-interval", type=float, default=settings.poll_interval,
                     help="Seconds between run status polls (default: %(default)s)")
    run.add_argument("--timeout", type=float, default=settings.run_timeout,
                     help="Seconds a single run may take (default: %(default)s)")
    run.add_argument("--hook", default=None,
                     help="Feedback hook called between items, as module:function")
    run.add_argument("--delete-protocols", action=argparse.BooleanOptionalAction,
                     default=settings.delete_protocols,
                     help="Remove each protocol from the robot once its run succeeded (default: %(default)s)")

    render = sub.add_parser("render", help="Print the rendered protocol of a sequence item")
    render.add_argument("sequence", type=Path, help="YAML or JSON sequence definition")
    render.add_argument("--item", type=int, default=0, help="Item index (default: %(default)s)")

    serve = sub.add_parser("serve", help="Run the job service (HTTP API for submitting sequences)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: %(default)s)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: %(default)s)")
    return parser


def _run(args: argparse.Namespace, settings: Settings) -> int:
    items = load_sequence(args.sequence)
    hook = load_hook(args.hook) if args.hook else None

    with RobotAPI.from_settings(settings, robot_url=args.robot) as api:
        try:
            api.health()
        except RobotError as e:
            print(f"Robot not reachable: {e}", file=sys.stderr)
            return EXIT_SEQUENCE_FAILED

        orchestrator = RunOrchestrator(
            api,
            poll_interval=args.poll_interval,
            run_timeout=args.timeout,
            delete_protocols=args.delete_protocols,
        )
        try:
            outcomes = asyncio.run(orchestrator.run_sequence(items, feedback_hook=hook))
        except (RobotError, TemplateError, SequenceDefinitionError) as e:
            print(f"Sequence failed at {e.describe()}", file=sys.stderr)
            return EXIT_SEQUENCE_FAILED

    for outcome in outcomes:
        print(f"{outcome.index}\t{outcome.item.label}\t{outcome.run.run_id}\t{outcome.status}")
    return EXIT_OK


def _render(args: argparse.Namespace) -> int:
    items = load_sequence(args.sequence)
    if not 0 <= args.item < len(items):
        raise SequenceDefinitionError(f"Item {args.item} out of range (sequence has {len(items)} items)")
    sys.stdout.write(items[args.item].render())
    return EXIT_OK


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("opentrons_control.backend.app.main:app", host=args.host, port=args.port,
                log_level=args.log_level.lower())
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "run":
            return _run(args, settings)
        if args.command == "serve":
            return _serve(args)
        return _render(args)
    except (SequenceDefinitionError, TemplateError) as e:
        print(f"Invalid sequence: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT


if __name__ == "__main__":
    sys.exit(main())
