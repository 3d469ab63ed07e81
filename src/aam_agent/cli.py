from __future__ import annotations

import argparse
from collections.abc import Iterator
from contextlib import contextmanager
import json
from pathlib import Path
import signal
import sys
from threading import Event

from aam_agent.config import AppConfig, ConfigError, load_config
from aam_agent.errors import AgentError
from aam_agent.guard import guard_project_scope
from aam_agent.handlers import activity_record
from aam_agent.models import Cursor, ResolutionRequest
from aam_agent.observability import configure_logging, redact_api_key
from aam_agent.observability_tui import run_observability_tui
from aam_agent.process_lock import ProcessLockError, writer_process_lock
from aam_agent.service_runner import AgentRuntime, build_runtime, run_service
from aam_agent.state import StateStore


DEFAULT_CONFIG_PATH = Path("aam-agent.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aam-agent")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _add_common(subparsers.add_parser("check", help="Verify key, project scope, and feed access"))

    run_parser = subparsers.add_parser(
        "run", help="Poll the activity feed and relay activities as JSON lines"
    )
    _add_common(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single poll cycle")

    issue_parser = subparsers.add_parser("issue", help="Fetch issue resources on demand")
    _add_common(issue_parser)
    issue_subparsers = issue_parser.add_subparsers(dest="issue_command", required=True)
    for name, help_text in (
        ("show", "Print issue detail"),
        ("activities", "Print the issue activity history"),
        ("prompt", "Print the generated prompt context"),
    ):
        sub = issue_subparsers.add_parser(name, help=help_text)
        sub.add_argument("issue_id")
    image_parser = issue_subparsers.add_parser("image", help="Download an issue image")
    image_parser.add_argument("issue_id")
    image_parser.add_argument("image_id")
    image_parser.add_argument("--output", type=Path, required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve or archive an issue")
    _add_common(resolve_parser)
    resolve_parser.add_argument("issue_id")
    resolve_parser.add_argument("--status", choices=("resolved", "archived"), default="resolved")
    resolve_parser.add_argument("--note", required=True, help="Resolution note (required)")

    cursor_parser = subparsers.add_parser(
        "cursor",
        help="Inspect or reset the stream cursor (local state only, no project guard)",
        description=(
            "Inspect or reset the stream cursor in the local state DB. These commands "
            "do not run the project guard; the state DB's project binding still refuses "
            "a later run under another project."
        ),
    )
    _add_common(cursor_parser)
    cursor_subparsers = cursor_parser.add_subparsers(dest="cursor_command", required=True)
    cursor_subparsers.add_parser("show", help="Print the persisted cursor")
    reset_parser = cursor_subparsers.add_parser("reset", help="Reset to a timestamp cursor")
    reset_parser.add_argument("--since", type=str, help="ISO-8601 instant to resume from")

    top_parser = subparsers.add_parser("top", help="Live dashboard over the agent state DB")
    _add_common(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=2)

    return parser


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low or high; default high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"aam-agent: config error: {exc}", file=sys.stderr)
        raise SystemExit(2) from None
    configure_logging(args.verbose, state_dir=config.agent.state_dir if args.verbose else None)

    try:
        _dispatch(config, args)
    except (AgentError, ProcessLockError) as exc:
        message = str(exc).replace(config.agent.api_key, redact_api_key(config.agent.api_key))
        print(f"aam-agent: {type(exc).__name__}: {message}", file=sys.stderr)
        raise SystemExit(1) from None


def _dispatch(config: AppConfig, args: argparse.Namespace) -> None:
    if args.command == "check":
        _cmd_check(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "issue":
        _cmd_issue(config, args)
        return
    if args.command == "resolve":
        _cmd_resolve(config, issue_id=args.issue_id, status=args.status, note=args.note)
        return
    if args.command == "cursor":
        _cmd_cursor(config, args)
        return
    if args.command == "top":
        run_observability_tui(
            db_path=config.state_db_path, refresh_seconds=int(args.refresh_seconds)
        )
        return
    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_check(config: AppConfig) -> None:
    with _guarded_runtime(config) as runtime:
        page = runtime.gateway.list_activities(cursor=None, limit=1)
        print("Activity feed reachable. nextCursor: " + ("present" if page.next_cursor else "none"))
        print(f"Configured poll interval: {config.agent.poll_interval_seconds}s")
        print("Bootstrap checks passed.")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    stop_event = Event()
    with _stop_on_signals(stop_event):
        run_service(config=config, once=once, sink=sys.stdout, stop_event=stop_event)


def _cmd_issue(config: AppConfig, args: argparse.Namespace) -> None:
    with _guarded_runtime(config) as runtime:
        fetcher = runtime.fetcher
        if args.issue_command == "show":
            _print_json(fetcher.issue(args.issue_id).raw)
            return
        if args.issue_command == "activities":
            activities = fetcher.issue_activities(args.issue_id)
            _print_json([activity_record(activity) for activity in activities])
            return
        if args.issue_command == "prompt":
            prompt = fetcher.prompt(args.issue_id)
            _print_json({"text": prompt.text, "yaml": prompt.yaml})
            return
        if args.issue_command == "image":
            data = fetcher.image(args.issue_id, args.image_id)
            output: Path = args.output
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(data)
            print(f"Wrote {len(data)} bytes to {output}")
            return
    raise RuntimeError(f"Unknown issue command: {args.issue_command}")


def _cmd_resolve(config: AppConfig, *, issue_id: str, status: str, note: str) -> None:
    request = ResolutionRequest(status=status, resolution_note=note)
    with _guarded_runtime(config) as runtime:
        result = runtime.resolver.resolve(issue_id, request)
    print(f"Issue {result.issue_id} is now {result.status}.")


def _cmd_cursor(config: AppConfig, args: argparse.Namespace) -> None:
    if args.cursor_command == "show":
        record = StateStore(config.state_db_path).load_cursor()
        if record is None:
            print("No cursor stored; the next run starts at the beginning of the feed.")
            return
        print(f"kind={record.cursor.kind} value={record.cursor.value}")
        print(f"last_activity_at={record.last_activity_at or '<none>'}")
        print(f"updated_at={record.updated_at}")
        return
    if args.cursor_command == "reset":
        with writer_process_lock(state_dir=config.agent.state_dir, command="cursor reset"):
            runtime = build_runtime(config)
            try:
                if args.since:
                    cursor = Cursor.from_since(args.since)
                    runtime.cursor_store.save(cursor)
                else:
                    cursor = runtime.cursor_store.reset_to_fallback()
            finally:
                runtime.close()
        print(f"Cursor reset: kind={cursor.kind} value={cursor.value}")
        return
    raise RuntimeError(f"Unknown cursor command: {args.cursor_command}")


@contextmanager
def _guarded_runtime(config: AppConfig) -> Iterator[AgentRuntime]:
    runtime = build_runtime(config)
    try:
        project = guard_project_scope(
            runtime.gateway,
            api_key=config.agent.api_key,
            expected_project_id=config.agent.expected_project_id,
            strict_key_format=config.agent.strict_key_format,
        )
        print(f"Project: {project.name} ({project.id})", file=sys.stderr)
        yield runtime
    finally:
        runtime.close()


@contextmanager
def _stop_on_signals(stop_event: Event) -> Iterator[None]:
    def request_stop(signum: int, frame: object) -> None:
        _ = frame
        stop_event.set()

    previous = {
        signum: signal.signal(signum, request_stop) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))
