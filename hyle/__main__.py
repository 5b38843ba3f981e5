"""
Entry point for running hyle as a module.

Usage:
    python -m hyle run "list files" [--preset autonomous] [--model ID] [--yes]
    python -m hyle sessions [--all]
    python -m hyle log SESSION_ID [--kind decision] [--limit N]
    python -m hyle cleanup [--keep N]
    python -m hyle events metrics [--session ID]
    python -m hyle events list [--session ID] [--type TYPE] [--limit N]
    python -m hyle health [list]
    python -m hyle health reset [MODEL]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from hyle import __version__
from hyle.config import HyleConfig
from hyle.context import ModelSummarizer, create_context_manager
from hyle.db import close_db
from hyle.dispatcher import create_dispatcher
from hyle.errors import HyleError
from hyle.model_catalog import ModelCatalog
from hyle.model_health import create_model_health_registry
from hyle.observability import EventLog
from hyle.orchestrator import Approver, AutoApprover, create_orchestrator
from hyle.output import (
    console,
    confirm,
    create_table,
    print_agent_token,
    print_decision,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_table,
    print_tool_call,
    print_tool_outcome,
    print_success,
    print_warning,
    setup_rich_logging,
)
from hyle.providers import create_provider_router
from hyle.records import LoopPhase, ToolCall, ToolStatus
from hyle.sanity import ModelSanityChecker
from hyle.session_store import LogKind, create_session_store
from hyle.tool_parser import args_preview
from hyle.tools import create_default_registry


# =============================================================================
# Console hooks
# =============================================================================

class ConsoleApprover(Approver):
    """Asks on the terminal before running calls that need confirmation."""

    async def approve(self, tool_calls: List[ToolCall]) -> bool:
        console.print()
        for call in tool_calls:
            tier = call.risk_tier.label if call.risk_tier is not None else "confirm"
            print_tool_call(call.name, args_preview(call.args, 120), tier)
        return await asyncio.to_thread(confirm, f"Run {len(tool_calls)} tool call(s)?")


def show_tool(call: ToolCall) -> None:
    tier = call.risk_tier.label if call.risk_tier is not None else "safe"
    print_tool_call(call.name, args_preview(call.args, 80), tier)
    if call.status == ToolStatus.DONE:
        print_tool_outcome("done")
    elif call.status == ToolStatus.KILLED:
        print_tool_outcome("killed")
    else:
        print_tool_outcome(call.error_kind or "failed", call.error or "")


# =============================================================================
# Commands
# =============================================================================

async def run_agent(args: argparse.Namespace, project_dir: Path) -> int:
    config = HyleConfig.load(project_dir, args.preset)
    if args.model:
        config.model_rotation = [args.model] + [m for m in config.model_rotation if m != args.model]
    if args.max_iterations:
        config.max_iterations = args.max_iterations
        config.max_iterations_ceiling = max(config.max_iterations_ceiling, args.max_iterations)

    store = create_session_store(project_dir, config.lock_timeout)
    health = create_model_health_registry(project_dir)
    providers = create_provider_router(project_dir)
    catalog = ModelCatalog()
    event_log = await EventLog.open(project_dir)
    session = None
    loop = asyncio.get_running_loop()
    handler_installed = False

    try:
        await catalog.ensure_loaded(providers.default)
        dispatcher = create_dispatcher(
            providers, health, catalog,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_cap=config.backoff_cap,
        )
        registry = create_default_registry(config.tool_timeout)
        summarizer = ModelSummarizer(dispatcher, config.auxiliary_models) if config.model_summarizer else None
        sanity = ModelSanityChecker(dispatcher, config.auxiliary_models) if config.sanity_check_interval > 0 else None

        orchestrator = create_orchestrator(
            config, store, dispatcher, registry, create_context_manager(summarizer), project_dir,
            approver=AutoApprover() if args.yes else ConsoleApprover(),
            sanity=sanity,
            event_log=event_log,
            on_token=print_agent_token,
            on_tool=show_tool,
        )

        session = await asyncio.to_thread(
            store.load_or_resume, project_dir, config.primary_model, config.session_max_age,
        )
        print_info(f"Session {session.id} ({session.message_count} messages) with {config.primary_model}")

        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.interrupt)
            handler_installed = True
        except NotImplementedError:
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead
            pass

        decision = await orchestrator.start_loop(session, args.prompt)
        print_decision(decision.state.value, decision.reason)
        if decision.state == LoopPhase.PAUSE_CONFIRM and not args.yes:
            print_muted("Re-run with --yes to approve pending tool calls automatically")
        return 0 if decision.state == LoopPhase.COMPLETE else 2
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        if session is not None:
            store.release(session)
        await providers.aclose()
        await close_db()


def cmd_run(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    try:
        return asyncio.run(run_agent(args, project_dir))
    except KeyboardInterrupt:
        console.print()
        print_warning("Interrupted by user")
        print_muted("To resume, run the same command again")
        return 130


def cmd_sessions(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    store = create_session_store(project_dir)
    sessions = store.list_sessions(None if args.all else project_dir)
    if not sessions:
        print_info("No sessions found")
        return 0

    table = create_table(title="Sessions", columns=["ID", "Model", "Messages", "Status", "Updated", "Checkpoints"])
    for session in sessions:
        table.add_row(
            session.id,
            session.model,
            str(session.message_count),
            session.status.value,
            session.updated_at[:19],
            str(len(store.list_checkpoints(session))),
        )
    print_table(table)
    return 0


def cmd_log(args: argparse.Namespace) -> int:
    store = create_session_store(args.project_dir.resolve())
    session = store.load(args.session_id)
    kind = LogKind(args.kind) if args.kind else None
    entries = store.read_log(session, kind)
    if args.limit:
        entries = entries[-args.limit:]

    print_header(f"Session {session.id}")
    print_key_value_table({
        "Model": session.model,
        "Directory": session.working_directory,
        "Messages": session.message_count,
        "Status": session.status.value,
    })
    console.print()
    for entry in entries:
        timestamp = entry.pop("timestamp", "")[:19]
        entry_kind = entry.pop("kind", "?")
        console.print(f"[hy.muted]{timestamp}[/] [hy.accent]{entry_kind:<10}[/] ", end="")
        console.print(json.dumps(entry, default=str)[:300], markup=False, highlight=False)
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    store = create_session_store(project_dir)
    removed = store.cleanup(project_dir, keep=args.keep)
    if removed:
        print_info(f"Removed {len(removed)} session(s)")
        for session_id in removed:
            print_muted(f"  {session_id}")
    else:
        print_info("Nothing to clean up")
    return 0


async def show_events(args: argparse.Namespace, project_dir: Path) -> int:
    log = await EventLog.open(project_dir)
    try:
        if args.events_command == "metrics":
            metrics = await log.metrics(args.session)
            data = metrics.to_dict()
            print_header("Run Metrics")
            print_key_value_table({
                "Loops": data["loops"],
                "Model calls": data["model_calls"],
                "Model failures": data["model_failures"],
                "Tool calls": data["tool_calls"],
                "Tool errors": data["tool_errors"],
                "Blocked": data["tool_blocked"],
                "Tool success rate": f"{data['tool_success_rate']:.1%}",
                "Tokens in/out": f"{data['tokens_in']}/{data['tokens_out']}",
                "Estimated cost": f"${data['estimated_cost_usd']:.4f}",
            })
            if data["decisions"]:
                print_key_value_table(data["decisions"], title="Decisions")
            if data["tools"]:
                print_key_value_table(data["tools"], title="Tools")
            return 0

        events = await log.events(args.session, args.type, limit=args.limit)
        if not events:
            print_info("No events found")
            return 0
        table = create_table(title="Events", columns=["Time", "Session", "Type", "Tool", "Payload"])
        for event in events:
            table.add_row(
                event.timestamp[:19],
                event.session_id,
                event.event_type,
                event.tool_name or "",
                json.dumps(event.payload, default=str)[:80],
            )
        print_table(table)
        return 0
    finally:
        await close_db()


def cmd_events(args: argparse.Namespace) -> int:
    if args.events_command is None:
        print_error("Choose an events command: metrics or list")
        return 1
    return asyncio.run(show_events(args, args.project_dir.resolve()))


def cmd_health(args: argparse.Namespace) -> int:
    health = create_model_health_registry(args.project_dir.resolve())
    if args.health_command == "reset":
        cleared = health.reset(args.model)
        if cleared:
            print_success(f"Cleared health records for {', '.join(cleared)}")
        else:
            print_info("No health records to clear")
        return 0

    records = health.all()
    if not records:
        print_info("No model health recorded yet")
        return 0
    table = create_table(title="Model Health", columns=["Model", "Status", "OK", "Failed", "Latency", "Cooldown", "Last error"])
    for record in records:
        remaining = record.cooldown_remaining()
        table.add_row(
            record.model_id,
            record.status.value,
            str(record.success_count),
            str(record.failure_count),
            f"{record.rolling_avg_latency:.1f}s",
            f"{remaining:.0f}s" if remaining else "",
            (record.last_error or "")[:60],
        )
    print_table(table)
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hyle",
        description="Autonomous agent loop for coding tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a task in the current directory
  python -m hyle run "add a --verbose flag to cli.py"

  # Unattended run with write access
  python -m hyle run "fix the failing tests" --preset autonomous --yes

  # Inspect what happened
  python -m hyle sessions
  python -m hyle log <session-id> --kind decision
  python -m hyle events metrics

  # A model stuck out of rotation after fixing its API key
  python -m hyle health reset openrouter/some-model

Environment Variables:
  OPENROUTER_API_KEY    API key for OpenRouter models
  HYLE_<FIELD>          Override any config field, e.g. HYLE_MAX_ITERATIONS=30
        """,
    )
    parser.add_argument("--version", action="version", version=f"hyle {__version__}")
    parser.add_argument(
        "--project-dir", "-p",
        type=Path,
        default=Path.cwd(),
        help="Working directory for the agent and its .hyle state (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run the agent on a task")
    run_parser.add_argument("prompt", help="Task for the agent")
    run_parser.add_argument(
        "--preset",
        choices=["default", "autonomous", "conservative"],
        default=None,
        help="Configuration preset (default: default)",
    )
    run_parser.add_argument("--model", help="Model to try first")
    run_parser.add_argument("--max-iterations", type=int, default=None, help="Iteration budget for this run")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Approve confirmable tool calls without asking")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument("--all", action="store_true", help="Include sessions of other directories")

    log_parser = subparsers.add_parser("log", help="Show a session's event log")
    log_parser.add_argument("session_id", help="Session ID")
    log_parser.add_argument("--kind", "-k", choices=[k.value for k in LogKind], help="Only this kind of entry")
    log_parser.add_argument("--limit", "-n", type=int, default=0, help="Show the last N entries")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old sessions")
    cleanup_parser.add_argument("--keep", type=int, default=10, help="Sessions to keep (default: 10)")

    events_parser = subparsers.add_parser("events", help="Query the run event ledger")
    events_sub = events_parser.add_subparsers(dest="events_command")
    for name, help_text in (("metrics", "Show run metrics summary"), ("list", "List recent events")):
        sub = events_sub.add_parser(name, help=help_text)
        sub.add_argument("--session", "-s", default=None, help="Filter by session ID")
        if name == "list":
            sub.add_argument("--type", "-t", default=None, help="Filter by event type")
            sub.add_argument("--limit", "-n", type=int, default=50, help="Max events (default: 50)")

    health_parser = subparsers.add_parser("health", help="Show or reset shared model health")
    health_sub = health_parser.add_subparsers(dest="health_command")
    health_sub.add_parser("list", help="Show per-model health (default)")
    reset_parser = health_sub.add_parser("reset", help="Clear health records so a model rejoins the rotation")
    reset_parser.add_argument("model", nargs="?", default=None, help="Model ID (default: every model)")

    return parser


COMMANDS = {
    "run": cmd_run,
    "sessions": cmd_sessions,
    "log": cmd_log,
    "cleanup": cmd_cleanup,
    "events": cmd_events,
    "health": cmd_health,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with subcommand support."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return COMMANDS[args.command](args)
    except HyleError as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
