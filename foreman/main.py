"""Main entry point for foreman.

Initializes logging in two phases (defaults then config-driven) and
dispatches the ``run`` and ``status`` subcommands. ``run`` executes an
autonomous run over a project's board with graceful stop on
SIGTERM/SIGINT: the in-flight task is cancelled and the run result is
still printed.

Key functions:
    main: Async entry point for a parsed command line.
    run: Synchronous wrapper used by the ``foreman`` console script.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .logging_config import setup_logging

__version__ = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foreman", description="Autonomous coding task runner")
    parser.add_argument("--version", action="version", version=f"foreman {__version__}")
    parser.add_argument("--config-dir", help="Directory holding settings.yaml and .env")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run pending board tasks")
    run_p.add_argument("project", help="Path to the project's git working tree")
    run_p.add_argument("--strategy", choices=["fifo", "priority", "dependency"])
    run_p.add_argument("--max-tasks", type=int)
    run_p.add_argument("--max-failures", type=int)
    run_p.add_argument("--stop-on-blocking", action="store_true", default=None)
    run_p.add_argument(
        "--no-merge-to-review", dest="merge_to_review", action="store_false", default=None,
        help="Leave completed tasks on their branch",
    )
    run_p.add_argument("--stream", action="store_true", help="Echo streamed agent output")

    status_p = sub.add_parser("status", help="Show board, branch mappings and git status")
    status_p.add_argument("project", help="Path to the project's git working tree")
    return parser


async def _print_event(event) -> None:
    details = ", ".join(f"{k}={v}" for k, v in event.data.items() if v not in (None, "", []))
    task = f" {event.task_id}" if event.task_id else ""
    print(f"[{event.type.value}]{task} {details}".rstrip(), flush=True)


async def _print_chunk(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def run_command(args, config) -> int:
    from .autonomous import AutonomousManager, RunOptions

    logger = structlog.get_logger("foreman.runner")
    manager = AutonomousManager(
        args.project,
        config=config,
        event_callback=_print_event,
        chunk_callback=_print_chunk if args.stream else None,
    )

    defaults = manager.runner.default_options()
    overrides = {
        "strategy": args.strategy,
        "max_tasks": args.max_tasks,
        "max_failures": args.max_failures,
        "stop_on_blocking": args.stop_on_blocking,
        "merge_to_review": args.merge_to_review,
    }
    options = RunOptions.model_validate({
        **defaults.model_dump(),
        **{k: v for k, v in overrides.items() if v is not None},
    })

    loop = asyncio.get_running_loop()
    stop_tasks = []

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        if not stop_tasks:
            stop_tasks.append(asyncio.ensure_future(manager.stop()))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: loop.call_soon_threadsafe(handle_shutdown, signal.SIGINT),
                )

    try:
        result = await manager.start_run(options)
        if stop_tasks:
            await stop_tasks[0]
    finally:
        await manager.close()

    print(
        f"\nRun finished: {result.stopped_reason}\n"
        f"  processed={result.processed} completed={result.completed} "
        f"failed={result.failed} blocked={result.blocked}"
    )
    for item in result.results:
        line = f"  {item.task_id}: {item.outcome.value}"
        if item.error:
            line += f" ({item.error[:120]})"
        if item.merge_conflicts:
            line += f" [review merge conflicts: {', '.join(item.merge_conflicts)}]"
        print(line)
    return 0 if result.success else 1


async def status_command(args, config) -> int:
    from .autonomous import TaskStatus, TaskStore
    from .git import BranchOrchestrator

    project_root = Path(args.project).resolve()
    store = TaskStore(config.state_dir(project_root))
    orchestrator = BranchOrchestrator(project_root, config=config)

    tasks = store.list_tasks()
    counts = {status: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status] += 1
    print(f"Board: {len(tasks)} task(s)")
    print("  " + "  ".join(f"{s.value}={n}" for s, n in counts.items()))
    for task in tasks:
        marker = " (question open)" if task.has_unresolved_question else ""
        print(f"  {task.id} [{task.status.value}] {task.priority.value:8} {task.title}{marker}")

    mappings = orchestrator.get_mappings()
    print(f"\nBranch mappings: {len(mappings)}")
    for mapping in mappings:
        state = f"merged to {mapping.merged_to}" if mapping.is_merged else "active"
        checked = ", checked out" if mapping.is_checked_out else ""
        print(f"  {mapping.task_id} {mapping.branch_name} ({state}{checked})")

    git_status = await orchestrator.get_status()
    print(
        f"\nGit: on {git_status.branch or '(detached)'}, "
        f"{'clean' if git_status.is_clean else 'dirty'}"
        f"{', merge in progress' if git_status.is_merging else ''}"
        f"{', rebase in progress' if git_status.is_rebasing else ''}"
    )
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """Main async entry point."""
    args = build_parser().parse_args(argv)

    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("foreman")
    logger.info("foreman_starting", version=__version__, command=args.command)

    from .config import Config, get_config

    config = Config(Path(args.config_dir)) if args.config_dir else get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    if args.command == "run":
        return await run_command(args, config)
    return await status_command(args, config)


def run():
    """Synchronous entry point for the ``foreman`` console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
