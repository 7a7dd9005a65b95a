#!/usr/bin/env python3
"""Main entry point for deliver."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import asyncssh

from . import __version__
from .config import Configuration, check_config, load_config
from .deploy import Deployment, DeploymentResult, check_templates
from .errors import (
    ConfigError,
    DeliverError,
    Interrupted,
    MissingRequiredConfig,
    StrategyError,
    UnknownStrategy,
)
from .executor import Executor
from .modes import FAIL_MARK, LOCAL, OK_MARK, Dispatcher, ExecutionMode
from .runlog import EventLogger
from .strategies import Strategy, discover, load, load_file, search_paths

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

# ANSI colors for different hosts
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def configure_logging(level: int = logging.WARNING) -> None:
    """Send deliver's diagnostics to stderr."""
    root = logging.getLogger("deliver")
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    root.addHandler(handler)

    if level <= logging.DEBUG:
        asyncssh.set_log_level(logging.DEBUG)
        asyncssh.set_debug_level(2)
    else:
        asyncssh.set_log_level(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deliver",
        description="Deploy an application to many hosts with a pluggable strategy",
    )
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory containing .deliver/ (default: current directory)",
    )
    parser.add_argument("--hosts", help="Override the host list (comma or space separated)")
    parser.add_argument("--strategy", help="Override the deployment strategy")
    parser.add_argument("--branch", help="Override the branch to deliver")

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "-v", "--verbose", action="store_true", help="Run steps inline and show their output"
    )
    modes.add_argument(
        "-D", "--debug", action="store_true", help="Verbose, with shell and SSH tracing"
    )
    modes.add_argument(
        "-T", "--test", action="store_true", help="Print what would run without running it"
    )

    parser.add_argument(
        "-c", "--check", action="store_true", help="Check the configuration and exit"
    )
    parser.add_argument(
        "-S", "--strategies", action="store_true", help="List available strategies and exit"
    )
    parser.add_argument(
        "--dashboard", action="store_true", help="Run with the TUI dashboard"
    )
    parser.add_argument(
        "--no-log", action="store_true", help="Do not append dispatched commands to the run log"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _overrides(args: argparse.Namespace) -> dict:
    mode = None
    if args.verbose:
        mode = ExecutionMode.VERBOSE.value
    elif args.debug:
        mode = ExecutionMode.DEBUG.value
    elif args.test:
        mode = ExecutionMode.TEST.value
    return {
        "hosts": args.hosts,
        "strategy": args.strategy,
        "branch": args.branch,
        "mode": mode,
    }


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.WARNING)

    project_dir = args.project_dir.expanduser().resolve()
    overrides = _overrides(args)
    discovered = discover(search_paths(project_dir))

    if args.strategies:
        return _list_strategies(discovered)
    if args.check:
        return _check(project_dir, overrides, discovered)

    try:
        config = load_config(project_dir, overrides)
        mode = ExecutionMode.from_config(config)
        strategy = load(config["strategy"], discovered)
        missing = [row.key for row in check_config(config, strategy.requires) if not row.ok]
        if missing:
            raise MissingRequiredConfig(missing)
        check_templates(config, strategy)
    except UnknownStrategy as e:
        print(f"Error: {e.message}", file=sys.stderr)
        _print_available(discovered, file=sys.stderr)
        return EXIT_CONFIG
    except (ConfigError, StrategyError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    log_path = None
    if not args.no_log and mode is not ExecutionMode.TEST:
        log_path = project_dir / Path(config["log_file"]).expanduser()
    run_log = EventLogger(log_path)

    if args.dashboard and mode is not ExecutionMode.TEST:
        from .dashboard import Dashboard

        app = Dashboard(config, strategy, run_log=run_log)
        app.run()
        if app.interrupted:
            return EXIT_INTERRUPTED
        if app.result is None or not app.result.ok:
            return EXIT_FAILED
        return EXIT_OK

    try:
        return asyncio.run(_run_headless(config, strategy, run_log))
    except KeyboardInterrupt:
        print(f"\n{FAIL_MARK} Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except DeliverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG


def _install_signal_handlers(cancel: asyncio.Event) -> list[signal.Signals]:
    """Route SIGINT and SIGTERM into the cancel event where the loop supports it."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


async def _run_headless(
    config: Configuration, strategy: Strategy, run_log: EventLogger
) -> int:
    """Run the deployment, printing output with a colored tag per host."""
    sources = [LOCAL] + [str(host) for host in config.hosts]
    source_colors = {}
    for source in sources:
        source_colors.setdefault(source, COLORS[len(source_colors) % len(COLORS)])

    def on_output(source: str, line: str) -> None:
        color = source_colors.get(source, "")
        print(f"{color}[{source}]{RESET} {line}")

    cancel = asyncio.Event()
    installed = _install_signal_handlers(cancel)

    executor = Executor(config, on_output=on_output, cancel=cancel)
    dispatcher = Dispatcher(config, executor, run_log, on_output=on_output)
    deployment = Deployment(config, strategy, dispatcher)

    try:
        result = await deployment.run()
    except Interrupted as e:
        print(f"\n{FAIL_MARK} {e}", file=sys.stderr)
        return EXIT_INTERRUPTED
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    if cancel.is_set():
        print(f"\n{FAIL_MARK} Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    return _report(config, strategy, result, dispatcher.mode)


def _report(
    config: Configuration,
    strategy: Strategy,
    result: DeploymentResult,
    mode: ExecutionMode,
) -> int:
    if result.ok:
        if mode is not ExecutionMode.TEST:
            print(
                f"{OK_MARK} Delivered {config['app']} with '{strategy.name}' "
                f"to {len(config.hosts)} host(s)"
            )
        return EXIT_OK

    for failure in result.failed:
        print(f"\n{FAIL_MARK} {failure.message}", file=sys.stderr)
        for job in failure.failures:
            print(f"  {job}", file=sys.stderr)
            if mode is ExecutionMode.COMPACT:
                for line in job.output:
                    print(f"    {line}", file=sys.stderr)
    if result.skipped:
        print(f"Skipped steps: {', '.join(result.skipped)}", file=sys.stderr)

    failed_hosts = sorted({job.host or LOCAL for f in result.failed for job in f.failures})
    print(f"\nFailed hosts: {', '.join(failed_hosts)}", file=sys.stderr)
    return EXIT_FAILED


def _check(project_dir: Path, overrides: dict, discovered: dict[str, Path]) -> int:
    """Print every checked setting with a pass/fail mark."""
    try:
        config = load_config(project_dir, overrides, validate=False)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    strategy_error: DeliverError | None = None
    requires: list[str] = []
    if config.get("strategy"):
        try:
            requires = load(config["strategy"], discovered).requires
        except StrategyError as e:
            strategy_error = e

    rows = check_config(config, requires)
    width = max(len(row.key) for row in rows)
    all_ok = strategy_error is None

    for row in rows:
        ok = row.ok and not (row.key == "strategy" and strategy_error is not None)
        all_ok = all_ok and ok
        if ok:
            print(f"{OK_MARK} {row.key:<{width}}  {row.value}")
        elif row.ok:
            problem = "unknown" if isinstance(strategy_error, UnknownStrategy) else "invalid"
            print(f"{FAIL_MARK} {row.key:<{width}}  {row.value} ({problem})")
        else:
            print(f"{FAIL_MARK} {row.key:<{width}}  (missing)")

    if isinstance(strategy_error, UnknownStrategy):
        _print_available(discovered)
    elif strategy_error is not None:
        print(f"\n{strategy_error}")

    return EXIT_OK if all_ok else EXIT_CONFIG


def _print_available(discovered: dict[str, Path], file=None) -> None:
    print("\nAvailable strategies:", file=file or sys.stdout)
    for name in discovered:
        print(f"  {name}", file=file or sys.stdout)


def _list_strategies(discovered: dict[str, Path]) -> int:
    if not discovered:
        print("No strategies found")
        return EXIT_OK
    width = max(len(name) for name in discovered)
    for name, path in discovered.items():
        try:
            description = load_file(name, path).description
        except StrategyError as e:
            description = f"(invalid: {e.message})"
        print(f"{name:<{width}}  {description}  [{path}]")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
