"""
Command-line interface for the Miri playground.

Subcommands:

    miri-playground run [FILE|-]       execute one snippet and print the outcome
    miri-playground doctor             check toolchain, runtime and limits
    miri-playground serve              start the HTTP intake
    miri-playground init-config PATH   write a default configuration file

Exit status of ``run`` is 0 whenever the request was handled, whatever the
outcome tag; 1 for infrastructure failures and 2 for caller errors.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .core.config import PlaygroundConfig
from .core.exceptions import (
    ConfigurationError,
    DispatcherBusyError,
    PlaygroundError,
    RequestValidationError,
    ToolchainError,
    format_error_message,
)
from .core.logging import get_logger, setup_logging
from .execution.engine import PlaygroundService
from .sandbox.runtimes.registry import detect_runtime_health, run_runtime_doctor

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_INFRASTRUCTURE = 1
EXIT_CALLER = 2

_STATUS_STYLES = {
    "success": "green",
    "compile_error": "red",
    "runtime_failure": "red",
    "timed_out": "yellow",
    "resource_exceeded": "yellow",
    "cancelled": "yellow",
    "internal_error": "magenta",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="miri-playground",
        description="Run untrusted Rust snippets under Miri with bounded resources.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Interpret a file under Miri
  miri-playground run main.rs

  # Native build and run, with a 2 second limit, JSON output
  echo 'fn main() { println!("hi"); }' | miri-playground run - --mode run --timeout 2 --json

  # Assembly of a release build, then the rustfmt-ed source
  miri-playground run main.rs --target asm --profile release
  miri-playground run main.rs --mode format

  # Check the installation
  miri-playground doctor
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Configuration file (YAML or JSON)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Log level (default: from configuration, INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute one snippet")
    run_parser.add_argument(
        "source",
        nargs="?",
        default="-",
        help="Rust source file, or '-' to read standard input (default: -)",
    )
    run_parser.add_argument(
        "--mode",
        "-m",
        choices=["miri", "run", "build", "format"],
        help="Execution mode (default: miri, or build with --target)",
    )
    run_parser.add_argument(
        "--profile",
        choices=["debug", "release"],
        default="debug",
        help="Build profile (default: debug)",
    )
    run_parser.add_argument("--tests", action="store_true", help="Build and run the crate's tests")
    run_parser.add_argument(
        "--channel",
        choices=["stable", "beta", "nightly"],
        help="Rust release channel (default: the toolchain's default)",
    )
    run_parser.add_argument(
        "--target",
        choices=["asm", "llvm-ir"],
        help="Emit assembly or LLVM IR instead of an executable",
    )
    run_parser.add_argument("--timeout", type=float, help="Wall-clock limit in seconds")
    run_parser.add_argument("--memory", type=int, help="Memory limit in MiB")
    run_parser.add_argument("--request-id", type=str, help="Caller-chosen request id")
    run_parser.add_argument("--json", action="store_true", help="Print the outcome record as JSON")

    subparsers.add_parser("doctor", help="Diagnose toolchain, runtime and limits")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP intake")
    serve_parser.add_argument("--host", type=str, help="Address to bind (default: from configuration)")
    serve_parser.add_argument("--port", type=int, help="Port to bind (default: from configuration)")

    init_parser = subparsers.add_parser("init-config", help="Write a default configuration file")
    init_parser.add_argument("path", type=Path, help="Destination (.yaml or .json)")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()
    err_console = Console(stderr=True)

    if args.command == "init-config":
        return _init_config(args, err_console)

    try:
        config = PlaygroundConfig.load(args.config)
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_INFRASTRUCTURE

    setup_logging(args.log_level or config.log_level, console=err_console)

    if args.command == "doctor":
        return _doctor(config, console)
    if args.command == "serve":
        return _serve(config, args, err_console)
    return _run(config, args, console, err_console)


def _run(config: PlaygroundConfig, args: argparse.Namespace, console: Console, err_console: Console) -> int:
    try:
        source = _read_source(args.source)
    except (OSError, UnicodeDecodeError) as e:
        err_console.print(f"[red]Cannot read source:[/red] {e}")
        return EXIT_CALLER

    payload: dict[str, Any] = {
        "code": source,
        "profile": args.profile,
        "tests": args.tests,
    }
    for key in ("mode", "channel", "target"):
        if getattr(args, key):
            payload[key] = getattr(args, key)
    if args.timeout is not None:
        payload["timeout_seconds"] = args.timeout
    if args.memory is not None:
        payload["memory_limit_mb"] = args.memory
    if args.request_id:
        payload["request_id"] = args.request_id

    try:
        with PlaygroundService(config) as service:
            record = service.execute(payload)
    except RequestValidationError as e:
        err_console.print(f"[red]Invalid request:[/red] {format_error_message(e)}")
        return EXIT_CALLER
    except (ConfigurationError, ToolchainError, DispatcherBusyError) as e:
        err_console.print(f"[red]Error:[/red] {format_error_message(e)}")
        return EXIT_INFRASTRUCTURE

    if args.json:
        console.out(json.dumps(record, indent=2), highlight=False)
    else:
        _render_record(record, console)
    return EXIT_OK


def _read_source(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def _render_record(record: dict[str, Any], console: Console) -> None:
    if record["stdout"]:
        console.out(record["stdout"], end="", highlight=False)
        if record["stdout_truncated"]:
            console.print("\n[dim]... standard output truncated[/dim]")
    if record.get("code") is not None:
        console.out(record["code"], end="", highlight=False)
        if record["code_truncated"]:
            console.print("\n[dim]... output truncated[/dim]")
    if record["stderr"] and record["status"] != "compile_error":
        console.print(Panel(Text(record["stderr"]), title="stderr", border_style="dim", expand=False))
        if record["stderr_truncated"]:
            console.print("[dim]... standard error truncated[/dim]")

    status = record["status"]
    style = _STATUS_STYLES.get(status, "white")
    summary = f"[{style}]{status}[/{style}] in {record['elapsed_seconds']:.2f}s"
    if record["exit_code"] is not None:
        summary += f" (exit {record['exit_code']})"
    console.print(summary)
    if record["diagnostic"]:
        console.out(record["diagnostic"], highlight=False)


def _doctor(config: PlaygroundConfig, console: Console) -> int:
    console.print()
    console.print("[bold cyan]Playground Doctor[/bold cyan]")
    console.print()

    checks = run_runtime_doctor(config)
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Check", style="cyan", width=20)
    table.add_column("Status", width=8)
    table.add_column("Details", style="dim")
    table.add_column("Fix", style="yellow")
    for check in checks:
        if check.status == "pass":
            status = "[green]PASS[/green]"
        elif check.status == "warn":
            status = "[yellow]WARN[/yellow]"
        else:
            status = "[red]FAIL[/red]"
        table.add_row(check.name, status, check.detail, check.recommendation or "")
    console.print(table)

    health = detect_runtime_health(config.toolchain)
    runtimes = Table(show_header=True, header_style="bold cyan")
    runtimes.add_column("Runtime", style="cyan")
    runtimes.add_column("Available", width=10)
    runtimes.add_column("Details", style="dim")
    for name, item in sorted(health.items()):
        runtimes.add_row(name, "[green]yes[/green]" if item.available else "[red]no[/red]", item.detail)
    console.print(runtimes)

    return EXIT_INFRASTRUCTURE if any(check.status == "fail" for check in checks) else EXIT_OK


def _serve(config: PlaygroundConfig, args: argparse.Namespace, err_console: Console) -> int:
    from .web import serve

    if args.host:
        config.server.address = args.host
    if args.port:
        config.server.port = args.port
    try:
        serve(config)
    except PlaygroundError as e:
        err_console.print(f"[red]Error:[/red] {format_error_message(e)}")
        return EXIT_INFRASTRUCTURE
    return EXIT_OK


def _init_config(args: argparse.Namespace, err_console: Console) -> int:
    path: Path = args.path
    if path.exists() and not args.force:
        err_console.print(f"[yellow]{path} already exists; use --force to overwrite.[/yellow]")
        return EXIT_CALLER
    try:
        PlaygroundConfig().save_to_file(path)
    except ConfigurationError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return EXIT_INFRASTRUCTURE
    err_console.print(f"[green]Wrote default configuration to {path}[/green]")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
