"""CLI commands for testbridge.

Every command starts (or reuses) one test server worker through
TestServerController, relays the worker's stdio to the terminal, performs a
single call and shuts the worker down before exiting.
"""

import asyncio
import base64
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from testbridge import __version__
from testbridge.cli.shared.logging_utils import configure_stderr_logging, ensure_rotating_log_file
from testbridge.config.loader import load_config
from testbridge.config.schema import Config
from testbridge.core.protocol import TestServerEvent
from testbridge.core.types import (
    FindRelatedTestFilesParams,
    FindRelatedTestFilesReport,
    ListParams,
    StdioEvent,
    StopParams,
    TestConfig,
    TestParams,
)
from testbridge.test_server import TestServer, TestServerController
from testbridge.utils.exceptions import TestBridgeError, format_error

T = TypeVar("T")

app = typer.Typer(
    name="testbridge",
    help="testbridge - run tests through a shared test server worker",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

_state: dict[str, object] = {"verbose": False}

CLI_OPTION = typer.Option(..., "--cli", help="Path to the test runner CLI script")
WORKSPACE_OPTION = typer.Option(Path("."), "--workspace", "-w", help="Project root the worker runs in")
CONFIG_FILE_OPTION = typer.Option(..., "--config-file", "-c", help="Test runner config file")
RUNNER_VERSION_OPTION = typer.Option(1.44, "--runner-version", help="Test runner version")
ENV_OPTION = typer.Option(None, "--env", "-e", help="KEY=VALUE passed to the test run (repeatable)")


def version_callback(value: bool):
    if value:
        console.print(f"testbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log worker frames and lifecycle at DEBUG"),
):
    """testbridge - run tests through a shared test server worker."""
    _state["verbose"] = verbose


def parse_env(pairs: list[str] | None) -> dict[str, str | None]:
    """Parse repeated KEY=VALUE options; a bare KEY unsets the variable for the run."""
    env: dict[str, str | None] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not key:
            raise typer.BadParameter(f"invalid --env entry: {pair!r}")
        env[key] = value if sep else None
    return env


def relay_stdio(event: StdioEvent) -> None:
    if event.text is not None:
        text = event.text
    elif event.buffer is not None:
        text = base64.b64decode(event.buffer).decode("utf-8", errors="replace")
    else:
        return
    target = err_console if event.type == "stderr" else console
    target.print(Text.from_ansi(text), end="")


def _setup(config: Config) -> None:
    level = "DEBUG" if _state["verbose"] else config.logging.level
    configure_stderr_logging(level)
    if config.logging.file:
        ensure_rotating_log_file("testbridge", level=level)


def _test_config(cli: Path, workspace: Path, config_file: Path, runner_version: float) -> TestConfig:
    workspace = workspace.expanduser().resolve()
    config_path = config_file if config_file.is_absolute() else workspace / config_file
    return TestConfig(
        workspace_folder=str(workspace),
        config_file=str(config_path),
        cli=str(cli.expanduser().resolve()),
        version=runner_version,
    )


def run_with_server(test_config: TestConfig, action: Callable[[TestServer], Awaitable[T]]) -> T:
    """Start the worker for ``test_config``, run ``action`` against it, then shut it down."""
    try:
        config = load_config()
    except ValueError as exc:
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)
    _setup(config)

    async def _main() -> T:
        async with TestServerController(settings=config.test_server) as controller:
            server = await controller.test_server_for(test_config)
            if server is None:
                err_console.print(
                    f"[yellow]Test runner {test_config.version} has no test server "
                    f"(need >= {config.test_server.min_version}).[/yellow]"
                )
                raise typer.Exit(1)
            server.on(TestServerEvent.STDIO, relay_stdio)
            return await action(server)

    try:
        return asyncio.run(_main())
    except TestBridgeError as exc:
        err_console.print(f"[red]Error: {escape(format_error(exc))}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        raise typer.Exit(130)


@app.command("list")
def list_tests(
    locations: list[str] = typer.Argument(None, help="Files or directories to list"),
    cli: Path = CLI_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    config_file: Path = CONFIG_FILE_OPTION,
    runner_version: float = RUNNER_VERSION_OPTION,
    reporter: str = typer.Option("list", "--reporter", "-r", help="Reporter the worker uses"),
    env: list[str] = ENV_OPTION,
):
    """List tests without running them."""
    test_config = _test_config(cli, workspace, config_file, runner_version)
    params = ListParams(
        config_file=test_config.config_file,
        locations=list(locations or []),
        reporter=reporter,
        env=parse_env(env),
    )
    run_with_server(test_config, lambda server: server.list(params))


@app.command("test")
def run_tests(
    locations: list[str] = typer.Argument(None, help="Files or directories to run"),
    cli: Path = CLI_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    config_file: Path = CONFIG_FILE_OPTION,
    runner_version: float = RUNNER_VERSION_OPTION,
    reporter: str = typer.Option("list", "--reporter", "-r", help="Reporter the worker uses"),
    env: list[str] = ENV_OPTION,
    headed: bool = typer.Option(None, "--headed/--headless", help="Run browsers headed"),
    one_worker: bool = typer.Option(None, "--one-worker", help="Run with a single test worker"),
    trace: str = typer.Option(None, "--trace", help="Trace mode: on or off"),
    projects: list[str] = typer.Option(None, "--project", "-p", help="Project to run (repeatable)"),
    grep: str = typer.Option(None, "--grep", "-g", help="Only run tests matching this pattern"),
    reuse_context: bool = typer.Option(None, "--reuse-context", help="Reuse the browser context between tests"),
    connect_ws_endpoint: str = typer.Option(None, "--connect-ws-endpoint", help="Connect to an existing browser"),
):
    """Run tests."""
    test_config = _test_config(cli, workspace, config_file, runner_version)
    try:
        params = TestParams(
            config_file=test_config.config_file,
            locations=list(locations or []),
            reporter=reporter,
            env=parse_env(env),
            headed=headed,
            one_worker=one_worker,
            trace=trace,
            projects=list(projects) if projects else None,
            grep=grep,
            reuse_context=reuse_context,
            connect_ws_endpoint=connect_ws_endpoint,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--trace")
    run_with_server(test_config, lambda server: server.test(params))


@app.command("find-related")
def find_related(
    files: list[str] = typer.Argument(..., help="Changed source files"),
    cli: Path = CLI_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    config_file: Path = CONFIG_FILE_OPTION,
    runner_version: float = RUNNER_VERSION_OPTION,
):
    """Show test files affected by the given source files."""
    test_config = _test_config(cli, workspace, config_file, runner_version)
    params = FindRelatedTestFilesParams(
        config_file=test_config.config_file,
        files=[os.path.abspath(f) for f in files],
    )
    report = run_with_server(test_config, lambda server: server.find_related_test_files(params))
    print_related_report(report)
    if report.errors:
        raise typer.Exit(1)


def print_related_report(report: FindRelatedTestFilesReport) -> None:
    table = Table(title=f"Related test files ({len(report.test_files)})")
    table.add_column("File", style="cyan")
    for path in report.test_files:
        table.add_row(escape(path))
    console.print(table)
    for error in report.errors or []:
        where = f"{error.location.file}:{error.location.line} " if error.location else ""
        console.print(f"[red]{escape(where + (error.message or error.value or 'error'))}[/red]")


@app.command("stop")
def stop_tests(
    cli: Path = CLI_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    config_file: Path = CONFIG_FILE_OPTION,
    runner_version: float = RUNNER_VERSION_OPTION,
):
    """Ask the worker to stop any running tests."""
    test_config = _test_config(cli, workspace, config_file, runner_version)
    run_with_server(test_config, lambda server: server.stop(StopParams(config_file=test_config.config_file)))


if __name__ == "__main__":
    app()
