"""Typer application and main entry point for the CLI.

A small developer front end over the provider registry: stream one
request, show backend installation status, list models.
"""

import json
import os
from typing import Annotated, NoReturn

import typer
from rich.table import Table

from conduit.integrations.backends.factory import init_registry
from conduit.integrations.backends.model_discovery import discover_remote_models
from conduit.integrations.backends.types import (
    AssistantMessage,
    ErrorMessage,
    ExecutionRequest,
    ProviderMessage,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from conduit.platform.cancellation import CancellationToken
from conduit.utils.console import (
    console,
    print_error,
    print_info,
    print_success,
    print_warning,
    show_version,
)
from conduit.utils.errors import ConduitError, ExitCode, UserCancelledError
from conduit.utils.logging import setup_logging

# Truncation for tool output echoed to the terminal
_TOOL_RESULT_PREVIEW = 400

app = typer.Typer(
    name="conduit",
    help="CONDUIT - one message protocol over AI coding-agent CLIs",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Display version and exit."""
    if value:
        show_version()
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            callback=version_callback,
            is_eager=True,
            help="Show version information",
        ),
    ] = None,
) -> None:
    """CONDUIT - one message protocol over AI coding-agent CLIs."""
    setup_logging()


def _exit_with_error(error: ConduitError) -> NoReturn:
    print_error(str(error))
    suggestion = getattr(error, "suggestion", None)
    if suggestion:
        print_info(suggestion)
    raise typer.Exit(error.exit_code) from error


def _render_message(message: ProviderMessage) -> None:
    if isinstance(message, ErrorMessage):
        print_error(message.error)
        if message.suggestion:
            print_info(message.suggestion)
        return

    if isinstance(message, ResultMessage):
        if message.subtype == "success":
            print_success("Done")
        else:
            print_warning("Finished without success")
        return

    for block in message.content:
        if isinstance(block, TextBlock):
            console.print(block.text, markup=False, highlight=False)
        elif isinstance(block, ThinkingBlock):
            console.print(block.thinking, style="thinking", markup=False)
        elif isinstance(block, ToolUseBlock):
            console.print(f"[tool]> {block.name}[/tool] {json.dumps(dict(block.input))}")
        elif isinstance(block, ToolResultBlock):
            preview = block.content[:_TOOL_RESULT_PREVIEW]
            console.print(preview, style="dim", markup=False, highlight=False)


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(help="Prompt text sent to the backend")],
    model: Annotated[
        str,
        typer.Option("--model", "-m", help="Model id; selects the provider"),
    ],
    cwd: Annotated[
        str | None,
        typer.Option("--cwd", help="Working directory for the backend (default: current)"),
    ] = None,
    no_tools: Annotated[
        bool,
        typer.Option("--no-tools", help="Request a tool-free run"),
    ] = False,
    max_turns: Annotated[
        int | None,
        typer.Option("--max-turns", help="Cap on agentic turns"),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print each message as one JSON line"),
    ] = False,
) -> None:
    """Stream one request through the provider that serves MODEL."""
    token = CancellationToken()
    request = ExecutionRequest(
        prompt=prompt,
        model=model,
        cwd=os.path.abspath(cwd or os.getcwd()),
        allowed_tools=() if no_tools else None,
        max_turns=max_turns,
        cancellation=token,
    )

    failed = False
    stream = None
    try:
        provider = init_registry().resolve(model)
        stream = provider.execute_query(request)
        for message in stream:
            if isinstance(message, ErrorMessage):
                failed = True
            if as_json:
                typer.echo(json.dumps(message.to_dict()))
            else:
                _render_message(message)
    except KeyboardInterrupt as e:
        token.cancel()
        print_info("\nOperation cancelled by user")
        raise typer.Exit(ExitCode.USER_CANCELLED) from e
    except UserCancelledError as e:
        print_info(f"\n{e}")
        raise typer.Exit(ExitCode.USER_CANCELLED) from e
    except ConduitError as e:
        _exit_with_error(e)
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()

    if failed:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


@app.command()
def status(
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print statuses as JSON"),
    ] = False,
) -> None:
    """Show installation and login status for every backend."""
    try:
        statuses = init_registry().check_all_providers()
    except ConduitError as e:
        _exit_with_error(e)
    if as_json:
        typer.echo(json.dumps({name: s.to_dict() for name, s in statuses.items()}, indent=2))
        return

    table = Table(show_header=True, header_style="header", expand=False)
    table.add_column("Provider")
    table.add_column("Installed")
    table.add_column("Method")
    table.add_column("Path")
    table.add_column("Version")
    table.add_column("Auth")
    for name, info in statuses.items():
        table.add_row(
            name,
            "[success]yes[/success]" if info.installed else "[error]no[/error]",
            info.method or "-",
            info.path or "-",
            info.version or "-",
            "yes" if info.authenticated or info.has_api_key else "no",
        )
    console.print(table)


@app.command()
def models(
    remote: Annotated[
        bool,
        typer.Option("--remote", help="Also query vendor APIs for their model lists"),
    ] = False,
) -> None:
    """List models known to the registered providers."""
    try:
        definitions = init_registry().get_all_available_models()
    except ConduitError as e:
        _exit_with_error(e)
    if remote:
        definitions.extend(discover_remote_models())

    table = Table(show_header=True, header_style="header", expand=False)
    table.add_column("Id")
    table.add_column("Provider")
    table.add_column("Name")
    table.add_column("Tier")
    for definition in definitions:
        label = f"{definition.name} (default)" if definition.default else definition.name
        table.add_row(definition.id, definition.provider, label, definition.tier or "-")
    console.print(table)


__all__ = ["app", "main", "run", "status", "models"]
