"""Command line entry point for running and inspecting plugins."""

import importlib
from typing import Annotated

import typer
from rich.console import Console

from clnplugin.plugin import Plugin

app = typer.Typer(
    name="clnplugin",
    help="Run and inspect stdio JSON-RPC plugins.",
    no_args_is_help=True,
)

# stdout belongs to the protocol when running; keep messages on stderr
console = Console(stderr=True)


def load_plugin(reference: str) -> Plugin:
    """Import a plugin from a ``module:attribute`` reference."""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(
            f"Expected MODULE:ATTRIBUTE, got {reference!r}", param_hint="PLUGIN"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(
            f"Cannot import {module_name}: {e}", param_hint="PLUGIN"
        ) from e

    target = getattr(module, attr, None)
    if callable(target) and not isinstance(target, Plugin):
        target = target()
    if not isinstance(target, Plugin):
        raise typer.BadParameter(
            f"{reference} is not a Plugin or a factory returning one",
            param_hint="PLUGIN",
        )
    return target


@app.command()
def manifest(
    plugin: Annotated[
        str,
        typer.Argument(help="Plugin reference as MODULE:ATTRIBUTE"),
    ],
) -> None:
    """Print the manifest the plugin would send to the host."""
    loaded = load_plugin(plugin)
    Console().print_json(data=loaded.manifest())


@app.command()
def run(
    plugin: Annotated[
        str,
        typer.Argument(help="Plugin reference as MODULE:ATTRIBUTE"),
    ],
    rich_logs: Annotated[
        bool,
        typer.Option(
            "--rich",
            help="Colorful stderr logs",
        ),
    ] = False,
) -> None:
    """Serve the plugin over stdin/stdout."""
    loaded = load_plugin(plugin)
    try:
        loaded.run(use_rich=rich_logs)
    except SystemExit:
        console.print("[red]Plugin stopped after a fatal error[/red]")
        raise typer.Exit(code=1) from None


def main() -> None:
    app()


if __name__ == "__main__":
    main()
