#!/usr/bin/env python3
"""
keyman CLI Helpers

Shared formatting utilities and plumbing for the CLI commands: status
messages, the alias-aware command group, engine construction from config,
and the single place where typed errors become exit codes.
"""

import functools
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from rich.console import Console
from rich.table import Table

from keyman.config import KeymanConfig
from keyman.engine import ActivationEngine
from keyman.errors import KeymanError
from keyman.store.key_store import KeyStore
from keyman.store.models import KeyPair

# Single shared Console instance for the entire CLI
console = Console()

BIN_NAME = "keyman"


def print_success(message: str) -> None:
    """Print a success message with green checkmark."""
    console.print(f"[green]\u2713[/green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message with yellow triangle."""
    console.print(f"[yellow]\u26a0[/yellow]  {message}")


def print_error(message: str, fix_hint: str = "") -> None:
    """Print an error message with red X and optional fix hint."""
    console.print(f"[red]\u2717[/red] {message}")
    if fix_hint:
        console.print(f"  [white]Hint: {fix_hint}[/white]")


def usage(*args: str) -> str:
    """Render a command line, e.g. usage("use", "work") -> "keyman use work"."""
    return " ".join((BIN_NAME,) + args)


def format_command_example(command: str, description: str) -> str:
    return f"  {command:<40s} {description}"


def build_examples_epilog(examples: List[Tuple[str, str]]) -> str:
    """
    Build a formatted epilog string with command examples.

    Args:
        examples: List of (command, description) tuples.

    Returns:
        Multi-line string suitable for Click's epilog parameter.
    """
    lines = ["\b", "Examples:"]
    for cmd, desc in examples:
        lines.append(format_command_example(cmd, desc))
    return "\n".join(lines) + "\n"


class AliasedGroup(click.Group):
    """Click group that also resolves short aliases (``rm`` -> ``remove``)."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases: Dict[str, str] = {}

    def command(self, *args, aliases: Tuple[str, ...] = (), **kwargs):
        decorator = super().command(*args, **kwargs)

        def wrapper(f):
            cmd = decorator(f)
            for alias in aliases:
                self.aliases[alias] = cmd.name
            return cmd

        return wrapper

    def get_command(self, ctx, cmd_name):
        cmd = super().get_command(ctx, cmd_name)
        if cmd is not None:
            return cmd
        target = self.aliases.get(cmd_name)
        if target is not None:
            return super().get_command(ctx, target)
        return None

    def resolve_command(self, ctx, args):
        name, cmd, remaining = super().resolve_command(ctx, args)
        return (cmd.name if cmd is not None else name), cmd, remaining


def build_engine(config: KeymanConfig) -> ActivationEngine:
    """Wire a KeyStore and ActivationEngine from loaded configuration."""
    store = KeyStore(
        registry_path=config.registry_file,
        active_slot=config.active_slot,
        mode=config.materialize_mode,
    )
    return ActivationEngine(store)


def handle_errors(f):
    """Render any KeymanError once and exit non-zero."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except KeymanError as e:
            print_error(f"{e.kind}: {e.message}", e.hint or "")
            raise SystemExit(1)

    return wrapper


def print_key_details(pair: KeyPair, active: bool, slot: Optional[Path] = None) -> None:
    """Print one key pair as a short block of labelled lines."""
    status = " [green](in use)[/green]" if active else ""
    console.print(f"[bold]Key '{pair.name}'[/bold]{status}")
    console.print(f"  Private Key: {pair.private_path}")
    if pair.public_path is not None:
        console.print(f"  Public Key:  {pair.public_path}")
    else:
        console.print("  Public Key:  [white](none)[/white]")
    console.print(f"  Added:       {pair.added_at}")
    if active and slot is not None:
        console.print(f"  Linked as:   {slot}")


def build_keys_table(pairs: List[KeyPair], active: Optional[str]) -> Table:
    table = Table(title="Your SSH keys")
    table.add_column("", width=1)
    table.add_column("Name", style="cyan")
    table.add_column("Private Key")
    table.add_column("Public Key")

    for pair in pairs:
        marker = "[green]*[/green]" if pair.name == active else ""
        public = str(pair.public_path) if pair.public_path is not None else "[white]-[/white]"
        table.add_row(marker, pair.name, str(pair.private_path), public)
    return table
