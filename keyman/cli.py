#!/usr/bin/env python3
"""
keyman CLI - swap between SSH key pairs.

Usage:
    keyman add PRIVATE_KEY [--name NAME] [--public-key PATH] [--use]
    keyman use NAME
    keyman current
    keyman info [NAME]
    keyman rename NAME NEW_NAME
    keyman remove NAME [--force] [--delete-files] [--yes]
    keyman deactivate
    keyman list [--json]
    keyman restore
    keyman config [FIELD [VALUE]]
"""

import dataclasses
import json
from pathlib import Path
from typing import Optional

import click

from keyman import __version__
from keyman.cli_helpers import (
    AliasedGroup,
    build_engine,
    build_examples_epilog,
    build_keys_table,
    console,
    handle_errors,
    print_error,
    print_key_details,
    print_success,
    print_warning,
    usage,
)
from keyman.config import CONFIG_PATH, KeymanConfig, load_config, save_config
from keyman.errors import ActiveKeyInUse, ConfigError, KeymanError
from keyman.log import configure_logging


@click.group(cls=AliasedGroup)
@click.version_option(version=__version__, prog_name="keyman")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Config file (default: ~/.keyman/config.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Print debug logging to stderr")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """keyman - SSH key manager for easily swapping your SSH keys around.

    Register key pairs once, then pick which one the SSH client uses
    as its default identity with `keyman use NAME`.
    """
    try:
        config = load_config(config_path)
    except KeymanError as e:
        print_error(f"{e.kind}: {e.message}", e.hint or "")
        raise SystemExit(1)

    configure_logging(config.log_level, config.log_path, verbose=verbose)
    ctx.meta["keyman.config"] = config
    ctx.meta["keyman.config_path"] = config_path or CONFIG_PATH
    ctx.obj = build_engine(config)


@main.command("add", aliases=("new",), epilog=build_examples_epilog([
    ("keyman add ~/.ssh/work_ed25519", "Register a key named 'work_ed25519'"),
    ("keyman add ~/keys/gh -n github --use", "Register as 'github' and use it now"),
    ("keyman add ./deploy -p ./deploy.pub", "Register with an explicit public key"),
]))
@click.argument("private_key", type=click.Path(path_type=Path))
@click.option("--name", "-n", default=None,
              help="A name to identify the key by, default is the file name")
@click.option("--public-key", "-p", type=click.Path(path_type=Path), default=None,
              help="Path to the public key (default: PRIVATE_KEY.pub if it exists)")
@click.option("--use", "-u", "use_key", is_flag=True,
              help="Immediately place this key in use after adding it")
@click.pass_obj
@handle_errors
def add(engine, private_key: Path, name: Optional[str], public_key: Optional[Path], use_key: bool):
    """Add an existing private key to the list of keys."""
    pair = engine.add(private_key, name=name, public_path=public_key)

    if not use_key:
        print_success(
            f"Added key '{pair.name}' to list of keys, use it with `{usage('use', pair.name)}`"
        )
        return

    print_success(f"Added key '{pair.name}' to list of keys")
    engine.switch_to(pair.name)
    print_success(f"Using key '{pair.name}'")


@main.command("use", aliases=("swap", "switch"), epilog=build_examples_epilog([
    ("keyman use work", "Make 'work' the default SSH identity"),
]))
@click.argument("key_name")
@click.pass_obj
@handle_errors
def use(engine, key_name: str):
    """Link (or copy) a key's files into the ~/.ssh default identity."""
    pair = engine.switch_to(key_name)
    print_success(f"Selected and now using key '{pair.name}', linked as {engine.store.active_slot}")


@main.command("current")
@click.pass_obj
@handle_errors
def current(engine):
    """Show the key currently in use."""
    pair = engine.current()
    if pair is None:
        print_warning(f"No key is in use. Pick one with `{usage('use', 'NAME')}`")
        return
    print_key_details(pair, active=True, slot=engine.store.active_slot)


@main.command("info", aliases=("show",))
@click.argument("key_name", required=False)
@click.pass_obj
@handle_errors
def info(engine, key_name: Optional[str]):
    """Show information about a key, or about the key in use."""
    if key_name is None:
        pair = engine.current()
        if pair is None:
            print_warning(f"No key is in use. Name a key: `{usage('info', 'NAME')}`")
            return
        print_key_details(pair, active=True, slot=engine.store.active_slot)
        return

    pair = engine.get(key_name)
    active = engine.is_active(pair.name)
    print_key_details(pair, active=active, slot=engine.store.active_slot)


@main.command("rename", aliases=("mv",))
@click.argument("key_name")
@click.argument("new_name")
@click.pass_obj
@handle_errors
def rename(engine, key_name: str, new_name: str):
    """Rename a key."""
    pair = engine.rename(key_name, new_name)
    print_success(f"Renamed key: {key_name} -> {pair.name}")


@main.command("remove", aliases=("rm",), epilog=build_examples_epilog([
    ("keyman remove old", "Forget 'old', keep its files"),
    ("keyman remove old --delete-files", "Forget 'old' and delete its key files"),
    ("keyman remove work --force", "Stop using 'work' and forget it"),
]))
@click.argument("key_name")
@click.option("--force", "-f", is_flag=True,
              help="Remove the key even when it is in use (deactivates it first)")
@click.option("--delete-files", is_flag=True,
              help="Also delete the private and public key files from disk")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation for --delete-files")
@click.pass_obj
@handle_errors
def remove(engine, key_name: str, force: bool, delete_files: bool, yes: bool):
    """Remove a key by name. Key files are kept unless --delete-files is given."""
    pair = engine.get(key_name)
    in_use = engine.is_active(key_name)
    if in_use and not force:
        raise ActiveKeyInUse(key_name)

    if delete_files and not yes:
        console.print(f"[yellow]This deletes {pair.private_path}"
                      + (f" and {pair.public_path}" if pair.public_path else "")
                      + " permanently.[/yellow]")
        if not click.confirm("Delete the key files?"):
            console.print("[white]Cancelled[/white]")
            return

    if in_use:
        engine.deactivate()
        print_warning(f"Stopped using key '{key_name}'")

    engine.remove(key_name, destructive=delete_files)
    if delete_files:
        print_success(f"Removed key '{key_name}' and deleted its files")
    else:
        print_success(f"Removed key '{key_name}' (files left at {pair.private_path})")


@main.command("deactivate")
@click.pass_obj
@handle_errors
def deactivate(engine):
    """Stop using any key and clear the ~/.ssh default identity."""
    pair = engine.deactivate()
    if pair is None:
        print_warning("No key is in use")
        return
    print_success(f"Stopped using key '{pair.name}', removed {engine.store.active_slot}")


@main.command("list", aliases=("ls",))
@click.option("--json", "as_json", is_flag=True, help="Print keys as JSON")
@click.pass_obj
@handle_errors
def list_keys(engine, as_json: bool):
    """List all keys."""
    active = engine.current()
    active_name = active.name if active is not None else None
    pairs = list(engine.list())

    if as_json:
        click.echo(json.dumps([
            {
                "name": p.name,
                "private_path": str(p.private_path),
                "public_path": str(p.public_path) if p.public_path is not None else None,
                "active": p.name == active_name,
            }
            for p in pairs
        ], indent=2))
        return

    if not pairs:
        console.print(f"[white]No keys yet. Add one with `{usage('add', 'PRIVATE_KEY')}`[/white]")
        return

    console.print(build_keys_table(pairs, active_name))


@main.command("restore")
@click.pass_obj
@handle_errors
def restore(engine):
    """Rebuild the ~/.ssh default identity from the key in use."""
    pair = engine.restore_active_slot()
    if pair is None:
        print_warning("No key is in use, nothing to restore")
        return
    print_success(f"Restored key '{pair.name}' at {engine.store.active_slot}")


@main.command("config", epilog=build_examples_epilog([
    ("keyman config", "Show the effective configuration"),
    ("keyman config materialize_mode copy", "Copy keys into ~/.ssh instead of linking"),
    ("keyman config active_key_name id_ed25519", "Expose keys as ~/.ssh/id_ed25519"),
]))
@click.argument("field", required=False)
@click.argument("value", required=False)
@click.pass_context
@handle_errors
def config_cmd(ctx, field: Optional[str], value: Optional[str]):
    """Show the configuration, or set FIELD to VALUE in the config file."""
    config = ctx.meta["keyman.config"]
    config_path = ctx.meta["keyman.config_path"]
    names = [f.name for f in dataclasses.fields(KeymanConfig)]

    if field is None:
        for name in names:
            console.print(f"  {name:<18s} {getattr(config, name)}")
        return

    if field not in names:
        raise ConfigError(
            f"Unknown config field '{field}'",
            hint="Known fields: " + ", ".join(names),
        )
    if value is None:
        click.echo(getattr(config, field))
        return

    updated = dataclasses.replace(config, **{field: value})
    issues = updated.validate()
    if issues:
        raise ConfigError("; ".join(issues))
    save_config(updated, config_path)
    print_success(f"Set {field} to '{value}'")


if __name__ == "__main__":
    main()
