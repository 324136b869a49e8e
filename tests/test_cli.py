#!/usr/bin/env python3
"""
Tests for the keyman CLI.

Drives the click commands end to end with CliRunner against a config file
that points every keyman path into tmp_path.
"""

import json
import os
from io import StringIO
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

pytestmark = pytest.mark.cli

from keyman.cli import main
from keyman.cli_helpers import (
    build_examples_epilog,
    format_command_example,
    print_error,
    print_success,
    usage,
)


@pytest.fixture
def run(config_file):
    """Invoke keyman with the isolated config; returns the click Result."""
    runner = CliRunner()

    def _run(*args, input=None):
        return runner.invoke(main, ["--config", str(config_file), *args], input=input)

    return _run


def _listed(run):
    result = run("list", "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestHelpers:

    def test_usage(self):
        assert usage("use", "work") == "keyman use work"

    def test_format_command_example(self):
        line = format_command_example("keyman list", "List keys")
        assert line.startswith("  keyman list")
        assert line.endswith("List keys")

    def test_build_examples_epilog(self):
        epilog = build_examples_epilog([("keyman ls", "List")])
        assert "Examples:" in epilog
        assert "keyman ls" in epilog

    def test_print_functions(self):
        buf = StringIO()
        con = Console(file=buf, force_terminal=False, width=120)
        with patch("keyman.cli_helpers.console", con):
            print_success("It worked")
            print_error("It broke", fix_hint="Try again")
        text = buf.getvalue()
        assert "\u2713 It worked" in text
        assert "\u2717 It broke" in text
        assert "Hint: Try again" in text


class TestAddCommand:

    def test_add(self, run, make_key):
        result = run("add", str(make_key("work")))
        assert result.exit_code == 0, result.output
        assert "Added key 'work'" in result.output
        assert [k["name"] for k in _listed(run)] == ["work"]

    def test_add_with_name_and_use(self, run, make_key, ssh_dir):
        private = make_key("id_ed25519")
        result = run("add", str(private), "--name", "github", "--use")
        assert result.exit_code == 0, result.output
        assert (ssh_dir / "id_rsa").read_bytes() == private.read_bytes()
        assert _listed(run)[0]["active"] is True

    def test_new_alias(self, run, make_key):
        result = run("new", str(make_key("work")))
        assert result.exit_code == 0, result.output

    def test_duplicate_fails(self, run, make_key):
        run("add", str(make_key("work")))
        result = run("add", str(make_key("other")), "-n", "work")
        assert result.exit_code == 1
        assert "DuplicateName" in result.output

    def test_missing_file_fails(self, run, tmp_path):
        result = run("add", str(tmp_path / "nope"))
        assert result.exit_code == 1
        assert "FileNotFound" in result.output


class TestUseCommand:

    def test_use(self, run, make_key, ssh_dir):
        a = make_key("a")
        run("add", str(a))
        run("add", str(make_key("b")))

        result = run("use", "a")
        assert result.exit_code == 0, result.output
        assert "now using key 'a'" in result.output
        assert (ssh_dir / "id_rsa").read_bytes() == a.read_bytes()

    @pytest.mark.parametrize("alias", ["swap", "switch"])
    def test_aliases(self, run, make_key, alias):
        run("add", str(make_key("a")))
        result = run(alias, "a")
        assert result.exit_code == 0, result.output

    def test_unknown_key(self, run):
        result = run("use", "nope")
        assert result.exit_code == 1
        assert "NotFound" in result.output
        assert "keyman list" in result.output


class TestCurrentAndInfo:

    def test_current_none(self, run):
        result = run("current")
        assert result.exit_code == 0
        assert "No key is in use" in result.output

    def test_current(self, run, make_key):
        run("add", str(make_key("work")))
        run("use", "work")
        result = run("current")
        assert result.exit_code == 0
        assert "Key 'work'" in result.output
        assert "in use" in result.output

    def test_info_named_key(self, run, make_key):
        run("add", str(make_key("work", with_public=False)))
        result = run("info", "work")
        assert result.exit_code == 0
        assert "Key 'work'" in result.output
        assert "(none)" in result.output

    def test_show_alias_unknown(self, run):
        result = run("show", "nope")
        assert result.exit_code == 1
        assert "NotFound" in result.output


class TestRemoveCommand:

    def test_remove_keeps_files(self, run, make_key):
        private = make_key("work")
        run("add", str(private))
        result = run("rm", "work")
        assert result.exit_code == 0, result.output
        assert private.exists()
        assert _listed(run) == []

    def test_remove_in_use_refused(self, run, make_key):
        run("add", str(make_key("work")))
        run("use", "work")
        result = run("remove", "work")
        assert result.exit_code == 1
        assert "ActiveKeyInUse" in result.output
        assert len(_listed(run)) == 1

    def test_force_remove_in_use(self, run, make_key, ssh_dir):
        private = make_key("work")
        run("add", str(private))
        run("use", "work")
        result = run("remove", "work", "--force")
        assert result.exit_code == 0, result.output
        assert _listed(run) == []
        assert not os.path.lexists(ssh_dir / "id_rsa")
        assert private.exists()

    def test_delete_files_confirmed(self, run, make_key):
        private = make_key("work")
        run("add", str(private))
        result = run("remove", "work", "--delete-files", input="y\n")
        assert result.exit_code == 0, result.output
        assert not private.exists()

    def test_delete_files_cancelled(self, run, make_key):
        private = make_key("work")
        run("add", str(private))
        result = run("remove", "work", "--delete-files", input="n\n")
        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert private.exists()
        assert len(_listed(run)) == 1

    def test_delete_files_yes(self, run, make_key):
        private = make_key("work")
        run("add", str(private))
        result = run("remove", "work", "--delete-files", "--yes")
        assert result.exit_code == 0, result.output
        assert not private.exists()


class TestOtherCommands:

    def test_rename(self, run, make_key):
        run("add", str(make_key("work")))
        result = run("mv", "work", "job")
        assert result.exit_code == 0, result.output
        assert [k["name"] for k in _listed(run)] == ["job"]

    def test_deactivate(self, run, make_key, ssh_dir):
        run("add", str(make_key("work")))
        run("use", "work")
        result = run("deactivate")
        assert result.exit_code == 0, result.output
        assert not os.path.lexists(ssh_dir / "id_rsa")
        assert _listed(run)[0]["active"] is False

    def test_restore(self, run, make_key, ssh_dir):
        run("add", str(make_key("work")))
        run("use", "work")
        os.unlink(ssh_dir / "id_rsa")
        result = run("restore")
        assert result.exit_code == 0, result.output
        assert os.path.lexists(ssh_dir / "id_rsa")

    def test_list_table(self, run, make_key):
        run("add", str(make_key("alpha")))
        run("add", str(make_key("beta")))
        run("use", "beta")
        result = run("ls")
        assert result.exit_code == 0
        assert "alpha" in result.output
        assert "beta" in result.output

    def test_list_empty(self, run):
        result = run("list")
        assert result.exit_code == 0
        assert "No keys yet" in result.output

    def test_corrupt_registry_reported(self, run, registry_path):
        registry_path.parent.mkdir(parents=True, exist_ok=True)
        registry_path.write_text("not json")
        result = run("list")
        assert result.exit_code == 1
        assert "StoreCorrupt" in result.output

    def test_invalid_config_reported(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("keyman:\n  materialize_mode: hardlink\n")
        result = CliRunner().invoke(main, ["--config", str(bad), "list"])
        assert result.exit_code == 1
        assert "ConfigError" in result.output

    def test_operations_are_logged(self, run, make_key, tmp_path):
        run("add", str(make_key("work")))
        run("use", "work")
        log = (tmp_path / "home" / ".keyman" / "keyman.log").read_text()
        assert "added key 'work'" in log
        assert "activated key 'work'" in log

    def test_version(self, run):
        result = run("--version")
        assert result.exit_code == 0
        assert "keyman" in result.output


class TestConfigCommand:

    def test_show(self, run):
        result = run("config")
        assert result.exit_code == 0, result.output
        assert "materialize_mode" in result.output
        assert "active_key_name" in result.output

    def test_show_one_field(self, run):
        result = run("config", "materialize_mode")
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "link"

    def test_set_writes_config_file(self, run, config_file, registry_path):
        result = run("config", "materialize_mode", "copy")
        assert result.exit_code == 0, result.output

        section = yaml.safe_load(config_file.read_text())["keyman"]
        assert section["materialize_mode"] == "copy"
        assert section["registry_path"] == str(registry_path)
        assert run("config", "materialize_mode").output.strip() == "copy"

    def test_set_invalid_value(self, run, config_file):
        before = config_file.read_text()
        result = run("config", "materialize_mode", "hardlink")
        assert result.exit_code == 1
        assert "ConfigError" in result.output
        assert config_file.read_text() == before

    def test_unknown_field(self, run):
        result = run("config", "colour", "blue")
        assert result.exit_code == 1
        assert "ConfigError" in result.output
