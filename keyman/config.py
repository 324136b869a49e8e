"""
keyman Configuration

Defines the KeymanConfig dataclass and loading logic.
Configuration is stored in ~/.keyman/config.yaml under the 'keyman' key.

Paths may use ``~``; they are expanded here so the store and engine only ever
see absolute paths.
"""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from keyman.errors import ConfigError
from keyman.store.key_store import MATERIALIZE_MODES

KEYMAN_HOME = Path.home() / ".keyman"
CONFIG_PATH = KEYMAN_HOME / "config.yaml"
CONFIG_SECTION = "keyman"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class KeymanConfig:
    """Locations and behaviour of the key registry and active slot."""

    ssh_dir: str = "~/.ssh"
    active_key_name: str = "id_rsa"  # file name the SSH client reads by default
    registry_path: str = "~/.keyman/keys.json"
    materialize_mode: str = "link"  # "link" or "copy"
    log_level: str = "INFO"
    log_file: str = "~/.keyman/keyman.log"  # empty disables the log file

    def validate(self) -> List[str]:
        """Validate configuration values. Returns list of issues."""
        issues = []
        if self.materialize_mode not in MATERIALIZE_MODES:
            issues.append(
                f"Invalid materialize_mode '{self.materialize_mode}': "
                f"must be one of {', '.join(MATERIALIZE_MODES)}"
            )
        if not self.active_key_name or "/" in self.active_key_name:
            issues.append("active_key_name must be a plain file name")
        if not self.ssh_dir:
            issues.append("ssh_dir must not be empty")
        if not self.registry_path:
            issues.append("registry_path must not be empty")
        if str(self.log_level).upper() not in LOG_LEVELS:
            issues.append(f"Invalid log_level '{self.log_level}'")
        return issues

    @property
    def active_slot(self) -> Path:
        return Path(self.ssh_dir).expanduser() / self.active_key_name

    @property
    def registry_file(self) -> Path:
        return Path(self.registry_path).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        if not self.log_file:
            return None
        return Path(self.log_file).expanduser()


def load_config(config_path: Optional[Path] = None) -> KeymanConfig:
    """
    Load keyman configuration from ~/.keyman/config.yaml.

    Falls back to defaults if the file is missing or the section is absent.

    Args:
        config_path: Override config file path (for testing and --config)

    Returns:
        KeymanConfig with loaded or default values

    Raises:
        ConfigError: the file is not valid YAML or holds invalid values
    """
    if config_path is None:
        config_path = CONFIG_PATH

    if not config_path.exists():
        return KeymanConfig()

    try:
        with open(config_path) as f:
            full_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e

    if not isinstance(full_config, dict):
        raise ConfigError(f"Config {config_path} must be a YAML mapping")

    section = full_config.get(CONFIG_SECTION, {})
    if not section:
        return KeymanConfig()
    if not isinstance(section, dict):
        raise ConfigError(f"'{CONFIG_SECTION}' in {config_path} must be a mapping")

    config = _config_from_dict(section)
    issues = config.validate()
    if issues:
        raise ConfigError(
            f"Invalid config {config_path}: " + "; ".join(issues),
            hint=f"Edit {config_path} or delete it to use the defaults.",
        )
    return config


def _config_from_dict(data: Dict[str, Any]) -> KeymanConfig:
    """Build KeymanConfig from a dict, ignoring unknown keys."""
    known_fields = {f.name for f in fields(KeymanConfig)}
    filtered = {k: str(v) if v is not None else "" for k, v in data.items() if k in known_fields}
    return KeymanConfig(**filtered)


def save_config(config: KeymanConfig, config_path: Optional[Path] = None) -> Path:
    """
    Save keyman configuration to ~/.keyman/config.yaml.

    Only non-default values are written. Other top-level sections of the file
    are preserved.
    """
    if config_path is None:
        config_path = CONFIG_PATH

    config_path.parent.mkdir(parents=True, exist_ok=True)

    full_config = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                full_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            full_config = {}

    defaults = KeymanConfig()
    section = {}
    for f in fields(KeymanConfig):
        value = getattr(config, f.name)
        if value != getattr(defaults, f.name):
            section[f.name] = value

    if section:
        full_config[CONFIG_SECTION] = section
    elif CONFIG_SECTION in full_config:
        del full_config[CONFIG_SECTION]

    with open(config_path, "w") as f:
        yaml.dump(full_config, f, default_flow_style=False, sort_keys=False)
    return config_path
