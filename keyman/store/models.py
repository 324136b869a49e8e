"""
Pydantic models for the keyman registry.

The registry file (~/.keyman/keys.json) is validated against these models on
every load, so a hand-edited file with a dangling active key or a mismatched
entry name is rejected instead of silently repaired.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from keyman.errors import InvalidName

SCHEMA_VERSION = 1


def validate_key_name(name: str) -> str:
    """Return ``name`` stripped, or raise InvalidName if it cannot be used."""
    if name is None or not name.strip():
        raise InvalidName("Key name must not be empty")
    name = name.strip()
    if name.startswith("."):
        raise InvalidName(f"Key name '{name}' must not start with a dot")
    if "/" in name or "\\" in name or "\x00" in name:
        raise InvalidName(f"Key name '{name}' must not contain path separators")
    return name


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class KeyPair(BaseModel):
    """A named reference to a private (and optionally public) key file."""

    name: str
    private_path: Path
    public_path: Optional[Path] = None
    added_at: str = Field(default_factory=_utc_now)

    model_config = {"extra": "ignore"}

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        try:
            return validate_key_name(v)
        except InvalidName as e:
            raise ValueError(e.message) from None

    @property
    def has_public_key(self) -> bool:
        return self.public_path is not None


class Registry(BaseModel):
    """All known key pairs plus the name of the active one."""

    schema_version: int = SCHEMA_VERSION
    active: Optional[str] = None
    keys: Dict[str, KeyPair] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @model_validator(mode="after")
    def check_consistency(self) -> "Registry":
        for name, pair in self.keys.items():
            if name != pair.name:
                raise ValueError(
                    f"registry entry '{name}' holds a key named '{pair.name}'"
                )
        if self.active is not None and self.active not in self.keys:
            raise ValueError(
                f"active key '{self.active}' is not a registered key"
            )
        return self

    def get(self, name: str) -> Optional[KeyPair]:
        return self.keys.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.keys

    def __len__(self) -> int:
        return len(self.keys)

    def iter_sorted(self) -> Iterator[KeyPair]:
        for name in sorted(self.keys):
            yield self.keys[name]

    @property
    def active_pair(self) -> Optional[KeyPair]:
        if self.active is None:
            return None
        return self.keys.get(self.active)

    def to_document(self) -> dict:
        """JSON-ready dict with stable key order for byte-identical saves."""
        return self.model_dump(mode="json")
