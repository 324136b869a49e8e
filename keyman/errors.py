"""
keyman error taxonomy.

Every failure the store or the engine can report is a ``KeymanError``
subclass. The ``kind`` attribute is the stable identifier printed by the CLI;
``hint`` is an optional one-line suggestion for the user.
"""
from __future__ import annotations

from typing import Optional


class KeymanError(Exception):
    """Base class for all reported keyman failures."""

    kind = "KeymanError"
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        return self.message


class DuplicateName(KeymanError):
    """A key with the requested name is already registered."""

    kind = "DuplicateName"
    hint = "Pick another name with --name, or rename the existing key."


class NotFound(KeymanError):
    """No key is registered under the given name."""

    kind = "NotFound"
    hint = "Use `keyman list` to see your keys."

    def __init__(self, name: str):
        super().__init__(f"No key named '{name}' was found, typo?")
        self.name = name


class KeyFileNotFound(KeymanError):
    """A referenced private or public key file does not exist."""

    kind = "FileNotFound"

    def __init__(self, path, message: Optional[str] = None):
        super().__init__(message or f"Key file not found: {path}")
        self.path = path


class PermissionDenied(KeymanError):
    kind = "PermissionDenied"
    hint = "Check the ownership and mode of the file and its directory."

    def __init__(self, path, message: Optional[str] = None):
        super().__init__(message or f"Permission denied: {path}")
        self.path = path


class ActiveKeyInUse(KeymanError):
    """Removal refused because the key is currently active."""

    kind = "ActiveKeyInUse"
    hint = "Switch to another key first, or pass --force to deactivate it."

    def __init__(self, name: str, message: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message or f"The key '{name}' is currently in use", hint=hint)
        self.name = name


class KeyFileShared(KeymanError):
    """Deleting the files would take them from another registered key."""

    kind = "KeyFileShared"
    hint = "Remove the key without --delete-files to keep the files."

    def __init__(self, path, owner: str):
        super().__init__(f"{path} is also used by the key '{owner}'; refusing to delete it")
        self.path = path
        self.owner = owner


class MaterializationFailed(KeymanError):
    """Copying or linking a key into the active slot failed."""

    kind = "MaterializationFailed"


class ActiveSlotConflict(KeymanError):
    """The active slot holds a key file that no registered key backs up."""

    kind = "ActiveSlotConflict"
    hint = "Move it to another file name and register that file with `keyman add`."

    def __init__(self, path, message: Optional[str] = None):
        super().__init__(
            message or f"{path} holds a key that keyman does not manage; refusing to overwrite it"
        )
        self.path = path


class StoreCorrupt(KeymanError):
    """The registry file exists but cannot be read or parsed."""

    kind = "StoreCorrupt"
    hint = "Inspect or move aside the registry file; it is plain JSON."


class StoreWriteFailed(KeymanError):
    kind = "StoreWriteFailed"
    hint = "Check free disk space and permissions on the keyman directory."


class InvalidName(KeymanError):
    kind = "InvalidName"
    hint = "Names may not be empty, start with a dot or contain path separators."


class ConfigError(KeymanError):
    """The YAML configuration file is unreadable or has invalid values."""

    kind = "ConfigError"
