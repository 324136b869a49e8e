"""
keyman Activation Engine

User-facing operations on top of the KeyStore: add, remove, switch, rename,
deactivate, list. Each mutating call runs as one locked
load -> mutate -> save sequence and either commits completely or leaves the
registry file and the active slot as they were.

Usage:
    engine = ActivationEngine(KeyStore(registry_path, active_slot))
    engine.add(Path("~/.ssh/work_ed25519").expanduser(), name="work")
    engine.switch_to("work")
    engine.current().name   # "work"
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from keyman.errors import (
    ActiveKeyInUse,
    ActiveSlotConflict,
    DuplicateName,
    KeyFileShared,
    KeymanError,
    MaterializationFailed,
    NotFound,
)
from keyman.store.key_store import KeyStore, check_key_file, same_file
from keyman.store.models import KeyPair, Registry, validate_key_name

logger = logging.getLogger(__name__)

PUBLIC_KEY_SUFFIX = ".pub"


def default_key_name(private_path: Path) -> str:
    """Name a key after its file, e.g. ~/.ssh/work_ed25519 -> work_ed25519."""
    return Path(private_path).stem


class ActivationEngine:
    """Enforces the single-active-key invariants over a KeyStore."""

    def __init__(self, store: KeyStore):
        self.store = store

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def list(self) -> Iterator[KeyPair]:
        """Lazily yield registered keys ordered by name.

        Each call starts a fresh pass over a freshly loaded registry.
        """
        return self._iter_keys()

    def _iter_keys(self) -> Iterator[KeyPair]:
        registry = self.store.load()
        yield from registry.iter_sorted()

    def current(self) -> Optional[KeyPair]:
        """The active key pair, or None before the first switch."""
        return self.store.load().active_pair

    def get(self, name: str) -> KeyPair:
        pair = self.store.load().get(name)
        if pair is None:
            raise NotFound(name)
        return pair

    def is_active(self, name: str) -> bool:
        return self.store.load().active == name

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def add(
        self,
        private_path: Path,
        name: Optional[str] = None,
        public_path: Optional[Path] = None,
    ) -> KeyPair:
        """Register an existing private key by reference.

        The file stays where it is; nothing is copied until the key is used.
        When no public key is given, a ``<private>.pub`` sibling is picked up
        if one exists.

        Raises:
            DuplicateName: ``name`` is already registered
            KeyFileNotFound: the private (or given public) key file is missing
            PermissionDenied: the private key file is not readable
            InvalidName: ``name`` cannot be used as a key name
            ActiveSlotConflict: the file is the active slot itself
        """
        private_path = Path(os.path.abspath(Path(private_path).expanduser()))
        check_key_file(private_path)

        if public_path is not None:
            public_path = Path(os.path.abspath(Path(public_path).expanduser()))
            check_key_file(public_path)
        else:
            sibling = private_path.with_name(private_path.name + PUBLIC_KEY_SUFFIX)
            if sibling.is_file():
                public_path = sibling

        for path in (private_path, public_path):
            if path is not None and self.store.is_slot_path(path):
                raise ActiveSlotConflict(
                    path,
                    f"{path} is the active key slot keyman writes to and cannot be registered",
                )

        key_name = validate_key_name(name if name is not None else default_key_name(private_path))

        with self.store.lock():
            registry = self.store.load()
            if key_name in registry:
                raise DuplicateName(f"A key named '{key_name}' already exists")
            pair = KeyPair(name=key_name, private_path=private_path, public_path=public_path)
            registry.keys[key_name] = pair
            self.store.save(registry)

        logger.info("added key '%s' (%s)", key_name, private_path)
        return pair

    def remove(self, name: str, destructive: bool = False) -> KeyPair:
        """Unregister a key, deleting its files only when ``destructive``.

        Raises:
            NotFound: no key named ``name``
            ActiveKeyInUse: ``name`` is the active key
            KeyFileShared: another key uses the files ``destructive`` would delete
            PermissionDenied / KeyFileNotFound: staging the files failed
            StoreWriteFailed: the registry could not be saved
        """
        with self.store.lock():
            registry = self.store.load()
            if name not in registry:
                raise NotFound(name)
            if registry.active == name:
                raise ActiveKeyInUse(name)

            pair = self.store.remove_material(registry, name)

            if not destructive:
                self.store.save(registry)
                logger.info("removed key '%s' (files kept)", name)
                return pair

            self._refuse_shared_files(registry, pair)
            staged = self.store.delete_key_files(pair)
            try:
                self.store.save(registry)
            except KeymanError:
                staged.rollback()
                raise
            deleted = staged.paths
            staged.commit()

        logger.info("removed key '%s' and deleted %d file(s)", name, len(deleted))
        return pair

    def switch_to(self, name: str) -> KeyPair:
        """Make ``name`` the active key.

        Material is placed in the slot before the registry records the new
        active key, so a failed switch never leaves the registry claiming a key
        whose files were not placed.

        Raises:
            NotFound: no key named ``name``
            MaterializationFailed: the slot could not be written
            StoreWriteFailed: the registry could not be saved (slot restored)
        """
        with self.store.lock():
            registry = self.store.load()
            pair = registry.get(name)
            if pair is None:
                raise NotFound(name)
            previous = registry.active_pair
            known = list(registry.keys.values())

            try:
                self.store.materialize(pair, known)
            except MaterializationFailed:
                raise
            except KeymanError as e:
                raise MaterializationFailed(
                    f"Could not activate '{name}': {e.message}", hint=e.hint,
                ) from e

            registry.active = name
            try:
                self.store.save(registry)
            except KeymanError:
                self._restore_slot(previous, known)
                raise

        if previous is not None and previous.name != name:
            logger.info("switched active key '%s' -> '%s'", previous.name, name)
        else:
            logger.info("activated key '%s'", name)
        return pair

    def deactivate(self) -> Optional[KeyPair]:
        """Clear the active slot and the active identifier."""
        with self.store.lock():
            registry = self.store.load()
            previous = registry.active_pair
            if previous is None:
                return None
            known = list(registry.keys.values())
            self.store.clear_active_slot(known)
            registry.active = None
            try:
                self.store.save(registry)
            except KeymanError:
                self._restore_slot(previous, known)
                raise

        logger.info("deactivated key '%s'", previous.name)
        return previous

    def rename(self, name: str, new_name: str) -> KeyPair:
        """Rename a key; an active key stays active under its new name."""
        new_name = validate_key_name(new_name)
        with self.store.lock():
            registry = self.store.load()
            pair = registry.get(name)
            if pair is None:
                raise NotFound(name)
            if new_name == name:
                return pair
            if new_name in registry:
                raise DuplicateName(f"A key named '{new_name}' already exists")

            renamed = pair.model_copy(update={"name": new_name})
            del registry.keys[name]
            registry.keys[new_name] = renamed
            if registry.active == name:
                registry.active = new_name
            self.store.save(registry)

        logger.info("renamed key '%s' -> '%s'", name, new_name)
        return renamed

    def restore_active_slot(self) -> Optional[KeyPair]:
        """Rebuild the active slot from the registry's active key."""
        with self.store.lock():
            registry = self.store.load()
            pair = registry.active_pair
            if pair is None:
                return None
            try:
                self.store.materialize(pair, registry.keys.values())
            except MaterializationFailed:
                raise
            except KeymanError as e:
                raise MaterializationFailed(
                    f"Could not restore '{pair.name}': {e.message}", hint=e.hint,
                ) from e

        logger.info("restored active slot for '%s'", pair.name)
        return pair

    @staticmethod
    def _refuse_shared_files(registry: Registry, pair: KeyPair) -> None:
        """Raise if a key still in ``registry`` references one of ``pair``'s files."""
        doomed = [p for p in (pair.private_path, pair.public_path) if p is not None]
        for other in registry.iter_sorted():
            for path in (other.private_path, other.public_path):
                if path is None:
                    continue
                for target in doomed:
                    if path != target and not same_file(path, target):
                        continue
                    if registry.active == other.name:
                        raise ActiveKeyInUse(
                            other.name,
                            f"{target} belongs to the key '{other.name}', which is in use",
                            hint="Remove the key without --delete-files to keep the files.",
                        )
                    raise KeyFileShared(target, other.name)

    def _restore_slot(self, previous: Optional[KeyPair], known) -> None:
        """Put the slot back after a failed registry save."""
        try:
            if previous is None:
                self.store.clear_active_slot(known)
            else:
                self.store.materialize(previous, known)
        except KeymanError as e:
            logger.error(
                "could not restore active slot after failed save: %s "
                "(run `keyman restore` to rebuild it)", e,
            )
