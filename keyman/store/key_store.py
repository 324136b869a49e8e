"""
keyman Key Store

Persists the registry (~/.keyman/keys.json) and performs the raw file
operations behind every engine call: placing key material into the active
slot, clearing it, and staged deletion of key files.

All writes go through a temp file (or temp symlink) in the destination
directory followed by os.replace, so neither the registry nor the active
slot is ever observed half-written.
"""
from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from keyman.errors import (
    ActiveSlotConflict,
    KeyFileNotFound,
    KeymanError,
    MaterializationFailed,
    NotFound,
    PermissionDenied,
    StoreCorrupt,
    StoreWriteFailed,
)
from keyman.store.models import SCHEMA_VERSION, KeyPair, Registry

logger = logging.getLogger(__name__)

MODE_COPY = "copy"
MODE_LINK = "link"
MATERIALIZE_MODES = (MODE_COPY, MODE_LINK)

PRIVATE_SLOT_MODE = 0o600
PUBLIC_SLOT_MODE = 0o644
LOCK_FILENAME = ".keyman.lock"
BACKUP_MARKER = ".keyman-bak-"


def public_slot_for(active_slot: Path) -> Path:
    """The public key slot sits next to the private one with a .pub suffix."""
    return active_slot.with_name(active_slot.name + ".pub")


def _translate_os_error(exc: OSError, path: Path) -> KeymanError:
    """Map an OSError raised while touching ``path`` to a typed error."""
    if exc.errno in (errno.EACCES, errno.EPERM):
        return PermissionDenied(path)
    if exc.errno == errno.ENOENT:
        return KeyFileNotFound(path)
    return MaterializationFailed(f"{path}: {exc.strerror or exc}")


def same_file(a: Path, b: Path) -> bool:
    """os.path.samefile that treats a missing file as no match."""
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def check_key_file(path: Path) -> None:
    """Raise unless ``path`` is an existing, readable regular file."""
    if not path.exists():
        raise KeyFileNotFound(path)
    if not path.is_file():
        raise KeyFileNotFound(path, f"Not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise PermissionDenied(path, f"Key file is not readable: {path}")


class StagedDeletion:
    """Key files renamed aside, waiting to be unlinked or put back."""

    def __init__(self, moves: List[Tuple[Path, Path]]):
        self._moves = moves

    @property
    def paths(self) -> List[Path]:
        return [original for original, _ in self._moves]

    def commit(self) -> None:
        for original, staged in self._moves:
            try:
                os.unlink(staged)
            except FileNotFoundError:
                pass
            logger.info("deleted key file %s", original)
        self._moves = []

    def rollback(self) -> None:
        for original, staged in reversed(self._moves):
            os.rename(staged, original)
        self._moves = []


class KeyStore:
    """Registry persistence plus the file operations backing the active slot."""

    def __init__(
        self,
        registry_path: Path,
        active_slot: Path,
        mode: str = MODE_LINK,
    ):
        if mode not in MATERIALIZE_MODES:
            raise ValueError(f"Unknown materialize mode: {mode!r}")
        self.registry_path = Path(registry_path)
        self.active_slot = Path(active_slot)
        self.public_slot = public_slot_for(self.active_slot)
        self.mode = mode

    # ------------------------------------------------------------------
    # Registry persistence
    # ------------------------------------------------------------------

    def load(self) -> Registry:
        """Read the registry. A missing file is the first-run empty registry."""
        try:
            raw = self.registry_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Registry()
        except OSError as e:
            raise StoreCorrupt(
                f"Cannot read registry {self.registry_path}: {e.strerror or e}"
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreCorrupt(
                f"Registry {self.registry_path} is not valid JSON: {e.msg} (line {e.lineno})"
            ) from e

        if not isinstance(data, dict):
            raise StoreCorrupt(f"Registry {self.registry_path} must hold a JSON object")

        version = data.get("schema_version", SCHEMA_VERSION)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise StoreCorrupt(
                f"Registry {self.registry_path} has unsupported schema_version {version!r}",
                hint="It was written by a newer keyman; upgrade keyman to read it.",
            )

        try:
            return Registry.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "registry"
            raise StoreCorrupt(
                f"Registry {self.registry_path} is invalid at {location}: {first['msg']}"
            ) from e

    @staticmethod
    def dumps(registry: Registry) -> str:
        """Deterministic serialisation: sorted keys, 2-space indent."""
        return json.dumps(registry.to_document(), indent=2, sort_keys=True) + "\n"

    def save(self, registry: Registry) -> Path:
        """Persist the registry atomically via temp file + rename."""
        payload = self.dumps(registry)
        try:
            self.registry_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self.registry_path.parent),
                prefix=".keys_tmp_",
                suffix=".json",
            )
        except OSError as e:
            raise StoreWriteFailed(
                f"Cannot write registry {self.registry_path}: {e.strerror or e}"
            ) from e

        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, str(self.registry_path))
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreWriteFailed(
                f"Cannot write registry {self.registry_path}: {e.strerror or e}"
            ) from e

        logger.debug("saved registry with %d key(s) to %s", len(registry), self.registry_path)
        return self.registry_path

    @contextmanager
    def lock(self):
        """Exclusive advisory lock around a load-mutate-save sequence."""
        lock_path = self.registry_path.parent / LOCK_FILENAME
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_fd = open(lock_path, "w")
        except OSError as e:
            raise StoreWriteFailed(f"Cannot create lock file {lock_path}: {e.strerror or e}") from e
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            lock_fd.close()

    # ------------------------------------------------------------------
    # Registry bookkeeping
    # ------------------------------------------------------------------

    def remove_material(self, registry: Registry, name: str) -> KeyPair:
        """Drop ``name`` from the registry's bookkeeping. Never touches files."""
        pair = registry.keys.pop(name, None)
        if pair is None:
            raise NotFound(name)
        return pair

    def is_slot_path(self, path: Path) -> bool:
        """True if ``path`` is (or resolves to) one of the active slot files."""
        path = Path(path)
        for slot in (self.active_slot, self.public_slot):
            if path.absolute() == slot.absolute():
                return True
            if not slot.is_symlink() and same_file(path, slot):
                return True
        return False

    # ------------------------------------------------------------------
    # Active slot
    # ------------------------------------------------------------------

    def materialize(self, pair: KeyPair, known_pairs: Iterable[KeyPair] = ()) -> None:
        """Place ``pair``'s key material into the active slot.

        Both slot files are staged and the current ones set aside before
        either is swapped in; if any step fails the previous slot contents are
        put back. ``known_pairs`` lets the store recognise a regular file
        already sitting in the slot as a copy of a registered key; any other
        regular file there is refused.
        """
        check_key_file(pair.private_path)
        if pair.public_path is not None:
            check_key_file(pair.public_path)

        known_pairs = list(known_pairs)
        self._check_slots_replaceable(known_pairs)

        try:
            self.active_slot.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise _translate_os_error(e, self.active_slot.parent) from e

        wanted = [(pair.private_path, self.active_slot, PRIVATE_SLOT_MODE)]
        if pair.public_path is not None:
            wanted.append((pair.public_path, self.public_slot, PUBLIC_SLOT_MODE))

        staged: List[Tuple[str, Path]] = []
        backups: Dict[Path, Path] = {}
        placed: List[Path] = []
        try:
            for source, dest, file_mode in wanted:
                staged.append((self._stage(source, dest, file_mode), dest))
            for slot in (self.active_slot, self.public_slot):
                if os.path.lexists(slot):
                    backups[slot] = self._set_aside(slot)
            for tmp, dest in staged:
                os.replace(tmp, dest)
                placed.append(dest)
        except OSError as e:
            self._discard(tmp for tmp, _ in staged)
            self._put_back(placed, backups)
            raise _translate_os_error(e, self.active_slot) from e

        # the old public slot stays set aside when the pair has no public key
        self._discard(backups.values())
        logger.debug("materialized '%s' into %s (%s)", pair.name, self.active_slot, self.mode)

    def clear_active_slot(self, known_pairs: Iterable[KeyPair] = ()) -> None:
        """Remove the private and public slot files, if present.

        Both are set aside before either is discarded, so a failure leaves
        the slot as it was.
        """
        self._check_slots_replaceable(list(known_pairs))
        backups: Dict[Path, Path] = {}
        for slot in (self.active_slot, self.public_slot):
            if not os.path.lexists(slot):
                continue
            try:
                backups[slot] = self._set_aside(slot)
            except OSError as e:
                self._put_back([], backups)
                raise _translate_os_error(e, slot) from e
        self._discard(backups.values())

    def slot_target(self) -> Optional[Path]:
        """Where the private slot symlink points, or None if it is not a link."""
        if not self.active_slot.is_symlink():
            return None
        return Path(os.readlink(self.active_slot))

    def _check_slots_replaceable(self, known_pairs: List[KeyPair]) -> None:
        self._refuse_unbacked_slot(self.active_slot, [p.private_path for p in known_pairs])
        self._refuse_unbacked_slot(
            self.public_slot,
            [p.public_path for p in known_pairs if p.public_path is not None],
        )

    def _refuse_unbacked_slot(self, slot: Path, backing: List[Path]) -> None:
        # A symlink or an empty slot loses nothing when replaced.
        if slot.is_symlink() or not slot.exists():
            return
        if not slot.is_file():
            raise ActiveSlotConflict(slot, f"{slot} exists and is not a regular file")
        try:
            content = slot.read_bytes()
        except OSError as e:
            raise _translate_os_error(e, slot) from e
        for path in backing:
            if same_file(path, slot):
                continue
            try:
                if path.is_file() and path.read_bytes() == content:
                    return
            except OSError:
                continue
        raise ActiveSlotConflict(slot)

    def _stage(self, source: Path, dest: Path, file_mode: int) -> str:
        """Write a temp copy/link of ``source`` next to ``dest``; return its path."""
        if self.mode == MODE_LINK:
            tmp_path = str(dest.parent / f".keyman_{uuid.uuid4().hex}.tmp")
            os.symlink(str(Path(source).absolute()), tmp_path)
            return tmp_path

        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(dest.parent), prefix=".keyman_", suffix=".tmp",
        )
        try:
            with os.fdopen(tmp_fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
                out.flush()
                os.fsync(out.fileno())
            os.chmod(tmp_path, file_mode)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return tmp_path

    @staticmethod
    def _set_aside(slot: Path) -> Path:
        backup = slot.with_name(f".{slot.name}{BACKUP_MARKER}{uuid.uuid4().hex[:8]}")
        os.rename(slot, backup)
        return backup

    def _put_back(self, placed: List[Path], backups: Dict[Path, Path]) -> None:
        """Undo a partial swap: drop newly placed files, return the set-aside ones."""
        self._discard(dest for dest in placed if dest not in backups)
        for slot, backup in backups.items():
            try:
                os.rename(backup, slot)
            except OSError as e:
                logger.error("could not put %s back from %s: %s", slot, backup, e)

    @staticmethod
    def _discard(paths: Iterable) -> None:
        for path in paths:
            if not os.path.lexists(path):
                continue
            try:
                os.unlink(path)
            except OSError as e:
                logger.warning("could not remove %s: %s", path, e)

    # ------------------------------------------------------------------
    # Destructive removal
    # ------------------------------------------------------------------

    def delete_key_files(self, pair: KeyPair) -> StagedDeletion:
        """Rename the pair's files aside; the caller commits or rolls back."""
        moves: List[Tuple[Path, Path]] = []
        for path in (pair.private_path, pair.public_path):
            if path is None:
                continue
            if not os.path.lexists(path):
                logger.warning("key file %s for '%s' is already gone", path, pair.name)
                continue
            staged = path.with_name(f".{path.name}.keyman-del-{uuid.uuid4().hex[:8]}")
            try:
                os.rename(path, staged)
            except OSError as e:
                StagedDeletion(moves).rollback()
                raise _translate_os_error(e, path) from e
            moves.append((path, staged))
        return StagedDeletion(moves)
