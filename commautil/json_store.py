"""Locked, atomically replaced JSON documents used for commautil state files."""
from __future__ import annotations

import contextlib
import copy
import fcntl
import json
import os
from pathlib import Path
from typing import Any, Callable, Iterator


def _write_payload_atomic(path: Path, payload: Any) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


@contextlib.contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive POSIX lock on ``<path>.lock`` for the duration of the block.

    The lock file is never removed: a waiter blocked on an unlinked inode
    would otherwise share the critical section with a newcomer.
    """

    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("w") as handle:
        fcntl.lockf(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.lockf(handle, fcntl.LOCK_UN)


class JsonStore:
    """A single JSON document with read-modify-write under a file lock.

    ``default`` is returned (as a deep copy) when the file is missing or does
    not parse; a corrupt file is never overwritten by a plain ``load``.
    """

    def __init__(self, path: Path, default: Any = None) -> None:
        self.path = Path(path)
        self.default = default

    def _default(self) -> Any:
        return copy.deepcopy(self.default)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Any:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return self._default()
        except (OSError, json.JSONDecodeError) as exc:
            print(f"[store] WARNING: unreadable {self.path}: {exc}", flush=True)
            return self._default()

    def save(self, payload: Any) -> None:
        with file_lock(self.path):
            _write_payload_atomic(self.path, payload)

    def update(self, mutate: Callable[[Any], Any]) -> Any:
        """Apply ``mutate`` to the current document and persist its return value."""

        with file_lock(self.path):
            current = self.load()
            updated = mutate(current)
            _write_payload_atomic(self.path, updated)
            return updated

    def delete(self) -> bool:
        with file_lock(self.path):
            try:
                self.path.unlink()
            except FileNotFoundError:
                removed = False
            else:
                removed = True
        return removed
