"""Local storage hardening helpers and locked JSON documents."""

from __future__ import annotations

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, TypeVar


T = TypeVar("T")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


class JsonDocument(Generic[T]):
    """A whole-document JSON file guarded by an exclusive file lock.

    ``load`` turns the decoded JSON into a state object and ``dump`` turns it
    back. Reads always hit the disk; nothing is cached between calls.
    """

    def __init__(
        self,
        path: Path,
        load: Callable[[Any], T],
        dump: Callable[[T], Any],
        empty: Callable[[], T],
    ):
        self.path = Path(path)
        self._load = load
        self._dump = dump
        self._empty = empty
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.with_name(f".{self.path.name}.lock")
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _read(self) -> T:
        if not self.path.exists():
            return self._empty()
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return self._empty()
        return self._load(json.loads(raw))

    def _write(self, state: T) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._dump(state), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        ensure_private_file(self.path)

    def read(self) -> T:
        """Load a fresh copy of the persisted state."""
        with self._lock():
            return self._read()

    @contextmanager
    def transaction(self) -> Iterator[T]:
        """Yield the current state and persist it if the block exits cleanly.

        An exception inside the block discards every change made to the
        yielded object.
        """
        with self._lock():
            state = self._read()
            yield state
            self._write(state)
