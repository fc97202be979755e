"""
Per-request working directories.
"""

from __future__ import annotations

import itertools
import os
import secrets
import shutil
import stat
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..core.logging import get_logger

logger = get_logger(__name__)


class WorkingArea:
    """A directory owned by exactly one in-flight request."""

    def __init__(self, path: Path):
        self.path = path
        self.name = path.name

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def destroy(self) -> None:
        """Remove the directory tree. Safe to call more than once."""
        if not self.path.exists():
            return
        _make_writable(self.path)
        shutil.rmtree(self.path, ignore_errors=True)
        if self.path.exists():
            logger.error(f"Working area {self.path} could not be fully removed")

    def __repr__(self) -> str:
        return f"WorkingArea({str(self.path)!r})"


class WorkingAreaFactory:
    """
    Creates collision-free working areas under a common root.

    Names combine a process-wide counter with a random suffix, and creation
    uses ``mkdir`` without ``exist_ok`` so an unexpected collision fails loudly
    instead of two requests sharing a directory.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next_name(self) -> str:
        with self._lock:
            sequence = next(self._counter)
        return f"req-{sequence:06d}-{secrets.token_hex(4)}"

    def create(self) -> WorkingArea:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / self._next_name()
        path.mkdir(mode=0o700)
        logger.debug(f"Created working area {path}")
        return WorkingArea(path)

    @contextmanager
    def allocate(self) -> Iterator[WorkingArea]:
        """Yield a fresh working area and remove it on every exit path."""
        area = self.create()
        try:
            yield area
        finally:
            area.destroy()
            logger.debug(f"Removed working area {area.path}")


def _make_writable(root: Path) -> None:
    # Snippets may chmod their own files; rmtree needs write+exec on every directory.
    try:
        os.chmod(root, stat.S_IRWXU)
    except OSError:
        return
    for dirpath, dirnames, _ in os.walk(root):
        for name in (os.path.join(dirpath, d) for d in dirnames):
            try:
                os.chmod(name, stat.S_IRWXU)
            except OSError:
                continue
