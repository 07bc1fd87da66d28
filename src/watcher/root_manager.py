"""Thread-safe management of watched root folders."""

import threading
from pathlib import Path
from typing import FrozenSet, Optional, Set

from .exceptions import RootNotFoundError, RootAlreadyExistsError


class RootManager:
    """
    Thread-safe set of root folders under integrity monitoring.

    Roots never nest: a path belongs to at most one root, which is what
    lets an overflow be scoped to exactly one subtree.
    """

    def __init__(self):
        """Initialize the root manager."""
        self._roots: Set[Path] = set()
        self._lock = threading.RLock()

    def add_root(self, path: Path, must_exist: bool = True) -> Path:
        """
        Add a root folder to watch.

        Args:
            path: Path to the root folder
            must_exist: If True, raise error if path is not an existing directory

        Returns:
            The canonical root path

        Raises:
            RootNotFoundError: If must_exist and path is not a directory
            RootAlreadyExistsError: If the root is already watched or overlaps one
        """
        path = Path(path).resolve()

        if must_exist and not path.is_dir():
            raise RootNotFoundError(f"Root folder does not exist: {path}")

        with self._lock:
            if path in self._roots:
                raise RootAlreadyExistsError(f"Root already being watched: {path}")

            for existing in self._roots:
                if _is_within(path, existing):
                    raise RootAlreadyExistsError(
                        f"'{path}' is already inside watched root '{existing}'"
                    )
                if _is_within(existing, path):
                    raise RootAlreadyExistsError(
                        f"'{path}' contains already-watched root '{existing}'"
                    )

            self._roots.add(path)
            return path

    def get_roots(self) -> FrozenSet[Path]:
        """Get the current set of root folders."""
        with self._lock:
            return frozenset(self._roots)

    def find_root_for_path(self, path: Path) -> Optional[Path]:
        """
        Find which root folder contains the given path.

        The path is expected to be canonical already; it is not resolved
        again because deleted files cannot be resolved reliably.

        Args:
            path: Absolute path to check

        Returns:
            The root path that contains this path, or None
        """
        with self._lock:
            for root in self._roots:
                if _is_within(path, root):
                    return root
            return None

    def is_under_any_root(self, path: Path) -> bool:
        """Check if a path is under any watched root."""
        return self.find_root_for_path(path) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._roots)

    def __contains__(self, path: Path) -> bool:
        with self._lock:
            return Path(path).resolve() in self._roots


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False
