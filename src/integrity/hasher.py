"""
Streaming content hashing for baseline records.
"""

import errno
import hashlib
import logging
import os
import stat
from pathlib import Path

import blake3

from src.watcher.models import ContentSnapshot

from .exceptions import ConfigError, FileVanishedError, HashIOError, HashPermissionError

logger = logging.getLogger(__name__)

# Default chunk size for file reading (64KB)
CHUNK_SIZE = 65536

ALGORITHM_ALIASES = {
    "fast": "blake3",
    "blake3": "blake3",
    "cryptographic": "sha256",
    "sha256": "sha256",
}

_VANISHED_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.EISDIR}


def normalize_algorithm(name: str) -> str:
    """
    Map a configured algorithm name to the concrete digest name.

    Raises:
        ConfigError: If the name is not supported
    """
    try:
        return ALGORITHM_ALIASES[name.strip().lower()]
    except (KeyError, AttributeError):
        raise ConfigError(
            f"Unsupported hash algorithm: {name!r}. "
            f"Supported: {', '.join(sorted(ALGORITHM_ALIASES))}"
        ) from None


def _new_digest(algorithm: str):
    if algorithm == "blake3":
        return blake3.blake3()
    return hashlib.sha256()


class Hasher:
    """
    Computes algorithm-tagged content digests without loading whole files.

    Two algorithms are interchangeable: ``fast`` (BLAKE3) and
    ``cryptographic`` (SHA-256). Both are content fingerprints; digests are
    prefixed with the algorithm so records from different algorithms never
    compare equal.
    """

    def __init__(self, algorithm: str = "fast", chunk_size: int = CHUNK_SIZE):
        self.algorithm = normalize_algorithm(algorithm)
        self.chunk_size = chunk_size

    def hash_file(self, path: Path) -> str:
        """
        Hash a file's contents.

        Raises:
            FileVanishedError: File no longer exists or is not a regular file
            HashPermissionError: File cannot be opened for reading
            HashIOError: Reading failed twice
        """
        return self.snapshot(path).content_hash

    def snapshot(self, path: Path) -> ContentSnapshot:
        """
        Hash a file and capture its size and mtime from the same descriptor.

        A failed read is retried once immediately before giving up.
        """
        try:
            return self._read(path)
        except (FileVanishedError, HashPermissionError):
            raise
        except OSError as first:
            logger.warning(f"Read failed for {path}: {first}; retrying once")
            try:
                return self._read(path)
            except (FileVanishedError, HashPermissionError):
                raise
            except OSError as second:
                raise HashIOError(f"Error reading {path}: {second}", path=path) from second

    def _read(self, path: Path) -> ContentSnapshot:
        try:
            # Checked before open so FIFOs and devices never block the read
            if not stat.S_ISREG(os.stat(path).st_mode):
                raise FileVanishedError(f"Not a regular file: {path}", path=path)
            f = open(path, "rb")
        except PermissionError as e:
            raise HashPermissionError(f"Permission denied: {path}", path=path) from e
        except OSError as e:
            if e.errno in _VANISHED_ERRNOS:
                raise FileVanishedError(f"File vanished: {path}", path=path) from e
            raise

        with f:
            st = os.fstat(f.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise FileVanishedError(f"Not a regular file: {path}", path=path)

            digest = _new_digest(self.algorithm)
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                digest.update(chunk)

        return ContentSnapshot(
            content_hash=f"{self.algorithm}:{digest.hexdigest()}",
            size=st.st_size,
            mtime=int(st.st_mtime),
            mtime_ns=st.st_mtime_ns,
        )
