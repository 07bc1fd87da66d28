"""Configuration for the file watcher package."""

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


DEFAULT_IGNORE_PATTERNS = [
    "*.tmp",
    "*.swp",
    "*.swo",
    "*.swx",
    "*~",
    ".#*",
    "4913",
    ".git/*",
    ".git",
    "__pycache__/*",
    "__pycache__",
    "*.pyc",
    ".DS_Store",
    "Thumbs.db",
]


@dataclass
class WatcherConfig:
    """
    Configuration options for the raw-event side of the pipeline.

    Attributes:
        debounce_ms: Quiet period after the last raw event before a path settles
        rename_correlation_ms: Window in which a settled DELETE may pair with a CREATE
        flush_interval_ms: Interval of the deadline sweep
        health_check_interval_ms: Interval for checking observer threads
        ignore_patterns: Glob patterns for paths to ignore
        recursive: Whether to watch directories recursively
    """
    debounce_ms: int = 250
    rename_correlation_ms: int = 500
    flush_interval_ms: int = 50
    health_check_interval_ms: int = 1000
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    recursive: bool = True

    def __post_init__(self):
        if self.debounce_ms < 0:
            raise ValueError(f"debounce_ms must be non-negative: {self.debounce_ms}")
        if self.rename_correlation_ms < 0:
            raise ValueError(f"rename_correlation_ms must be non-negative: {self.rename_correlation_ms}")
        if self.flush_interval_ms <= 0:
            raise ValueError(f"flush_interval_ms must be positive: {self.flush_interval_ms}")

    def should_ignore(self, path: Path) -> bool:
        """
        Check if a path should be ignored based on ignore patterns.

        Args:
            path: Path to check

        Returns:
            True if the path should be ignored
        """
        return matches_any(path, self.ignore_patterns)


def matches_any(path: Path, patterns: List[str], base: Optional[Path] = None) -> bool:
    """
    Match a path against glob patterns by name, by trailing segment, or in full.

    When ``base`` contains the path, relative patterns only see the part of
    the path below ``base``. Patterns starting with "/" always match the
    full path.
    """
    path = Path(path)
    if base is not None and (path == base or base in path.parents):
        rel = path.relative_to(base)
    else:
        rel = path
    path_str = str(path)
    rel_str = str(rel)

    for pattern in patterns:
        if pattern.startswith("/"):
            if fnmatch.fnmatch(path_str, pattern):
                return True
            continue
        # The base itself is never matched by a relative pattern
        if not rel.parts:
            continue
        if fnmatch.fnmatch(rel.name, pattern):
            return True
        if fnmatch.fnmatch(rel_str, f"*/{pattern}"):
            return True
        if fnmatch.fnmatch(rel_str, pattern):
            return True
        # Pattern names a directory somewhere above the path
        if "/" not in pattern and any(fnmatch.fnmatch(part, pattern) for part in rel.parts[:-1]):
            return True

    return False
