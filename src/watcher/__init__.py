"""
File Watcher Package

The raw-event half of the integrity pipeline: watches root folders and
turns noisy filesystem notifications into settled, deduplicated items.

Features:
- Event source adapter over watchdog, with observer health checks
- Per-path debounce with a single deadline heap
- Rename detection via content-hash correlation of DELETE + CREATE
- Native rename pass-through
- Subtree rescan requests on overflow and directory moves
"""

from .models import (
    RawEventKind,
    RawEvent,
    ContentSnapshot,
    PendingChange,
    SettledChange,
    SettledRename,
    RescanRequest,
    RenameCandidate,
    canonical_path,
)

from .config import WatcherConfig

from .exceptions import (
    WatcherError,
    RootError,
    RootNotFoundError,
    RootAlreadyExistsError,
)

from .root_manager import RootManager
from .fs_watcher import FSWatcherPool, FSEventHandler
from .event_processor import (
    EventProcessor,
    EventDebouncer,
    RenameCorrelator,
)


__all__ = [
    # Models
    "RawEventKind",
    "RawEvent",
    "ContentSnapshot",
    "PendingChange",
    "SettledChange",
    "SettledRename",
    "RescanRequest",
    "RenameCandidate",
    "canonical_path",
    # Config
    "WatcherConfig",
    # Exceptions
    "WatcherError",
    "RootError",
    "RootNotFoundError",
    "RootAlreadyExistsError",
    # Components
    "RootManager",
    "FSWatcherPool",
    "FSEventHandler",
    "EventProcessor",
    "EventDebouncer",
    "RenameCorrelator",
]

__version__ = "0.1.0"
