"""File system event source using the watchdog library."""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
)

from .models import RawEvent, RawEventKind
from .config import WatcherConfig

logger = logging.getLogger(__name__)


class FSEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog events to RawEvent."""

    def __init__(
        self,
        callback: Callable[[RawEvent], None],
        root: Path,
        is_excluded: Optional[Callable[[Path], bool]] = None,
    ):
        super().__init__()
        self.callback = callback
        self.root = root
        self.is_excluded = is_excluded or (lambda path: False)

    def _emit(
        self,
        kind: RawEventKind,
        event: FileSystemEvent,
        dest_path: Optional[Path] = None,
    ) -> None:
        """Emit a RawEvent to the callback."""
        src_path = Path(_as_str(event.src_path))
        if kind != RawEventKind.MOVE and self.is_excluded(src_path):
            return
        if kind == RawEventKind.MOVE and self.is_excluded(src_path) and dest_path is not None \
                and self.is_excluded(dest_path):
            return

        raw_event = RawEvent(
            path=src_path,
            kind=kind,
            observed_at=time.monotonic(),
            dest_path=dest_path,
            is_directory=event.is_directory,
        )
        self.callback(raw_event)

    def on_created(self, event):
        self._emit(RawEventKind.CREATE, event)

    def on_deleted(self, event):
        self._emit(RawEventKind.DELETE, event)

    def on_modified(self, event):
        self._emit(RawEventKind.MODIFY, event)

    def on_closed(self, event):
        # Close-after-write; content may have changed
        self._emit(RawEventKind.MODIFY, event)

    def on_moved(self, event):
        self._emit(RawEventKind.MOVE, event, dest_path=Path(_as_str(event.dest_path)))


class FSWatcherPool:
    """
    Manages one watchdog observer per watched root.

    Observers that die (for example when the kernel notification queue
    overflows or the watch limit is hit) are restarted by
    ``check_health`` and reported as an OVERFLOW of their root, since
    events for that subtree may have been lost.
    """

    def __init__(
        self,
        event_callback: Callable[[RawEvent], None],
        config: Optional[WatcherConfig] = None,
        is_excluded: Optional[Callable[[Path], bool]] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        """
        Initialize the watcher pool.

        Args:
            event_callback: Callback function for raw filesystem events
            config: Watcher configuration
            is_excluded: Exclusion predicate applied before events are delivered
            observer_factory: Creates observer instances
        """
        self.event_callback = event_callback
        self.config = config or WatcherConfig()
        self.is_excluded = is_excluded or self.config.should_ignore
        self._observer_factory = observer_factory
        self._observers: Dict[Path, Observer] = {}
        self._lock = threading.Lock()

    def _start_observer(self, root: Path) -> Observer:
        observer = self._observer_factory()
        handler = FSEventHandler(self.event_callback, root, self.is_excluded)
        observer.schedule(handler, str(root), recursive=self.config.recursive)
        observer.start()
        return observer

    def start_watching(self, root: Path) -> bool:
        """
        Start watching a root directory.

        Args:
            root: Path to the root directory

        Returns:
            True if watching started, False if already watching
        """
        root = root.resolve()

        with self._lock:
            if root in self._observers:
                return False

            self._observers[root] = self._start_observer(root)
            logger.info(f"Watching {root}")
            return True

    def stop_all(self) -> int:
        """
        Stop all watchers.

        Returns:
            Number of watchers stopped
        """
        with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()

        for observer in observers:
            observer.stop()

        for observer in observers:
            observer.join(timeout=5.0)

        return len(observers)

    def check_health(self) -> List[Path]:
        """
        Restart observers whose thread has died.

        Each restarted root is reported to the event callback as an
        OVERFLOW so its subtree gets re-verified.

        Returns:
            Roots that were restarted
        """
        with self._lock:
            dead = [root for root, observer in self._observers.items() if not observer.is_alive()]
            for root in dead:
                logger.warning(f"Observer for {root} stopped unexpectedly, restarting")
                try:
                    self._observers[root] = self._start_observer(root)
                except OSError as e:
                    logger.error(f"Failed to restart observer for {root}: {e}")
                    del self._observers[root]

        for root in dead:
            self.event_callback(RawEvent(path=root, kind=RawEventKind.OVERFLOW))

        return dead

    def is_watching(self, root: Path) -> bool:
        root = root.resolve()

        with self._lock:
            return root in self._observers

    def __len__(self) -> int:
        """Return the number of active watchers."""
        with self._lock:
            return len(self._observers)


def _as_str(path) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", "surrogateescape")
    return str(path)
