"""Event coalescing with debounce, rename correlation and settle sweeps."""

import heapq
import itertools
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from .config import WatcherConfig
from .models import (
    ContentSnapshot,
    PendingChange,
    RawEvent,
    RawEventKind,
    RenameCandidate,
    RescanRequest,
    SettledChange,
    SettledRename,
    canonical_path,
)

logger = logging.getLogger(__name__)

SettledItem = Union[SettledChange, SettledRename, RescanRequest]


class RenameCorrelator:
    """
    Correlates settled DELETE + CREATE pairs into renames.

    Candidates are matched by content hash, never by file name, so two
    unrelated files changing inside the window are not paired. When several
    candidates carry the same hash the first one seen wins.
    """

    def __init__(self, correlation_window_ms: int = 500):
        """
        Initialize the rename correlator.

        Args:
            correlation_window_ms: Time window in ms to correlate events
        """
        self.correlation_window_ms = correlation_window_ms
        self._candidates: List[RenameCandidate] = []
        self._lock = threading.Lock()

    @property
    def window_sec(self) -> float:
        return self.correlation_window_ms / 1000.0

    def on_delete(self, path: Path, deleted_hash: str, seen_at: float) -> bool:
        """
        Hold a settled delete for potential rename correlation.

        Args:
            path: Path that was deleted
            deleted_hash: Baseline hash of the deleted file
            seen_at: When the delete settled

        Returns:
            True if the delete is held, False if correlation is disabled
        """
        if self.correlation_window_ms <= 0:
            return False

        with self._lock:
            self._candidates = [c for c in self._candidates if c.deleted_path != path]
            self._candidates.append(RenameCandidate(path, deleted_hash, seen_at))
        return True

    def on_create(self, content_hash: str, current_time: float) -> Optional[Path]:
        """
        Match a settled create against live candidates.

        Args:
            content_hash: Hash of the created file
            current_time: When the create settled

        Returns:
            The deleted path this create renames, or None
        """
        window_sec = self.window_sec

        with self._lock:
            for i, candidate in enumerate(self._candidates):
                if candidate.deleted_hash != content_hash:
                    continue
                if (current_time - candidate.seen_at) >= window_sec:
                    continue
                self._candidates.pop(i)
                return candidate.deleted_path
        return None

    def cancel(self, path: Path) -> bool:
        """Drop the candidate for a path that showed new activity."""
        with self._lock:
            before = len(self._candidates)
            self._candidates = [c for c in self._candidates if c.deleted_path != path]
            return len(self._candidates) != before

    def discard_under(self, scope: Path) -> int:
        """Drop candidates inside a directory that is about to be rescanned."""
        with self._lock:
            before = len(self._candidates)
            self._candidates = [
                c for c in self._candidates
                if not (c.deleted_path == scope or scope in c.deleted_path.parents)
            ]
            return before - len(self._candidates)

    def flush_expired(self, current_time: float) -> List[Path]:
        """
        Remove and return candidates whose window elapsed without a match.

        Args:
            current_time: Current timestamp

        Returns:
            Deleted paths, oldest first
        """
        window_sec = self.window_sec
        expired = []

        with self._lock:
            still_pending = []
            for candidate in self._candidates:
                if (current_time - candidate.seen_at) >= window_sec:
                    expired.append(candidate.deleted_path)
                else:
                    still_pending.append(candidate)
            self._candidates = still_pending

        return expired

    def pending_count(self) -> int:
        with self._lock:
            return len(self._candidates)

    def clear(self) -> int:
        """Drop all candidates."""
        with self._lock:
            count = len(self._candidates)
            self._candidates.clear()
            return count


class EventDebouncer:
    """
    Debounces bursts of raw events per path.

    Every path with unsettled activity has one PendingChange. Deadlines are
    kept in a single heap swept by ``flush``; entries superseded by newer
    activity are skipped when they surface.
    """

    def __init__(self, debounce_ms: int = 250):
        """
        Initialize the debouncer.

        Args:
            debounce_ms: Debounce window in milliseconds, 0 settles immediately
        """
        self.debounce_ms = debounce_ms
        self._pending: Dict[Path, PendingChange] = {}
        self._deadlines: List[Tuple[float, int, Path]] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    @property
    def window_sec(self) -> float:
        return self.debounce_ms / 1000.0

    def add(self, path: Path, kind: RawEventKind, observed_at: float) -> Optional[SettledChange]:
        """
        Record a raw event for a path.

        Coalescing keeps the most significant kind seen in the burst
        (DELETE > CREATE > MODIFY > UNKNOWN) and pushes the deadline to
        ``observed_at + debounce``.

        Returns:
            A SettledChange when the debounce window is zero, else None
        """
        if self.debounce_ms <= 0:
            return SettledChange(path=path, kind_hint=kind)

        window_sec = self.window_sec

        with self._lock:
            pending = self._pending.get(path)
            if pending is None:
                pending = PendingChange(
                    path=path,
                    last_event_at=observed_at,
                    kind_hint=kind,
                    deadline=observed_at + window_sec,
                )
                self._pending[path] = pending
            else:
                pending.absorb(kind, observed_at, window_sec)

            heapq.heappush(self._deadlines, (pending.deadline, next(self._sequence), path))

        return None

    def flush(self, current_time: float) -> List[SettledChange]:
        """
        Settle every path whose deadline has elapsed.

        Args:
            current_time: Current monotonic timestamp

        Returns:
            Settled changes in deadline order
        """
        ready = []

        with self._lock:
            while self._deadlines and self._deadlines[0][0] <= current_time:
                deadline, _, path = heapq.heappop(self._deadlines)
                pending = self._pending.get(path)
                if pending is None or pending.deadline != deadline:
                    continue
                del self._pending[path]
                ready.append(SettledChange(path=path, kind_hint=pending.kind_hint))

        return ready

    def next_deadline(self) -> Optional[float]:
        """Earliest live deadline, or None when nothing is pending."""
        with self._lock:
            while self._deadlines:
                deadline, _, path = self._deadlines[0]
                pending = self._pending.get(path)
                if pending is not None and pending.deadline == deadline:
                    return deadline
                heapq.heappop(self._deadlines)
            return None

    def discard(self, path: Path) -> bool:
        """Forget pending activity for one path."""
        with self._lock:
            return self._pending.pop(path, None) is not None

    def discard_under(self, scope: Path) -> int:
        """Forget pending activity for every path inside a directory."""
        with self._lock:
            doomed = [p for p in self._pending if p == scope or scope in p.parents]
            for path in doomed:
                del self._pending[path]
            return len(doomed)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def clear(self) -> int:
        """Drop all pending changes without settling them."""
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            self._deadlines.clear()
            return count


class EventProcessor:
    """
    Turns raw notifications into settled, deduplicated pipeline items.

    Raw events are absorbed by the debouncer; ``flush`` is called by a
    periodic sweep and returns SettledChange, SettledRename and
    RescanRequest items for reconciliation. Settled deletes of tracked
    files are held by the rename correlator until a matching create shows
    up or the correlation window runs out.
    """

    def __init__(
        self,
        config: Optional[WatcherConfig] = None,
        is_excluded: Optional[Callable[[Path], bool]] = None,
        lookup_hash: Optional[Callable[[Path], Optional[str]]] = None,
        snapshot: Optional[Callable[[Path], Optional[ContentSnapshot]]] = None,
        is_watched: Optional[Callable[[Path], bool]] = None,
    ):
        """
        Initialize the event processor.

        Args:
            config: Watcher configuration
            is_excluded: Exclusion predicate, defaults to the config ignore patterns
            lookup_hash: Returns the baseline hash recorded for a path
            snapshot: Hashes a file; returns None when it cannot be read
            is_watched: Whether a path lies under a monitored root
        """
        self.config = config or WatcherConfig()
        self._is_excluded = is_excluded or self.config.should_ignore
        self._lookup_hash = lookup_hash or (lambda path: None)
        self._snapshot = snapshot
        self._is_watched = is_watched or (lambda path: True)

        self._debouncer = EventDebouncer(self.config.debounce_ms)
        self._correlator = RenameCorrelator(self.config.rename_correlation_ms)
        self._ready: List[SettledItem] = []
        # Changes settled on arrival (zero debounce), still subject to rename holding
        self._immediate: List[SettledChange] = []
        self._lock = threading.Lock()

    @property
    def debouncer(self) -> EventDebouncer:
        return self._debouncer

    @property
    def correlator(self) -> RenameCorrelator:
        return self._correlator

    def _visible(self, path: Path) -> bool:
        return self._is_watched(path) and not self._is_excluded(path)

    def process(self, raw_event: RawEvent) -> None:
        """
        Absorb a raw event from the event source.

        Args:
            raw_event: The raw event
        """
        logger.debug(f"EventProcessor.process: {raw_event.kind.value} - {raw_event.path}")

        if raw_event.kind == RawEventKind.MOVE:
            self._handle_move(raw_event)
        elif raw_event.kind == RawEventKind.OVERFLOW:
            self._request_rescan(canonical_path(raw_event.path), "overflow")
        elif raw_event.is_directory:
            self._handle_directory(raw_event)
        else:
            path = canonical_path(raw_event.path)
            if self._visible(path):
                self._add(path, raw_event.kind, raw_event.observed_at)

    def _add(self, path: Path, kind: RawEventKind, observed_at: float) -> None:
        settled = self._debouncer.add(path, kind, observed_at)
        if settled is not None:
            with self._lock:
                self._immediate.append(settled)

    def _handle_directory(self, raw_event: RawEvent) -> None:
        """Directory creates and deletes invalidate the whole subtree."""
        if raw_event.kind not in (RawEventKind.CREATE, RawEventKind.DELETE):
            return
        path = canonical_path(raw_event.path)
        if self._visible(path):
            self._request_rescan(path, f"directory {raw_event.kind.value}")

    def _handle_move(self, raw_event: RawEvent) -> None:
        """Handle a native rename reported by the event source."""
        src_path = canonical_path(raw_event.path)
        dest_path = canonical_path(raw_event.dest_path) if raw_event.dest_path else None

        if raw_event.is_directory:
            for scope in (src_path, dest_path):
                if scope is not None and self._is_watched(scope) and not self._is_excluded(scope):
                    self._request_rescan(scope, "directory moved")
            return

        src_visible = self._visible(src_path)
        dest_visible = dest_path is not None and self._visible(dest_path)

        if src_visible and dest_visible:
            self._debouncer.discard(src_path)
            self._debouncer.discard(dest_path)
            self._correlator.cancel(dest_path)
            with self._lock:
                self._ready.append(SettledRename(from_path=src_path, to_path=dest_path))
        elif src_visible:
            self._add(src_path, RawEventKind.DELETE, raw_event.observed_at)
        elif dest_visible:
            self._add(dest_path, RawEventKind.CREATE, raw_event.observed_at)

    def _request_rescan(self, scope: Path, reason: str) -> None:
        dropped = self._debouncer.discard_under(scope)
        dropped += self._correlator.discard_under(scope)
        with self._lock:
            kept = [c for c in self._immediate if not (c.path == scope or scope in c.path.parents)]
            dropped += len(self._immediate) - len(kept)
            self._immediate = kept
            self._ready.append(RescanRequest(scope=scope, reason=reason))
        logger.debug(f"Rescan requested for {scope} ({reason}), dropped {dropped} pending change(s)")

    def flush(self, current_time: float) -> List[SettledItem]:
        """
        Collect everything that is ready for reconciliation.

        Args:
            current_time: Current monotonic timestamp

        Returns:
            Settled items; deletes held for rename correlation are not included
        """
        with self._lock:
            items = self._ready
            self._ready = []
            immediate = self._immediate
            self._immediate = []

        for change in immediate + self._debouncer.flush(current_time):
            if change.kind_hint == RawEventKind.DELETE:
                if self._hold_for_rename(change, current_time):
                    continue
            else:
                self._correlator.cancel(change.path)
            items.append(change)

        for path in self._correlator.flush_expired(current_time):
            logger.debug(f"Rename window expired for {path}, settling as delete")
            items.append(SettledChange(path=path, kind_hint=RawEventKind.DELETE))

        return items

    def _hold_for_rename(self, change: SettledChange, current_time: float) -> bool:
        """Register a settled delete as rename candidate when it can pair."""
        if self.config.rename_correlation_ms <= 0:
            return False
        if change.path.exists():
            return False
        deleted_hash = self._lookup_hash(change.path)
        if deleted_hash is None:
            return False
        return self._correlator.on_delete(change.path, deleted_hash, current_time)

    def correlate(self, change: SettledChange, current_time: float) -> Union[SettledChange, SettledRename]:
        """
        Pair a settled create with a held delete of identical content.

        The created file is hashed here; the snapshot travels with the
        returned item so it is not hashed a second time.

        Args:
            change: A settled change
            current_time: When the change settled

        Returns:
            A SettledRename on match, otherwise the change with its snapshot
        """
        if change.kind_hint != RawEventKind.CREATE or self._snapshot is None:
            return change
        if self._correlator.pending_count() == 0:
            return change

        snapshot = self._snapshot(change.path)
        if snapshot is None:
            return change

        old_path = self._correlator.on_create(snapshot.content_hash, current_time)
        if old_path is not None:
            logger.debug(f"Correlated rename: {old_path} -> {change.path}")
            return SettledRename(from_path=old_path, to_path=change.path, snapshot=snapshot)

        return SettledChange(path=change.path, kind_hint=change.kind_hint, snapshot=snapshot)

    def pending_count(self) -> int:
        """Paths with unsettled activity plus held rename candidates."""
        with self._lock:
            ready = len(self._ready) + len(self._immediate)
        return ready + self._debouncer.pending_count() + self._correlator.pending_count()

    def flush_all(self) -> List[SettledItem]:
        """
        Shutdown drain.

        Queued renames, rescans and already settled changes are returned;
        unsettled changes and held rename candidates are dropped.
        """
        with self._lock:
            items = self._ready + self._immediate
            self._ready = []
            self._immediate = []
        dropped = self._debouncer.clear() + self._correlator.clear()
        if dropped:
            logger.info(f"Dropped {dropped} unsettled change(s) on shutdown")
        return items
