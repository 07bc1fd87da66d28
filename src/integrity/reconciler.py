"""
Applies settled changes to the baseline and records what happened.
"""

import logging
import os
import stat
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from src.watcher.models import ContentSnapshot, RawEventKind, SettledChange, SettledRename

from .audit import AuditSink, MemoryAuditSink
from .exceptions import FileVanishedError, HashIOError, HashPermissionError
from .hasher import Hasher
from .metrics import IntegrityMetrics
from .models import AuditKind, AuditRecord, FileRecord
from .store import BaselineStore

logger = logging.getLogger(__name__)


class PathLockTable:
    """
    One mutual-exclusion token per path.

    Locks exist only while someone holds or waits for them. Several paths
    are always acquired in sorted order so two renames touching the same
    pair of paths cannot deadlock.
    """

    def __init__(self):
        self._entries: Dict[str, list] = {}  # path -> [lock, refcount]
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, *paths):
        keys = sorted({str(p) for p in paths})

        with self._guard:
            entries = []
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    entry = [threading.Lock(), 0]
                    self._entries[key] = entry
                entry[1] += 1
                entries.append((key, entry))

        acquired = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class Reconciler:
    """
    Compares settled changes against the baseline and applies the result.

    The filesystem is the final authority: every settled path is re-stat'd
    and its content hashed, whatever kind the raw notifications suggested.
    Store mutation comes first and the audit record second, so a failed
    write never produces an audit line. ``StoreError`` propagates to the
    caller.
    """

    def __init__(
        self,
        store: BaselineStore,
        hasher: Hasher,
        audit_sink: Optional[AuditSink] = None,
        metrics: Optional[IntegrityMetrics] = None,
        is_excluded: Optional[Callable[[Path], bool]] = None,
    ):
        self.store = store
        self.hasher = hasher
        self.audit_sink = audit_sink if audit_sink is not None else MemoryAuditSink()
        self.metrics = metrics if metrics is not None else IntegrityMetrics()
        self._is_excluded = is_excluded or (lambda path: False)
        self._locks = PathLockTable()

    def reconcile(self, item: Union[SettledChange, SettledRename]) -> List[AuditRecord]:
        """
        Reconcile one settled item.

        Returns:
            The audit records emitted, possibly none

        Raises:
            StoreError: If the baseline could not be updated
        """
        if isinstance(item, SettledRename):
            return self._reconcile_rename(item)

        if self._is_excluded(item.path):
            return []
        with self._locks.hold(item.path):
            return self._reconcile_path(Path(item.path), item.snapshot)

    def _reconcile_rename(self, rename: SettledRename) -> List[AuditRecord]:
        from_path = Path(rename.from_path)
        to_path = Path(rename.to_path)
        from_excluded = self._is_excluded(from_path)
        to_excluded = self._is_excluded(to_path)

        if from_excluded and to_excluded:
            return []
        if to_excluded:
            return self.reconcile(SettledChange(from_path, RawEventKind.DELETE))
        if from_excluded:
            return self.reconcile(SettledChange(to_path, RawEventKind.CREATE, rename.snapshot))

        with self._locks.hold(from_path, to_path):
            old = self.store.get(from_path)
            if old is None:
                logger.debug(f"Rename source {from_path} is not tracked, reconciling {to_path} alone")
                return self._reconcile_path(to_path, rename.snapshot)

            if from_path.exists():
                logger.debug(f"Rename source {from_path} still exists, reconciling both paths")
                return self._reconcile_path(from_path) + self._reconcile_path(to_path, rename.snapshot)

            try:
                current = self._current_snapshot(to_path, rename.snapshot)
            except (HashPermissionError, HashIOError) as e:
                return self._reconcile_path(from_path) + [self._warn(to_path, None, e)]

            if current is None:
                logger.debug(f"Rename target {to_path} vanished, settling {from_path} as delete")
                return self._reconcile_path(from_path)

            new = FileRecord.from_snapshot(to_path, current)
            replaced = self.store.rename(from_path, new)

            audit = AuditRecord(
                kind=AuditKind.RENAME,
                from_path=old.path,
                to_path=new.path,
                old_hash=old.hash,
                new_hash=new.hash,
                size=new.size,
                mtime=new.mtime,
            )
            self.audit_sink.emit(audit)
            self.metrics.increment("events_rename_total")
            if replaced:
                self.metrics.adjust("tracked_files", -1)
            logger.info(f"RENAMED: {old.path} -> {new.path}")
            return [audit]

    def _reconcile_path(self, path: Path, snapshot: Optional[ContentSnapshot] = None) -> List[AuditRecord]:
        """Decide create, modify, delete or no-op for one path. Caller holds the path lock."""
        key = str(path)
        record = self.store.get(key)

        try:
            current = self._current_snapshot(path, snapshot)
        except (HashPermissionError, HashIOError) as e:
            return [self._warn(path, record, e)]

        if current is None:
            if record is None:
                return []
            self.store.delete(key)
            audit = AuditRecord(
                kind=AuditKind.DELETE,
                path=key,
                old_hash=record.hash,
                size=record.size,
                mtime=record.mtime,
            )
            self.audit_sink.emit(audit)
            self.metrics.increment("events_delete_total")
            self.metrics.adjust("tracked_files", -1)
            logger.info(f"DELETED: {key}")
            return [audit]

        new = FileRecord.from_snapshot(key, current)

        if record is None:
            self.store.upsert(new)
            audit = AuditRecord(
                kind=AuditKind.CREATE,
                path=key,
                new_hash=new.hash,
                size=new.size,
                mtime=new.mtime,
            )
            self.audit_sink.emit(audit)
            self.metrics.increment("events_create_total")
            self.metrics.adjust("tracked_files", 1)
            logger.info(f"CREATED: {key}")
            return [audit]

        if record.hash != new.hash:
            self.store.upsert(new)
            audit = AuditRecord(
                kind=AuditKind.MODIFY,
                path=key,
                old_hash=record.hash,
                new_hash=new.hash,
                size=new.size,
                mtime=new.mtime,
            )
            self.audit_sink.emit(audit)
            self.metrics.increment("events_modify_total")
            logger.info(f"MODIFIED: {key}")
            return [audit]

        logger.debug(f"Content unchanged, suppressing: {key}")
        self.metrics.increment("events_suppressed_total")
        return []

    def _current_snapshot(self, path: Path, snapshot: Optional[ContentSnapshot]) -> Optional[ContentSnapshot]:
        """
        Current content of a path, or None if it is gone.

        A snapshot taken earlier in the pipeline is reused when the file's
        size and nanosecond mtime have not moved since.
        """
        if snapshot is not None:
            try:
                st = os.stat(path)
            except FileNotFoundError:
                return None
            except OSError:
                st = None
            if (
                st is not None
                and stat.S_ISREG(st.st_mode)
                and st.st_size == snapshot.size
                and st.st_mtime_ns == snapshot.mtime_ns
            ):
                return snapshot

        try:
            return self.hasher.snapshot(path)
        except FileVanishedError:
            return None

    def _warn(self, path: Path, record: Optional[FileRecord], error: Exception) -> AuditRecord:
        """Record a change that could not be verified; the baseline is left as it was."""
        audit = AuditRecord(
            kind=AuditKind.WARN,
            path=str(path),
            old_hash=record.hash if record else None,
            detail=str(error),
        )
        self.audit_sink.emit(audit)
        self.metrics.increment("reconcile_errors_total")
        logger.warning(f"Could not verify {path}: {error}")
        return audit
