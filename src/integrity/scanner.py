"""
Full-tree walks: baseline initialization, offline drift scan and subtree rescans.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional, Set

from src.watcher.models import canonical_path

from .config import IntegrityConfig
from .exceptions import FileVanishedError, HashError
from .hasher import Hasher
from .models import Divergence, DivergenceKind, FileRecord, ScanReport
from .store import BaselineStore

logger = logging.getLogger(__name__)


class BaselineScanner:
    """
    Walks the watched roots and compares them with the baseline store.

    ``scan`` never mutates the store, so it may run while a live monitor
    is writing to the same database.
    """

    def __init__(self, config: IntegrityConfig, store: BaselineStore, hasher: Optional[Hasher] = None):
        self.config = config
        self.store = store
        self.hasher = hasher or Hasher(config.hash_alg)

    def iter_files(self, root: Optional[Path] = None) -> Iterator[Path]:
        """
        Yield canonical paths of regular, non-excluded files.

        Args:
            root: Walk only this directory instead of every watch path
        """
        roots = [Path(root)] if root is not None else self.config.watch_paths
        for top in roots:
            if not top.is_dir():
                logger.warning(f"Watch path is not a directory: {top}")
                continue
            top = canonical_path(top)
            for file_path in top.rglob("*"):
                if file_path.is_symlink() or not file_path.is_file():
                    continue
                resolved = canonical_path(file_path)
                if resolved != top and top not in resolved.parents:
                    continue
                if self.config.is_excluded(resolved):
                    logger.debug(f"Skipping excluded file: {resolved}")
                    continue
                yield resolved

    def build_baseline(self) -> int:
        """
        Hash every file once and atomically replace the baseline.

        Files that cannot be read are logged and left out.

        Returns:
            Number of files recorded
        """
        logger.info(f"Building baseline for {len(self.config.watch_paths)} root(s) into {self.store.db_path}")

        def records() -> Iterator[FileRecord]:
            for path in self.iter_files():
                try:
                    snapshot = self.hasher.snapshot(path)
                except FileVanishedError:
                    continue
                except HashError as e:
                    logger.warning(f"Skipping unreadable file {path}: {e}")
                    continue
                yield FileRecord.from_snapshot(path, snapshot)

        count = self.store.replace_all(records())
        logger.info(f"Baseline initialized with {count} file(s)")
        return count

    def scan(self) -> ScanReport:
        """
        Compare current disk state with the baseline without changing it.

        Content hashes are authoritative; a touched file with identical bytes
        is not a divergence.
        """
        report = ScanReport()
        seen: Set[str] = set()

        for path in self.iter_files():
            key = str(path)
            try:
                snapshot = self.hasher.snapshot(path)
            except FileVanishedError:
                continue
            except HashError as e:
                seen.add(key)
                report.files_checked += 1
                record = self.store.get(key)
                report.add(Divergence(
                    kind=DivergenceKind.UNREADABLE,
                    path=key,
                    old_hash=record.hash if record else None,
                    detail=str(e),
                ))
                continue

            seen.add(key)
            report.files_checked += 1
            record = self.store.get(key)
            if record is None:
                report.add(Divergence(
                    kind=DivergenceKind.ADDED,
                    path=key,
                    new_hash=snapshot.content_hash,
                    size=snapshot.size,
                ))
            elif record.hash != snapshot.content_hash:
                report.add(Divergence(
                    kind=DivergenceKind.CHANGED,
                    path=key,
                    old_hash=record.hash,
                    new_hash=snapshot.content_hash,
                    size=snapshot.size,
                ))

        for record in self.store.scan():
            report.records_checked += 1
            if record.path not in seen:
                report.add(Divergence(
                    kind=DivergenceKind.MISSING,
                    path=record.path,
                    old_hash=record.hash,
                ))

        logger.info(
            f"Scan complete: {report.files_checked} file(s), "
            f"{report.records_checked} record(s), {len(report)} divergence(s)"
        )
        return report

    def paths_to_verify(self, scope: Path) -> Set[Path]:
        """
        Every path under ``scope`` that is either on disk or in the baseline.

        Used after lost notifications, when no assumption can be made about
        which paths inside the scope changed.
        """
        scope = canonical_path(scope)
        paths: Set[Path] = set()
        if scope.is_dir():
            paths.update(self.iter_files(scope))
        elif scope.is_file() and not self.config.is_excluded(scope):
            paths.add(scope)

        record = self.store.get(scope)
        if record is not None:
            paths.add(scope)
        for record in self.store.scan(prefix=scope):
            paths.add(Path(record.path))
        return paths
