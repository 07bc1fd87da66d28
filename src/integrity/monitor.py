"""Live integrity monitor orchestrator."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Set

from watchdog.observers import Observer

from src.watcher.event_processor import EventProcessor, SettledItem
from src.watcher.exceptions import RootError
from src.watcher.fs_watcher import FSWatcherPool
from src.watcher.models import ContentSnapshot, RawEventKind, RescanRequest, SettledChange
from src.watcher.root_manager import RootManager

from .audit import AuditSink, JsonlAuditSink
from .config import IntegrityConfig
from .exceptions import ConfigError, HashError, MonitorAlreadyRunningError, StoreError
from .hasher import Hasher
from .metrics import IntegrityMetrics
from .models import AuditRecord
from .reconciler import Reconciler
from .scanner import BaselineScanner
from .store import BaselineStore

logger = logging.getLogger(__name__)


class IntegrityMonitor:
    """
    Main orchestrator for live integrity monitoring.

    Wires the pipeline together:
    - watchdog observers deliver raw events into the event processor
      (ingestion never waits for hashing)
    - one flush thread sweeps settled changes every ``flush_interval_ms``
      and checks observer health
    - a bounded thread pool correlates renames and reconciles changes
      against the baseline

    A ``StoreError`` in any worker is fatal: it is logged, the monitor
    stops, and ``start()`` re-raises it.
    """

    def __init__(
        self,
        config: IntegrityConfig,
        store: Optional[BaselineStore] = None,
        audit_sink: Optional[AuditSink] = None,
        metrics: Optional[IntegrityMetrics] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        """
        Initialize the monitor.

        Args:
            config: Validated integrity configuration
            store: Baseline store (opened from ``config.baseline_db`` if omitted)
            audit_sink: Audit destination (``config.audit_log`` if omitted)
            metrics: Metrics to update (a fresh set if omitted)
            observer_factory: Creates watchdog observers

        Raises:
            ConfigError: If the watch paths are missing or overlap
        """
        self.config = config
        self._owns_store = store is None
        self._owns_sink = audit_sink is None

        self._root_manager = RootManager()
        try:
            for root in config.watch_paths:
                self._root_manager.add_root(root)
        except RootError as e:
            raise ConfigError(str(e)) from e

        self.store = store if store is not None else BaselineStore(config.baseline_db)
        self.audit_sink = audit_sink if audit_sink is not None else JsonlAuditSink(config.audit_log)
        self.metrics = metrics if metrics is not None else IntegrityMetrics()
        self.hasher = Hasher(config.hash_alg)
        self.scanner = BaselineScanner(config, self.store, self.hasher)
        self.reconciler = Reconciler(
            self.store,
            self.hasher,
            self.audit_sink,
            self.metrics,
            config.is_excluded,
        )

        watcher_config = config.watcher_config()
        self._health_interval = watcher_config.health_check_interval_ms / 1000.0
        self._event_processor = EventProcessor(
            watcher_config,
            is_excluded=config.is_excluded,
            lookup_hash=self.store.get_hash,
            snapshot=self._snapshot,
            is_watched=self._root_manager.is_under_any_root,
        )
        self._fs_watcher_pool = FSWatcherPool(
            self._event_processor.process,
            watcher_config,
            config.is_excluded,
            observer_factory,
        )

        self._executor: Optional[ThreadPoolExecutor] = None
        self._inflight: Set[Future] = set()
        self._inflight_lock = threading.Lock()
        self._sweeps_active = 0

        self._running = False
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._fatal_error: Optional[StoreError] = None

        self.metrics.set("tracked_files", self.store.count())

    @property
    def event_processor(self) -> EventProcessor:
        return self._event_processor

    @property
    def is_running(self) -> bool:
        """Check if the monitor is running."""
        return self._running

    @property
    def fatal_error(self) -> Optional[StoreError]:
        return self._fatal_error

    def get_roots(self) -> List[Path]:
        return sorted(self._root_manager.get_roots())

    def _snapshot(self, path: Path) -> Optional[ContentSnapshot]:
        try:
            return self.hasher.snapshot(path)
        except HashError as e:
            logger.debug(f"Cannot hash {path} for rename correlation: {e}")
            return None

    def start(self) -> None:
        """
        Start the monitor (blocking).

        Blocks until stop() is called or a fatal store error occurs.

        Raises:
            MonitorAlreadyRunningError: If already running
            StoreError: If the baseline store failed while running
        """
        self._startup()

        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=0.5)
        except KeyboardInterrupt:
            pass
        finally:
            self._shutdown()

        if self._fatal_error is not None:
            raise self._fatal_error

    def start_async(self) -> None:
        """
        Start the monitor in the background.

        Returns immediately while the monitor runs in background threads.

        Raises:
            MonitorAlreadyRunningError: If already running
        """
        self._startup()

    def _startup(self) -> None:
        with self._lock:
            if self._running:
                raise MonitorAlreadyRunningError("Monitor is already running")

            self._running = True
            self._stop_event.clear()
            self._fatal_error = None

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.hash_workers,
            thread_name_prefix="IntegrityWorker",
        )
        self.metrics.set("tracked_files", self.store.count())

        for root in self.get_roots():
            self._fs_watcher_pool.start_watching(root)

        self._threads = [
            threading.Thread(target=self._flush_loop, name="FlushLoop"),
        ]
        for thread in self._threads:
            thread.daemon = True
            thread.start()

        logger.info(f"Integrity monitor started for {len(self._root_manager)} root(s)")

    def stop(self) -> None:
        """
        Stop the monitor gracefully.

        In-flight reconciliations finish; unsettled changes are dropped.
        """
        self._stop_event.set()
        self._shutdown()

    def _shutdown(self) -> None:
        """Internal shutdown procedure."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self._stop_event.set()
        self._fs_watcher_pool.stop_all()

        # A sweep in progress must finish before the pool closes
        for thread in self._threads:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join()
        self._threads.clear()

        leftovers = self._event_processor.flush_all()
        if self._fatal_error is None:
            for item in leftovers:
                if isinstance(item, RescanRequest):
                    logger.info(f"Skipping rescan of {item.scope} on shutdown")
                    continue
                self._dispatch(item, time.monotonic())

        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=True)

        logger.info("Integrity monitor stopped")

    def _flush_loop(self) -> None:
        """Worker loop that periodically settles changes and checks observers."""
        flush_interval = self.config.flush_interval_ms / 1000.0
        logger.debug(f"Flush loop started, interval={flush_interval}s")
        last_health_check = time.monotonic()

        while not self._stop_event.is_set():
            try:
                self.sweep()
                now = time.monotonic()
                if now - last_health_check >= self._health_interval:
                    for root in self._fs_watcher_pool.check_health():
                        logger.warning(f"Events for {root} may have been lost")
                    last_health_check = now
            except StoreError as e:
                self._fail(e)
            except Exception as e:
                logger.error(f"Flush loop error: {e}", exc_info=True)

            self._stop_event.wait(timeout=self._next_wait(flush_interval, time.monotonic()))

    def _next_wait(self, flush_interval: float, now: float) -> float:
        """Sleep until the earliest debounce deadline, at most one flush interval."""
        deadline = self._event_processor.debouncer.next_deadline()
        if deadline is None:
            return flush_interval
        return min(flush_interval, max(deadline - now, 0.001))

    def sweep(self, current_time: Optional[float] = None) -> int:
        """
        Settle everything whose deadline has passed and hand it to the workers.

        When the monitor is not running the items are reconciled inline.

        Args:
            current_time: Monotonic timestamp, defaults to now

        Returns:
            Number of items dispatched
        """
        now = time.monotonic() if current_time is None else current_time
        # Items leave the processor before their futures exist
        with self._inflight_lock:
            self._sweeps_active += 1
        try:
            items = self._event_processor.flush(now)
            for item in items:
                self._dispatch(item, now)
        finally:
            with self._inflight_lock:
                self._sweeps_active -= 1
        return len(items)

    def _dispatch(self, item: SettledItem, now: float) -> None:
        executor = self._executor
        if executor is None:
            self._process(item, now)
            return

        future = executor.submit(self._run, item, now)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._task_done)

    def _task_done(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _run(self, item: SettledItem, now: float) -> List[AuditRecord]:
        """Pool task wrapper: store failures stop the monitor, anything else is logged."""
        try:
            return self._process(item, now)
        except StoreError as e:
            self._fail(e)
            return []
        except Exception as e:
            logger.error(f"Error reconciling {item}: {e}", exc_info=True)
            return []

    def _process(self, item: SettledItem, now: float) -> List[AuditRecord]:
        if isinstance(item, RescanRequest):
            return self.rescan(item.scope, item.reason)
        if isinstance(item, SettledChange) and item.kind_hint == RawEventKind.CREATE:
            item = self._event_processor.correlate(item, now)
        return self.reconciler.reconcile(item)

    def rescan(self, scope: Path, reason: str = "manual") -> List[AuditRecord]:
        """
        Re-verify every file and baseline record under ``scope``.

        Returns:
            Audit records emitted by the rescan
        """
        if reason == "overflow":
            self.metrics.increment("overflow_rescans_total")
            logger.warning(f"Notifications lost under {scope}, forcing rescan")
        else:
            logger.info(f"Rescanning {scope} ({reason})")

        records: List[AuditRecord] = []
        for path in sorted(self.scanner.paths_to_verify(scope)):
            records.extend(self.reconciler.reconcile(SettledChange(path, RawEventKind.UNKNOWN)))
        return records

    def _fail(self, error: StoreError) -> None:
        logger.critical(f"Baseline store failure, stopping monitor: {error}")
        with self._lock:
            if self._fatal_error is None:
                self._fatal_error = error
        self._stop_event.set()

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """
        Wait until nothing is pending or in flight.

        Returns:
            True if the pipeline went idle before the timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._inflight_lock:
                busy = bool(self._inflight) or self._sweeps_active > 0
            if not busy and self._event_processor.pending_count() == 0:
                return True
            time.sleep(0.01)
        return False

    def close(self) -> None:
        """Stop the monitor and release all resources."""
        self.stop()
        if self._owns_sink:
            self.audit_sink.close()
        if self._owns_store:
            self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
