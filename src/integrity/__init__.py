"""
Integrity Package

The baseline half of the pipeline: hashes files, keeps the trusted
baseline in SQLite, reconciles settled changes against it and records
every durable change as one audit line.

Features:
- Streaming BLAKE3 / SHA-256 content hashing
- SQLite baseline store with atomic single-path mutations
- Per-path serialized reconciliation with the filesystem as final authority
- Offline drift scan and baseline initialization
- Prometheus counters and gauges
"""

from .models import (
    FileRecord,
    AuditKind,
    AuditRecord,
    DivergenceKind,
    Divergence,
    ScanReport,
)

from .config import IntegrityConfig

from .exceptions import (
    IntegrityError,
    ConfigError,
    HashError,
    FileVanishedError,
    HashPermissionError,
    HashIOError,
    StoreError,
    StoreCorruptionError,
    MonitorError,
    MonitorAlreadyRunningError,
)

from .hasher import Hasher
from .store import BaselineStore
from .audit import AuditSink, JsonlAuditSink, MemoryAuditSink
from .metrics import IntegrityMetrics
from .reconciler import PathLockTable, Reconciler
from .scanner import BaselineScanner
from .monitor import IntegrityMonitor


__all__ = [
    # Models
    "FileRecord",
    "AuditKind",
    "AuditRecord",
    "DivergenceKind",
    "Divergence",
    "ScanReport",
    # Config
    "IntegrityConfig",
    # Exceptions
    "IntegrityError",
    "ConfigError",
    "HashError",
    "FileVanishedError",
    "HashPermissionError",
    "HashIOError",
    "StoreError",
    "StoreCorruptionError",
    "MonitorError",
    "MonitorAlreadyRunningError",
    # Components
    "Hasher",
    "BaselineStore",
    "AuditSink",
    "JsonlAuditSink",
    "MemoryAuditSink",
    "IntegrityMetrics",
    "PathLockTable",
    "Reconciler",
    "BaselineScanner",
    "IntegrityMonitor",
]
