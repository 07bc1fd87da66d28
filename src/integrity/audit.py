"""
Audit sinks: where reconciled integrity events are durably recorded.
"""

import logging
import threading
from pathlib import Path
from typing import List

from .models import AuditRecord

logger = logging.getLogger(__name__)


class AuditSink:
    """Destination for audit records."""

    def emit(self, record: AuditRecord) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class JsonlAuditSink(AuditSink):
    """
    Appends one JSON object per line to a file.

    Each line is flushed as it is written, so a crash loses at most the
    record being written.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        logger.info(f"Writing audit events to {self.path}")

    def emit(self, record: AuditRecord) -> None:
        line = record.to_json()
        with self._lock:
            self._file.write(line + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


class MemoryAuditSink(AuditSink):
    """Keeps records in memory."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
