"""
Data models for the integrity package.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.watcher.models import ContentSnapshot


@dataclass(frozen=True)
class FileRecord:
    """
    Baseline entry for one tracked file.

    Attributes:
        path: Canonical absolute path
        hash: Algorithm-tagged hex digest, e.g. ``blake3:ab12...``
        size: Size in bytes
        mtime: Modification time in whole seconds
    """
    path: str
    hash: str
    size: int
    mtime: int

    def __post_init__(self):
        if not Path(self.path).is_absolute():
            raise ValueError(f"path must be absolute: {self.path}")
        if self.size < 0:
            raise ValueError(f"size must be non-negative: {self.size}")

    @classmethod
    def from_snapshot(cls, path, snapshot: ContentSnapshot) -> "FileRecord":
        return cls(
            path=str(path),
            hash=snapshot.content_hash,
            size=snapshot.size,
            mtime=snapshot.mtime,
        )

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "hash": self.hash,
            "size": self.size,
            "mtime": self.mtime,
        }


class AuditKind(Enum):
    """Kinds of audit records."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"
    WARN = "warn"


@dataclass(frozen=True)
class AuditRecord:
    """
    One durably recorded integrity event.

    ``path`` is used for every kind except RENAME, which carries
    ``from_path`` and ``to_path`` instead.
    """
    kind: AuditKind
    path: Optional[str] = None
    from_path: Optional[str] = None
    to_path: Optional[str] = None
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None
    size: Optional[int] = None
    mtime: Optional[int] = None
    detail: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form; fields that do not apply are omitted."""
        data: Dict[str, Any] = {"timestamp": self.timestamp, "kind": self.kind.value}
        if self.kind == AuditKind.RENAME:
            data["from"] = self.from_path
            data["to"] = self.to_path
        else:
            data["path"] = self.path
        for key in ("old_hash", "new_hash", "size", "mtime", "detail"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class DivergenceKind(Enum):
    """How live state disagrees with the baseline."""
    ADDED = "added"
    CHANGED = "changed"
    MISSING = "missing"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class Divergence:
    """A path whose live state disagrees with its baseline record."""
    kind: DivergenceKind
    path: str
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None
    size: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "path": self.path}
        for key in ("old_hash", "new_hash", "size", "detail"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class ScanReport:
    """Result of an offline comparison of disk state against the baseline."""
    divergences: List[Divergence] = field(default_factory=list)
    files_checked: int = 0
    records_checked: int = 0
    started_at: float = field(default_factory=time.time)

    def add(self, divergence: Divergence) -> None:
        self.divergences.append(divergence)

    def count(self, kind: DivergenceKind) -> int:
        return sum(1 for d in self.divergences if d.kind == kind)

    @property
    def is_clean(self) -> bool:
        return not self.divergences

    def __len__(self) -> int:
        return len(self.divergences)

    def __iter__(self):
        return iter(self.divergences)

    def summary(self) -> str:
        return (
            f"Summary -> added: {self.count(DivergenceKind.ADDED)}, "
            f"changed: {self.count(DivergenceKind.CHANGED)}, "
            f"missing: {self.count(DivergenceKind.MISSING)}, "
            f"unreadable: {self.count(DivergenceKind.UNREADABLE)}"
        )

    def write_jsonl(self, path: Path) -> int:
        """Write one divergence per line, replacing the file. Returns lines written."""
        with open(path, "w", encoding="utf-8") as f:
            for divergence in self.divergences:
                f.write(json.dumps(divergence.to_dict(), ensure_ascii=False) + "\n")
        return len(self.divergences)
