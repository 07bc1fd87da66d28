"""Data models for the file watcher package."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional
import time


class RawEventKind(Enum):
    """Kinds of notifications delivered by the event source."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    UNKNOWN = "unknown"
    # Source-level signals, never debounced
    MOVE = "move"
    OVERFLOW = "overflow"


# Higher wins when a burst for one path is coalesced
KIND_PRECEDENCE = {
    RawEventKind.UNKNOWN: 0,
    RawEventKind.MODIFY: 1,
    RawEventKind.CREATE: 2,
    RawEventKind.DELETE: 3,
}


@dataclass(frozen=True)
class RawEvent:
    """
    Raw notification from the event source before coalescing.

    Attributes:
        path: Path the notification is about
        kind: Kind of notification
        observed_at: Monotonic timestamp when the notification was observed
        dest_path: Destination path (MOVE only)
        is_directory: Whether the notification is about a directory
    """
    path: Path
    kind: RawEventKind
    observed_at: float = field(default_factory=time.monotonic)
    dest_path: Optional[Path] = None
    is_directory: bool = False


@dataclass(frozen=True)
class ContentSnapshot:
    """
    Content identity of a file captured at one instant.

    Attributes:
        content_hash: Algorithm-tagged hex digest
        size: Size in bytes
        mtime: Modification time in whole seconds
        mtime_ns: Modification time in nanoseconds, used to decide reuse
    """
    content_hash: str
    size: int
    mtime: int
    mtime_ns: int = 0


@dataclass
class PendingChange:
    """Debounce state for one path with unsettled activity."""
    path: Path
    last_event_at: float
    kind_hint: RawEventKind
    deadline: float

    def absorb(self, kind: RawEventKind, observed_at: float, window_sec: float) -> None:
        """Fold a newer raw event into this pending change."""
        if KIND_PRECEDENCE.get(kind, 0) >= KIND_PRECEDENCE.get(self.kind_hint, 0):
            self.kind_hint = kind
        self.last_event_at = max(self.last_event_at, observed_at)
        self.deadline = self.last_event_at + window_sec


@dataclass(frozen=True)
class SettledChange:
    """
    A burst of activity on one path that has gone quiet.

    The kind hint is advisory; the reconciler re-stats the path.
    """
    path: Path
    kind_hint: RawEventKind
    snapshot: Optional[ContentSnapshot] = None


@dataclass(frozen=True)
class SettledRename:
    """A rename of one file, either native or correlated from DELETE + CREATE."""
    from_path: Path
    to_path: Path
    snapshot: Optional[ContentSnapshot] = None


@dataclass(frozen=True)
class RescanRequest:
    """Request to re-verify every file under a directory."""
    scope: Path
    reason: str = "overflow"


@dataclass
class RenameCandidate:
    """A settled delete held back in case a matching create follows."""
    deleted_path: Path
    deleted_hash: str
    seen_at: float


def canonical_path(path) -> Path:
    """
    Canonical absolute form of a path.

    Symlinks in existing parents are resolved; a missing leaf is kept as
    given so deleted files map to the same key they had when present.
    """
    return Path(path).expanduser().resolve()
