"""
Configuration for the integrity package.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.watcher.config import DEFAULT_IGNORE_PATTERNS, WatcherConfig, matches_any

from .exceptions import ConfigError
from .hasher import normalize_algorithm


# Environment variable -> (field name, converter)
ENV_OVERRIDES = {
    "FIM_BASELINE_DB": ("baseline_db", Path),
    "FIM_HASH_ALG": ("hash_alg", str),
    "FIM_DEBOUNCE_MS": ("debounce_ms", int),
    "FIM_METRICS_BIND": ("metrics_bind", str),
    "FIM_AUDIT_LOG": ("audit_log", Path),
}

_SQLITE_SIDECARS = ("-wal", "-shm", "-journal")

_INT_FIELDS = ("debounce_ms", "rename_window_ms", "flush_interval_ms", "hash_workers")
_STR_FIELDS = ("hash_alg", "metrics_bind")
_PATH_FIELDS = ("baseline_db", "audit_log")
_LIST_FIELDS = ("watch_paths", "exclude")


def _check_types(data: Dict[str, Any]) -> None:
    """Reject values whose type cannot mean what the key asks for."""
    for key in _INT_FIELDS:
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
    for key in _STR_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}")
    for key in _PATH_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, (str, Path)):
            raise ConfigError(f"{key} must be a path, got {value!r}")
    for key in _LIST_FIELDS:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"{key} must be a list, got {value!r}")
        for item in value:
            if not isinstance(item, (str, Path)):
                raise ConfigError(f"{key} entries must be strings, got {item!r}")


@dataclass
class IntegrityConfig:
    """Main configuration for the integrity monitor."""
    baseline_db: Path = field(default_factory=lambda: Path("baseline.db"))
    watch_paths: List[Path] = field(default_factory=list)
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))

    # "fast" (BLAKE3) or "cryptographic" (SHA-256)
    hash_alg: str = "fast"

    # Pipeline timing
    debounce_ms: int = 250
    rename_window_ms: int = 500
    flush_interval_ms: int = 50

    # Bounded pool for hashing and reconciliation
    hash_workers: int = 4

    # Outputs
    metrics_bind: str = "127.0.0.1:9184"
    audit_log: Path = field(default_factory=lambda: Path("events.jsonl"))

    def __post_init__(self):
        if isinstance(self.baseline_db, str):
            self.baseline_db = Path(self.baseline_db)
        if isinstance(self.audit_log, str):
            self.audit_log = Path(self.audit_log)
        self.watch_paths = [Path(p) for p in self.watch_paths]
        self.exclude = list(self.exclude)

    def validate(self) -> "IntegrityConfig":
        """
        Check values and canonicalize paths.

        Raises:
            ConfigError: If any value is out of range
        """
        _check_types({key: getattr(self, key) for key in _INT_FIELDS + _STR_FIELDS})
        if not self.watch_paths:
            raise ConfigError("watch_paths must name at least one directory")
        if self.debounce_ms < 0:
            raise ConfigError(f"debounce_ms must be non-negative, got {self.debounce_ms}")
        if self.rename_window_ms < 0:
            raise ConfigError(f"rename_window_ms must be non-negative, got {self.rename_window_ms}")
        if self.flush_interval_ms <= 0:
            raise ConfigError(f"flush_interval_ms must be positive, got {self.flush_interval_ms}")
        if self.hash_workers < 1:
            raise ConfigError(f"hash_workers must be at least 1, got {self.hash_workers}")

        self.hash_alg = normalize_algorithm(self.hash_alg)
        self.metrics_address()

        self.watch_paths = [p.expanduser().resolve() for p in self.watch_paths]
        self.baseline_db = self.baseline_db.expanduser().resolve()
        self.audit_log = self.audit_log.expanduser().resolve()
        return self

    def metrics_address(self) -> tuple:
        """Split ``metrics_bind`` into (host, port)."""
        host, sep, port = self.metrics_bind.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"metrics_bind must look like host:port, got {self.metrics_bind!r}")
        return host.strip("[]") or "0.0.0.0", int(port)

    def is_excluded(self, path: Path) -> bool:
        """
        Exclusion predicate for the pipeline.

        The monitor's own database and audit log are always excluded so
        writing them does not feed back into the event stream.
        """
        path_str = str(path)
        db_str = str(self.baseline_db)
        if path_str == db_str or any(path_str == db_str + s for s in _SQLITE_SIDECARS):
            return True
        if path_str == str(self.audit_log):
            return True
        path = Path(path)
        return matches_any(path, self.exclude, base=self.root_of(path))

    def root_of(self, path: Path) -> Optional[Path]:
        """The innermost watch root containing ``path``, if any."""
        owners = [root for root in self.watch_paths if path == root or root in path.parents]
        return max(owners, key=lambda root: len(root.parts)) if owners else None

    def watcher_config(self) -> WatcherConfig:
        """Get the configuration for the raw-event side of the pipeline."""
        return WatcherConfig(
            debounce_ms=self.debounce_ms,
            rename_correlation_ms=self.rename_window_ms,
            flush_interval_ms=self.flush_interval_ms,
            ignore_patterns=list(self.exclude),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityConfig":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        _check_types(data)
        try:
            return cls(**data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, path: Path, environ: Optional[Dict[str, str]] = None) -> "IntegrityConfig":
        """
        Load configuration from a TOML file, then apply FIM_* environment overrides.

        Relative paths in the file are taken relative to the file's directory.

        Raises:
            ConfigError: If the file is missing, not valid TOML, or has bad values
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"failed to read config {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"invalid TOML in {path}: {e}") from e

        _check_types(data)
        base = path.resolve().parent
        for key in ("baseline_db", "audit_log"):
            if key in data:
                data[key] = _relative_to(base, data[key])
        if "watch_paths" in data:
            data["watch_paths"] = [_relative_to(base, p) for p in data["watch_paths"]]

        config = cls.from_dict(data)
        config.apply_env(environ if environ is not None else os.environ)
        return config.validate()

    def apply_env(self, environ: Dict[str, str]) -> None:
        for var, (name, convert) in ENV_OVERRIDES.items():
            value = environ.get(var)
            if value is None or value == "":
                continue
            try:
                setattr(self, name, convert(value))
            except ValueError as e:
                raise ConfigError(f"Invalid value for {var}: {value!r}") from e


def _relative_to(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else base / p
