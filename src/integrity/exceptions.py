"""
Custom exceptions for the integrity package.
"""


class IntegrityError(Exception):
    """Base exception for integrity monitoring errors."""
    pass


class ConfigError(IntegrityError):
    """Invalid or unreadable configuration."""
    pass


class HashError(IntegrityError):
    """Error while hashing a file."""
    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class FileVanishedError(HashError):
    """File disappeared between the notification and the read."""
    pass


class HashPermissionError(HashError):
    """File exists but cannot be read."""
    pass


class HashIOError(HashError):
    """Read failed twice in a row."""
    pass


class StoreError(IntegrityError):
    """Baseline store operation failed; the mutation was not persisted."""
    pass


class StoreCorruptionError(StoreError):
    """Baseline database is corrupted."""
    pass


class MonitorError(IntegrityError):
    """Error in the live monitor."""
    pass


class MonitorAlreadyRunningError(MonitorError):
    """Monitor is already running."""
    pass
