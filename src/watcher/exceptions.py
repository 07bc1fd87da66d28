"""Custom exceptions for the file watcher package."""


class WatcherError(Exception):
    """Base exception for all watcher errors."""
    pass


class RootError(WatcherError):
    """Error related to watched root management."""
    pass


class RootNotFoundError(RootError):
    """Specified root folder does not exist."""
    pass


class RootAlreadyExistsError(RootError):
    """Root folder is already being watched."""
    pass
