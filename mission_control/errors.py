"""Error taxonomy for the lifecycle service and the phase sync engine."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine failures."""


class FileReadError(SyncError):
    """A phase file could not be read."""


class FileParseError(SyncError):
    """A phase file has malformed front matter."""


class FileWriteError(SyncError):
    """Writing front matter back into a phase file failed."""


class UnmappedFileError(SyncError):
    """A changed file has no owning lifecycle phase. Ignored by the engine."""


class SuppressedEcho(SyncError):
    """A change event caused by the engine's own write. Ignored by the engine."""


class StoreWriteError(SyncError):
    """Applying values to the lifecycle store failed."""


class ConflictNotFoundError(SyncError):
    """No unresolved conflict matches the given id or index."""


class PhaseNotFoundError(LookupError):
    """No lifecycle phase exists with the given id."""


class InvalidPhaseValueError(ValueError):
    """A phase field was given a value outside its allowed set."""
