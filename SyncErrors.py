"""Exception types shared by the sync components."""


class SyncError(Exception):
    """Base class for all sync errors"""


class TransientNetworkError(SyncError):
    """Timeouts, connection resets, 429 and 5xx responses. Safe to retry."""


class NotFoundError(SyncError):
    """An expected miss: the show or map could not be resolved. Causes a SKIP."""


class ValidationError(NotFoundError):
    """Upstream data is malformed or missing required ids."""


class PersistenceWriteError(SyncError):
    """A store write failed. The value is still usable for the current run."""


class SubmissionFailure(SyncError):
    """The destination bulk write failed. No progress may be committed."""


class SyncAlreadyRunning(SyncError):
    """Another run holds the run lock."""
