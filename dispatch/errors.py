"""
Error taxonomy for the ingestion core.

None of these are fatal to the process: every caller degrades to
"skip this unit of work" and keeps running.
"""


class DispatchError(Exception):
    """Base class for all dispatch errors."""
    pass


class TransientNetworkError(DispatchError):
    """Raised when a feed, call-log API or download fails in a retryable way."""
    pass


class ExtractionFailure(DispatchError):
    """Raised when the understanding service is unavailable or returns garbage."""
    pass


class AuthExpired(DispatchError):
    """Raised when the call-log API rejects the session credential."""
    pass


class PollerDisabled(DispatchError):
    """Raised when a poller has hit its consecutive-failure threshold."""
    pass


class InvalidPredictionTransition(DispatchError):
    """Raised when a prediction that is already resolved is resolved again."""
    pass
