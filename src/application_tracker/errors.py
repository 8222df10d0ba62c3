class TrackerError(Exception):
    """Base class for errors raised by the application tracker."""


class BackendError(TrackerError):
    """A model backend failed, timed out or returned something unusable."""


class InvalidTransition(TrackerError):
    pass


class SelectionError(TrackerError):
    pass


class MergeError(TrackerError):
    pass


class BatchCancelled(TrackerError):
    pass
