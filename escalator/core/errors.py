"""Engine error taxonomy.

Each class maps to one handling policy in the executor: configuration and
target errors are recorded and never retried, transient storage errors are
retried with backoff, notification errors never undo a state change.
"""


class EscalatorError(Exception):
    """Base class for engine errors."""


class ConfigurationError(EscalatorError):
    """Rule trigger/action configuration does not fit its declared type."""


class TargetResolutionError(EscalatorError):
    """No escalation target could be resolved for an item."""


class TransientStorageError(EscalatorError):
    """A write or read against a backing store failed but may succeed later."""


class NotificationDispatchError(EscalatorError):
    """The notification collaborator rejected or timed out on a request."""


class EventNormalizationError(EscalatorError):
    """An incoming payload could not be turned into a canonical event."""
