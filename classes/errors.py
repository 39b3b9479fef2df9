# classes/errors.py


class LifecycleError(Exception):
    """Base class for every error raised by the deadline / order lifecycle core."""


class InputError(LifecycleError):
    """A stored record is malformed or misses a required field."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


class InvalidTransitionError(LifecycleError):
    """Requested order status change is not in the allowed transition table."""

    def __init__(self, source, target):
        self.source = source
        self.target = target
        super().__init__(f"Transition {getattr(source, 'value', source)} -> {getattr(target, 'value', target)} is not allowed")


class StoreError(LifecycleError):
    """Read, write or commit against the entity store failed. Safe to retry wholesale."""


class DispatchError(LifecycleError):
    """Outbound message could not be delivered. Logged only."""


class AuthError(LifecycleError):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code
