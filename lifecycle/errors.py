"""Error taxonomy for billing webhooks and sequence dispatch."""


class LifecycleError(Exception):
    """Base class for engine errors."""


class AuthenticityError(LifecycleError):
    """Webhook credential missing or wrong. Rejected before any other work."""


class MalformedEventError(LifecycleError):
    """Webhook body could not be parsed into a billing event."""


class UnknownSubjectError(LifecycleError):
    """No internal user matches the event's subject id."""

    def __init__(self, subject):
        super().__init__(f"unknown subject: {subject!r}")
        self.subject = subject


class StoreWriteError(LifecycleError):
    """Entitlement or sequence persistence failed; the unit of work must fail loudly."""


class DispatchError(LifecycleError):
    permanent = False


class TransientDispatchError(DispatchError):
    """Retry on the next scheduler tick."""


class PermanentDispatchError(DispatchError):
    """Retrying is futile (invalid or suppressed address); pause the sequence."""
    permanent = True
