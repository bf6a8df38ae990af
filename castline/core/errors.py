from __future__ import annotations


class CastlineError(Exception):
    """Base error for castline."""


class BroadcastValidationError(CastlineError):
    """Rejected job creation input; the job is never persisted."""


class BroadcastNotFoundError(CastlineError):
    """Unknown broadcast job id."""


class BroadcastReentrancyError(CastlineError):
    """A delivery pass is already active for the job."""


class InvalidTransitionError(CastlineError):
    """Requested lifecycle transition is not allowed from the current status."""


class AudienceResolutionError(CastlineError):
    """Identity store could not be queried while resolving a job audience."""


class DeliveryError(CastlineError):
    """One recipient delivery failed."""


class DeliveryTimeoutError(DeliveryError):
    """A channel send exceeded its bounded timeout."""


class EmailConfigMissingError(CastlineError):
    """Email provider configuration missing or disabled."""

