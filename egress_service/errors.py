"""
Error taxonomy for the egress service.

Every error carries a transport-neutral ``code`` so that whatever RPC layer
sits in front of the service can map it onto its own status codes.
"""

from typing import Optional


class EgressError(Exception):
    """Base exception for egress errors."""

    code = "internal"

    def __init__(self, message: str, egress_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.egress_id = egress_id


class ValidationError(EgressError):
    """Malformed or contradictory request, rejected before any job exists."""

    code = "invalid_argument"


class NotFoundError(EgressError):
    """Unknown egress id."""

    code = "not_found"


class DuplicateIdError(EgressError):
    """An egress id was reserved twice."""

    code = "internal"


class InvalidStateError(EgressError):
    """Operation not allowed in the job's current status."""

    code = "failed_precondition"


class CapacityError(EgressError):
    """The service is already running its maximum number of egress jobs."""

    code = "resource_exhausted"


class ConfigurationError(EgressError):
    """Output destination is misconfigured or unsupported."""

    code = "invalid_argument"


class DeliveryError(EgressError):
    """Transient delivery failure. Retried inside the output adapter."""

    code = "unavailable"


class FatalDeliveryError(EgressError):
    """Delivery failure that must not be retried (auth, permissions, exhausted retries)."""

    code = "internal"


class SourceNotFoundError(EgressError):
    """The requested room or track does not exist."""

    code = "not_found"
