"""
Exceptions raised by the custom domain engine.
"""


class DomainEngineError(Exception):
    """Base class for custom domain engine errors."""
    pass


class ValidationError(DomainEngineError):
    """Request rejected before it enters the state machine."""
    pass


class InvalidHostnameError(ValidationError):
    """Hostname is malformed or not allowed."""
    pass


class DuplicateHostnameError(ValidationError):
    """Hostname is already reserved or verified by someone."""
    pass


class BlacklistedHostnameError(ValidationError):
    """Hostname is blacklisted."""
    pass


class DomainLimitError(ValidationError):
    """Owner has reached the maximum number of domains."""
    pass


class DomainNotFoundError(DomainEngineError):
    """Domain record does not exist (or was deleted mid-flight)."""
    pass


class ConcurrentModificationError(DomainEngineError):
    """Domain record changed since it was read."""
    pass


class InvalidTransitionError(DomainEngineError):
    """No transition defined for this state and event."""
    pass


class ResolverError(DomainEngineError):
    """DNS lookup failed for an infrastructure reason (timeout, SERVFAIL)."""
    pass


class ProviderError(DomainEngineError):
    """Certificate provider call failed in transport."""
    pass


class OwnershipError(DomainEngineError):
    """Domain is held by a different owner."""
    pass
