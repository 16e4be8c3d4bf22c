"""Named errors raised by the swap engine.

Every error carries a stable ``code`` (the class name), the HTTP status the
API answers with and whether a caller may retry after re-fetching state.
"""


class SwapEngineError(Exception):
    """Base class for all engine errors"""

    category = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__name__)

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict:
        return {
            "detail": str(self),
            "code": self.code,
            "category": self.category,
            "retryable": self.retryable,
        }


# Validation errors: surfaced verbatim, never retried

class ValidationError(SwapEngineError):
    category = "validation"
    status_code = 409


class SelfTargetError(ValidationError):
    status_code = 400


class OwnershipMismatch(ValidationError):
    status_code = 403


class SourceNotActive(ValidationError):
    pass


class TargetNotActive(ValidationError):
    pass


class SourceAlreadyTargeting(ValidationError):
    pass


class TargetExclusivityViolation(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class InvalidBookingState(ValidationError):
    pass


class DuplicateSwap(ValidationError):
    pass


class InvalidSwapRequest(ValidationError):
    status_code = 400


class AuctionClosed(ValidationError):
    pass


class NoActiveTarget(ValidationError):
    pass


# Missing records

class NotFoundError(SwapEngineError):
    category = "not_found"
    status_code = 404


class SwapNotFound(NotFoundError):
    pass


class TargetNotFound(NotFoundError):
    pass


class BookingNotFound(NotFoundError):
    pass


class MatchNotFound(NotFoundError):
    pass


# Concurrency errors: re-fetch and retry is the caller's job

class ConcurrencyError(SwapEngineError):
    category = "concurrency"
    status_code = 409
    retryable = True


class EdgeNotActive(ConcurrencyError):
    pass


class StaleSwapState(ConcurrencyError):
    pass


class ConcurrentModification(ConcurrencyError):
    status_code = 423


# External collaborators

class ExternalDependencyError(SwapEngineError):
    category = "external"
    status_code = 502
    retryable = True


class BookingStatusConflict(ExternalDependencyError):
    status_code = 409
