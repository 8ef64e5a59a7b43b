"""Services package: business rules for claiming, scheduling and billing."""

from .exceptions import (
    StudyroomError,
    UnauthenticatedError,
    PermissionDeniedError,
    NotFoundError,
    ValidationFailedError,
    InvalidTransitionError,
    NotOpenError,
    AlreadyClaimedError,
    AlreadyBilledError,
    SchedulingConflictError,
    InvoiceSinkError,
)

__all__ = [
    'StudyroomError',
    'UnauthenticatedError',
    'PermissionDeniedError',
    'NotFoundError',
    'ValidationFailedError',
    'InvalidTransitionError',
    'NotOpenError',
    'AlreadyClaimedError',
    'AlreadyBilledError',
    'SchedulingConflictError',
    'InvoiceSinkError',
]
