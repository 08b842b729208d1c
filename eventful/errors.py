"""Domain error codes for the ticketing core."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    CONFLICT = "CONFLICT"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_OR_EXPIRED = "INVALID_OR_EXPIRED"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    status_code = 400

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFound(DomainError):
    status_code = 404

    def __init__(self, what: str) -> None:
        super().__init__(code=ErrorCode.NOT_FOUND, message=f"{what} not found")


class Forbidden(DomainError):
    """Raised when the caller does not own the resource."""

    status_code = 403

    def __init__(self, message: str = "Invalid ticket ownership") -> None:
        super().__init__(code=ErrorCode.FORBIDDEN, message=message)


class InvalidState(DomainError):
    """Raised when a resource is in the wrong lifecycle stage."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_STATE, message=message)


class Conflict(DomainError):
    status_code = 409

    def __init__(
        self, message: str = "You already have a ticket for this event"
    ) -> None:
        super().__init__(code=ErrorCode.CONFLICT, message=message)


class CapacityExceeded(DomainError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.CAPACITY_EXCEEDED,
            message="Event is sold out",
        )


class AmountMismatch(DomainError):
    def __init__(self, expected: int, submitted: int) -> None:
        super().__init__(
            code=ErrorCode.AMOUNT_MISMATCH,
            message="Payment amount does not match ticket price",
        )
        object.__setattr__(self, "expected", expected)
        object.__setattr__(self, "submitted", submitted)


class GatewayError(DomainError):
    """Network, timeout or error response from the payment gateway.

    The tentative payment row has already been removed when this is raised,
    so the caller may simply retry the initialization.
    """

    status_code = 502

    def __init__(self, message: str = "Failed to initialize payment") -> None:
        super().__init__(code=ErrorCode.GATEWAY_ERROR, message=message)


class InvalidSignature(DomainError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.INVALID_SIGNATURE,
            message="Invalid webhook signature",
        )


class InvalidOrExpired(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.INVALID_OR_EXPIRED,
            message="Invalid, expired, or already scanned ticket",
        )
