"""
Error taxonomy of the booking engine.

Every error carries a message, a stable code and structured details (booking id,
current status, attempted event) so the API layer can render a precise message.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class BookingError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class BookingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, booking_id: str):
        super().__init__("Booking not found", details={"booking_id": booking_id})


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, booking_id: str, current_status: str, event: str, reason: Optional[str] = None):
        message = f"Cannot apply {event} to a booking in status {current_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={"booking_id": booking_id, "current_status": current_status, "event": event},
        )
        self.current_status = current_status
        self.event = event


class ActorNotPermitted(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class PaymentAmountMismatch(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class BookingBusy(BookingError):
    status_code = status.HTTP_409_CONFLICT


# ledger misuse: programming errors

class AlreadyHeld(BookingError):
    def __init__(self, booking_id: str):
        super().__init__("Escrow already held for booking", details={"booking_id": booking_id})


class InvalidLedgerState(BookingError):
    def __init__(self, booking_id: str, operation: str, state: Optional[str]):
        super().__init__(
            f"Cannot {operation} escrow in state {state or 'missing'}",
            details={"booking_id": booking_id, "operation": operation, "state": state},
        )


class DuplicateTimer(BookingError):
    def __init__(self, booking_id: str):
        super().__init__("Acceptance timer already running", details={"booking_id": booking_id})


class PaymentProcessorError(BookingError):
    """Transient processor failure that outlived the local retry budget."""

    status_code = status.HTTP_202_ACCEPTED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, retryable: bool = True):
        super().__init__(message, code="PaymentPending" if retryable else "PaymentRejected", details=details)
        self.retryable = retryable
        if not retryable:
            self.status_code = status.HTTP_502_BAD_GATEWAY


# rating: user input errors

class BookingNotCompleted(BookingError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyRated(BookingError):
    status_code = status.HTTP_409_CONFLICT


class InvalidScore(BookingError):
    status_code = HTTP_422_UNPROCESSABLE
