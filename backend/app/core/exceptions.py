"""Custom exceptions for refund and cancellation operations.

Every error carries the HTTP status code the API layer should answer with.
Validation errors are raised before any state is touched.
"""


class AppError(Exception):
    """Base class for application errors."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(AppError):
    """Raised when a requested resource is missing."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class ValidationError(AppError):
    """Raised when input validation fails."""

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status_code=422)


class PermissionDeniedError(AppError):
    """Raised when the actor may not perform the operation."""

    def __init__(self, message: str = "You don't have permission to perform this action"):
        super().__init__(message, status_code=403)


class ConflictError(AppError):
    """Raised when an operation collides with existing state."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


# Structural errors

class TicketNotFoundError(NotFoundError):
    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class RefundRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str):
        super().__init__(f"Refund request not found: {request_id}")
        self.request_id = request_id


class CancellationNotFoundError(NotFoundError):
    def __init__(self, cancellation_id: str):
        super().__init__(f"Cancellation record not found: {cancellation_id}")
        self.cancellation_id = cancellation_id


class ActiveRefundExistsError(ConflictError):
    def __init__(self, ticket_id: str, request_id: str = None):
        super().__init__("A refund has already been requested for this ticket")
        self.ticket_id = ticket_id
        self.request_id = request_id


class TicketAlreadyRefundedError(ConflictError):
    def __init__(self, ticket_id: str):
        super().__init__("This ticket has already been refunded")
        self.ticket_id = ticket_id


class CancellationAlreadyExistsError(ConflictError):
    def __init__(self, event_id: str):
        super().__init__("This event has already been cancelled")
        self.event_id = event_id


# Validation errors

class NotEligibleError(ValidationError):
    def __init__(self, reason: str):
        super().__init__(f"Not eligible for refund: {reason}")
        self.reason = reason


class TicketAlreadyUsedError(ValidationError):
    def __init__(self):
        super().__init__("Used tickets cannot be refunded")


class ReasonNotSelectableError(ValidationError):
    def __init__(self, reason):
        reason = getattr(reason, "value", reason)
        super().__init__(f"Refund reason '{reason}' cannot be chosen by ticket holders")
        self.reason = reason


class InvalidAmountError(ValidationError):
    def __init__(self, message: str = "Invalid refund amount"):
        super().__init__(message)


class AlreadyProcessedError(ValidationError):
    def __init__(self, message: str = "This refund has already been processed"):
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    def __init__(self, current_status, new_status, allowed=None, message: str = None):
        current_status = getattr(current_status, "value", current_status)
        new_status = getattr(new_status, "value", new_status)
        allowed = [getattr(status, "value", status) for status in allowed or []]
        if message is None and allowed:
            message = (
                f"Cannot transition from '{current_status}' to '{new_status}'. "
                f"Valid transitions: {', '.join(allowed)}"
            )
        elif message is None:
            message = f"Refund is in final state '{current_status}' and cannot be modified"
        super().__init__(message)
        self.current_status = current_status
        self.new_status = new_status


class RetriesExhaustedError(ValidationError):
    def __init__(self, request_id: str, attempts: int):
        super().__init__(f"Refund {request_id} has exhausted its {attempts} settlement attempts")
        self.request_id = request_id
        self.attempts = attempts


class MaxRefundsExceededError(ValidationError):
    def __init__(self, limit: int):
        super().__init__(f"Maximum number of refunds exceeded ({limit} per user for this event)")
        self.limit = limit


class InvalidConfirmationCodeError(ValidationError):
    def __init__(self, phrase: str = "CONFIRM"):
        super().__init__(f"Invalid confirmation code. Please type {phrase} exactly.")


class CancellationNotReversibleError(ValidationError):
    def __init__(self):
        super().__init__("This cancellation can no longer be reversed")


class InvalidCancellationStateError(ValidationError):
    def __init__(self, message: str):
        super().__init__(f"Invalid state: {message}")
