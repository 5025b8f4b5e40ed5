from typing import Optional, Any


class ReconcilerError(Exception):
    """
    Base exception for the reconciliation engine.

    `retryable` tells the webhook endpoint whether the gateway should
    redeliver the event.
    """
    retryable = False

    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500, details: Optional[Any] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ResourceNotFoundError(ReconcilerError):
    """
    Raised when a requested resource is not found.
    """
    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)


class AuthenticationError(ReconcilerError):
    """
    Raised when authentication fails.
    """
    def __init__(self, message: str = "Authentication failed", details: Optional[Any] = None):
        super().__init__(message, code="AUTHENTICATION_FAILED", status_code=401, details=details)


class InvalidSignature(AuthenticationError):
    """
    Raised when a webhook body does not match its gateway signature.
    Nothing has been processed when this is raised.
    """
    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Any] = None):
        super().__init__(message, details=details)
        self.code = "INVALID_SIGNATURE"


class ValidationError(ReconcilerError):
    """
    Raised when input validation fails.
    """
    def __init__(self, message: str = "Validation error", details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=422, details=details)


class MalformedPayload(ValidationError):
    """
    Raised when an authenticated webhook body cannot be parsed into a gateway event.
    """
    def __init__(self, message: str = "Malformed webhook payload", details: Optional[Any] = None):
        super().__init__(message, details=details)
        self.code = "MALFORMED_PAYLOAD"


class ConflictError(ReconcilerError):
    """
    Raised when a write would contradict existing ledger state.
    """
    def __init__(self, message: str = "Conflict", details: Optional[Any] = None):
        super().__init__(message, code="CONFLICT", status_code=409, details=details)


class UnresolvedIdentity(ReconcilerError):
    """
    Raised by the identity resolver when no user matches a gateway event.
    The payment is still recorded and queued for manual reconciliation.
    """
    def __init__(self, message: str = "Could not resolve user for gateway event", details: Optional[Any] = None):
        super().__init__(message, code="UNRESOLVED_IDENTITY", status_code=200, details=details)


class InvalidStateTransition(ReconcilerError):
    """
    Raised when an event tries to move a payment or subscription along a
    forbidden edge. Logged and acknowledged, never retried.
    """
    def __init__(self, entity: str, from_state: str, to_state: str, details: Optional[Any] = None):
        super().__init__(
            f"Invalid {entity} transition: {from_state} -> {to_state}",
            code="INVALID_STATE_TRANSITION",
            status_code=409,
            details=details
        )
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state


class TransientStorageFailure(ReconcilerError):
    """
    Raised when the ledger store fails mid-event. The event's transaction has
    been rolled back and the gateway should redeliver.
    """
    retryable = True

    def __init__(self, message: str = "Storage temporarily unavailable", details: Optional[Any] = None):
        super().__init__(message, code="TRANSIENT_STORAGE_FAILURE", status_code=503, details=details)


class LockTimeout(ReconcilerError):
    """
    Raised when the per-user lock cannot be acquired within the bounded wait.
    """
    retryable = True

    def __init__(self, message: str = "Timed out waiting for user lock", details: Optional[Any] = None):
        super().__init__(message, code="LOCK_TIMEOUT", status_code=503, details=details)


class QuestionCreditsExhausted(ReconcilerError):
    """
    Raised when a super user asks a question with no live credits left.
    """
    def __init__(self, message: str = "No question credits remaining", details: Optional[Any] = None):
        super().__init__(message, code="NO_QUESTION_CREDITS", status_code=402, details=details)
