"""
Custom business exceptions for the chat core.

WHAT: Domain-specific exceptions that map to HTTP status codes or socket error events
WHY: Consistent error handling across REST endpoints, sockets and the client
HOW: Custom exception classes with error codes and messages
"""

from typing import Optional, List, Dict, Any


class APIException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ValidationError(APIException):
    """Raised when a message fails construction rules (e.g. empty text and attachment)."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )


class AuthorizationError(APIException):
    """Raised when a caller acts on an identity it does not own."""

    def __init__(self, caller_id: str, target_id: str, action: str):
        super().__init__(
            message=f"User {caller_id} is not allowed to {action} for {target_id}",
            code="FORBIDDEN",
            details={"caller_id": caller_id, "target_id": target_id, "action": action}
        )


class MessageNotFoundError(APIException):
    """Raised when a message is not found."""

    def __init__(self, message_id: str):
        super().__init__(
            message=f"Message not found: {message_id}",
            code="MESSAGE_NOT_FOUND",
            details={"message_id": message_id}
        )


class BargainTransitionError(APIException):
    """Raised when a negotiation message is not a legal next step for its session."""

    def __init__(self, product_id: str, state: str, message_type: str, reason: str):
        super().__init__(
            message=f"Cannot send {message_type} for product {product_id} in state {state}: {reason}",
            code="ILLEGAL_BARGAIN_TRANSITION",
            details={
                "product_id": product_id,
                "state": state,
                "message_type": message_type,
                "reason": reason
            }
        )


class MalformedPayloadError(APIException):
    """Raised when a negotiation message's structured text cannot be deserialized."""

    def __init__(self, reason: str, message_id: Optional[str] = None):
        super().__init__(
            message=f"Malformed negotiation payload: {reason}",
            code="MALFORMED_PAYLOAD",
            details={"message_id": message_id, "reason": reason}
        )


class DeliveryError(APIException):
    """Raised when a room broadcast has no live subscriber to reach."""

    def __init__(self, room_id: str, event: str):
        super().__init__(
            message=f"No active subscriber in room {room_id} for {event}",
            code="DELIVERY_FAILED",
            details={"room_id": room_id, "event": event}
        )


class NetworkError(APIException):
    """Raised client-side when the server cannot be reached after retries."""

    def __init__(self, message: str, attempts: int = 1, status_code: Optional[int] = None):
        super().__init__(
            message=message,
            code="NETWORK_ERROR",
            details={"attempts": attempts, "status_code": status_code}
        )


class AuthenticationError(APIException):
    """Raised when a request carries no usable bearer credential."""

    def __init__(self, message: str = "Missing or invalid bearer token"):
        super().__init__(
            message=message,
            code="UNAUTHORIZED",
            details=None
        )
