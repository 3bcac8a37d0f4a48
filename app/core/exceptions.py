from fastapi import Request
from fastapi.responses import JSONResponse
import logging
from typing import Dict, Any, Optional
from app.core.logging import log_request_context

logger = logging.getLogger(__name__)

class APIError(Exception):
    """Base API exception"""

    def __init__(self, message: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class AuthenticationError(APIError):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication required", details: Dict[str, Any] = None):
        super().__init__(message, 401, details)

class AuthorizationError(APIError):
    """Authorization related errors"""

    def __init__(self, message: str = "Access denied", details: Dict[str, Any] = None):
        super().__init__(message, 403, details)

class ValidationError(APIError):
    """Malformed input, caller's fault, no retry"""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(message, 400, details)

class NotFoundError(APIError):
    """Unknown intent/ticket/transfer/coupon/event"""

    def __init__(self, message: str = "Resource not found", details: Dict[str, Any] = None):
        super().__init__(message, 404, details)


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------

class CapacityError(APIError):
    """Business rule on event capacity; no retry without new input"""

    def __init__(self, message: str = "Capacity rule violated", details: Dict[str, Any] = None):
        super().__init__(message, 409, details)

class InsufficientCapacity(CapacityError):
    def __init__(self, available: int, requested: int):
        self.available = max(available, 0)
        self.requested = requested
        super().__init__(
            f"Not enough tickets available: {self.available} left, {requested} requested",
            {"available": self.available, "requested": requested}
        )

class EventClosed(CapacityError):
    def __init__(self, event_id: str, reason: str = "Event is closed for sales"):
        super().__init__(reason, {"event_id": event_id})


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

class CouponError(APIError):
    def __init__(self, message: str = "Coupon error", details: Dict[str, Any] = None):
        super().__init__(message, 400, details)

class CouponInvalid(CouponError):
    """Coupon rejected with a specific reason code the caller can surface verbatim"""

    def __init__(self, reason: str, message: str, code: Optional[str] = None):
        self.reason = reason
        details = {"reason": reason}
        if code:
            details["code"] = code
        super().__init__(message, details)


# ---------------------------------------------------------------------------
# State conflicts (safe to retry with fresh state)
# ---------------------------------------------------------------------------

class StateConflictError(APIError):
    def __init__(self, message: str = "State conflict", details: Dict[str, Any] = None):
        super().__init__(message, 409, details)

class AlreadyCheckedIn(StateConflictError):
    def __init__(self, ticket_id: str, checked_in_at=None, checked_in_by: Optional[str] = None):
        super().__init__(
            "Ticket already used",
            {
                "ticket_id": ticket_id,
                "checked_in_at": checked_in_at.isoformat() if checked_in_at else None,
                "checked_in_by": checked_in_by,
            }
        )

class TransferAlreadyResolved(StateConflictError):
    def __init__(self, transfer_id: str, status: str):
        self.status = status
        super().__init__(
            f"Transfer is no longer pending (status: {status})",
            {"transfer_id": transfer_id, "status": status}
        )

class TicketNotTransferable(StateConflictError):
    def __init__(self, ticket_id: str, reason: str):
        super().__init__(reason, {"ticket_id": ticket_id})

class InvalidTransition(StateConflictError):
    def __init__(self, resource: str, current: str, target: str):
        super().__init__(
            f"Cannot move {resource} from '{current}' to '{target}'",
            {"current": current, "target": target}
        )


# ---------------------------------------------------------------------------
# Upstream payment provider
# ---------------------------------------------------------------------------

class ProviderError(APIError):
    """Upstream payment API failure. Retryable; the caller only sees a generic message."""

    def __init__(self, message: str = "Payment provider unavailable", details: Dict[str, Any] = None):
        super().__init__(message, 502, details)

class PaymentProviderError(ProviderError):
    def __init__(self, operation: str, cause: Optional[str] = None):
        self.operation = operation
        self.cause = cause
        super().__init__("Payment provider unavailable, please try again", {"operation": operation})


async def api_exception_handler(request: Request, exc: APIError):
    """Handle custom API exceptions with logging"""

    context = log_request_context(
        getattr(request.state, 'request_id', None),
        getattr(getattr(request.state, 'session_context', None), 'user_id', None)
    )
    context.update({
        "error_type": exc.__class__.__name__,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method
    })

    if exc.status_code >= 500:
        logger.error(f"API Error: {exc.message}", extra={"context": context})
    else:
        logger.warning(f"API Error: {exc.message}", extra={"context": context})

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "type": exc.__class__.__name__,
            "message": exc.message,
            "details": exc.details,
            "timestamp": context["timestamp"]
        }
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    context = log_request_context(getattr(request.state, 'request_id', None))
    context.update({
        "error_type": exc.__class__.__name__,
        "path": str(request.url.path),
        "method": request.method
    })

    logger.error(f"Unexpected error: {str(exc)}", extra={"context": context}, exc_info=True)

    from app.services.discord_error_notifier import error_notifier
    if error_notifier:
        await error_notifier.send_error(exc, request_info={
            "method": request.method,
            "url": str(request.url),
            "client_host": request.client.host if request.client else None
        })

    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "message": "Internal server error",
            "timestamp": context["timestamp"]
        }
    )
