"""
Custom domain exceptions for consistent error handling.

These exceptions are mapped to HTTP status codes by the global exception handler
in main.py.

Categories:
    validation  - rejected before any write (empty cart, bad quantity, role not approved)
    race-lost   - expected outcome of contention (already assigned, not the assigned agent)
    integrity   - payment mismatch, bad webhook signature (state retained for audit)
    external    - gateway timeout / gateway failure, safe to retry with the same key
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class NotFoundError(DomainError):
    """Resource not found (404)."""
    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        message = f"{resource_type} not found: {identifier}"
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, details=details)


class ValidationError(DomainError):
    """Validation error (400)."""
    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PermissionDeniedError(DomainError):
    """Permission denied (403)."""
    def __init__(self, message: str = "Permission denied", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class UnauthorizedError(DomainError):
    """Unauthorized access (401)."""
    def __init__(self, message: str = "Unauthorized", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class ConflictError(DomainError):
    """Resource conflict (409)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


# ── Checkout ────────────────────────────────────────────────────────

class EmptyCartError(ValidationError):
    """Cart (or the seller-filtered part of it) has nothing to check out."""
    def __init__(self, seller_id: str | None = None):
        message = "No items found for this seller in cart" if seller_id else "Cart is empty"
        super().__init__(message, details={"seller_id": seller_id} if seller_id else None)


class InvalidCartItemError(ValidationError):
    """A cart line can no longer be billed; the whole checkout is aborted."""
    def __init__(self, message: str, product_id: int | None = None):
        super().__init__(message, details={"product_id": product_id} if product_id is not None else None)


class InvalidTransitionError(ConflictError):
    """Entity is not in the state the requested transition starts from."""
    def __init__(self, entity: str, identifier, current_status: str | None, target: str):
        super().__init__(
            f"{entity} {identifier} cannot move to {target} from {current_status}",
            details={"current_status": current_status, "target_status": target},
        )


# ── Payments ────────────────────────────────────────────────────────

class PaymentMismatchError(ConflictError):
    """Gateway amount or correlation id does not match the transaction on file."""
    def __init__(self, reference: str, reason: str):
        super().__init__(
            f"Payment {reference} does not match the order on file: {reason}",
            details={"reference": reference, "reason": reason},
        )


class InvalidSignatureError(DomainError):
    """Webhook signature missing or wrong (401). No state is touched."""
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED)


class GatewayError(DomainError):
    """Payment gateway unreachable, misconfigured or returned an error (502)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class GatewayTimeoutError(DomainError):
    """Payment gateway did not answer within the configured timeout (504). Retry is safe."""
    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Payment gateway timed out during {operation} after {timeout_seconds}s",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            details={"operation": operation, "timeout_seconds": timeout_seconds},
        )


# ── Deliveries ──────────────────────────────────────────────────────

class AlreadyAssignedError(ConflictError):
    """Another agent won the delivery, or it left `pending` (race lost)."""
    def __init__(self, delivery_id: int):
        super().__init__(
            f"Delivery {delivery_id} is already assigned or no longer available",
            details={"delivery_id": delivery_id},
        )


class NotAssignedAgentError(ConflictError):
    """Caller is not the agent recorded on an in-progress delivery."""
    def __init__(self, delivery_id: int):
        super().__init__(
            f"Delivery {delivery_id} is not in progress with this agent",
            details={"delivery_id": delivery_id},
        )


class AgentBusyError(ConflictError):
    """Agent already holds an unfinished delivery."""
    def __init__(self, agent_id: str):
        super().__init__(
            "You have an unfinished delivery. Complete it before accepting a new one.",
            details={"agent_id": agent_id},
        )


class RoleNotApprovedError(PermissionDeniedError):
    """Delivery agent has not been approved by an administrator."""
    def __init__(self, actor_id: str):
        super().__init__(
            "Delivery account is not approved yet",
            details={"actor_id": actor_id},
        )
