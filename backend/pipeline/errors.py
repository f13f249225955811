"""
Error Taxonomy
==============
Typed errors for the checkout and reconciliation pipeline.

Every error carries a stable `code` (surfaced to clients and logs) and the
HTTP status the API layer renders it with. Synchronous paths (checkout,
admin) raise these directly; the webhook path maps them onto acknowledged
responses so the gateway does not retry forever.
"""

from typing import Any, Dict, List, Optional


class CommerceError(Exception):
    """Base class for all pipeline errors"""

    code: str = "CommerceError"
    status_code: int = 500
    public_message: Optional[str] = None

    def __init__(self, msg: str = "", **context: Any):
        super().__init__(msg or self.code)
        self.msg = msg or self.code
        self.context = context

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "msg": self.public_message or self.msg,
            "code": self.code,
        }


# =============================================================================
# 4xx: CLIENT-FACING
# =============================================================================

class ValidationError(CommerceError):
    code = "ValidationError"
    status_code = 400


class EmptyCart(ValidationError):
    code = "EmptyCart"


class InvalidReference(ValidationError):
    code = "InvalidReference"


class InvalidQuantity(ValidationError):
    code = "InvalidQuantity"


class MissingAddress(ValidationError):
    code = "MissingAddress"


class NotFoundError(CommerceError):
    code = "NotFound"
    status_code = 404


class ConflictError(CommerceError):
    code = "Conflict"
    status_code = 409


class Unavailable(ConflictError):
    code = "Unavailable"


class IllegalTransition(ConflictError):
    code = "IllegalTransition"


class InsufficientStock(ConflictError):
    code = "InsufficientStock"


class DuplicateTransaction(ConflictError):
    """Raised by stores when the idempotency key is already taken"""
    code = "DuplicateTransaction"


class LineItemIssue:
    """One failed cart line inside an aggregated CartRejected error"""

    __slots__ = ("product_id", "code", "message")

    def __init__(self, product_id: str, code: str, message: str):
        self.product_id = product_id
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"product_id": self.product_id, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"LineItemIssue({self.product_id!r}, {self.code!r})"


class CartRejected(ValidationError):
    """All-or-nothing cart failure with every per-line problem attached"""
    code = "CartRejected"

    def __init__(self, issues: List[LineItemIssue]):
        super().__init__("Cart contains invalid items.")
        self.issues = issues

    @property
    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]

    @property
    def errors(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def to_response(self) -> Dict[str, Any]:
        payload = super().to_response()
        payload["errors"] = [issue.to_dict() for issue in self.issues]
        return payload


# =============================================================================
# SECURITY
# =============================================================================

class SecurityError(CommerceError):
    code = "SecurityError"
    status_code = 401


class InvalidSignature(SecurityError):
    code = "InvalidSignature"


class AuthenticationError(SecurityError):
    code = "Unauthenticated"


class PermissionDenied(SecurityError):
    code = "PermissionDenied"
    status_code = 403


# =============================================================================
# OPERATOR-FACING
# =============================================================================

class ConfigurationError(CommerceError):
    """Missing keys or secrets. Detail goes to logs, never to clients."""
    code = "ConfigurationError"
    status_code = 500
    public_message = "Payment configuration error."


class IntegrationAcknowledged(CommerceError):
    """Harmless gateway noise: acknowledged with 200 and otherwise ignored"""
    code = "IntegrationAcknowledged"
    status_code = 200


class MalformedPayload(IntegrationAcknowledged):
    code = "MalformedPayload"
