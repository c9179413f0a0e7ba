"""Exception hierarchy for the payment integration core.

Every error carries an ``ErrorKind`` tag so callers can branch on the kind
(``match exc.kind``) instead of on the concrete class.

Error codes follow pattern: [CATEGORY][NUMBER]
- WHK: Webhook ingestion errors (001-099)
- DSP: Dispute evidence errors (100-199)
- PRV: Payment provider errors (200-299)
- REQ: Request errors (300-399)
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    SIGNATURE_INVALID = "signature_invalid"
    DUPLICATE_DELIVERY = "duplicate_delivery"
    NORMALIZATION_FAILURE = "normalization_failure"
    ENTITY_NOT_FOUND = "entity_not_found"
    PROVIDER_CONFIGURATION_MISSING = "provider_configuration_missing"
    PROVIDER_CALL_FAILURE = "provider_call_failure"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"


class GivingCoreException(Exception):
    """Base exception for all payment core errors."""

    kind: ErrorKind = ErrorKind.BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "kind": self.kind.value,
                "details": self.details,
            }
        }


# ============================================================================
# WEBHOOK ERRORS (WHK001-099)
# ============================================================================

class SignatureInvalidError(GivingCoreException):
    """Webhook signature missing or does not match the raw body."""

    kind = ErrorKind.SIGNATURE_INVALID

    def __init__(self, provider: str, reason: str = "Invalid signature"):
        super().__init__(
            message=reason,
            code="WHK001",
            status_code=400,
            details={"provider": provider},
        )


class NormalizationError(GivingCoreException):
    """Webhook payload could not be parsed into an internal event."""

    kind = ErrorKind.NORMALIZATION_FAILURE

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(
            message=message,
            code="WHK002",
            status_code=400,
            details={"provider": provider} if provider else {},
        )


class EntityNotFoundError(GivingCoreException):
    """A webhook referenced a local record that does not exist."""

    kind = ErrorKind.ENTITY_NOT_FOUND

    def __init__(self, entity: str, reference: str | None):
        super().__init__(
            message=f"{entity} not found for reference {reference!r}",
            code="WHK003",
            status_code=404,
            details={"entity": entity, "reference": reference},
        )


# ============================================================================
# DISPUTE ERRORS (DSP100-199)
# ============================================================================

class NotFoundError(GivingCoreException):
    """Requested dispute or evidence row does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, code="DSP100", status_code=404, details=details)


class BadRequestError(GivingCoreException):
    """Input is missing fields the target provider requires."""

    kind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, code="REQ300", status_code=400, details=details)


# ============================================================================
# PROVIDER ERRORS (PRV200-299)
# ============================================================================

class ProviderNotConfiguredError(GivingCoreException):
    """A provider secret or key is absent. Operator error, not a client error."""

    kind = ErrorKind.PROVIDER_CONFIGURATION_MISSING

    def __init__(self, provider: str):
        super().__init__(
            message=f"{provider} is not configured",
            code="PRV200",
            status_code=500,
            details={"provider": provider},
        )


class ProviderCallError(GivingCoreException):
    """Network or HTTP failure while calling a payment provider."""

    kind = ErrorKind.PROVIDER_CALL_FAILURE

    def __init__(self, provider: str, message: str, provider_status: int | None = None):
        super().__init__(
            message=f"{provider} error: {message}",
            code="PRV201",
            status_code=502,
            details={"provider": provider, "provider_status": provider_status},
        )
