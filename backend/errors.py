# errors.py
# ============================================================================
# PIPELINE ERRORS
# ============================================================================
# Every error the pipeline raises on purpose carries its HTTP status so the
# API layer can translate it without a lookup table.
# ============================================================================

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for expected, client-visible failures."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class BadRequestError(PipelineError):
    status_code = 400


class AuthenticationError(PipelineError):
    status_code = 401


class PermissionDeniedError(PipelineError):
    status_code = 403


class NotFoundError(PipelineError):
    status_code = 404


class BundleNotFound(NotFoundError):
    def __init__(self, bundle_id: str):
        super().__init__("Bundle not found", details={"bundleId": bundle_id})
        self.bundle_id = bundle_id


class AccountExistsError(PipelineError):
    """An auth account with this email already exists."""

    status_code = 409


class PaymentNotCompleted(BadRequestError):
    def __init__(self, payment_status: Optional[str], **details: Any):
        super().__init__(
            "Payment not completed",
            details={"paymentStatus": payment_status, **details},
        )
        self.payment_status = payment_status


class WebhookSignatureError(BadRequestError):
    pass


class UpstreamServiceError(PipelineError):
    """A collaborator (Stripe, Firebase, SendGrid) failed."""

    status_code = 502


class VerificationError(PipelineError):
    """
    Verification failure with diagnostics for the buyer-facing page.

    Wraps the underlying error's status, adding ``debug_info`` and a list of
    ``possible_causes`` the client shows next to the retry button.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        debug_info: dict[str, Any],
        possible_causes: list[str],
    ):
        super().__init__(message, status_code=status_code)
        self.debug_info = debug_info
        self.possible_causes = possible_causes

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "debugInfo": self.debug_info,
            "possibleCauses": self.possible_causes,
        }
