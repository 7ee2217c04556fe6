# services/__init__.py
# ============================================================================
# CREATOR BUNDLES BACKEND — SERVICES MODULE
# ============================================================================
# External collaborators: Firebase Auth, Stripe, SendGrid
# ============================================================================

from services.auth_service import (
    AuthUser,
    IAuthProvider,
    FirebaseAuthProvider,
    InMemoryAuthProvider,
    bearer_token,
)

from services.email_service import (
    EmailService,
    IEmailSender,
    InMemoryEmailSender,
    OutgoingEmail,
    SendGridEmailSender,
)

from services.payments import (
    IPaymentProvider,
    StripePaymentProvider,
    to_plain,
)

__all__ = [
    # Auth
    "AuthUser",
    "IAuthProvider",
    "FirebaseAuthProvider",
    "InMemoryAuthProvider",
    "bearer_token",
    # Email
    "EmailService",
    "IEmailSender",
    "InMemoryEmailSender",
    "OutgoingEmail",
    "SendGridEmailSender",
    # Payments
    "IPaymentProvider",
    "StripePaymentProvider",
    "to_plain",
]
