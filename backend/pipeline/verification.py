"""
Purchase Verification
=====================
Client-invoked fallback for the webhook. After checkout the buyer's browser
calls this with the session id (or payment intent id). If the webhook already
wrote the purchase it is returned as-is; otherwise the same writer runs here.

Failures carry ``debugInfo`` and ``possibleCauses`` so the purchase-success
page can show something actionable and prefill a support request.
"""

from typing import Any, Optional
from urllib.parse import quote

import structlog

from errors import (
    BadRequestError,
    PaymentNotCompleted,
    PipelineError,
    VerificationError,
)
from pipeline.purchase_writer import (
    PURCHASES,
    PurchaseRecordWriter,
    session_payment_intent_id,
)
from schemas.models import Purchase, utcnow_iso
from services.auth_service import IAuthProvider
from services.payments import IPaymentProvider
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="verification")

MAX_CLIENT_RETRIES = 3

POSSIBLE_CAUSES: dict[int, list[str]] = {
    400: [
        "The payment has not completed yet",
        "The checkout session is missing bundle information",
    ],
    401: [
        "Your login session expired; sign in again and retry",
    ],
    404: [
        "The bundle was removed by its creator after purchase",
        "The checkout session id is incorrect",
    ],
    502: [
        "The payment provider is temporarily unavailable",
        "The session belongs to a different Stripe account",
    ],
}
DEFAULT_CAUSES = [
    "A temporary server error occurred",
    "The purchase is still being processed; retry in a few seconds",
]


def session_from_payment_intent(intent: dict) -> dict:
    """Session-shaped record for payments made without a checkout session."""
    return {
        "id": intent["id"],
        "metadata": intent.get("metadata") or {},
        "amount_total": intent.get("amount_received") or intent.get("amount"),
        "currency": intent.get("currency"),
        "payment_intent": intent["id"],
        "payment_status": "paid" if intent.get("status") == "succeeded" else intent.get("status"),
        "customer": intent.get("customer"),
        "customer_details": {"email": intent.get("receipt_email")},
    }


class PurchaseVerifier:

    def __init__(
        self,
        store: IDocumentStore,
        payments: IPaymentProvider,
        auth: IAuthProvider,
        writer: PurchaseRecordWriter,
        support_email: str = "",
    ):
        self.store = store
        self.payments = payments
        self.auth = auth
        self.writer = writer
        self.support_email = support_email

    async def verify(
        self,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        id_token: Optional[str] = None,
        stripe_account: Optional[str] = None,
    ) -> dict[str, Any]:
        """Confirm payment and make sure a purchase record exists."""
        log = logger.bind(session_id=session_id, payment_intent_id=payment_intent_id)
        log.info("verification_started", has_token=bool(id_token))
        try:
            return await self._verify(session_id, payment_intent_id, id_token, stripe_account, log)
        except PipelineError as e:
            log.warning(
                "verification_failed",
                error=e.message,
                status_code=e.status_code,
                details=e.details,
            )
            raise VerificationError(
                e.message,
                status_code=e.status_code,
                debug_info=self._debug_info(session_id, payment_intent_id, e.details),
                possible_causes=POSSIBLE_CAUSES.get(e.status_code, DEFAULT_CAUSES),
            ) from e

    async def _verify(
        self,
        session_id: Optional[str],
        payment_intent_id: Optional[str],
        id_token: Optional[str],
        stripe_account: Optional[str],
        log,
    ) -> dict[str, Any]:
        if not session_id and not payment_intent_id:
            raise BadRequestError("Missing session ID or payment intent ID")

        buyer_uid = None
        if id_token:
            claims = await self.auth.verify_id_token(id_token)
            buyer_uid = claims["uid"]

        if session_id:
            method = "session"
            session = await self.payments.retrieve_session(session_id)
            payment_intent_id = session_payment_intent_id(session)
            intent = session.get("payment_intent") if isinstance(session.get("payment_intent"), dict) else None
            if session.get("payment_status") != "paid":
                raise PaymentNotCompleted(session.get("payment_status"), sessionId=session_id)
        else:
            method = "payment_intent"
            intent = await self.payments.retrieve_payment_intent(payment_intent_id, stripe_account)
            if intent.get("status") != "succeeded":
                raise PaymentNotCompleted(intent.get("status"), paymentIntentId=payment_intent_id)
            session = await self.payments.find_session_by_payment_intent(
                payment_intent_id, stripe_account
            )
            if session is None:
                session = session_from_payment_intent(intent)

        existing = await self._find_existing(session["id"], payment_intent_id)
        if existing is not None:
            log.info("verification_already_processed", purchase_id=existing.id)
            purchase, already_processed = existing, True
        else:
            purchase = await self.writer.record_purchase(
                session, source="verification", fallback_buyer_uid=buyer_uid
            )
            already_processed = False
            log.info("verification_recorded_purchase", purchase_id=purchase.id)

        return {
            "success": True,
            "alreadyProcessed": already_processed,
            "purchase": purchase.to_document(),
            "paymentIntent": {
                "id": payment_intent_id,
                "amount": (intent or {}).get("amount", session.get("amount_total")),
                "currency": (intent or {}).get("currency", session.get("currency")),
                "status": (intent or {}).get("status", "succeeded"),
            },
            "productBox": {
                "id": purchase.bundle_id,
                "title": purchase.bundle_title,
                "description": purchase.bundle_description,
                "price": purchase.price,
                "thumbnailUrl": purchase.bundle_thumbnail_url,
            },
            "creator": {
                "id": purchase.creator_id,
                "name": purchase.creator_name,
                "username": purchase.creator_username,
            },
            "verificationDetails": {
                "method": method,
                "verifiedAt": utcnow_iso(),
                "duplicateCheck": already_processed,
                "connectedAccount": stripe_account,
                "authenticatedUid": buyer_uid,
            },
        }

    async def _find_existing(
        self, purchase_id: str, payment_intent_id: Optional[str]
    ) -> Optional[Purchase]:
        doc = await self.store.get(PURCHASES, purchase_id)
        if doc is None and payment_intent_id:
            rows = await self.store.where(PURCHASES, "paymentIntentId", payment_intent_id, limit=1)
            doc = rows[0].data if rows else None
        return Purchase.from_document(doc) if doc else None

    def _debug_info(
        self,
        session_id: Optional[str],
        payment_intent_id: Optional[str],
        details: dict[str, Any],
    ) -> dict[str, Any]:
        timestamp = utcnow_iso()
        body = quote(
            f"Purchase verification failed.\n"
            f"Session: {session_id or '-'}\n"
            f"Payment intent: {payment_intent_id or '-'}\n"
            f"Time: {timestamp}"
        )
        return {
            "sessionId": session_id,
            "paymentIntentId": payment_intent_id,
            "timestamp": timestamp,
            "maxClientRetries": MAX_CLIENT_RETRIES,
            "supportLink": (
                f"mailto:{self.support_email}?subject={quote('Purchase verification issue')}&body={body}"
            ),
            **details,
        }
