# services/payments.py
# ============================================================================
# PAYMENT PROVIDER — Stripe (+ Connect) behind an interface
# ============================================================================
# Stripe objects are converted to plain dicts at this boundary so nothing
# downstream depends on the SDK's object model.
# ============================================================================

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import stripe
import structlog

from errors import UpstreamServiceError, WebhookSignatureError

logger = structlog.get_logger().bind(component="payments")


def to_plain(obj: Any) -> Any:
    """Recursively convert Stripe objects into plain dicts and lists."""
    if isinstance(obj, stripe.StripeObject):
        # StripeObject renders itself as JSON
        return json.loads(str(obj))
    if isinstance(obj, dict):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    return obj


class IPaymentProvider(ABC):

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a webhook signature and return the parsed event."""
        pass

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> dict:
        pass

    @abstractmethod
    async def retrieve_payment_intent(
        self, payment_intent_id: str, stripe_account: Optional[str] = None
    ) -> dict:
        pass

    @abstractmethod
    async def find_session_by_payment_intent(
        self, payment_intent_id: str, stripe_account: Optional[str] = None
    ) -> Optional[dict]:
        pass

    @abstractmethod
    async def retrieve_customer(self, customer_id: str) -> dict:
        pass

    @abstractmethod
    async def create_product(
        self, name: str, description: str, metadata: dict, stripe_account: str
    ) -> dict:
        pass

    @abstractmethod
    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        metadata: dict,
        stripe_account: str,
    ) -> dict:
        pass


class StripePaymentProvider(IPaymentProvider):
    """
    Stripe SDK adapter.

    The SDK is blocking; each call runs in a worker thread. SDK errors are
    re-raised as UpstreamServiceError so the API layer maps them uniformly.
    """

    def __init__(self, secret_key: str, webhook_secret: str):
        self._webhook_secret = webhook_secret
        stripe.api_key = secret_key

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if not signature:
            raise WebhookSignatureError("No signature")
        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError("Invalid signature") from e
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookSignatureError("Malformed event payload") from e

    async def _call(self, operation: str, fn, *args, **kwargs) -> dict:
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error(
                "stripe_call_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise UpstreamServiceError(
                f"Stripe {operation} failed",
                details={"stripeError": str(e), "type": type(e).__name__},
            ) from e
        return to_plain(result)

    async def retrieve_session(self, session_id: str) -> dict:
        return await self._call(
            "session_retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent", "line_items"],
        )

    async def retrieve_payment_intent(
        self, payment_intent_id: str, stripe_account: Optional[str] = None
    ) -> dict:
        kwargs = {"stripe_account": stripe_account} if stripe_account else {}
        return await self._call(
            "payment_intent_retrieve",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            **kwargs,
        )

    async def find_session_by_payment_intent(
        self, payment_intent_id: str, stripe_account: Optional[str] = None
    ) -> Optional[dict]:
        kwargs = {"stripe_account": stripe_account} if stripe_account else {}
        listing = await self._call(
            "session_list",
            stripe.checkout.Session.list,
            payment_intent=payment_intent_id,
            limit=1,
            **kwargs,
        )
        sessions = listing.get("data") or []
        return sessions[0] if sessions else None

    async def retrieve_customer(self, customer_id: str) -> dict:
        return await self._call(
            "customer_retrieve", stripe.Customer.retrieve, customer_id
        )

    async def create_product(
        self, name: str, description: str, metadata: dict, stripe_account: str
    ) -> dict:
        return await self._call(
            "product_create",
            stripe.Product.create,
            name=name,
            description=description,
            metadata=metadata,
            stripe_account=stripe_account,
        )

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        metadata: dict,
        stripe_account: str,
    ) -> dict:
        return await self._call(
            "price_create",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=currency,
            metadata=metadata,
            stripe_account=stripe_account,
        )
