"""
Stripe Webhook Handling
=======================
Signature-verified entry point for Stripe events.

- Signature checked BEFORE anything is parsed or written (400 on failure)
- Raw event archived best-effort in ``stripeEvents``
- Router pattern: handlers registered per event type
- Handler errors propagate so the API answers 500 and Stripe redelivers

pip install stripe structlog
"""

import uuid
from typing import Any, Callable, Optional

import structlog

from pipeline.memberships import MembershipService
from pipeline.purchase_writer import PurchaseRecordWriter, item_id_from_metadata
from schemas.models import utcnow_iso
from services.payments import IPaymentProvider
from storage.document_store import IDocumentStore

WebhookHandler = Callable[[dict, str], Any]


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """
    Maps event types to handlers.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("type", "unknown")
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("unhandled_event_type", event_type=event_type)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


def is_bundle_purchase(session: dict) -> bool:
    metadata = session.get("metadata") or {}
    return metadata.get("contentType") == "bundle" or bool(item_id_from_metadata(metadata))


# =============================================================================
# STRIPE WEBHOOK HANDLER
# =============================================================================

class StripeWebhookHandler:
    """
    Verifies, archives and routes Stripe events.

    Example:
        handler = StripeWebhookHandler(payments, store, writer, memberships)
        result = await handler.handle(raw_body, request.headers["stripe-signature"])
    """

    def __init__(
        self,
        payments: IPaymentProvider,
        store: IDocumentStore,
        writer: PurchaseRecordWriter,
        memberships: MembershipService,
    ):
        self.payments = payments
        self.store = store
        self.writer = writer
        self.memberships = memberships
        self.router = WebhookRouter()
        self._register_handlers()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="stripe_webhook",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    def _register_handlers(self):
        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, correlation_id: str):
            return await self._on_checkout_completed(event, correlation_id)

        @self.router.register("customer.subscription.updated")
        async def handle_subscription_updated(event: dict, correlation_id: str):
            membership = await self.memberships.handle_subscription_updated(
                event["data"]["object"]
            )
            return {"membership": membership.status if membership else None}

        @self.router.register("customer.subscription.deleted")
        async def handle_subscription_deleted(event: dict, correlation_id: str):
            membership = await self.memberships.handle_subscription_deleted(
                event["data"]["object"]
            )
            return {"membership": membership.status if membership else None}

    async def handle(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify then process one delivery. Raises on signature or handler failure."""
        event = self.payments.construct_event(payload, signature)

        event_type = event.get("type", "unknown")
        event_id = event.get("id", "unknown")
        correlation_id = event_id
        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, stripe_event_id=event_id)

        await self._archive_event(event, log)

        try:
            result = await self.router.route(event, correlation_id)
        except Exception as e:
            log.error(
                "webhook_handler_failed",
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        log.info("webhook_processed", event_type=event_type, handled=self.router.handles(event_type))
        return {
            "received": True,
            "eventType": event_type,
            "handled": self.router.handles(event_type),
            **(result or {}),
        }

    async def _archive_event(self, event: dict, log) -> None:
        try:
            await self.store.set(
                "stripeEvents",
                event.get("id") or self.store.new_id("stripeEvents"),
                {
                    "type": event.get("type"),
                    "account": event.get("account"),
                    "livemode": event.get("livemode", False),
                    "payload": event,
                    "receivedAt": utcnow_iso(),
                },
            )
        except Exception as e:
            log.warning("webhook_archive_failed", error=str(e))

    async def _on_checkout_completed(self, event: dict, correlation_id: str) -> dict:
        session = event["data"]["object"]
        log = self._get_logger(correlation_id)

        if is_bundle_purchase(session):
            log.info("bundle_purchase_detected", session_id=session.get("id"))
            purchase = await self.writer.record_purchase(session, source="stripe_webhook")
            return {"purchaseId": purchase.id, "contentCount": purchase.content_count}

        log.info("subscription_checkout_detected", session_id=session.get("id"))
        membership = await self.memberships.handle_checkout_completed(session)
        return {"membership": membership.status if membership else None}
