"""
Purchase Record Writer
======================
Builds the durable purchase document from a completed Stripe checkout
session and writes it keyed by the session id.

Both the webhook and the verification endpoint call ``record_purchase`` for
the same session, possibly concurrently. Writes are full overwrites of the
same key with equivalent content, so the last writer wins and nothing is
duplicated. Sales counters are only bumped by the call that wins the
create of the session's ``saleCounters`` marker, so a race still counts once.
"""

import secrets
from typing import Any, Optional

import structlog

from errors import BadRequestError, BundleNotFound
from pipeline.content_resolver import ContentResolver
from pipeline.guest_provisioner import GuestAccountProvisioner
from schemas.models import Purchase, epoch_ms, utcnow_iso
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="purchase_writer")

PURCHASES = "bundlePurchases"
SALE_MARKERS = "saleCounters"


def user_purchases_collection(uid: str) -> str:
    return f"userPurchases/{uid}/purchases"


def generate_access_token() -> str:
    return f"access_{epoch_ms()}_{secrets.token_hex(5)[:9]}"


def resolve_price(bundle: dict, session: dict) -> float:
    """Bundle's own price wins when positive; otherwise what Stripe charged."""
    bundle_price = bundle.get("price") or bundle.get("amount") or 0
    try:
        bundle_price = float(bundle_price)
    except (TypeError, ValueError):
        bundle_price = 0.0
    if bundle_price > 0:
        return bundle_price
    return (session.get("amount_total") or 0) / 100


def session_buyer_email(session: dict) -> str:
    details = session.get("customer_details") or {}
    return details.get("email") or session.get("customer_email") or ""


def session_payment_intent_id(session: dict) -> Optional[str]:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


def item_id_from_metadata(metadata: dict) -> Optional[str]:
    return metadata.get("bundleId") or metadata.get("productBoxId")


class PurchaseRecordWriter:
    """
    Turns a checkout session into a Purchase.

    Example:
        writer = PurchaseRecordWriter(store, resolver, provisioner)
        purchase = await writer.record_purchase(session)
    """

    def __init__(
        self,
        store: IDocumentStore,
        resolver: ContentResolver,
        provisioner: GuestAccountProvisioner,
    ):
        self.store = store
        self.resolver = resolver
        self.provisioner = provisioner

    async def record_purchase(
        self,
        session: dict,
        source: str = "stripe_webhook",
        fallback_buyer_uid: Optional[str] = None,
    ) -> Purchase:
        session_id = session["id"]
        metadata = session.get("metadata") or {}
        log = logger.bind(session_id=session_id, source=source)

        item_id = item_id_from_metadata(metadata)
        if not item_id:
            log.error("purchase_missing_item_id", metadata=metadata)
            raise BadRequestError(
                "Missing bundle/productBox ID in session metadata",
                details={"sessionId": session_id},
            )

        existing = await self.store.get(PURCHASES, session_id)
        buyer_email = session_buyer_email(session)
        buyer_name = (session.get("customer_details") or {}).get("name") or ""
        if existing and existing.get("buyerUid"):
            # Re-delivery: keep the owner chosen by the first write
            buyer_uid = existing["buyerUid"]
            is_guest = bool(existing.get("isGuestPurchase"))
        else:
            buyer_uid, is_guest = await self._resolve_buyer(
                metadata, buyer_email, buyer_name, fallback_buyer_uid, log
            )

        collection, bundle = await self.resolver.load_bundle(item_id)
        if bundle is None:
            log.error("purchase_bundle_not_found", bundle_id=item_id)
            raise BundleNotFound(item_id)

        content = await self.resolver.resolve_document(item_id, bundle)
        if not content:
            log.warning("purchase_without_content", bundle_id=item_id)

        creator_id = metadata.get("creatorId") or bundle.get("creatorId") or "unknown"
        creator = await self._creator_info(creator_id, log)

        price = resolve_price(bundle, session)

        purchase = Purchase(
            id=session_id,
            bundle_id=item_id,
            product_box_id=item_id,
            bundle_title=bundle.get("title") or "Untitled Bundle",
            bundle_description=bundle.get("description") or "",
            bundle_thumbnail_url=(
                bundle.get("customPreviewThumbnail") or bundle.get("thumbnailUrl") or ""
            ),
            buyer_uid=buyer_uid,
            buyer_email=buyer_email,
            buyer_name=buyer_name or "Anonymous User",
            is_guest_purchase=is_guest,
            is_authenticated=not is_guest,
            creator_id=creator_id,
            creator_name=creator["name"],
            creator_username=creator["username"],
            price=price,
            purchase_amount=session.get("amount_total") or round(price * 100),
            currency=session.get("currency") or bundle.get("currency") or "usd",
            bundle_content=content,
            item_names=[item.title for item in content],
            content_count=len(content),
            bundle_total_size=sum(item.file_size for item in content),
            bundle_total_duration=sum(item.duration or 0 for item in content),
            access_token=(existing or {}).get("accessToken") or generate_access_token(),
            session_id=session_id,
            payment_intent_id=session_payment_intent_id(session),
            stripe_customer_id=session.get("customer"),
            source=source,
        )
        if existing and existing.get("createdAt"):
            purchase.created_at = existing["createdAt"]
            purchase.completed_at = existing.get("completedAt") or purchase.completed_at
        purchase.updated_at = utcnow_iso()

        document = purchase.to_document()
        await self.store.set(PURCHASES, session_id, document)
        await self.store.set(user_purchases_collection(buyer_uid), session_id, document)

        log.info(
            "purchase_recorded",
            bundle_id=item_id,
            buyer_uid=buyer_uid,
            is_guest=is_guest,
            content_count=len(content),
            price=price,
        )

        if existing is None and await self._claim_sale(session_id, item_id, source, log):
            await self._record_sales(collection, item_id, creator_id, price, log)

        return purchase

    async def _resolve_buyer(
        self,
        metadata: dict,
        buyer_email: str,
        buyer_name: str,
        fallback_buyer_uid: Optional[str],
        log,
    ) -> tuple[str, bool]:
        """Return (uid, is_guest_purchase)."""
        uid = metadata.get("buyer_user_id") or metadata.get("buyerUid") or fallback_buyer_uid
        if uid:
            return uid, False

        guest_checkout = metadata.get("is_guest_checkout") == "true"
        if not (guest_checkout and buyer_email):
            log.error(
                "purchase_missing_buyer",
                guest_checkout=guest_checkout,
                has_email=bool(buyer_email),
            )
            raise BadRequestError("Missing buyer UID and not a guest purchase")

        account = await self.provisioner.ensure_buyer_account(buyer_email, buyer_name or None)
        return account.uid, account.is_guest

    async def _creator_info(self, creator_id: str, log) -> dict[str, str]:
        fallback = {"name": "Unknown Creator", "username": "unknown"}
        if creator_id == "unknown":
            return fallback
        try:
            creator = await self.store.get("users", creator_id)
        except Exception as e:
            log.warning("creator_lookup_failed", creator_id=creator_id, error=str(e))
            return fallback
        if not creator:
            return fallback
        return {
            "name": creator.get("displayName") or creator.get("name")
            or creator.get("username") or fallback["name"],
            "username": creator.get("username") or fallback["username"],
        }

    async def _claim_sale(self, session_id: str, bundle_id: str, source: str, log) -> bool:
        marker = {
            "sessionId": session_id,
            "bundleId": bundle_id,
            "source": source,
            "createdAt": utcnow_iso(),
        }
        try:
            claimed = await self.store.create(SALE_MARKERS, session_id, marker)
        except Exception as e:
            log.warning("sale_marker_failed", bundle_id=bundle_id, error=str(e))
            return False
        if not claimed:
            log.info("sale_already_counted", bundle_id=bundle_id)
        return claimed

    async def _record_sales(
        self,
        collection: Optional[str],
        bundle_id: str,
        creator_id: str,
        price: float,
        log,
    ) -> None:
        amounts: dict[str, Any] = {"totalSales": 1, "totalRevenue": price}
        try:
            await self.store.increment(collection or "bundles", bundle_id, amounts)
            if creator_id != "unknown":
                await self.store.increment("users", creator_id, amounts)
        except Exception as e:
            log.warning("sales_stats_update_failed", bundle_id=bundle_id, error=str(e))

