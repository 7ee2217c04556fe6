# pipeline/memberships.py
# ============================================================================
# CREATOR MEMBERSHIPS — subscription state mirrored from Stripe
# ============================================================================

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from schemas.models import Membership, MembershipPlan, utcnow_iso
from services.auth_service import IAuthProvider
from services.payments import IPaymentProvider
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="memberships")

MEMBERSHIPS = "memberships"
ACTIVE_STATUSES = {"active", "trialing"}

FREE_FEATURES: dict[str, Any] = {
    "unlimitedDownloads": False,
    "premiumContent": False,
    "noWatermark": False,
    "prioritySupport": False,
    "platformFeePercentage": 20,
    "maxVideosPerBundle": 10,
    "maxBundles": 2,
}

PRO_FEATURES: dict[str, Any] = {
    "unlimitedDownloads": True,
    "premiumContent": True,
    "noWatermark": True,
    "prioritySupport": True,
    "platformFeePercentage": 10,
    "maxVideosPerBundle": None,
    "maxBundles": None,
}


def compute_features(plan: MembershipPlan, is_active: bool) -> dict[str, Any]:
    if plan == MembershipPlan.CREATOR_PRO and is_active:
        return dict(PRO_FEATURES)
    return dict(FREE_FEATURES)


def _period_end(subscription: dict) -> Optional[str]:
    ts = subscription.get("current_period_end")
    if not ts:
        items = (subscription.get("items") or {}).get("data") or []
        ts = items[0].get("current_period_end") if items else None
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


class MembershipService:
    """Keeps memberships/{uid} in sync with Stripe subscriptions."""

    def __init__(
        self,
        store: IDocumentStore,
        auth: IAuthProvider,
        payments: IPaymentProvider,
    ):
        self.store = store
        self.auth = auth
        self.payments = payments

    # =========================================================================
    # UID RESOLUTION
    # =========================================================================

    async def uid_for_email(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        user = await self.auth.get_user_by_email(email)
        if user:
            return user.uid
        rows = await self.store.where("users", "email", email, limit=1)
        return rows[0].id if rows else None

    async def resolve_uid_from_session(self, session: dict) -> Optional[str]:
        metadata = session.get("metadata") or {}
        uid = metadata.get("buyerUid") or session.get("client_reference_id")
        if uid:
            return uid
        email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
        return await self.uid_for_email(email)

    async def resolve_uid_from_subscription(self, subscription: dict) -> Optional[str]:
        uid = (subscription.get("metadata") or {}).get("buyerUid")
        if uid:
            return uid
        customer_id = subscription.get("customer")
        if not customer_id:
            return None
        customer = await self.payments.retrieve_customer(customer_id)
        return await self.uid_for_email(customer.get("email"))

    # =========================================================================
    # WRITES
    # =========================================================================

    async def upsert_membership(
        self,
        uid: str,
        plan: MembershipPlan,
        status: str,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        price_id: Optional[str] = None,
        current_period_end: Optional[str] = None,
    ) -> Membership:
        is_active = status in ACTIVE_STATUSES
        membership = Membership(
            uid=uid,
            plan=plan,
            status=status,
            is_active=is_active,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            price_id=price_id,
            current_period_end=current_period_end,
            features=compute_features(plan, is_active),
            updated_at=utcnow_iso(),
        )
        document = membership.to_document()
        if not await self.store.exists(MEMBERSHIPS, uid):
            document["createdAt"] = membership.updated_at
        await self.store.set(MEMBERSHIPS, uid, document, merge=True)
        logger.info("membership_upserted", uid=uid, plan=plan.value, status=status)
        return membership

    async def handle_checkout_completed(self, session: dict) -> Optional[Membership]:
        uid = await self.resolve_uid_from_session(session)
        if not uid:
            logger.warning("membership_uid_unresolved", session_id=session.get("id"))
            return None
        return await self.upsert_membership(
            uid,
            MembershipPlan.CREATOR_PRO,
            "active",
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
        )

    async def handle_subscription_updated(self, subscription: dict) -> Optional[Membership]:
        uid = await self.resolve_uid_from_subscription(subscription)
        if not uid:
            logger.warning("membership_uid_unresolved", subscription_id=subscription.get("id"))
            return None
        status = subscription.get("status") or "active"
        plan = MembershipPlan.CREATOR_PRO if status in ACTIVE_STATUSES else MembershipPlan.FREE
        return await self.upsert_membership(
            uid,
            plan,
            status,
            stripe_customer_id=subscription.get("customer"),
            stripe_subscription_id=subscription.get("id"),
            price_id=_price_id(subscription),
            current_period_end=_period_end(subscription),
        )

    async def handle_subscription_deleted(self, subscription: dict) -> Optional[Membership]:
        uid = await self.resolve_uid_from_subscription(subscription)
        if not uid:
            logger.warning("membership_uid_unresolved", subscription_id=subscription.get("id"))
            return None
        return await self.upsert_membership(
            uid,
            MembershipPlan.FREE,
            "canceled",
            stripe_customer_id=subscription.get("customer"),
            stripe_subscription_id=subscription.get("id"),
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_features(self, uid: str) -> dict[str, Any]:
        doc = await self.store.get(MEMBERSHIPS, uid)
        if not doc:
            return dict(FREE_FEATURES)
        try:
            plan = MembershipPlan(doc.get("plan", "free"))
        except ValueError:
            plan = MembershipPlan.FREE
        return compute_features(plan, bool(doc.get("isActive")))

    async def bundle_allowance(self, uid: str) -> tuple[int, Optional[int]]:
        """(bundles created so far, max bundles or None for unlimited)."""
        features = await self.get_features(uid)
        user = await self.store.get("users", uid) or {}
        return int(user.get("bundlesCreated") or 0), features.get("maxBundles")

    async def record_bundle_created(self, uid: str) -> None:
        await self.store.increment("users", uid, {"bundlesCreated": 1})
