# pipeline/__init__.py
# ============================================================================
# CREATOR BUNDLES BACKEND — PURCHASE-TO-ACCESS PIPELINE
# ============================================================================

from pipeline.content_resolver import ContentResolver
from pipeline.guest_provisioner import GuestAccountProvisioner
from pipeline.purchase_writer import PurchaseRecordWriter
from pipeline.verification import PurchaseVerifier
from pipeline.webhooks import StripeWebhookHandler, WebhookRouter

__all__ = [
    "ContentResolver",
    "GuestAccountProvisioner",
    "PurchaseRecordWriter",
    "PurchaseVerifier",
    "StripeWebhookHandler",
    "WebhookRouter",
]
