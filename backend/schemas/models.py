# schemas/models.py
# ============================================================================
# DOCUMENT & API MODELS
# ============================================================================
# Firestore documents use camelCase field names. Models expose snake_case
# attributes with camelCase aliases; use to_document() when writing.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def epoch_ms() -> int:
    return int(utcnow().timestamp() * 1000)


class DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]):
        return cls.model_validate(data)


# ============================================================================
# ENUMS
# ============================================================================

class ContentType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class MembershipPlan(str, Enum):
    FREE = "free"
    CREATOR_PRO = "creator_pro"


# ============================================================================
# CONTENT
# ============================================================================

class ContentItem(DocumentModel):
    """One deliverable file inside a bundle. Unknown legacy fields survive."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: str
    title: str = "Untitled"
    file_url: str = ""
    thumbnail_url: str = ""
    mime_type: str = "video/mp4"
    file_size: int = 0
    duration: Optional[float] = None
    content_type: ContentType = ContentType.VIDEO


# ============================================================================
# PURCHASE
# ============================================================================

class Purchase(DocumentModel):
    """Durable access grant; id is the Stripe session (or payment intent) id."""

    id: str
    bundle_id: str
    product_box_id: str
    bundle_title: str = "Untitled Bundle"
    bundle_description: str = ""
    bundle_thumbnail_url: str = ""

    buyer_uid: str
    buyer_email: str = ""
    buyer_name: str = "Anonymous User"
    is_guest_purchase: bool = False
    is_authenticated: bool = False

    creator_id: str = "unknown"
    creator_name: str = "Unknown Creator"
    creator_username: str = "unknown"

    price: float = 0.0
    purchase_amount: int = 0
    currency: str = "usd"
    status: str = "completed"

    bundle_content: list[ContentItem] = Field(default_factory=list)
    item_names: list[str] = Field(default_factory=list)
    content_count: int = 0
    bundle_total_size: int = 0
    bundle_total_duration: float = 0

    access_token: str
    session_id: str
    payment_intent_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    source: str = "stripe_webhook"

    created_at: str = Field(default_factory=utcnow_iso)
    completed_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)

    @computed_field(alias="userId")
    @property
    def user_id(self) -> str:
        return self.buyer_uid


# ============================================================================
# ACCOUNTS
# ============================================================================

class GuestAccount(DocumentModel):
    uid: str
    email: str
    display_name: str
    username: str
    is_guest_created: bool = True
    email_verified: bool = False
    plan: str = MembershipPlan.FREE.value
    created_at: str = Field(default_factory=utcnow_iso)


class Membership(DocumentModel):
    uid: str
    plan: MembershipPlan = MembershipPlan.FREE
    status: str = "inactive"
    is_active: bool = False
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[str] = None
    features: dict[str, Any] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utcnow_iso)


# ============================================================================
# BUNDLE JOBS
# ============================================================================

class BundleDraft(DocumentModel):
    """What a creator submits to have a bundle built."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    content_ids: list[str] = Field(..., min_length=1)
    category: str = "Mixed Media"
    tags: list[str] = Field(default_factory=list)

    @field_validator("content_ids")
    @classmethod
    def dedupe_content_ids(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(i for i in v if i))


class BundleJob(DocumentModel):
    id: str
    user_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = "Initializing..."
    bundle_data: BundleDraft
    bundle_id: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    completed_at: Optional[str] = None

    def public_view(self) -> dict[str, Any]:
        """Fields returned to the polling client."""
        return self.model_dump(
            by_alias=True,
            mode="json",
            include={
                "id", "status", "progress", "current_step", "bundle_id",
                "error", "retry_count", "max_retries", "created_at",
                "updated_at", "completed_at",
            },
        )


# ============================================================================
# API REQUESTS
# ============================================================================

class VerifyPurchaseRequest(DocumentModel):
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    id_token: Optional[str] = None


class BundleJobRequest(DocumentModel):
    """Loose body; business validation happens in the route (400, not 422)."""

    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    content_ids: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class AddContentRequest(DocumentModel):
    upload_ids: list[str] = Field(default_factory=list)


class RemoveContentRequest(DocumentModel):
    upload_id: Optional[str] = None
