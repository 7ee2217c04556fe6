"""
Bundle Creation Jobs - Best-effort background builder
=====================================================
Creating a bundle touches Firestore and Stripe several times, so the API
returns a job id immediately and the work runs as an in-process asyncio task.
The job document is the only channel back to the client, which polls it.

State machine:
    queued -> processing -> completed
                         -> retrying -> processing ...
                         -> failed (after maxRetries retries)

Features:
- Progress milestones written to the job document at every step
- Exponential backoff between retries (base * 2^retryCount seconds)
- Errors are captured in the job document, never raised out of the task

Known gaps:
- Retries live in process memory; a restart drops pending retries
- Stripe products/prices created before a failure are not cleaned up
"""

import asyncio
from typing import Any, Optional

import structlog

from errors import (
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
    PipelineError,
)
from pipeline.content_resolver import (
    format_duration,
    format_file_size,
    format_from_mime,
    normalize_item,
)
from pipeline.memberships import MembershipService
from schemas.models import (
    BundleDraft,
    BundleJob,
    ContentItem,
    JobStatus,
    utcnow_iso,
)
from services.payments import IPaymentProvider
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="bundle_jobs")

JOBS = "bundle_jobs"


def content_metadata(items: list[ContentItem]) -> dict[str, Any]:
    """Aggregate stats stored on the bundle for listing pages."""
    total_size = sum(item.file_size for item in items)
    total_duration = sum(item.duration or 0 for item in items)
    breakdown = {"videos": 0, "audio": 0, "images": 0, "documents": 0}
    key = {"video": "videos", "audio": "audio", "image": "images", "document": "documents"}
    for item in items:
        breakdown[key[item.content_type.value]] += 1
    return {
        "totalItems": len(items),
        "totalDuration": total_duration,
        "totalDurationFormatted": format_duration(total_duration),
        "totalSize": total_size,
        "totalSizeFormatted": format_file_size(total_size),
        "formats": sorted({format_from_mime(item.mime_type) for item in items}),
        "contentBreakdown": breakdown,
    }


def connected_account_id(account: dict) -> Optional[str]:
    return account.get("stripe_user_id") or account.get("stripeAccountId")


class BundleJobQueue:
    """
    Submits and runs bundle creation jobs.

    Example:
        queue = BundleJobQueue(store, payments, memberships)
        job_id = await queue.submit(uid, draft)
        job = await queue.get_status(job_id, uid)
    """

    def __init__(
        self,
        store: IDocumentStore,
        payments: IPaymentProvider,
        memberships: MembershipService,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
    ):
        self.store = store
        self.payments = payments
        self.memberships = memberships
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def submit(self, user_id: str, draft: BundleDraft) -> str:
        job_id = self.store.new_id(JOBS)
        job = BundleJob(
            id=job_id,
            user_id=user_id,
            bundle_data=draft,
            max_retries=self.max_retries,
        )
        await self.store.set(JOBS, job_id, job.to_document())
        logger.info("bundle_job_queued", job_id=job_id, user_id=user_id, items=len(draft.content_ids))
        self._spawn(self.process(job_id))
        return job_id

    async def get_status(self, job_id: str, user_id: str) -> BundleJob:
        doc = await self.store.get(JOBS, job_id)
        if doc is None:
            raise NotFoundError("Job not found")
        job = BundleJob.from_document(doc)
        if job.user_id != user_id:
            raise PermissionDeniedError("Unauthorized")
        return job

    async def drain(self) -> None:
        """Wait for every running and scheduled job task (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process(self, job_id: str) -> None:
        """Run one attempt. Never raises."""
        log = logger.bind(job_id=job_id)
        try:
            doc = await self.store.get(JOBS, job_id)
            if doc is None:
                log.error("bundle_job_missing")
                return
            job = BundleJob.from_document(doc)
            await self._update(job_id, status=JobStatus.PROCESSING, progress=5, currentStep="Starting...")
            bundle_id = await self._build_bundle(job, log)
            await self._update(
                job_id,
                status=JobStatus.COMPLETED,
                progress=100,
                currentStep="Bundle created successfully!",
                bundleId=bundle_id,
                error=None,
                completedAt=utcnow_iso(),
            )
            log.info("bundle_job_completed", bundle_id=bundle_id, retry_count=job.retry_count)
        except Exception as e:
            await self._handle_failure(job_id, e, log)

    # =========================================================================
    # RETRY
    # =========================================================================

    async def _handle_failure(self, job_id: str, error: Exception, log) -> None:
        message = error.message if isinstance(error, PipelineError) else str(error)
        try:
            doc = await self.store.get(JOBS, job_id) or {}
            retry_count = int(doc.get("retryCount", 0))
            max_retries = int(doc.get("maxRetries", self.max_retries))

            if retry_count < max_retries:
                delay = self.backoff_base_seconds * (2 ** retry_count)
                await self._update(
                    job_id,
                    status=JobStatus.RETRYING,
                    currentStep=f"Retrying... ({retry_count + 1}/{max_retries})",
                    retryCount=retry_count + 1,
                    error=message,
                )
                log.warning(
                    "bundle_job_retry_scheduled",
                    attempt=retry_count + 1,
                    max_retries=max_retries,
                    delay_seconds=delay,
                    error=message,
                )
                self._spawn(self._retry_later(job_id, delay))
            else:
                await self._update(
                    job_id,
                    status=JobStatus.FAILED,
                    currentStep="Bundle creation failed",
                    error=message,
                )
                log.error("bundle_job_failed", retry_count=retry_count, error=message)
        except Exception as e:
            log.error("bundle_job_failure_unrecorded", error=str(e), original_error=message)

    async def _retry_later(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.process(job_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _update(self, job_id: str, **fields: Any) -> None:
        if "status" in fields and isinstance(fields["status"], JobStatus):
            fields["status"] = fields["status"].value
        fields["updatedAt"] = utcnow_iso()
        await self.store.update(JOBS, job_id, fields)

    async def _build_bundle(self, job: BundleJob, log) -> str:
        uid = job.user_id
        draft = job.bundle_data

        await self._update(job.id, progress=10, currentStep="Checking bundle limits...")
        created, max_bundles = await self.memberships.bundle_allowance(uid)
        if max_bundles is not None and created >= max_bundles:
            raise BadRequestError(
                f"Bundle limit reached ({created}/{max_bundles}). Upgrade to create more bundles."
            )

        await self._update(job.id, progress=20, currentStep="Verifying Stripe account...")
        account = await self.store.get("connectedStripeAccounts", uid)
        if not account or not (account.get("charges_enabled") and account.get("details_submitted")):
            raise BadRequestError("Stripe account not fully set up")
        stripe_account = connected_account_id(account)
        if not stripe_account:
            raise BadRequestError("Stripe account id missing")

        await self._update(job.id, progress=30, currentStep="Processing content items...")
        items = await self._load_content(uid, draft.content_ids, log)
        if not items:
            raise BadRequestError("No valid content items found for the provided IDs")

        await self._update(job.id, progress=50, currentStep="Creating Stripe product...")
        product = await self.payments.create_product(
            name=draft.title,
            description=draft.description,
            metadata={"creatorId": uid, "contentCount": str(len(items)), "jobId": job.id},
            stripe_account=stripe_account,
        )

        await self._update(job.id, progress=70, currentStep="Setting up pricing...")
        price = await self.payments.create_price(
            product_id=product["id"],
            unit_amount=round(draft.price * 100),
            currency="usd",
            metadata={"creatorId": uid},
            stripe_account=stripe_account,
        )

        await self._update(job.id, progress=85, currentStep="Finalizing bundle...")
        bundle_id = self.store.new_id("bundles")
        now = utcnow_iso()
        bundle = {
            "id": bundle_id,
            "title": draft.title,
            "description": draft.description,
            "price": draft.price,
            "currency": "usd",
            "category": draft.category,
            "tags": draft.tags,
            "creatorId": uid,
            "stripeProductId": product["id"],
            "stripePriceId": price["id"],
            "stripeAccountId": stripe_account,
            "status": "active",
            "active": True,
            "thumbnailUrl": next((i.thumbnail_url for i in items if i.thumbnail_url), ""),
            "detailedContentItems": [item.to_document() for item in items],
            "contentItems": [item.id for item in items],
            "contentUrls": [item.file_url for item in items],
            "contentTitles": [item.title for item in items],
            "contentThumbnails": [item.thumbnail_url for item in items],
            "contentMetadata": content_metadata(items),
            "totalSales": 0,
            "totalRevenue": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        await self.store.set("bundles", bundle_id, bundle)
        await self.memberships.record_bundle_created(uid)
        log.info("bundle_created", bundle_id=bundle_id, items=len(items), stripe_product=product["id"])
        return bundle_id

    async def _load_content(self, uid: str, content_ids: list[str], log) -> list[ContentItem]:
        items = []
        for content_id in content_ids:
            upload = await self.store.get("uploads", content_id)
            if upload is None:
                log.warning("bundle_job_upload_missing", content_id=content_id)
                continue
            if (upload.get("uid") or upload.get("userId")) != uid:
                log.warning("bundle_job_upload_not_owned", content_id=content_id)
                continue
            items.append(normalize_item({**upload, "id": content_id}, len(items)))
        return items
