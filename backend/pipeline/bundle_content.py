# pipeline/bundle_content.py
# ============================================================================
# BUNDLE CONTENT SUB-RESOURCE
# ============================================================================
# List / add / remove the uploads attached to a bundle. Every stored shape
# (contentItems ids, detailedContentItems, parallel url/title/thumbnail
# arrays) is rewritten together so they never drift apart.
# ============================================================================

from typing import Any

import structlog

from errors import BadRequestError, BundleNotFound, NotFoundError, PermissionDeniedError
from pipeline.content_resolver import ContentResolver, normalize_item
from pipeline.purchase_writer import PURCHASES
from schemas.models import ContentItem, utcnow_iso
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="bundle_content")


def upload_owner(upload: dict) -> str:
    return upload.get("uid") or upload.get("userId") or ""


def content_fields(items: list[ContentItem]) -> dict[str, Any]:
    """All stored content shapes derived from one item list."""
    return {
        "contentItems": [item.id for item in items],
        "detailedContentItems": [item.to_document() for item in items],
        "contentUrls": [item.file_url for item in items],
        "contentTitles": [item.title for item in items],
        "contentThumbnails": [item.thumbnail_url for item in items],
        "updatedAt": utcnow_iso(),
    }


class BundleContentService:

    def __init__(self, store: IDocumentStore, resolver: ContentResolver):
        self.store = store
        self.resolver = resolver

    async def _load(self, bundle_id: str) -> tuple[str, dict]:
        collection, bundle = await self.resolver.load_bundle(bundle_id)
        if bundle is None:
            raise BundleNotFound(bundle_id)
        return collection, bundle

    async def _load_owned(self, bundle_id: str, uid: str) -> tuple[str, dict]:
        collection, bundle = await self._load(bundle_id)
        if bundle.get("creatorId") != uid:
            logger.warning("bundle_owner_mismatch", bundle_id=bundle_id, uid=uid)
            raise PermissionDeniedError("Forbidden")
        return collection, bundle

    async def _has_purchased(self, bundle_id: str, uid: str) -> bool:
        rows = await self.store.where(PURCHASES, "buyerUid", uid)
        return any(row.data.get("bundleId") == bundle_id for row in rows)

    async def _current_items(self, bundle_id: str, bundle: dict) -> list[ContentItem]:
        return await self.resolver.resolve_document(bundle_id, bundle)

    async def list_content(self, bundle_id: str, uid: str) -> dict[str, Any]:
        _, bundle = await self._load(bundle_id)
        if bundle.get("creatorId") != uid and not await self._has_purchased(bundle_id, uid):
            raise PermissionDeniedError("Forbidden")
        items = await self._current_items(bundle_id, bundle)
        return {
            "success": True,
            "bundleId": bundle_id,
            "items": [item.to_document() for item in items],
            "count": len(items),
        }

    async def add_content(self, bundle_id: str, uid: str, upload_ids: list[str]) -> dict[str, Any]:
        if not upload_ids:
            raise BadRequestError("uploadIds must be a non-empty array")
        collection, bundle = await self._load_owned(bundle_id, uid)

        new_items = []
        for upload_id in dict.fromkeys(upload_ids):
            upload = await self.store.get("uploads", upload_id)
            if upload is None:
                raise NotFoundError(f"Upload {upload_id} not found")
            if upload_owner(upload) != uid:
                raise PermissionDeniedError(f"Upload {upload_id} does not belong to you")
            new_items.append(normalize_item({**upload, "id": upload_id}, len(new_items)))

        current = await self._current_items(bundle_id, bundle)
        known = {item.id for item in current}
        merged = current + [item for item in new_items if item.id not in known]

        await self.store.update(collection, bundle_id, content_fields(merged))
        logger.info(
            "bundle_content_added",
            bundle_id=bundle_id,
            added=len(merged) - len(current),
            total=len(merged),
        )
        return {"success": True, "contentItems": [item.id for item in merged]}

    async def remove_content(self, bundle_id: str, uid: str, upload_id: str) -> dict[str, Any]:
        if not upload_id:
            raise BadRequestError("uploadId is required")
        collection, bundle = await self._load_owned(bundle_id, uid)

        current = await self._current_items(bundle_id, bundle)
        remaining = [item for item in current if item.id != upload_id]
        await self.store.update(collection, bundle_id, content_fields(remaining))
        logger.info(
            "bundle_content_removed",
            bundle_id=bundle_id,
            upload_id=upload_id,
            removed=len(current) - len(remaining),
        )
        return {"success": True, "contentItems": [item.id for item in remaining]}
