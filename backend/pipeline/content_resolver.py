"""
Content Resolver
================
Turns a bundle id into the list of deliverable content items, whatever shape
the bundle document happens to store them in.

Bundles written by different generations of the app store content in
different places. Strategies are tried in a fixed order and the first one
that yields a non-empty list wins:

1. ``detailedContentItems`` on the bundle document
2. parallel arrays ``contentItems`` / ``contentUrls`` / ``contentTitles`` /
   ``contentThumbnails``
3. legacy list fields (``contents``, ``items``, ``videos``, ...)
4. ``bundleContent`` collection rows with a matching ``bundleId``
5. ``productBoxContent`` collection rows with a matching ``productBoxId``
6. ``uploads`` documents named by the bundle's ``contentItems`` ids

Resolution never raises. A failing strategy is logged and skipped; when all
of them come up empty the result is ``[]``.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from schemas.models import ContentItem, ContentType
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="content_resolver")

BUNDLE_COLLECTIONS = ("bundles", "productBoxes")
LEGACY_CONTENT_FIELDS = ("contents", "items", "videos", "files", "content", "bundleContent")


# =============================================================================
# FORMAT HELPERS (shared with the bundle job queue)
# =============================================================================

def content_type_from_mime(mime_type: Optional[str]) -> ContentType:
    mime = (mime_type or "").lower()
    if mime.startswith("video/"):
        return ContentType.VIDEO
    if mime.startswith("audio/"):
        return ContentType.AUDIO
    if mime.startswith("image/"):
        return ContentType.IMAGE
    if not mime:
        return ContentType.VIDEO
    return ContentType.DOCUMENT


def format_from_mime(mime_type: Optional[str]) -> str:
    """'video/mp4' -> 'mp4'; 'video/quicktime' -> 'mov'."""
    if not mime_type or "/" not in mime_type:
        return "unknown"
    subtype = mime_type.split("/", 1)[1].lower()
    return {"quicktime": "mov", "mpeg": "mp3", "x-matroska": "mkv"}.get(subtype, subtype)


def format_file_size(size_bytes: float) -> str:
    if not size_bytes or size_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 2):g} {units[unit]}"


def format_duration(seconds: float) -> str:
    """Render seconds as m:ss, or h:mm:ss past the hour."""
    total = int(seconds or 0)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_item(raw: Any, index: int) -> ContentItem:
    """Coerce any stored content entry into a ContentItem."""
    if not isinstance(raw, dict):
        return ContentItem(id=str(raw), title=f"Content {index + 1}")

    mime_type = _first(raw, "mimeType", "fileType", "type") or "video/mp4"
    if "/" not in str(mime_type):
        mime_type = "video/mp4"

    declared_type = raw.get("contentType")
    try:
        content_type = ContentType(declared_type)
    except ValueError:
        content_type = content_type_from_mime(mime_type)

    known = {
        "id": str(_first(raw, "id", "uploadId") or f"item_{index}"),
        "title": str(_first(raw, "title", "name", "filename", "displayTitle") or f"Content {index + 1}"),
        "file_url": str(_first(raw, "fileUrl", "downloadUrl", "url", "publicUrl") or ""),
        "thumbnail_url": str(_first(raw, "thumbnailUrl", "thumbnail") or ""),
        "mime_type": str(mime_type),
        "file_size": _as_int(_first(raw, "fileSize", "size")),
        "duration": _as_float(raw.get("duration")),
        "content_type": content_type,
    }
    consumed = {
        "id", "title", "fileUrl", "thumbnailUrl", "mimeType", "fileSize",
        "duration", "contentType",
    }
    extras = {k: v for k, v in raw.items() if k not in consumed}
    return ContentItem(**{**extras, **known})


def normalize_items(raw_items: list) -> list[ContentItem]:
    return [normalize_item(raw, i) for i, raw in enumerate(raw_items)]


# =============================================================================
# DOCUMENT STRATEGIES (pure functions of the bundle document)
# =============================================================================

def from_detailed_items(bundle: dict) -> Optional[list[ContentItem]]:
    items = bundle.get("detailedContentItems")
    if isinstance(items, list) and items:
        return normalize_items(items)
    return None


def from_parallel_arrays(bundle: dict) -> Optional[list[ContentItem]]:
    ids = bundle.get("contentItems")
    urls = bundle.get("contentUrls")
    if not (isinstance(ids, list) and ids and isinstance(urls, list) and urls):
        return None

    titles = bundle.get("contentTitles") or []
    thumbnails = bundle.get("contentThumbnails") or []
    if len(urls) != len(ids) or (titles and len(titles) != len(ids)):
        logger.warning(
            "parallel_arrays_misaligned",
            bundle_id=bundle.get("id"),
            items=len(ids),
            urls=len(urls),
            titles=len(titles),
            thumbnails=len(thumbnails),
        )

    def at(seq: list, i: int) -> str:
        return seq[i] if i < len(seq) and seq[i] else ""

    items = []
    for i, item_id in enumerate(ids):
        url = at(urls, i)
        items.append(
            ContentItem(
                id=str(item_id.get("id") if isinstance(item_id, dict) else item_id),
                title=at(titles, i) or f"Content {i + 1}",
                file_url=url,
                downloadUrl=url,
                thumbnail_url=at(thumbnails, i),
                mime_type="video/mp4",
                content_type=ContentType.VIDEO,
            )
        )
    return items


def from_legacy_fields(bundle: dict) -> Optional[list[ContentItem]]:
    for field in LEGACY_CONTENT_FIELDS:
        value = bundle.get(field)
        if isinstance(value, list) and value:
            logger.info("legacy_content_field_used", bundle_id=bundle.get("id"), field=field)
            return normalize_items(value)
    return None


# =============================================================================
# STRATEGY CHAIN
# =============================================================================

StrategyFn = Callable[[str, dict], Awaitable[Optional[list[ContentItem]]]]


@dataclass
class ContentStrategy:
    name: str
    run: StrategyFn


def document_strategy(name: str, fn: Callable[[dict], Optional[list[ContentItem]]]) -> ContentStrategy:
    async def run(bundle_id: str, bundle: dict) -> Optional[list[ContentItem]]:
        return fn(bundle) if bundle else None
    return ContentStrategy(name=name, run=run)


def collection_strategy(store: IDocumentStore, collection: str, field: str) -> ContentStrategy:
    async def run(bundle_id: str, bundle: dict) -> Optional[list[ContentItem]]:
        rows = await store.where(collection, field, bundle_id)
        if not rows:
            return None
        return normalize_items([row.as_dict() for row in rows])
    return ContentStrategy(name=collection, run=run)


def uploads_strategy(store: IDocumentStore) -> ContentStrategy:
    """Rebuild items from the creator's uploads; ids without an upload are skipped."""
    async def run(bundle_id: str, bundle: dict) -> Optional[list[ContentItem]]:
        ids = bundle.get("contentItems")
        if not (isinstance(ids, list) and ids):
            return None
        items = []
        for entry in ids:
            upload_id = str(entry.get("id") if isinstance(entry, dict) else entry)
            upload = await store.get("uploads", upload_id)
            if upload is None:
                logger.warning("bundle_upload_missing", bundle_id=bundle_id, upload_id=upload_id)
                continue
            items.append(normalize_item({**upload, "id": upload_id}, len(items)))
        return items
    return ContentStrategy(name="uploads", run=run)


async def first_match(
    strategies: list[ContentStrategy], bundle_id: str, bundle: dict
) -> tuple[Optional[str], list[ContentItem]]:
    """Run strategies in order; return the first non-empty result and its name."""
    for strategy in strategies:
        try:
            items = await strategy.run(bundle_id, bundle)
        except Exception as e:
            logger.warning(
                "content_strategy_failed",
                bundle_id=bundle_id,
                strategy=strategy.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue
        if items:
            return strategy.name, items
    return None, []


class ContentResolver:
    """
    Resolves a bundle's content list.

    Example:
        resolver = ContentResolver(store)
        items = await resolver.resolve_bundle_content("bundle_123")
    """

    def __init__(self, store: IDocumentStore):
        self.store = store
        self.strategies: list[ContentStrategy] = [
            document_strategy("detailedContentItems", from_detailed_items),
            document_strategy("parallelArrays", from_parallel_arrays),
            document_strategy("legacyFields", from_legacy_fields),
            collection_strategy(store, "bundleContent", "bundleId"),
            collection_strategy(store, "productBoxContent", "productBoxId"),
            uploads_strategy(store),
        ]

    async def load_bundle(self, bundle_id: str) -> tuple[Optional[str], Optional[dict]]:
        """Find the bundle document; returns (collection, document)."""
        for collection in BUNDLE_COLLECTIONS:
            doc = await self.store.get(collection, bundle_id)
            if doc is not None:
                return collection, {"id": bundle_id, **doc}
        return None, None

    async def resolve_document(self, bundle_id: str, bundle: Optional[dict]) -> list[ContentItem]:
        """Resolve content for an already-loaded bundle document."""
        strategy, items = await first_match(self.strategies, bundle_id, bundle or {})
        if strategy:
            logger.info(
                "content_resolved",
                bundle_id=bundle_id,
                strategy=strategy,
                count=len(items),
            )
        else:
            logger.error(
                "content_unresolved",
                bundle_id=bundle_id,
                bundle_found=bundle is not None,
                tried=[s.name for s in self.strategies],
            )
        return items

    async def resolve_bundle_content(self, bundle_id: str) -> list[ContentItem]:
        try:
            _, bundle = await self.load_bundle(bundle_id)
        except Exception as e:
            logger.warning("bundle_load_failed", bundle_id=bundle_id, error=str(e))
            bundle = None
        return await self.resolve_document(bundle_id, bundle)
