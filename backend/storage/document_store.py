"""
Document Store - Firestore persistence behind one interface
===========================================================
Every pipeline component talks to IDocumentStore, never to Firestore
directly, so tests run against InMemoryDocumentStore and production runs
against FirestoreDocumentStore without code changes.

Collections are addressed by slash paths, so subcollections work the same
way as top-level ones:

    await store.set("userPurchases/uid_123/purchases", session_id, doc)

pip install firebase-admin structlog
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from errors import NotFoundError

logger = structlog.get_logger().bind(component="document_store")


@dataclass
class Document:
    id: str
    data: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        """Query results carry their id alongside the data."""
        return {"id": self.id, **self.data}


# =============================================================================
# INTERFACE
# =============================================================================

class IDocumentStore(ABC):
    """Minimal document database surface used by the pipeline."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        pass

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        """Write only if the document does not exist; False when it already did."""
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Partial update; raises NotFoundError when the document is missing."""
        pass

    @abstractmethod
    async def where(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> list[Document]:
        """Equality query on a single field."""
        pass

    @abstractmethod
    async def increment(
        self, collection: str, doc_id: str, amounts: dict[str, float]
    ) -> None:
        """Atomically add to numeric fields, creating the document if needed."""
        pass

    @abstractmethod
    def new_id(self, collection: str) -> str:
        pass

    async def exists(self, collection: str, doc_id: str) -> bool:
        return await self.get(collection, doc_id) is not None


# =============================================================================
# FIRESTORE
# =============================================================================

class FirestoreDocumentStore(IDocumentStore):
    """
    Firestore-backed store.

    The firebase-admin SDK is synchronous; calls run in worker threads so the
    event loop never blocks on network I/O.
    """

    name = "firestore"

    def __init__(self, app=None):
        self._db = firestore.client(app)

    def _ref(self, collection: str, doc_id: str):
        return self._db.collection(collection).document(doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        snapshot = await asyncio.to_thread(self._ref(collection, doc_id).get)
        if not snapshot.exists:
            return None
        return snapshot.to_dict()

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        await asyncio.to_thread(self._ref(collection, doc_id).set, data, merge=merge)

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        try:
            await asyncio.to_thread(self._ref(collection, doc_id).create, data)
        except google_exceptions.Conflict:
            return False
        return True

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._ref(collection, doc_id).update, data)
        except google_exceptions.NotFound as e:
            raise NotFoundError(
                "Document not found",
                details={"collection": collection, "id": doc_id},
            ) from e

    async def where(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> list[Document]:
        query = self._db.collection(collection).where(
            filter=firestore.FieldFilter(field, "==", value)
        )
        if limit:
            query = query.limit(limit)
        snapshots = await asyncio.to_thread(query.get)
        return [Document(id=s.id, data=s.to_dict() or {}) for s in snapshots]

    async def increment(
        self, collection: str, doc_id: str, amounts: dict[str, float]
    ) -> None:
        data = {field: firestore.Increment(amount) for field, amount in amounts.items()}
        await asyncio.to_thread(self._ref(collection, doc_id).set, data, merge=True)

    def new_id(self, collection: str) -> str:
        return self._db.collection(collection).document().id


# =============================================================================
# IN-MEMORY (tests and credential-less local runs)
# =============================================================================

class InMemoryDocumentStore(IDocumentStore):
    """Thread-safe in-memory store with snapshot (deep copy) semantics."""

    name = "memory"

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            doc = self._collections[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        async with self._lock:
            docs = self._collections[collection]
            if merge and doc_id in docs:
                docs[doc_id].update(copy.deepcopy(data))
            else:
                docs[doc_id] = copy.deepcopy(data)

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        async with self._lock:
            docs = self._collections[collection]
            if doc_id in docs:
                return False
            docs[doc_id] = copy.deepcopy(data)
            return True

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            docs = self._collections[collection]
            if doc_id not in docs:
                raise NotFoundError(
                    "Document not found",
                    details={"collection": collection, "id": doc_id},
                )
            docs[doc_id].update(copy.deepcopy(data))

    async def where(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> list[Document]:
        async with self._lock:
            matches = [
                Document(id=doc_id, data=copy.deepcopy(data))
                for doc_id, data in self._collections[collection].items()
                if data.get(field) == value
            ]
        return matches[:limit] if limit else matches

    async def increment(
        self, collection: str, doc_id: str, amounts: dict[str, float]
    ) -> None:
        async with self._lock:
            doc = self._collections[collection].setdefault(doc_id, {})
            for field, amount in amounts.items():
                doc[field] = (doc.get(field) or 0) + amount

    def new_id(self, collection: str) -> str:
        return uuid.uuid4().hex[:20]

    # Synchronous helpers for fixtures and local seeding

    def seed(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collections[collection][doc_id] = copy.deepcopy(data)

    def collection(self, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._collections[collection])
