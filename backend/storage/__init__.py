# storage/__init__.py
# ============================================================================
# CREATOR BUNDLES BACKEND — STORAGE MODULE
# ============================================================================
# Document store interface with Firestore and in-memory backends
# ============================================================================

from storage.document_store import (
    Document,
    IDocumentStore,
    FirestoreDocumentStore,
    InMemoryDocumentStore,
)

__all__ = [
    "Document",
    "IDocumentStore",
    "FirestoreDocumentStore",
    "InMemoryDocumentStore",
]
