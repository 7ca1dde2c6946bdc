"""
Knowledge Graph Module

Entity/relation extraction from document chunks and the tenant-scoped graph
store the retrieval engine reads from.
"""

# Schemas - always safe to import
from knowledge_graph.schemas import (
    ChunkInput,
    ChunkRecord,
    ChunkType,
    DocumentMeta,
    EntityProcessingResult,
    EntityRecord,
    EntityType,
    QueryMode,
    RecordKind,
    RelationRecord,
    RetrievalResult,
)

# Store contract
from knowledge_graph.store import GraphStore, StoreError, get_graph_store

__all__ = [
    # Schemas
    "ChunkInput",
    "ChunkRecord",
    "ChunkType",
    "DocumentMeta",
    "EntityProcessingResult",
    "EntityRecord",
    "EntityType",
    "QueryMode",
    "RecordKind",
    "RelationRecord",
    "RetrievalResult",
    # Store
    "GraphStore",
    "StoreError",
    "get_graph_store",
    # Functions (lazy imports below)
    "process_entities_for_document",
    "delete_entities_for_document",
]


# ===== Lazy Import Functions =====
# Keep LLM/provider imports out of module load

async def process_entities_for_document(document_id, chunks, workspace="default", user_id=None, *, store=None):
    """Extract and persist entities/relations for a document."""
    from knowledge_graph.extractor import process_entities_for_document as _process
    return await _process(document_id, chunks, workspace, user_id, store=store)


async def delete_entities_for_document(document_id, user_id, *, store=None):
    """Remove a document's entities from the graph."""
    from knowledge_graph.extractor import delete_entities_for_document as _delete
    return await _delete(document_id, user_id, store=store)
