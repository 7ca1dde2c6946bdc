"""
RAG Module

Multi-mode retrieval over the knowledge graph and answer generation.
"""

# Media detection - pure, always safe to import
from rag.media import SearchParams, detect_media_query, resolve_search_params

__all__ = [
    "SearchParams",
    "detect_media_query",
    "resolve_search_params",
    # Functions (lazy imports below)
    "retrieve",
    "generate_response",
]


# ===== Lazy Import Functions =====

async def retrieve(query, user_id, mode="mix", workspace="default", top_k=10, *, store=None):
    """Retrieve chunks, entities and relations for a query."""
    from rag.retriever import retrieve as _retrieve
    return await _retrieve(query, user_id, mode, workspace, top_k, store=store)


async def generate_response(query, user_id, mode="mix", workspace="default", top_k=10, **kwargs):
    """Answer a question from the user's knowledge graph."""
    from rag.response_generator import generate_response as _generate
    return await _generate(query, user_id, mode, workspace, top_k, **kwargs)
