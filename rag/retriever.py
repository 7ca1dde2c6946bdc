"""
Retrieval Engine Module

Answers a query with chunks, entities and relations from the knowledge graph
using one of five strategies:

- naive:  vector search on chunks
- local:  entity search, then the chunks those entities came from
- global: relation search, then endpoint entities and source chunks
- hybrid: local + global, merged
- mix:    chunk, entity and relation search together, merged
"""

# Standard library
import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Type

# Local application
from knowledge_graph.embeddings import generate_embedding
from knowledge_graph.schemas import (
    ChunkRecord,
    DocumentMeta,
    EntityRecord,
    QueryMode,
    RecordKind,
    RelationRecord,
    RetrievalResult,
)
from knowledge_graph.store import GraphStore, StoreError, get_graph_store, require_user_id
from rag.context import build_context
from rag.media import DEFAULT_TOP_K, SearchParams, resolve_search_params

# Configure logging
logger = logging.getLogger(__name__)

# Similarity placeholders for records reached through graph links
LINKED_CHUNK_SIMILARITY = 0.8
LINKED_ENTITY_SIMILARITY = 0.7
FALLBACK_CHUNK_SIMILARITY = 0.5

LOW_THRESHOLD = 0.1


# ===== Store access with degradation =====

async def search_chunks(
    store: GraphStore,
    query_vector: List[float],
    user_id: str,
    threshold: float,
    limit: int,
) -> List[ChunkRecord]:
    """
    Chunk similarity search.

    A store failure falls back to an unranked fetch of the tenant's chunks;
    an empty result above the low threshold is retried once at it.
    """
    try:
        chunks = await store.similarity_search(
            RecordKind.CHUNK, query_vector, user_id, threshold, limit
        )
    except StoreError as e:
        logger.warning(f"Chunk search failed, using direct fetch: {e}")
        try:
            chunks = await store.fetch_chunks(user_id, limit)
        except StoreError as fallback_error:
            logger.error(f"Direct chunk fetch failed: {fallback_error}")
            return []
        return [c.model_copy(update={"similarity": FALLBACK_CHUNK_SIMILARITY}) for c in chunks]

    if not chunks and threshold > LOW_THRESHOLD:
        logger.info(f"No chunks at threshold {threshold}, retrying at {LOW_THRESHOLD}")
        try:
            chunks = await store.similarity_search(
                RecordKind.CHUNK, query_vector, user_id, LOW_THRESHOLD, limit
            )
        except StoreError as e:
            logger.warning(f"Low-threshold chunk search failed: {e}")
            return []

    return chunks


async def search_entities(
    store: GraphStore,
    query_vector: List[float],
    user_id: str,
    threshold: float,
    limit: int,
) -> List[EntityRecord]:
    """Entity similarity search; failures give an empty list."""
    try:
        return await store.similarity_search(
            RecordKind.ENTITY, query_vector, user_id, threshold, limit
        )
    except StoreError as e:
        logger.warning(f"Entity search failed: {e}")
        return []


async def search_relations(
    store: GraphStore,
    query_vector: List[float],
    user_id: str,
    threshold: float,
    limit: int,
) -> List[RelationRecord]:
    """Relation similarity search; failures give an empty list."""
    try:
        return await store.similarity_search(
            RecordKind.RELATION, query_vector, user_id, threshold, limit
        )
    except StoreError as e:
        logger.warning(f"Relation search failed: {e}")
        return []


async def get_chunks_by_ids(
    store: GraphStore,
    chunk_ids: List[str],
    user_id: str,
) -> List[ChunkRecord]:
    """Fetch linked chunks by id, scored with the linked-chunk placeholder."""
    if not chunk_ids:
        return []
    try:
        chunks = await store.fetch_by_ids(RecordKind.CHUNK, chunk_ids, user_id)
    except StoreError as e:
        logger.warning(f"Fetching {len(chunk_ids)} chunks by id failed: {e}")
        return []
    return [c.model_copy(update={"similarity": LINKED_CHUNK_SIMILARITY}) for c in chunks]


async def get_document_info(
    document_ids: List[str],
    *,
    store: Optional[GraphStore] = None,
) -> Dict[str, DocumentMeta]:
    """
    File name and type for each document id, used to annotate citations.

    Unknown ids are absent from the result; a store failure gives ``{}``.
    """
    if not document_ids:
        return {}
    store = store or get_graph_store()
    try:
        return await store.fetch_document_meta(list(dict.fromkeys(document_ids)))
    except StoreError as e:
        logger.warning(f"Document info lookup failed: {e}")
        return {}


def _ordered_ids(groups: Iterable[Iterable[str]], exclude: Iterable[str] = ()) -> List[str]:
    """Union of ids in first-seen order, minus ``exclude``."""
    skip = set(exclude)
    ordered: List[str] = []
    for group in groups:
        for item in group:
            if item not in skip:
                skip.add(item)
                ordered.append(item)
    return ordered


def _merge_by_id(*groups: List) -> List:
    """Union records by id keeping the highest similarity, best first."""
    merged: Dict[str, object] = {}
    for group in groups:
        for record in group:
            existing = merged.get(record.id)
            if existing is None or record.similarity > existing.similarity:
                merged[record.id] = record
    return sorted(merged.values(), key=lambda r: r.similarity, reverse=True)


def _half(top_k: int) -> int:
    return max(1, math.ceil(top_k / 2))


# ===== Strategies =====

class RetrievalStrategy(ABC):
    """
    Base class for retrieval strategies.

    Subclasses implement ``search`` against an already-embedded query and
    return the raw result; context rendering happens in ``retrieve``.
    """

    mode: QueryMode

    def __init__(self, store: GraphStore, workspace: str = "default") -> None:
        self.store = store
        self.workspace = workspace

    @abstractmethod
    async def search(
        self,
        query_vector: List[float],
        user_id: str,
        params: SearchParams,
    ) -> RetrievalResult:
        """Run the strategy against an embedded query."""


class NaiveStrategy(RetrievalStrategy):
    """Vector search on chunks only."""

    mode = QueryMode.NAIVE

    async def search(self, query_vector, user_id, params):
        chunks = await search_chunks(
            self.store, query_vector, user_id, params.threshold, params.top_k
        )
        return RetrievalResult(chunks=chunks, mode=self.mode)


class LocalStrategy(RetrievalStrategy):
    """Entities close to the query and the chunks they were extracted from."""

    mode = QueryMode.LOCAL

    async def search(self, query_vector, user_id, params):
        entities = await search_entities(
            self.store, query_vector, user_id, params.threshold, params.top_k
        )
        chunk_ids = _ordered_ids(e.source_chunk_ids for e in entities)
        chunks = await get_chunks_by_ids(self.store, chunk_ids, user_id)
        return RetrievalResult(chunks=chunks, entities=entities, mode=self.mode)


class GlobalStrategy(RetrievalStrategy):
    """Relations close to the query plus their endpoints and source chunks."""

    mode = QueryMode.GLOBAL

    async def search(self, query_vector, user_id, params):
        relations = await search_relations(
            self.store, query_vector, user_id, params.threshold, params.top_k
        )
        if not relations:
            return RetrievalResult(mode=self.mode)

        entity_ids = _ordered_ids((r.source_entity_id, r.target_entity_id) for r in relations)
        chunk_ids = _ordered_ids(r.source_chunk_ids for r in relations)

        try:
            names = await self.store.fetch_entity_names(entity_ids, user_id)
        except StoreError as e:
            logger.warning(f"Entity name lookup failed: {e}")
            names = {}

        # Placeholders; full entity rows are not needed for context
        entities = [
            EntityRecord(
                id=entity_id,
                user_id=user_id,
                workspace=self.workspace,
                entity_name=names.get(entity_id, "Unknown"),
                entity_type="",
                description=None,
                similarity=LINKED_ENTITY_SIMILARITY,
            )
            for entity_id in entity_ids
        ]
        chunks = await get_chunks_by_ids(self.store, chunk_ids, user_id)
        return RetrievalResult(
            chunks=chunks, entities=entities, relations=relations, mode=self.mode
        )


class HybridStrategy(RetrievalStrategy):
    """Local and global with half of top_k each, merged by id."""

    mode = QueryMode.HYBRID

    async def search(self, query_vector, user_id, params):
        sub_params = params._replace(top_k=_half(params.top_k))
        local_result, global_result = await asyncio.gather(
            LocalStrategy(self.store, self.workspace).search(query_vector, user_id, sub_params),
            GlobalStrategy(self.store, self.workspace).search(query_vector, user_id, sub_params),
        )
        return RetrievalResult(
            chunks=_merge_by_id(local_result.chunks, global_result.chunks),
            entities=_merge_by_id(local_result.entities, global_result.entities),
            relations=global_result.relations,
            mode=self.mode,
        )


class MixStrategy(RetrievalStrategy):
    """
    Direct chunk hits plus chunks linked from matching entities and relations.

    Direct hits always survive truncation to ``top_k``; linked chunks only
    fill the slots left over, so a mix result contains every naive hit.
    """

    mode = QueryMode.MIX

    async def search(self, query_vector, user_id, params):
        half = _half(params.top_k)
        direct_chunks, entities, relations = await asyncio.gather(
            search_chunks(self.store, query_vector, user_id, params.threshold, params.top_k),
            search_entities(self.store, query_vector, user_id, params.threshold, half),
            search_relations(self.store, query_vector, user_id, params.threshold, half),
        )

        linked_ids = _ordered_ids(
            [e.source_chunk_ids for e in entities] + [r.source_chunk_ids for r in relations],
            exclude=[c.id for c in direct_chunks],
        )
        linked_chunks = await get_chunks_by_ids(self.store, linked_ids, user_id)

        direct = _merge_by_id(direct_chunks)[: params.top_k]
        remaining = max(0, params.top_k - len(direct))
        linked = _merge_by_id(linked_chunks)[:remaining]
        chunks = sorted(direct + linked, key=lambda c: c.similarity, reverse=True)

        return RetrievalResult(
            chunks=chunks, entities=entities, relations=relations, mode=self.mode
        )


STRATEGIES: Dict[QueryMode, Type[RetrievalStrategy]] = {
    QueryMode.NAIVE: NaiveStrategy,
    QueryMode.LOCAL: LocalStrategy,
    QueryMode.GLOBAL: GlobalStrategy,
    QueryMode.HYBRID: HybridStrategy,
    QueryMode.MIX: MixStrategy,
}


def get_strategy(
    mode: QueryMode,
    store: GraphStore,
    workspace: str = "default",
) -> RetrievalStrategy:
    """Instantiate the strategy registered for ``mode``."""
    return STRATEGIES[QueryMode(mode)](store, workspace)


# ===== Entry point =====

async def retrieve(
    query: str,
    user_id: str,
    mode: QueryMode = QueryMode.MIX,
    workspace: str = "default",
    top_k: int = DEFAULT_TOP_K,
    *,
    store: Optional[GraphStore] = None,
) -> RetrievalResult:
    """
    Retrieve chunks, entities and relations for a query.

    Args:
        query: User question.
        user_id: Tenant whose graph is searched.
        mode: Retrieval strategy.
        workspace: Workspace label stamped on placeholder records.
        top_k: Requested result size (media queries may widen it).
        store: Optional graph store override.

    Returns:
        RetrievalResult with rendered context.

    Raises:
        ValueError: If user_id is empty or mode is unknown.
        EmbeddingError: If the query could not be embedded.
    """
    require_user_id(user_id)
    mode = QueryMode(mode)
    store = store or get_graph_store()
    params = resolve_search_params(query, top_k)

    if params.media_type:
        logger.info(
            f"Media query detected ({params.media_type}): "
            f"top_k={params.top_k}, threshold={params.threshold}"
        )

    start_time = time.perf_counter()
    query_vector = await generate_embedding(query)

    result = await get_strategy(mode, store, workspace).search(query_vector, user_id, params)
    result.context = build_context(result.chunks, result.entities, result.relations)
    result.mode = mode
    result.top_k = params.top_k
    result.threshold = params.threshold

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        f"Retrieved ({mode.value}) in {elapsed_ms:.0f} ms: {len(result.chunks)} chunks, "
        f"{len(result.entities)} entities, {len(result.relations)} relations"
    )
    return result
