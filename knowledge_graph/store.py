"""
Knowledge Graph Store Module

Defines the graph store contract consumed by extraction and retrieval, and the
Supabase/pgvector implementation of it. Every read and write is scoped by the
owning user (tenant) id.
"""

# Standard library
import logging
from typing import Dict, List, Optional, Protocol, Sequence, Union, runtime_checkable

# Third-party
import httpx
from fastapi.concurrency import run_in_threadpool
from postgrest.exceptions import APIError as PostgrestAPIError

# Local application
from knowledge_graph.schemas import (
    ChunkRecord,
    ChunkType,
    DocumentMeta,
    EntityRecord,
    RecordKind,
    RelationRecord,
)
from supabase_client import get_supabase

# Configure logging
logger = logging.getLogger(__name__)

GraphRecord = Union[ChunkRecord, EntityRecord, RelationRecord]

_TABLES: Dict[RecordKind, str] = {
    RecordKind.CHUNK: "document_chunks",
    RecordKind.ENTITY: "entities",
    RecordKind.RELATION: "relations",
}

_SEARCH_RPCS: Dict[RecordKind, str] = {
    RecordKind.CHUNK: "search_chunks",
    RecordKind.ENTITY: "search_entities",
    RecordKind.RELATION: "search_relations",
}


class StoreError(RuntimeError):
    """Raised when the graph store rejects or cannot serve a request."""


def require_user_id(user_id: Optional[str]) -> str:
    """
    Reject calls that would run without a tenant filter.

    Raises:
        ValueError: If user_id is empty.
    """
    if not user_id or not str(user_id).strip():
        raise ValueError("user_id is required for every graph store operation")
    return user_id


def vector_to_string(embedding: Sequence[float]) -> str:
    """Format a vector the way pgvector expects it on INSERT: '[x,y,z]'."""
    return "[" + ",".join(str(v) for v in embedding) + "]"


@runtime_checkable
class GraphStore(Protocol):
    """Operations the engine needs from the persistent store."""

    async def similarity_search(
        self,
        kind: RecordKind,
        query_vector: List[float],
        user_id: str,
        threshold: float,
        limit: int,
    ) -> List[GraphRecord]:
        """Top-``limit`` records of ``kind`` at or above ``threshold``, best first."""

    async def fetch_by_ids(
        self, kind: RecordKind, ids: List[str], user_id: str
    ) -> List[GraphRecord]:
        """Records of ``kind`` with the given ids owned by ``user_id``."""

    async def fetch_chunks(self, user_id: str, limit: int) -> List[ChunkRecord]:
        """Unranked chunks of a tenant (degraded-mode fallback)."""

    async def fetch_entity_names(self, ids: List[str], user_id: str) -> Dict[str, str]:
        """Map of entity id to entity name."""

    async def bulk_insert(self, kind: RecordKind, records: List[GraphRecord]) -> int:
        """Insert all records atomically; returns rows inserted."""

    async def fetch_document_meta(self, document_ids: List[str]) -> Dict[str, DocumentMeta]:
        """File name/type per document id."""

    async def fetch_document_owner(self, document_id: str) -> Optional[str]:
        """Owning user id of a document, if known."""

    async def fetch_document_chunks(self, document_id: str, user_id: str) -> List[ChunkRecord]:
        """All chunks of one document, in document order."""

    async def fetch_entities_by_chunks(
        self, chunk_ids: List[str], user_id: str
    ) -> List[EntityRecord]:
        """Entities whose source-chunk list intersects ``chunk_ids``."""

    async def delete_entity(self, entity_id: str, user_id: str) -> None:
        """Delete an entity and every relation touching it."""

    async def update_entity_source_chunks(
        self, entity_id: str, chunk_ids: List[str], user_id: str
    ) -> None:
        """Replace the source-chunk list of an entity."""


# ===== Row <-> record conversion =====

def _chunk_from_row(row: dict) -> ChunkRecord:
    data = dict(row)
    data.pop("content_vector", None)
    if data.get("chunk_type") not in {t.value for t in ChunkType}:
        data["chunk_type"] = ChunkType.TEXT
    if data.get("metadata") is None:
        data["metadata"] = {}
    if data.get("content") is None:
        data["content"] = ""
    return ChunkRecord(**data)


def _entity_from_row(row: dict) -> EntityRecord:
    data = dict(row)
    data.pop("content_vector", None)
    data["entity_name"] = data.get("entity_name") or data.get("name") or "Unknown"
    data["entity_type"] = data.get("entity_type") or data.get("type") or ""
    data["source_chunk_ids"] = data.get("source_chunk_ids") or []
    return EntityRecord(**data)


def _relation_from_row(row: dict) -> RelationRecord:
    data = dict(row)
    data.pop("content_vector", None)
    data["source_entity"] = data.get("source_entity") or ""
    data["target_entity"] = data.get("target_entity") or ""
    data["relation_type"] = data.get("relation_type") or "RELATED_TO"
    data["source_chunk_ids"] = data.get("source_chunk_ids") or []
    return RelationRecord(**data)


_FROM_ROW = {
    RecordKind.CHUNK: _chunk_from_row,
    RecordKind.ENTITY: _entity_from_row,
    RecordKind.RELATION: _relation_from_row,
}


def _record_to_row(kind: RecordKind, record: GraphRecord) -> dict:
    row = record.model_dump(exclude={"similarity", "content_vector"}, mode="json")
    if record.content_vector:
        row["content_vector"] = vector_to_string(record.content_vector)
    if kind == RecordKind.ENTITY:
        # Table keeps NOT NULL legacy columns next to entity_name/entity_type
        row["name"] = row["entity_name"]
        row["type"] = row["entity_type"]
    return row


class SupabaseGraphStore:
    """
    Graph store backed by Supabase tables and pgvector RPC functions.

    The ``search_*`` RPCs take ``query_embedding``, ``match_threshold``,
    ``match_count`` and ``p_user_id`` and return rows with a ``similarity``
    column.
    """

    def _client(self):
        client = get_supabase()
        if not client:
            raise StoreError("Database service unavailable")
        return client

    async def _execute(self, operation: str, build):
        client = self._client()
        try:
            return await run_in_threadpool(lambda: build(client).execute())
        except PostgrestAPIError as exc:
            logger.error(f"Graph store {operation} failed: {exc}")
            raise StoreError(f"{operation} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Graph store {operation} unreachable: {exc}")
            raise StoreError(f"{operation} failed: {exc}") from exc

    async def similarity_search(
        self,
        kind: RecordKind,
        query_vector: List[float],
        user_id: str,
        threshold: float,
        limit: int,
    ) -> List[GraphRecord]:
        require_user_id(user_id)
        params = {
            "query_embedding": query_vector,
            "match_threshold": threshold,
            "match_count": limit,
            "p_user_id": user_id,
        }
        response = await self._execute(
            f"similarity_search[{kind.value}]",
            lambda c: c.rpc(_SEARCH_RPCS[kind], params),
        )
        return [_FROM_ROW[kind](row) for row in response.data or []]

    async def fetch_by_ids(
        self, kind: RecordKind, ids: List[str], user_id: str
    ) -> List[GraphRecord]:
        require_user_id(user_id)
        if not ids:
            return []
        response = await self._execute(
            f"fetch_by_ids[{kind.value}]",
            lambda c: c.table(_TABLES[kind])
            .select("*")
            .in_("id", list(ids))
            .eq("user_id", user_id),
        )
        return [_FROM_ROW[kind](row) for row in response.data or []]

    async def fetch_chunks(self, user_id: str, limit: int) -> List[ChunkRecord]:
        require_user_id(user_id)
        response = await self._execute(
            "fetch_chunks",
            lambda c: c.table(_TABLES[RecordKind.CHUNK])
            .select("*")
            .eq("user_id", user_id)
            .limit(limit),
        )
        return [_chunk_from_row(row) for row in response.data or []]

    async def fetch_entity_names(self, ids: List[str], user_id: str) -> Dict[str, str]:
        require_user_id(user_id)
        if not ids:
            return {}
        response = await self._execute(
            "fetch_entity_names",
            lambda c: c.table(_TABLES[RecordKind.ENTITY])
            .select("id, entity_name")
            .in_("id", list(ids))
            .eq("user_id", user_id),
        )
        return {row["id"]: row.get("entity_name") or "Unknown" for row in response.data or []}

    async def bulk_insert(self, kind: RecordKind, records: List[GraphRecord]) -> int:
        if not records:
            return 0
        for record in records:
            require_user_id(record.user_id)
        rows = [_record_to_row(kind, record) for record in records]
        response = await self._execute(
            f"bulk_insert[{kind.value}]",
            lambda c: c.table(_TABLES[kind]).insert(rows),
        )
        return len(response.data) if response.data else len(rows)

    async def fetch_document_meta(self, document_ids: List[str]) -> Dict[str, DocumentMeta]:
        if not document_ids:
            return {}
        response = await self._execute(
            "fetch_document_meta",
            lambda c: c.table("documents")
            .select("id, file_name, file_type")
            .in_("id", list(document_ids)),
        )
        meta: Dict[str, DocumentMeta] = {}
        for row in response.data or []:
            doc_id = row.get("id")
            if not doc_id:
                continue
            meta[doc_id] = DocumentMeta(
                file_name=row.get("file_name") or f"document-{doc_id[:8]}",
                file_type=row.get("file_type") or "",
            )
        return meta

    async def fetch_document_owner(self, document_id: str) -> Optional[str]:
        response = await self._execute(
            "fetch_document_owner",
            lambda c: c.table("documents").select("user_id").eq("id", document_id).limit(1),
        )
        rows = response.data or []
        return rows[0].get("user_id") if rows else None

    async def fetch_document_chunks(self, document_id: str, user_id: str) -> List[ChunkRecord]:
        require_user_id(user_id)
        response = await self._execute(
            "fetch_document_chunks",
            lambda c: c.table(_TABLES[RecordKind.CHUNK])
            .select("id, user_id, document_id, workspace, chunk_order_index, content, chunk_type")
            .eq("document_id", document_id)
            .eq("user_id", user_id)
            .order("chunk_order_index"),
        )
        return [_chunk_from_row(row) for row in response.data or []]

    async def fetch_entities_by_chunks(
        self, chunk_ids: List[str], user_id: str
    ) -> List[EntityRecord]:
        require_user_id(user_id)
        if not chunk_ids:
            return []
        response = await self._execute(
            "fetch_entities_by_chunks",
            lambda c: c.table(_TABLES[RecordKind.ENTITY])
            .select("id, user_id, workspace, entity_name, entity_type, description, source_chunk_ids")
            .eq("user_id", user_id)
            .filter("source_chunk_ids", "ov", "{" + ",".join(chunk_ids) + "}"),
        )
        return [_entity_from_row(row) for row in response.data or []]

    async def delete_entity(self, entity_id: str, user_id: str) -> None:
        require_user_id(user_id)
        await self._execute(
            "delete_relations_for_entity",
            lambda c: c.table(_TABLES[RecordKind.RELATION])
            .delete()
            .eq("user_id", user_id)
            .or_(f"source_entity_id.eq.{entity_id},target_entity_id.eq.{entity_id}"),
        )
        await self._execute(
            "delete_entity",
            lambda c: c.table(_TABLES[RecordKind.ENTITY])
            .delete()
            .eq("id", entity_id)
            .eq("user_id", user_id),
        )

    async def update_entity_source_chunks(
        self, entity_id: str, chunk_ids: List[str], user_id: str
    ) -> None:
        require_user_id(user_id)
        await self._execute(
            "update_entity_source_chunks",
            lambda c: c.table(_TABLES[RecordKind.ENTITY])
            .update({"source_chunk_ids": list(chunk_ids)})
            .eq("id", entity_id)
            .eq("user_id", user_id),
        )


_memory_store = None


def get_graph_store() -> GraphStore:
    """
    Return the graph store for the active provider mode.

    Fake/test mode gets a process-wide in-memory store; otherwise Supabase.
    """
    global _memory_store
    from core.providers import using_fake_providers

    if using_fake_providers():
        if _memory_store is None:
            from knowledge_graph.memory_store import InMemoryGraphStore
            _memory_store = InMemoryGraphStore()
        return _memory_store
    return SupabaseGraphStore()
