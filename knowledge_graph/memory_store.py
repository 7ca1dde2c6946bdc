"""
In-Memory Graph Store Module

NetworkX-backed implementation of the graph store contract, used in fake/test
mode and for local development. Each tenant owns an isolated MultiDiGraph
whose nodes are entities and whose edges are relations; chunks and documents
live beside it.
"""

# Standard library
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Third-party
import networkx as nx
import numpy as np

# Local application
from knowledge_graph.schemas import (
    ChunkRecord,
    DocumentMeta,
    EntityRecord,
    RecordKind,
    RelationRecord,
)
from knowledge_graph.store import GraphRecord, StoreError, require_user_id

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class _TenantGraph:
    """Everything one tenant owns."""
    graph: nx.MultiDiGraph = field(default_factory=nx.MultiDiGraph)
    chunks: Dict[str, ChunkRecord] = field(default_factory=dict)


def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


class InMemoryGraphStore:
    """
    Per-tenant in-memory knowledge graph.

    Deleting an entity node removes every incident relation edge, which is
    the same cascade the relational store performs.
    """

    def __init__(self) -> None:
        self._tenants: Dict[str, _TenantGraph] = {}
        self._documents: Dict[str, dict] = {}

    def _tenant(self, user_id: str) -> _TenantGraph:
        require_user_id(user_id)
        if user_id not in self._tenants:
            self._tenants[user_id] = _TenantGraph()
        return self._tenants[user_id]

    # ===== Seeding helpers =====

    def add_document(
        self,
        document_id: str,
        user_id: str,
        file_name: str,
        file_type: str = "text/plain",
    ) -> None:
        """Register document metadata (documents are not graph records)."""
        self._documents[document_id] = {
            "user_id": user_id,
            "file_name": file_name,
            "file_type": file_type,
        }

    def clear(self) -> None:
        """Drop all tenants and documents."""
        self._tenants.clear()
        self._documents.clear()

    # ===== Record iteration =====

    def _entities(self, tenant: _TenantGraph) -> List[EntityRecord]:
        return [data["record"] for _, data in tenant.graph.nodes(data=True)]

    def _relations(self, tenant: _TenantGraph) -> List[RelationRecord]:
        return [data["record"] for _, _, data in tenant.graph.edges(data=True)]

    def _records(self, kind: RecordKind, tenant: _TenantGraph) -> List[GraphRecord]:
        if kind == RecordKind.CHUNK:
            return list(tenant.chunks.values())
        if kind == RecordKind.ENTITY:
            return self._entities(tenant)
        return self._relations(tenant)

    # ===== GraphStore contract =====

    async def similarity_search(
        self,
        kind: RecordKind,
        query_vector: List[float],
        user_id: str,
        threshold: float,
        limit: int,
    ) -> List[GraphRecord]:
        tenant = self._tenant(user_id)
        query = np.asarray(query_vector, dtype=float)

        scored = []
        for record in self._records(kind, tenant):
            if not record.content_vector:
                continue
            score = _cosine_similarity(query, np.asarray(record.content_vector, dtype=float))
            if score >= threshold:
                scored.append(record.model_copy(update={"similarity": score, "content_vector": None}))

        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:limit]

    async def fetch_by_ids(
        self, kind: RecordKind, ids: List[str], user_id: str
    ) -> List[GraphRecord]:
        tenant = self._tenant(user_id)
        wanted = set(ids)
        return [
            record.model_copy(update={"content_vector": None})
            for record in self._records(kind, tenant)
            if record.id in wanted
        ]

    async def fetch_chunks(self, user_id: str, limit: int) -> List[ChunkRecord]:
        tenant = self._tenant(user_id)
        return [
            chunk.model_copy(update={"content_vector": None})
            for chunk in list(tenant.chunks.values())[:limit]
        ]

    async def fetch_entity_names(self, ids: List[str], user_id: str) -> Dict[str, str]:
        tenant = self._tenant(user_id)
        return {
            entity_id: tenant.graph.nodes[entity_id]["record"].entity_name
            for entity_id in ids
            if tenant.graph.has_node(entity_id)
        }

    async def bulk_insert(self, kind: RecordKind, records: List[GraphRecord]) -> int:
        if not records:
            return 0

        # Validate the whole batch first so a bad row leaves nothing behind
        seen = set()
        for record in records:
            tenant = self._tenant(record.user_id)
            if record.id in seen or record.id in {r.id for r in self._records(kind, tenant)}:
                raise StoreError(f"duplicate {kind.value} id: {record.id}")
            seen.add(record.id)
            if kind == RecordKind.RELATION:
                for endpoint in (record.source_entity_id, record.target_entity_id):
                    if not tenant.graph.has_node(endpoint):
                        raise StoreError(f"relation {record.id} references unknown entity {endpoint}")

        for record in records:
            tenant = self._tenant(record.user_id)
            stored = record.model_copy(update={"similarity": 0.0}, deep=True)
            if kind == RecordKind.CHUNK:
                tenant.chunks[stored.id] = stored
            elif kind == RecordKind.ENTITY:
                tenant.graph.add_node(stored.id, record=stored)
            else:
                tenant.graph.add_edge(
                    stored.source_entity_id,
                    stored.target_entity_id,
                    key=stored.id,
                    record=stored,
                )

        logger.debug(f"Inserted {len(records)} {kind.value} records")
        return len(records)

    async def fetch_document_meta(self, document_ids: List[str]) -> Dict[str, DocumentMeta]:
        return {
            doc_id: DocumentMeta(
                file_name=self._documents[doc_id]["file_name"],
                file_type=self._documents[doc_id]["file_type"],
            )
            for doc_id in document_ids
            if doc_id in self._documents
        }

    async def fetch_document_owner(self, document_id: str) -> Optional[str]:
        document = self._documents.get(document_id)
        return document["user_id"] if document else None

    async def fetch_document_chunks(self, document_id: str, user_id: str) -> List[ChunkRecord]:
        tenant = self._tenant(user_id)
        chunks = [c for c in tenant.chunks.values() if c.document_id == document_id]
        return [
            c.model_copy(update={"content_vector": None})
            for c in sorted(chunks, key=lambda c: c.chunk_order_index)
        ]

    async def fetch_entities_by_chunks(
        self, chunk_ids: List[str], user_id: str
    ) -> List[EntityRecord]:
        tenant = self._tenant(user_id)
        wanted = set(chunk_ids)
        return [
            entity.model_copy(update={"content_vector": None})
            for entity in self._entities(tenant)
            if wanted.intersection(entity.source_chunk_ids)
        ]

    async def delete_entity(self, entity_id: str, user_id: str) -> None:
        tenant = self._tenant(user_id)
        if tenant.graph.has_node(entity_id):
            tenant.graph.remove_node(entity_id)

    async def update_entity_source_chunks(
        self, entity_id: str, chunk_ids: List[str], user_id: str
    ) -> None:
        tenant = self._tenant(user_id)
        if not tenant.graph.has_node(entity_id):
            return
        node = tenant.graph.nodes[entity_id]
        node["record"] = node["record"].model_copy(update={"source_chunk_ids": list(chunk_ids)})
