"""Record builders and test doubles shared across the graph/RAG tests."""

# Standard library
import json
from typing import Dict, List, Optional
from unittest.mock import MagicMock

# Local application
from knowledge_graph.schemas import (
    ChunkRecord,
    EntityRecord,
    RecordKind,
    RelationRecord,
)

USER_A = "user-a-0001"
USER_B = "user-b-0002"


class ScriptedLLM:
    """
    Async LLM double answering by prompt substring.

    ``script`` maps a marker found in the chunk text to the raw response
    string (or an Exception to raise). Prompts with no matching marker get
    ``default``.
    """

    def __init__(self, script: Dict[str, object], default: str = '{"entities": [], "relations": []}'):
        self.script = script
        self.default = default
        self.prompts: List[str] = []

    async def ainvoke(self, messages):
        prompt = messages[0].content
        self.prompts.append(prompt)
        for marker, reply in self.script.items():
            if marker in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return MagicMock(content=reply)
        return MagicMock(content=self.default)


def extraction_json(entities: List[dict], relations: Optional[List[dict]] = None) -> str:
    """Render a well-formed extraction response."""
    return json.dumps({"entities": entities, "relations": relations or []})


def make_chunk(
    chunk_id: str,
    content: str,
    vector: Optional[List[float]] = None,
    user_id: str = USER_A,
    document_id: str = "doc-1",
    order: int = 0,
    **extra,
) -> ChunkRecord:
    return ChunkRecord(
        id=chunk_id,
        user_id=user_id,
        document_id=document_id,
        chunk_order_index=order,
        content=content,
        content_vector=vector,
        **extra,
    )


def make_entity(
    entity_id: str,
    name: str,
    vector: Optional[List[float]] = None,
    source_chunk_ids: Optional[List[str]] = None,
    user_id: str = USER_A,
    entity_type: str = "CONCEPT",
    description: Optional[str] = None,
) -> EntityRecord:
    return EntityRecord(
        id=entity_id,
        user_id=user_id,
        entity_name=name,
        entity_type=entity_type,
        description=description,
        content_vector=vector,
        source_chunk_ids=source_chunk_ids or [],
    )


def make_relation(
    relation_id: str,
    source: EntityRecord,
    target: EntityRecord,
    relation_type: str = "RELATED_TO",
    vector: Optional[List[float]] = None,
    source_chunk_ids: Optional[List[str]] = None,
    user_id: str = USER_A,
) -> RelationRecord:
    return RelationRecord(
        id=relation_id,
        user_id=user_id,
        source_entity_id=source.id,
        source_entity=source.entity_name,
        target_entity_id=target.id,
        target_entity=target.entity_name,
        relation_type=relation_type,
        content_vector=vector,
        source_chunk_ids=source_chunk_ids or [],
    )


async def seed(store, chunks=(), entities=(), relations=()) -> None:
    """Insert records kind by kind (entities before relations)."""
    if chunks:
        await store.bulk_insert(RecordKind.CHUNK, list(chunks))
    if entities:
        await store.bulk_insert(RecordKind.ENTITY, list(entities))
    if relations:
        await store.bulk_insert(RecordKind.RELATION, list(relations))
