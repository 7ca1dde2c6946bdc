"""
Knowledge Graph Extractor Module

Turns a document's chunks into a deduplicated set of entities and relations:
per-chunk LLM extraction, field sanitization, a single cross-chunk merge keyed
by normalized entity name, relation resolution against that merge, and
persistence to the graph store.
"""

# Standard library
import asyncio
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

# Third-party
from langchain_core.messages import HumanMessage

# Local application
from core.providers import get_llm
from knowledge_graph.embeddings import generate_embeddings_batch
from knowledge_graph.schemas import (
    ChunkInput,
    ChunkRecord,
    EntityProcessingResult,
    EntityRecord,
    ExtractedEntity,
    ExtractedRelation,
    ExtractionResult,
    RecordKind,
    RelationRecord,
)
from knowledge_graph.store import GraphStore, StoreError, get_graph_store

# Configure logging
logger = logging.getLogger(__name__)

# Chunks shorter than this are treated as noise
MIN_CHUNK_LENGTH = 20

# Column limits of the entities/relations tables
MAX_NAME_LENGTH = 500
MAX_TYPE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 2000

_ELLIPSIS = "..."
_DEFAULT_ENTITY_TYPE = "UNKNOWN"
_DEFAULT_RELATION_TYPE = "RELATED_TO"

_WHITESPACE_RE = re.compile(r"\s+")
_NO_LETTERS_RE = re.compile(r"^[\d\s\W_]+$")


# ===== Extraction Prompt =====

ENTITY_EXTRACTION_PROMPT = """You are a Knowledge Graph Specialist. Extract entities and the relationships between them from the text below.

## Entity Types
- PERSON: individual people, historical figures, characters
- ORGANIZATION: companies, institutions, agencies, teams
- LOCATION: places, cities, countries, addresses
- EVENT: named events, conferences, incidents
- CONCEPT: abstract ideas, theories, methodologies
- TECHNOLOGY: software, hardware, tools, frameworks
- PRODUCT: physical or digital products
- DATE: specific dates, time periods

## Relationship Types
- WORKS_FOR, FOUNDED, LEADS (person-organization)
- LOCATED_IN, HEADQUARTERS_IN (entity-location)
- CREATED, DEVELOPED, INVENTED (entity-product/technology)
- PARTICIPATED_IN, ORGANIZED (entity-event)
- RELATED_TO, PART_OF, DEPENDS_ON (general)

## Output Format
Return one JSON object with two arrays:

{{
  "entities": [
    {{"name": "Entity Name", "type": "ENTITY_TYPE", "description": "Brief description of the entity in context"}}
  ],
  "relations": [
    {{"source": "Source Entity Name", "target": "Target Entity Name", "type": "RELATIONSHIP_TYPE", "description": "How they are related"}}
  ]
}}

## Guidelines
1. Only extract entities that are clearly mentioned; do not infer
2. Use each name exactly as it appears in the text
3. Keep descriptions to 1-2 sentences
4. Relationship source/target must match extracted entity names exactly
5. Skip generic terms that are not meaningful entities
6. Return valid JSON only, no markdown code blocks

Extract all entities and relationships from the following text:

---
{text}
---

Return valid JSON only."""


# ===== Field helpers =====

def truncate(text: Optional[str], max_length: int) -> str:
    """
    Trim and hard-limit a field to ``max_length`` characters.

    Over-long values are cut so that the trailing ``...`` still fits inside
    the limit.
    """
    if not text:
        return ""
    trimmed = str(text).strip()
    if len(trimmed) <= max_length:
        return trimmed
    return trimmed[: max_length - len(_ELLIPSIS)] + _ELLIPSIS


def normalize_entity_name(name: str) -> str:
    """Merge key for entity identity: lowercase, trimmed, single-spaced."""
    return _WHITESPACE_RE.sub(" ", name.lower().strip())


def is_valid_entity_name(name: Any) -> bool:
    """Names need 2+ characters and at least one letter-like character."""
    if not isinstance(name, str):
        return False
    trimmed = name.strip()
    return len(trimmed) >= 2 and not _NO_LETTERS_RE.match(trimmed)


def merge_descriptions(descriptions: Sequence[str]) -> str:
    """Join distinct non-empty descriptions in first-seen order."""
    unique: List[str] = []
    for description in descriptions:
        if description and description not in unique:
            unique.append(description)
    return truncate(" ".join(unique), MAX_DESCRIPTION_LENGTH)


# ===== Response parsing =====

def _find_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced ``{...}`` span in ``text``.

    Braces inside JSON strings are ignored, so prose before or after the
    object does not matter.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_extraction_response(response: str) -> ExtractionResult:
    """
    Parse model output into entity/relation dicts.

    Any shape problem yields empty lists instead of an error.
    """
    if not response:
        return ExtractionResult()

    json_str = _find_json_object(response)
    if json_str is None:
        logger.warning("No JSON object found in extraction response")
        return ExtractionResult()

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse extraction JSON: {e}")
        return ExtractionResult()

    if not isinstance(data, dict):
        return ExtractionResult()

    entities = data.get("entities")
    relations = data.get("relations")
    if not isinstance(entities, list):
        logger.warning("entities is not an array, defaulting to []")
        entities = []
    if not isinstance(relations, list):
        logger.warning("relations is not an array, defaulting to []")
        relations = []

    return ExtractionResult(
        entities=[e for e in entities if isinstance(e, dict)],
        relations=[r for r in relations if isinstance(r, dict)],
    )


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return content if isinstance(content, str) else str(content or "")


async def extract_entities_from_text(content: str) -> ExtractionResult:
    """
    Ask the extraction model for entities and relations in one chunk.

    Model errors and malformed output both come back as an empty result.
    """
    start_time = time.perf_counter()
    try:
        llm = get_llm("entity_extraction")
        prompt = ENTITY_EXTRACTION_PROMPT.format(text=content)
        response = await llm.ainvoke([HumanMessage(content=prompt)])
        result = parse_extraction_response(_response_text(response))

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"Extraction call took {elapsed_ms:.0f} ms: "
            f"{len(result.entities)} entities, {len(result.relations)} relations"
        )
        return result

    except Exception as e:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.error(f"Entity extraction call failed after {elapsed_ms:.0f} ms: {e}")
        return ExtractionResult()


def sanitize_extraction(
    extraction: ExtractionResult,
    chunk_id: str,
) -> Tuple[List[ExtractedEntity], List[ExtractedRelation]]:
    """
    Validate and truncate raw model items, tagging them with ``chunk_id``.

    Items with invalid names (or endpoint names) are dropped silently.
    """
    entities: List[ExtractedEntity] = []
    for item in extraction.entities:
        name = item.get("name")
        if not is_valid_entity_name(name):
            continue
        raw_type = item.get("type")
        entities.append(
            ExtractedEntity(
                name=truncate(name, MAX_NAME_LENGTH),
                type=truncate(str(raw_type).upper() if raw_type else _DEFAULT_ENTITY_TYPE, MAX_TYPE_LENGTH),
                description=truncate(item.get("description"), MAX_DESCRIPTION_LENGTH),
                source_chunk_id=chunk_id,
            )
        )

    relations: List[ExtractedRelation] = []
    for item in extraction.relations:
        source = item.get("source")
        target = item.get("target")
        if not (is_valid_entity_name(source) and is_valid_entity_name(target)):
            continue
        raw_type = item.get("type")
        relations.append(
            ExtractedRelation(
                source=truncate(source, MAX_NAME_LENGTH),
                target=truncate(target, MAX_NAME_LENGTH),
                type=truncate(str(raw_type).upper() if raw_type else _DEFAULT_RELATION_TYPE, MAX_TYPE_LENGTH),
                description=truncate(item.get("description"), MAX_DESCRIPTION_LENGTH),
                source_chunk_id=chunk_id,
            )
        )

    return entities, relations


# ===== Merge and resolution =====

@dataclass
class MergedEntity:
    """Accumulator for one normalized entity name."""
    name: str
    type: str
    descriptions: List[str] = field(default_factory=list)
    source_chunk_ids: List[str] = field(default_factory=list)


def deduplicate_entities(candidates: Sequence[ExtractedEntity]) -> Dict[str, MergedEntity]:
    """
    Merge candidates across all chunks by normalized name.

    Name and type come from the first occurrence; descriptions and source
    chunk ids accumulate without exact duplicates. Insertion order follows
    the candidates.
    """
    merged: Dict[str, MergedEntity] = {}

    for entity in candidates:
        key = normalize_entity_name(entity.name)
        existing = merged.get(key)
        if existing is None:
            merged[key] = MergedEntity(
                name=entity.name,
                type=entity.type,
                descriptions=[entity.description],
                source_chunk_ids=[entity.source_chunk_id],
            )
            continue
        if entity.description not in existing.descriptions:
            existing.descriptions.append(entity.description)
        if entity.source_chunk_id not in existing.source_chunk_ids:
            existing.source_chunk_ids.append(entity.source_chunk_id)

    return merged


def resolve_relations(
    candidates: Sequence[ExtractedRelation],
    entities_by_key: Dict[str, EntityRecord],
    workspace: str,
    user_id: str,
) -> List[RelationRecord]:
    """
    Attach entity ids to relation candidates.

    Candidates whose source or target name is not a known entity are dropped;
    the first occurrence of each (source id, type, target id) triple wins.
    """
    resolved: List[RelationRecord] = []
    seen = set()

    for relation in candidates:
        source = entities_by_key.get(normalize_entity_name(relation.source))
        target = entities_by_key.get(normalize_entity_name(relation.target))

        if source is None:
            logger.debug(f"Skip relation: source '{relation.source}' not found")
            continue
        if target is None:
            logger.debug(f"Skip relation: target '{relation.target}' not found")
            continue

        triple = (source.id, relation.type, target.id)
        if triple in seen:
            logger.debug(f"Skip duplicate relation: {triple}")
            continue
        seen.add(triple)

        resolved.append(
            RelationRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                workspace=workspace,
                source_entity_id=source.id,
                source_entity=source.entity_name,
                target_entity_id=target.id,
                target_entity=target.entity_name,
                relation_type=relation.type,
                description=relation.description,
                source_chunk_ids=[relation.source_chunk_id],
            )
        )

    return resolved


def _entity_embedding_text(entity: EntityRecord) -> str:
    return f"{entity.entity_name} ({entity.entity_type}): {entity.description or ''}".strip()


def _relation_embedding_text(relation: RelationRecord) -> str:
    return (
        f"{relation.source_entity} {relation.relation_type} {relation.target_entity}: "
        f"{relation.description or ''}"
    ).strip()


async def _attach_embeddings(records: List[Union[EntityRecord, RelationRecord]], texts: List[str]) -> None:
    vectors = await generate_embeddings_batch(texts)
    for record, vector in zip(records, vectors):
        record.content_vector = vector


# ===== Pipeline =====

class EntityExtractionPipeline:
    """
    Builds the knowledge graph for one document.

    Attributes:
        store: Graph store the results are written to.
        min_chunk_length: Skip chunks shorter than this.
        max_concurrency: Upper bound on in-flight extraction calls.
    """

    def __init__(
        self,
        store: Optional[GraphStore] = None,
        min_chunk_length: int = MIN_CHUNK_LENGTH,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.store = store or get_graph_store()
        self.min_chunk_length = min_chunk_length
        if max_concurrency is None:
            max_concurrency = int(os.getenv("EXTRACTION_MAX_CONCURRENCY", "4"))
        self.max_concurrency = max(1, max_concurrency)

    async def _extract_chunks(
        self, chunks: Sequence[ChunkInput]
    ) -> Tuple[List[ExtractedEntity], List[ExtractedRelation]]:
        """Run extraction per chunk (bounded fan-out), returned in chunk order."""
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(chunks)

        async def _one(index: int, chunk: ChunkInput):
            if len(chunk.content) < self.min_chunk_length:
                logger.debug(
                    f"Chunk {index + 1}/{total}: skipped (too short: {len(chunk.content)} chars)"
                )
                return [], []
            async with semaphore:
                extraction = await extract_entities_from_text(chunk.content)
            logger.debug(
                f"Chunk {index + 1}/{total}: {len(extraction.entities)} entities, "
                f"{len(extraction.relations)} relations"
            )
            return sanitize_extraction(extraction, chunk.id)

        per_chunk = await asyncio.gather(*(_one(i, c) for i, c in enumerate(chunks)))

        entities: List[ExtractedEntity] = []
        relations: List[ExtractedRelation] = []
        for chunk_entities, chunk_relations in per_chunk:
            entities.extend(chunk_entities)
            relations.extend(chunk_relations)
        return entities, relations

    async def _insert_relations(self, relations: List[RelationRecord]) -> int:
        """Bulk insert; on failure fall back to one row at a time."""
        if not relations:
            return 0
        try:
            return await self.store.bulk_insert(RecordKind.RELATION, relations)
        except StoreError as e:
            logger.error(f"Bulk relation insert failed, retrying row by row: {e}")

        created = 0
        for relation in relations:
            try:
                created += await self.store.bulk_insert(RecordKind.RELATION, [relation])
            except StoreError as e:
                logger.error(
                    f"Failed to insert relation {relation.source_entity} "
                    f"-[{relation.relation_type}]-> {relation.target_entity}: {e}"
                )
        return created

    async def process_document(
        self,
        document_id: str,
        chunks: Sequence[Union[ChunkInput, ChunkRecord, dict]],
        workspace: str = "default",
        user_id: Optional[str] = None,
    ) -> EntityProcessingResult:
        """
        Extract, deduplicate and persist entities/relations for a document.

        Never raises: unrecoverable failures are logged and reported as zero
        counts.

        Args:
            document_id: Document the chunks belong to.
            chunks: Ordered chunk records (id + content).
            workspace: Workspace label stamped on every record.
            user_id: Owning tenant; looked up from the document when omitted.

        Returns:
            EntityProcessingResult with persisted counts.
        """
        start_time = time.perf_counter()
        logger.info(
            f"Entity extraction started: document={document_id}, "
            f"workspace={workspace}, chunks={len(chunks or [])}"
        )

        try:
            if not chunks:
                logger.info("No chunks provided, nothing to extract")
                return EntityProcessingResult()

            effective_user_id = user_id
            if not effective_user_id and document_id:
                effective_user_id = await self.store.fetch_document_owner(document_id)
            if not effective_user_id:
                logger.error(f"No owner for document {document_id}; refusing to write untenanted records")
                return EntityProcessingResult()

            inputs = [
                c if isinstance(c, ChunkInput) else ChunkInput.model_validate(
                    c if isinstance(c, dict) else c.model_dump()
                )
                for c in chunks
            ]

            # Phase 1: per-chunk candidates
            raw_entities, raw_relations = await self._extract_chunks(inputs)
            if not raw_entities:
                logger.info("No entities extracted")
                return EntityProcessingResult()

            # Phase 2: single merge over every chunk
            merged = deduplicate_entities(raw_entities)
            logger.info(f"Deduplicated {len(raw_entities)} candidates to {len(merged)} entities")

            entities_by_key: Dict[str, EntityRecord] = {}
            for key, data in merged.items():
                entities_by_key[key] = EntityRecord(
                    id=str(uuid.uuid4()),
                    user_id=effective_user_id,
                    workspace=workspace,
                    entity_name=truncate(data.name, MAX_NAME_LENGTH),
                    entity_type=truncate(data.type, MAX_TYPE_LENGTH),
                    description=merge_descriptions(data.descriptions),
                    source_chunk_ids=list(data.source_chunk_ids),
                )
            entity_records = list(entities_by_key.values())

            relation_records = resolve_relations(
                raw_relations, entities_by_key, workspace, effective_user_id
            )
            logger.info(
                f"Resolved {len(relation_records)} of {len(raw_relations)} extracted relations"
            )

            await _attach_embeddings(
                entity_records, [_entity_embedding_text(e) for e in entity_records]
            )
            await _attach_embeddings(
                relation_records, [_relation_embedding_text(r) for r in relation_records]
            )

            try:
                entities_created = await self.store.bulk_insert(RecordKind.ENTITY, entity_records)
            except StoreError as e:
                # Relations would point at entities that do not exist
                logger.error(f"Entity insert failed for document {document_id}: {e}")
                return EntityProcessingResult()

            relations_created = await self._insert_relations(relation_records)

            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"Entity extraction completed in {elapsed_ms:.0f} ms: "
                f"{entities_created} entities, {relations_created} relations"
            )
            return EntityProcessingResult(
                entities_created=entities_created,
                relations_created=relations_created,
            )

        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"Entity extraction failed for document {document_id} after {elapsed_ms:.0f} ms: {e}",
                exc_info=True,
            )
            return EntityProcessingResult()


async def process_entities_for_document(
    document_id: str,
    chunks: Sequence[Union[ChunkInput, ChunkRecord, dict]],
    workspace: str = "default",
    user_id: Optional[str] = None,
    *,
    store: Optional[GraphStore] = None,
) -> EntityProcessingResult:
    """
    Convenience function running the extraction pipeline for one document.

    Args:
        document_id: Document ID.
        chunks: Ordered chunks (id + content).
        workspace: Workspace label.
        user_id: Owning tenant.
        store: Optional graph store override.

    Returns:
        EntityProcessingResult.
    """
    pipeline = EntityExtractionPipeline(store=store)
    return await pipeline.process_document(document_id, chunks, workspace, user_id)


# ===== Document-level graph maintenance =====

async def get_entities_for_document(
    document_id: str,
    user_id: str,
    *,
    store: Optional[GraphStore] = None,
) -> List[EntityRecord]:
    """Entities mentioned in any chunk of the document."""
    store = store or get_graph_store()
    chunks = await store.fetch_document_chunks(document_id, user_id)
    if not chunks:
        return []
    return await store.fetch_entities_by_chunks([c.id for c in chunks], user_id)


async def delete_entities_for_document(
    document_id: str,
    user_id: str,
    *,
    store: Optional[GraphStore] = None,
) -> Tuple[int, int]:
    """
    Remove a document's contribution to the graph.

    Entities mentioned only by this document are deleted along with their
    relations; entities also mentioned elsewhere keep their remaining source
    chunks.

    Returns:
        Tuple of (entities_deleted, entities_updated).
    """
    store = store or get_graph_store()
    chunks = await store.fetch_document_chunks(document_id, user_id)
    if not chunks:
        return 0, 0

    chunk_ids = {c.id for c in chunks}
    entities = await store.fetch_entities_by_chunks(list(chunk_ids), user_id)

    deleted = 0
    updated = 0
    for entity in entities:
        remaining = [cid for cid in entity.source_chunk_ids if cid not in chunk_ids]
        if not remaining:
            await store.delete_entity(entity.id, user_id)
            deleted += 1
        elif len(remaining) < len(entity.source_chunk_ids):
            await store.update_entity_source_chunks(entity.id, remaining, user_id)
            updated += 1

    logger.info(
        f"Removed document {document_id} from graph: "
        f"{deleted} entities deleted, {updated} entities updated"
    )
    return deleted, updated


async def reprocess_document_entities(
    document_id: str,
    user_id: str,
    workspace: str = "default",
    *,
    store: Optional[GraphStore] = None,
) -> EntityProcessingResult:
    """Drop a document's entities and extract them again from its stored chunks."""
    store = store or get_graph_store()
    chunks = await store.fetch_document_chunks(document_id, user_id)
    if not chunks:
        logger.info(f"No chunks found for document {document_id}")
        return EntityProcessingResult()

    await delete_entities_for_document(document_id, user_id, store=store)
    return await process_entities_for_document(
        document_id, chunks, workspace, user_id, store=store
    )
