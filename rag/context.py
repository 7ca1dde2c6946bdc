"""
Context Assembly

Renders retrieved entities, relations and chunks into the text block handed
to the answering model.
"""

# Standard library
from typing import List

# Local application
from knowledge_graph.schemas import ChunkRecord, EntityRecord, RelationRecord


def _entity_section(entities: List[EntityRecord]) -> List[str]:
    lines = ["### Relevant Entities"]
    for entity in entities:
        lines.append(
            f"- **{entity.entity_name}** ({entity.entity_type}): "
            f"{entity.description or 'No description'}"
        )
    lines.append("")
    return lines


def _relation_section(relations: List[RelationRecord]) -> List[str]:
    lines = ["### Relationships"]
    for relation in relations:
        lines.append(
            f"- {relation.source_entity} → {relation.relation_type} → "
            f"{relation.target_entity}: {relation.description or ''}"
        )
    lines.append("")
    return lines


def _chunk_section(chunks: List[ChunkRecord]) -> List[str]:
    lines = ["### Source Documents"]
    for index, chunk in enumerate(chunks, start=1):
        lines.append(f"[Source {index}] (similarity: {chunk.similarity:.3f})")
        lines.append(chunk.content)
        lines.append("")
    return lines


def build_context(
    chunks: List[ChunkRecord],
    entities: List[EntityRecord],
    relations: List[RelationRecord],
) -> str:
    """
    Build the context block: entities, then relationships, then sources.

    Sections with no items are left out; no items at all gives ``""``.
    """
    lines: List[str] = []
    if entities:
        lines.extend(_entity_section(entities))
    if relations:
        lines.extend(_relation_section(relations))
    if chunks:
        lines.extend(_chunk_section(chunks))
    return "\n".join(lines)
