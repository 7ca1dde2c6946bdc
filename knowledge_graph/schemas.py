"""
Knowledge Graph Schemas Module

Provides Pydantic models for chunks, entities, relations, retrieval results
and the intermediate extraction representation.
"""

# Standard library
from enum import Enum
from typing import Any, Dict, List, Optional

# Third-party
from pydantic import BaseModel, ConfigDict, Field


class ChunkType(str, Enum):
    """Semantic kind of a stored chunk."""
    TEXT = "text"
    TABLE = "table"
    IMAGE = "image"                  # Image caption / vision description
    EQUATION = "equation"
    VIDEO_SEGMENT = "video_segment"  # Timestamped video transcript
    AUDIO = "audio"                  # Timestamped audio transcript


class EntityType(str, Enum):
    """
    Entity taxonomy offered to the extraction model.

    Stored types are free text (upper-cased); anything outside this list is
    kept as the model wrote it.
    """
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"
    EVENT = "EVENT"
    CONCEPT = "CONCEPT"
    TECHNOLOGY = "TECHNOLOGY"
    PRODUCT = "PRODUCT"
    DATE = "DATE"


class QueryMode(str, Enum):
    """Retrieval strategies."""
    NAIVE = "naive"     # Vector search on chunks only
    LOCAL = "local"     # Entities -> their source chunks
    GLOBAL = "global"   # Relations -> endpoint entities + source chunks
    HYBRID = "hybrid"   # local + global
    MIX = "mix"         # chunks + entities + relations


class RecordKind(str, Enum):
    """Record families held by the graph store."""
    CHUNK = "chunk"
    ENTITY = "entity"
    RELATION = "relation"


class ChunkRecord(BaseModel):
    """
    A stored span of extracted document text.

    Attributes:
        id: Chunk ID.
        user_id: Owning tenant.
        document_id: Owning document.
        chunk_order_index: Position within the document.
        similarity: Score attached by a search; 0.0 when not searched.
    """
    id: str
    user_id: Optional[str] = None
    document_id: Optional[str] = None
    workspace: str = "default"
    chunk_order_index: int = 0
    content: str = ""
    tokens: Optional[int] = None
    chunk_type: ChunkType = ChunkType.TEXT
    page_idx: Optional[int] = None
    timestamp_start: Optional[float] = None
    timestamp_end: Optional[float] = None
    content_vector: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0

    model_config = ConfigDict(extra="ignore")


class EntityRecord(BaseModel):
    """Deduplicated named thing extracted from one or more chunks."""
    id: str
    user_id: Optional[str] = None
    workspace: str = "default"
    entity_name: str
    entity_type: str = ""
    description: Optional[str] = None
    content_vector: Optional[List[float]] = None
    source_chunk_ids: List[str] = Field(default_factory=list)
    similarity: float = 0.0

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "id": "6f1c2c9e-6d0a-4a53-9d7b-2c1f0e0b7a11",
                "workspace": "default",
                "entity_name": "Acme Corp",
                "entity_type": "ORGANIZATION",
                "description": "Company founded by Jane Doe in 2010.",
                "source_chunk_ids": ["chunk-1", "chunk-7"],
                "similarity": 0.82,
            }
        },
    )


class RelationRecord(BaseModel):
    """Typed directed edge between two entities."""
    id: str
    user_id: Optional[str] = None
    workspace: str = "default"
    source_entity_id: str
    source_entity: str = ""
    target_entity_id: str
    target_entity: str = ""
    relation_type: str = "RELATED_TO"
    description: Optional[str] = None
    content_vector: Optional[List[float]] = None
    source_chunk_ids: List[str] = Field(default_factory=list)
    similarity: float = 0.0

    model_config = ConfigDict(extra="ignore")


class DocumentMeta(BaseModel):
    """File information used to annotate citations."""
    file_name: str
    file_type: str


class RetrievalResult(BaseModel):
    """
    In-memory aggregate returned by the retrieval engine.

    Not persisted; rebuilt per query. ``context`` is the rendered block
    handed to the response generator.
    """
    chunks: List[ChunkRecord] = Field(default_factory=list)
    entities: List[EntityRecord] = Field(default_factory=list)
    relations: List[RelationRecord] = Field(default_factory=list)
    context: str = ""
    mode: QueryMode = QueryMode.MIX
    top_k: int = 10
    threshold: float = 0.3

    @property
    def is_empty(self) -> bool:
        return not (self.chunks or self.entities or self.relations)


# ===== Extraction =====

class ChunkInput(BaseModel):
    """Chunk handed to the extraction pipeline."""
    id: str
    content: str = ""
    chunk_type: Optional[ChunkType] = None

    model_config = ConfigDict(extra="ignore")


class ExtractedEntity(BaseModel):
    """Sanitized entity candidate tagged with the chunk it came from."""
    name: str
    type: str
    description: str = ""
    source_chunk_id: str


class ExtractedRelation(BaseModel):
    """Sanitized relation candidate tagged with the chunk it came from."""
    source: str
    target: str
    type: str
    description: str = ""
    source_chunk_id: str


class ExtractionResult(BaseModel):
    """Raw model output for one chunk, already shape-checked."""
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    relations: List[Dict[str, Any]] = Field(default_factory=list)


class EntityProcessingResult(BaseModel):
    """Counts of what one extraction run persisted."""
    entities_created: int = 0
    relations_created: int = 0
