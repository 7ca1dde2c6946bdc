"""
Knowledge Graph API Router

Provides REST API endpoints for per-document graph maintenance:
- POST /graph/documents/{document_id}/entities - Re-extract entities
- GET /graph/documents/{document_id}/entities - List entities
- DELETE /graph/documents/{document_id}/entities - Remove the document's entities

Graph store failures propagate as StoreError and are rendered as 503 by the
app-level handler.
"""

# Standard library
import logging
import os
from typing import List, Optional
from uuid import UUID

# Third-party
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

# Local application
from core.auth import get_current_user_id
from core.errors import AppError, ErrorCode
from knowledge_graph.extractor import (
    delete_entities_for_document,
    get_entities_for_document,
    reprocess_document_entities,
)
from knowledge_graph.schemas import EntityRecord

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter()


def _extraction_enabled() -> bool:
    return os.getenv("ENABLE_ENTITY_EXTRACTION", "true").strip().lower() in {"1", "true", "yes", "on"}


# ===== Request/Response Models =====

class ReprocessRequest(BaseModel):
    """Options for re-extracting a document's entities."""
    workspace: str = Field(default="default", description="Workspace label")


class ReprocessResponse(BaseModel):
    """Counts from an extraction run."""
    document_id: str
    entities_created: int
    relations_created: int


class EntityListResponse(BaseModel):
    """Entities mentioned in a document."""
    document_id: str
    entities: List[EntityRecord]


class EntityDeleteResponse(BaseModel):
    """Effect of removing a document from the graph."""
    document_id: str
    entities_deleted: int
    entities_updated: int


# ===== Endpoints =====

@router.post("/documents/{document_id}/entities", response_model=ReprocessResponse)
async def reprocess_entities(
    document_id: UUID,
    request: Optional[ReprocessRequest] = None,
    user_id: str = Depends(get_current_user_id),
) -> ReprocessResponse:
    """
    Drop and re-extract the entities of one document.

    Args:
        document_id: Document UUID.
        request: Optional workspace override.
        user_id: Current user's ID (from JWT).

    Raises:
        AppError: 503 EXTRACTION_DISABLED when ENABLE_ENTITY_EXTRACTION is off.
    """
    if not _extraction_enabled():
        raise AppError(
            code=ErrorCode.EXTRACTION_DISABLED,
            message="Entity extraction is disabled",
            status_code=503,
        )

    workspace = request.workspace if request else "default"
    logger.info(f"Reprocessing entities for document {document_id} (user {user_id})")
    result = await reprocess_document_entities(str(document_id), user_id, workspace)

    return ReprocessResponse(
        document_id=str(document_id),
        entities_created=result.entities_created,
        relations_created=result.relations_created,
    )


@router.get("/documents/{document_id}/entities", response_model=EntityListResponse)
async def list_entities(
    document_id: UUID,
    user_id: str = Depends(get_current_user_id),
) -> EntityListResponse:
    entities = await get_entities_for_document(str(document_id), user_id)
    return EntityListResponse(document_id=str(document_id), entities=entities)


@router.delete("/documents/{document_id}/entities", response_model=EntityDeleteResponse)
async def delete_entities(
    document_id: UUID,
    user_id: str = Depends(get_current_user_id),
) -> EntityDeleteResponse:
    """Remove a document's contribution to the knowledge graph."""
    deleted, updated = await delete_entities_for_document(str(document_id), user_id)
    return EntityDeleteResponse(
        document_id=str(document_id),
        entities_deleted=deleted,
        entities_updated=updated,
    )
