"""
RAG Query API Router

Provides REST API endpoints for graph-backed question answering:
- POST /rag/query - Answer a question from the user's documents
- POST /rag/retrieve - Raw retrieval result (chunks, entities, relations, context)
"""

# Standard library
import logging
from typing import Optional

# Third-party
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Local application
from core.auth import get_current_user_id
from knowledge_graph.schemas import QueryMode, RetrievalResult
from rag.response_generator import QueryResponse, generate_response
from rag.retriever import retrieve

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request Models =====

class QueryRequest(BaseModel):
    """Question plus retrieval options."""
    query: str = Field(..., min_length=1, description="User question")
    mode: QueryMode = Field(default=QueryMode.MIX, description="Retrieval strategy")
    workspace: str = Field(default="default", description="Workspace label")
    top_k: int = Field(default=10, ge=1, le=50, description="Number of chunks to retrieve")
    system_prompt: Optional[str] = Field(default=None, description="Overrides the default system prompt")
    model: Optional[str] = Field(default=None, description="QA model override")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "query": "Who founded Acme Corp?",
                "mode": "mix",
                "workspace": "default",
                "top_k": 10,
            }
        }
    )

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


class RetrieveRequest(BaseModel):
    """Retrieval-only request."""
    query: str = Field(..., min_length=1)
    mode: QueryMode = QueryMode.MIX
    workspace: str = "default"
    top_k: int = Field(default=10, ge=1, le=50)

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


# ===== Endpoints =====

@router.post("/query", response_model=QueryResponse)
async def query_documents(
    request: QueryRequest,
    user_id: str = Depends(get_current_user_id),
) -> QueryResponse:
    """
    Answer a question from the user's documents.

    Args:
        request: Query, mode, workspace and top_k.
        user_id: Current user's ID (from JWT).

    Returns:
        QueryResponse with answer, sources, entities and the mode used.
    """
    logger.info(f"Query from user {user_id} (mode={request.mode.value}, top_k={request.top_k})")
    return await generate_response(
        request.query,
        user_id,
        request.mode,
        request.workspace,
        request.top_k,
        system_prompt=request.system_prompt,
        model_name=request.model,
    )


@router.post("/retrieve", response_model=RetrievalResult)
async def retrieve_context(
    request: RetrieveRequest,
    user_id: str = Depends(get_current_user_id),
) -> RetrievalResult:
    """Run retrieval only and return the raw result."""
    return await retrieve(
        request.query,
        user_id,
        request.mode,
        request.workspace,
        request.top_k,
    )
