"""
Response Generator Module

Thin layer over the retrieval engine: retrieves context for a question,
asks the QA model for an answer and packages citations.
"""

# Standard library
import logging
import time
from typing import List, Optional

# Third-party
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

# Local application
from core.providers import get_llm
from knowledge_graph.schemas import ChunkType, QueryMode, RetrievalResult
from knowledge_graph.store import GraphStore, get_graph_store
from rag.media import DEFAULT_TOP_K
from rag.retriever import get_document_info, retrieve

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions using the user's documents.

Rules:
1. Answer only from the provided context. Do not invent facts.
2. When the context does not contain the answer, say so plainly.
3. Cite sources as [Source n] where n matches the numbered sources.
4. Use the entities and relationships to connect facts across sources.
5. Answer in the same language as the question."""

NO_CONTEXT_NOTICE = (
    "No relevant information was found in the user's documents for this question. "
    "Tell the user you could not find an answer in their documents, and do not guess."
)


class SourceInfo(BaseModel):
    """Citation for one retrieved chunk."""
    id: str
    content: str
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    document_type: Optional[str] = None
    chunk_type: Optional[ChunkType] = None
    page_idx: Optional[int] = None
    timestamp_start: Optional[float] = None
    timestamp_end: Optional[float] = None
    similarity: float = 0.0


class EntitySummary(BaseModel):
    """Entity mentioned in the answer context."""
    name: str
    type: str


class QueryResponse(BaseModel):
    """Answer plus what it was grounded on."""
    response: str
    sources: List[SourceInfo] = Field(default_factory=list)
    entities: List[EntitySummary] = Field(default_factory=list)
    mode_used: QueryMode


def build_prompt(query: str, context: str, system_prompt: Optional[str] = None) -> str:
    """Assemble the QA prompt; an empty context gets the no-information notice."""
    sections = [system_prompt or DEFAULT_SYSTEM_PROMPT, ""]
    if context:
        sections.extend(["## Context", "", context])
    else:
        sections.append(NO_CONTEXT_NOTICE)
    sections.extend(["", "## Question", query, "", "## Answer"])
    return "\n".join(sections)


async def build_sources(
    retrieval: RetrievalResult,
    *,
    store: Optional[GraphStore] = None,
) -> List[SourceInfo]:
    """Turn retrieved chunks into citations annotated with file info."""
    document_ids = [c.document_id for c in retrieval.chunks if c.document_id]
    doc_info = await get_document_info(document_ids, store=store)

    sources = []
    for chunk in retrieval.chunks:
        meta = doc_info.get(chunk.document_id) if chunk.document_id else None
        sources.append(
            SourceInfo(
                id=chunk.id,
                content=chunk.content,
                document_id=chunk.document_id,
                document_name=meta.file_name if meta else None,
                document_type=meta.file_type if meta else None,
                chunk_type=chunk.chunk_type,
                page_idx=chunk.page_idx,
                timestamp_start=chunk.timestamp_start,
                timestamp_end=chunk.timestamp_end,
                similarity=chunk.similarity,
            )
        )
    return sources


async def generate_response(
    query: str,
    user_id: str,
    mode: QueryMode = QueryMode.MIX,
    workspace: str = "default",
    top_k: int = DEFAULT_TOP_K,
    *,
    system_prompt: Optional[str] = None,
    model_name: Optional[str] = None,
    store: Optional[GraphStore] = None,
) -> QueryResponse:
    """
    Answer a question from the user's knowledge graph.

    Args:
        query: User question.
        user_id: Tenant ID.
        mode: Retrieval strategy.
        workspace: Workspace label.
        top_k: Requested number of chunks.
        system_prompt: Replaces DEFAULT_SYSTEM_PROMPT when given.
        model_name: Optional QA model override.
        store: Optional graph store override.

    Returns:
        QueryResponse with answer, sources and entities.

    Raises:
        EmbeddingError: If the query could not be embedded.
    """
    store = store or get_graph_store()
    start_time = time.perf_counter()

    retrieval = await retrieve(query, user_id, mode, workspace, top_k, store=store)
    if retrieval.is_empty:
        logger.info(f"No context found for query ({retrieval.mode.value})")

    llm = get_llm("rag_qa", model_name=model_name)
    prompt = build_prompt(query, retrieval.context, system_prompt)
    response = await llm.ainvoke([HumanMessage(content=prompt)])
    answer = response.content if isinstance(response.content, str) else str(response.content)

    sources = await build_sources(retrieval, store=store)
    entities = [
        EntitySummary(name=e.entity_name, type=e.entity_type)
        for e in retrieval.entities
    ]

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        f"Answered query in {elapsed_ms:.0f} ms with {len(sources)} sources"
    )
    return QueryResponse(
        response=answer,
        sources=sources,
        entities=entities,
        mode_used=retrieval.mode,
    )
