"""
Gemini client factory.

Two chat purposes exist in the graph pipeline: entity/relation extraction
(near-deterministic JSON output) and question answering over retrieved
context. Both share one embedding model whose dimension fixes the vector
columns of the graph store.
"""

# Standard library
import logging
import os
from functools import lru_cache
from typing import Literal, Optional

# Third-party
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings

logger = logging.getLogger(__name__)

LLMPurpose = Literal["entity_extraction", "rag_qa"]

DEFAULT_CHAT_MODEL = "gemini-2.5-flash"

# Must match the vector(768) columns and search RPCs in Supabase
EMBEDDING_MODEL = "models/text-embedding-004"
EMBEDDING_DIMENSION = 768

_PURPOSE_SETTINGS: dict[str, dict] = {
    "entity_extraction": {"temperature": 0.1, "max_output_tokens": 4096},
    "rag_qa": {"temperature": 0.3, "max_output_tokens": 2048},
}


@lru_cache(maxsize=10)
def get_llm(purpose: LLMPurpose, model_name: Optional[str] = None) -> ChatGoogleGenerativeAI:
    """
    Cached chat model for ``purpose``.

    Args:
        purpose: "entity_extraction" or "rag_qa"; unknown purposes get the
            QA settings.
        model_name: Per-request override of ``DEFAULT_CHAT_MODEL``.
    """
    settings = _PURPOSE_SETTINGS.get(purpose, _PURPOSE_SETTINGS["rag_qa"])
    model = model_name or DEFAULT_CHAT_MODEL
    logger.info("Creating %s chat model %s (%s)", purpose, model, settings)
    return ChatGoogleGenerativeAI(model=model, **settings)


@lru_cache(maxsize=1)
def get_embeddings_model() -> GoogleGenerativeAIEmbeddings:
    """
    Shared embedding client.

    Raises:
        RuntimeError: If GOOGLE_API_KEY is not set.
    """
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_API_KEY not set for embedding model")

    logger.info("Creating embedding client %s", EMBEDDING_MODEL)
    return GoogleGenerativeAIEmbeddings(model=EMBEDDING_MODEL, google_api_key=api_key)


def clear_llm_cache() -> None:
    """Forget cached clients so the next call re-reads configuration."""
    get_llm.cache_clear()
    get_embeddings_model.cache_clear()
