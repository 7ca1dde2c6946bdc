"""
Embedding Helpers

Wraps the active embedding provider with retry and exponential backoff.
Query embedding failures are raised; batch embedding failures degrade to
``None`` vectors so callers can keep going without them.
"""

# Standard library
import asyncio
import logging
from typing import List, Optional

# Local application
from core.providers import EmbeddingError, get_embedding_provider

# Configure logging
logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0
EMBEDDING_BATCH_SIZE = 100


async def generate_embedding(
    text: str,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY_SECONDS,
) -> List[float]:
    """
    Embed a single text, retrying with exponential backoff (1s, 2s, 4s...).

    Args:
        text: Text to embed.
        max_retries: Total attempts.
        base_delay: Delay before the second attempt.

    Returns:
        Embedding vector.

    Raises:
        EmbeddingError: If every attempt failed or returned nothing.
    """
    provider = get_embedding_provider()
    last_error: Optional[Exception] = None

    for attempt in range(1, max_retries + 1):
        try:
            vector = await provider.aembed_query(text)
            if not vector:
                raise EmbeddingError("No embedding values returned")
            if attempt > 1:
                logger.info(f"Embedding succeeded on attempt {attempt}")
            return list(vector)
        except Exception as e:
            last_error = e
            logger.warning(f"Embedding attempt {attempt}/{max_retries} failed: {e}")
            if attempt < max_retries:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    raise EmbeddingError(
        f"Failed to generate embedding after {max_retries} attempts: {last_error}"
    ) from last_error


async def generate_embeddings_batch(
    texts: List[str],
    batch_size: int = EMBEDDING_BATCH_SIZE,
) -> List[Optional[List[float]]]:
    """
    Embed many texts in batches, keeping input order.

    A batch that fails is logged and yields ``None`` for each of its texts.

    Args:
        texts: Texts to embed.
        batch_size: Texts per provider call.

    Returns:
        One vector (or None) per input text.
    """
    if not texts:
        return []

    provider = get_embedding_provider()
    vectors: List[Optional[List[float]]] = []
    failed = 0

    for start in range(0, len(texts), batch_size):
        batch = texts[start:start + batch_size]
        try:
            result = await provider.aembed_documents(batch)
            vectors.extend(list(v) if v else None for v in result)
        except Exception as e:
            failed += len(batch)
            logger.error(f"Embedding batch {start}-{start + len(batch) - 1} failed: {e}")
            vectors.extend([None] * len(batch))

    logger.info(f"Batch embedding complete: {len(texts) - failed}/{len(texts)} succeeded")
    return vectors
