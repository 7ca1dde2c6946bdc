"""
Chat and embedding provider registry.

Extraction, embedding and answer generation fetch their models here, so a
single switch (TEST_MODE / USE_FAKE_PROVIDERS) keeps the whole graph
pipeline offline.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from core.llm_factory import (
    EMBEDDING_DIMENSION,
    LLMPurpose,
    get_embeddings_model,
    get_llm as get_real_llm,
)

logger = logging.getLogger(__name__)


def _is_true(name: str, default: str = "false") -> bool:
    """Parse boolean-like env vars."""
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class ProviderError(RuntimeError):
    """Raised when a provider operation fails."""


class EmbeddingError(ProviderError):
    """Raised when a text could not be embedded after all retries."""


@runtime_checkable
class LLMProvider(Protocol):
    """LLM provider interface."""

    def get_llm(self, purpose: LLMPurpose, model_name: Optional[str] = None) -> Any:
        """Return an LLM client for the requested purpose."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Embedding provider interface (LangChain ``Embeddings`` shape)."""

    async def aembed_query(self, text: str) -> list[float]:
        """Embed a single query text."""

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, preserving order."""


class RealLLMProvider:
    """Production LLM provider backed by core.llm_factory."""

    def get_llm(self, purpose: LLMPurpose, model_name: Optional[str] = None) -> Any:
        return get_real_llm(purpose, model_name=model_name)


class RealEmbeddingProvider:
    """Production embedding provider backed by Google Generative AI."""

    async def aembed_query(self, text: str) -> list[float]:
        return await get_embeddings_model().aembed_query(text)

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return await get_embeddings_model().aembed_documents(texts)


@dataclass
class _FakeMessage:
    """Stands in for ``AIMessage``; call sites only read ``.content``."""

    content: str
    usage_metadata: dict = field(default_factory=lambda: {"total_tokens": 0})


EMPTY_EXTRACTION = '{"entities": [], "relations": []}'


class _FakeChatModel:
    """Offline chat model: empty graph for extraction, a marker answer otherwise."""

    def __init__(self, purpose: LLMPurpose) -> None:
        self.purpose = purpose
        self.model = f"fake-{purpose}"

    async def ainvoke(self, _messages: Any) -> _FakeMessage:
        if self.purpose == "entity_extraction":
            return _FakeMessage(EMPTY_EXTRACTION)
        return _FakeMessage(f"[TEST_MODE] Fake provider response for purpose={self.purpose}")


class FakeLLMProvider:
    """Hands out one ``_FakeChatModel`` per purpose."""

    def __init__(self) -> None:
        self._models: dict[str, _FakeChatModel] = {}

    def get_llm(self, purpose: LLMPurpose, model_name: Optional[str] = None) -> Any:
        return self._models.setdefault(purpose, _FakeChatModel(purpose))


class FakeEmbeddingProvider:
    """
    Deterministic bag-of-words embeddings.

    Each lower-cased token is hashed into one of ``dimension`` buckets and the
    vector is L2-normalized, so texts sharing words get a positive cosine
    similarity and identical texts get exactly 1.0.
    """

    def __init__(self, dimension: int = EMBEDDING_DIMENSION) -> None:
        self.dimension = dimension

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in text.lower().split():
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    async def aembed_query(self, text: str) -> list[float]:
        return self._embed(text)

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]


@dataclass
class ProviderRegistry:
    """Active chat and embedding providers."""

    llm_provider: LLMProvider
    embedding_provider: EmbeddingProvider
    fake: bool = False


_registry: Optional[ProviderRegistry] = None


def configure_providers(use_fake: Optional[bool] = None) -> ProviderRegistry:
    """
    Install the process-wide provider registry.

    Args:
        use_fake: Force fake or real providers. Defaults to fake when
            TEST_MODE or USE_FAKE_PROVIDERS is set.
    """
    global _registry

    if use_fake is None:
        use_fake = _is_true("TEST_MODE") or _is_true("USE_FAKE_PROVIDERS")

    if use_fake:
        _registry = ProviderRegistry(FakeLLMProvider(), FakeEmbeddingProvider(), fake=True)
    else:
        _registry = ProviderRegistry(RealLLMProvider(), RealEmbeddingProvider())

    logger.info("Providers: %s", "fake (offline)" if use_fake else "Google Generative AI")
    return _registry


def _active() -> ProviderRegistry:
    return _registry if _registry is not None else configure_providers()


def get_llm(purpose: LLMPurpose, model_name: Optional[str] = None) -> Any:
    """Chat model for ``purpose`` from the active registry."""
    return _active().llm_provider.get_llm(purpose, model_name=model_name)


def get_embedding_provider() -> EmbeddingProvider:
    return _active().embedding_provider


def using_fake_providers() -> bool:
    return _active().fake
