"""
Pytest Configuration and Shared Fixtures

Forces fake providers for the whole suite and provides a fresh in-memory
graph store per test.
"""

# Standard library
import os
import sys

# Third-party
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Never reach real providers from the test suite
os.environ.setdefault("TEST_MODE", "true")

# Local application
from core.providers import configure_providers  # noqa: E402
from knowledge_graph.memory_store import InMemoryGraphStore  # noqa: E402


# ============================================================================
# Provider Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def fake_providers():
    """Every test starts on the fake provider registry."""
    registry = configure_providers(use_fake=True)
    yield registry
    configure_providers(use_fake=True)


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def memory_store():
    """Fresh in-memory graph store."""
    return InMemoryGraphStore()
