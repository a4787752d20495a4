"""Shared fixtures."""

import pytest

from dialog_kg.storage import (
    InMemoryAnalysisStateStore,
    InMemoryEntityStore,
    InMemoryPropositionStore,
)
from fakes import HashEmbeddingProvider, ScriptedLLM


@pytest.fixture
def embeddings() -> HashEmbeddingProvider:
    return HashEmbeddingProvider()


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def proposition_store(embeddings) -> InMemoryPropositionStore:
    return InMemoryPropositionStore(embeddings)


@pytest.fixture
def entity_store(embeddings) -> InMemoryEntityStore:
    return InMemoryEntityStore(embeddings)


@pytest.fixture
def state_store() -> InMemoryAnalysisStateStore:
    return InMemoryAnalysisStateStore()
