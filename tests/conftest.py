from __future__ import annotations

import pytest

from tests.fakes import FakeEmbedder, InMemoryVectorStore


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()
