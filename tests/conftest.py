import hashlib
import math
import re

import pytest

from memory_engine.indexer import CorpusDocument


class CountingProvider:
    """Deterministic bag-of-words embeddings with call accounting."""

    provider_id = "fake"

    def __init__(self, model: str = "bow-64", dimensions: int = 64):
        self.model = model
        self.dimensions = dimensions
        self.available = True
        self.fail = False
        self.calls: list[list[str]] = []

    def is_available(self) -> bool:
        return self.available

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("provider down")
        return [self._embed(text) for text in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[digest[0] % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


class InMemoryCorpus:
    def __init__(self, documents: dict[str, str] | None = None):
        self.documents = dict(documents or {})

    def list_documents(self) -> list[CorpusDocument]:
        return [
            CorpusDocument(path=path, content=content, size=len(content))
            for path, content in self.documents.items()
        ]


@pytest.fixture
def provider() -> CountingProvider:
    return CountingProvider()


@pytest.fixture
def corpus() -> InMemoryCorpus:
    return InMemoryCorpus()
