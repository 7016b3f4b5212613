"""Embedding providers and the cache-backed embedder."""

from __future__ import annotations

from collections.abc import Iterable
import hashlib
import math
import os
from typing import Any, Protocol

import httpx

from memory_engine.chunker import hash_text
from memory_engine.config import EmbeddingsConfig
from memory_engine.exceptions import EmbeddingError, EmbeddingUnavailableError
from memory_engine.logging import get_logger
from memory_engine.store import ContentStore

log = get_logger(__name__)

# Provider prefix of a LiteLLM model string -> env var holding its API key.
# None marks providers that need no key.
_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,
}


class EmbeddingProvider(Protocol):
    provider_id: str
    model: str

    def is_available(self) -> bool:
        """Whether a usable credential/configuration exists. Must not touch the network."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one embedding per text, in request order."""


def _normalize_embedding(values: Iterable[float]) -> list[float]:
    vector = [float(v) if isinstance(v, (float, int)) and math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return vector
    return [v / norm for v in vector]


class LiteLLMEmbeddingProvider:
    provider_id = "litellm"

    def __init__(self, model: str, api_key: str = "", base_url: str = "", timeout_seconds: int = 30):
        self.model = str(model).strip()
        self._api_key = str(api_key or "").strip()
        self._base_url = str(base_url or "").strip()
        self._timeout = max(1, int(timeout_seconds))
        if not self.model:
            raise ValueError("LiteLLM embedding model must be configured")

    def is_available(self) -> bool:
        if self._api_key:
            return True
        provider = self.model.split("/", 1)[0].lower() if "/" in self.model else "openai"
        if provider not in _PROVIDER_ENV:
            # Unknown provider prefix; let LiteLLM resolve credentials itself.
            return True
        env_var = _PROVIDER_ENV[provider]
        return env_var is None or bool(os.getenv(env_var))

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        from litellm import aembedding

        kwargs: dict[str, Any] = {"model": self.model, "input": texts, "timeout": self._timeout}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._base_url:
            kwargs["api_base"] = self._base_url
        response = await aembedding(**kwargs)
        data = response.get("data") if isinstance(response, dict) else getattr(response, "data", None)
        if not isinstance(data, list):
            raise ValueError("LiteLLM embedding response missing data")
        indexed: list[tuple[int, list[float]]] = []
        for position, row in enumerate(data):
            raw = row.get("embedding") if isinstance(row, dict) else getattr(row, "embedding", None)
            if not isinstance(raw, list):
                raise ValueError("LiteLLM embedding row missing list embedding")
            index = row.get("index") if isinstance(row, dict) else getattr(row, "index", None)
            indexed.append((int(index) if index is not None else position, [float(v) for v in raw]))
        indexed.sort(key=lambda item: item[0])
        return [vector for _, vector in indexed]


class OllamaEmbeddingProvider:
    provider_id = "ollama"

    def __init__(self, model: str, base_url: str, timeout_seconds: int):
        self.model = str(model).strip() or "nomic-embed-text"
        self._base_url = str(base_url).rstrip("/") or "http://127.0.0.1:11434"
        self._timeout = max(3, int(timeout_seconds))

    def is_available(self) -> bool:
        return bool(self._base_url and self.model)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for text in texts:
                response = await client.post(
                    f"{self._base_url}/api/embeddings",
                    json={"model": self.model, "prompt": text},
                )
                response.raise_for_status()
                payload = response.json()
                embedding = payload.get("embedding")
                if not isinstance(embedding, list):
                    raise ValueError("Ollama embeddings response missing list 'embedding'")
                vectors.append([float(v) for v in embedding])
        return vectors


class LocalHashEmbeddingProvider:
    """Offline hashed bag-of-words vectors; useful without any embedding service."""

    provider_id = "local_hash"

    def __init__(self, dimensions: int = 256):
        self._dimensions = max(64, int(dimensions))
        self.model = f"sha1-bow-{self._dimensions}"

    def is_available(self) -> bool:
        return True

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        embeddings: list[list[float]] = []
        for text in texts:
            bucket = [0.0] * self._dimensions
            for token in text.lower().split():
                token = "".join(ch for ch in token if ch.isalnum())
                if not token:
                    continue
                digest = hashlib.sha1(token.encode("utf-8", errors="ignore")).digest()
                idx = int.from_bytes(digest[:4], byteorder="big", signed=False) % self._dimensions
                sign = -1.0 if digest[4] % 2 else 1.0
                bucket[idx] += sign
            embeddings.append(_normalize_embedding(bucket))
        return embeddings


class DisabledEmbeddingProvider:
    provider_id = "none"

    def __init__(self, model: str = ""):
        self.model = model or "none"

    def is_available(self) -> bool:
        return False

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingUnavailableError(self.provider_id, self.model)


def create_embedding_provider(cfg: EmbeddingsConfig) -> EmbeddingProvider:
    """Build the configured embedding provider."""
    mode = cfg.provider
    if mode == "litellm":
        return LiteLLMEmbeddingProvider(
            model=cfg.model,
            api_key=cfg.api_key,
            base_url=cfg.base_url,
            timeout_seconds=cfg.request_timeout_seconds,
        )
    if mode == "ollama":
        return OllamaEmbeddingProvider(
            model=cfg.model,
            base_url=cfg.ollama_base_url,
            timeout_seconds=cfg.request_timeout_seconds,
        )
    if mode == "local_hash":
        return LocalHashEmbeddingProvider(dimensions=cfg.dimensions)
    return DisabledEmbeddingProvider(cfg.model)


class Embedder:
    """Maps texts to vectors through the embedding cache.

    Only texts whose (provider, model, sha256) key is missing from the cache
    reach the provider, in one batched call per ``embed_batch``. Vectors from a
    failed call are never cached.
    """

    def __init__(self, store: ContentStore, provider: EmbeddingProvider):
        self.store = store
        self.provider = provider

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def model_id(self) -> str:
        return self.provider.model

    def is_available(self) -> bool:
        try:
            return bool(self.provider.is_available())
        except Exception as exc:
            log.debug("Embedding availability check failed", error=str(exc))
            return False

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        hashes = [hash_text(text) for text in texts]
        cached = await self.store.get_cached_embeddings(self.provider_id, self.model_id, hashes)

        # Unique missing texts, first occurrence order.
        missing: dict[str, str] = {}
        for text, text_hash in zip(texts, hashes):
            if text_hash not in cached and text_hash not in missing:
                missing[text_hash] = text

        if missing:
            fresh = await self._request(list(missing.values()))
            new_vectors = dict(zip(missing.keys(), fresh))
            async with self.store.transaction():
                await self.store.put_cached_embeddings(self.provider_id, self.model_id, new_vectors)
            cached.update(new_vectors)
            log.debug(
                "Embedded texts",
                provider=self.provider_id,
                model=self.model_id,
                requested=len(missing),
                cached=len(texts) - len(missing),
            )

        return [cached[text_hash] for text_hash in hashes]

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def _request(self, texts: list[str]) -> list[list[float]]:
        if not self.is_available():
            raise EmbeddingUnavailableError(self.provider_id, self.model_id)
        try:
            vectors = await self.provider.embed_batch(texts)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding request failed: {exc}",
                provider_id=self.provider_id,
                model=self.model_id,
            ) from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts",
                provider_id=self.provider_id,
                model=self.model_id,
            )
        return [[float(v) for v in vector] for vector in vectors]
