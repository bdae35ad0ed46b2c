import asyncio
from typing import Protocol

import requests

from ..config import Settings


class EmbeddingError(RuntimeError):
    """The embedding provider is unreachable or returned something unusable."""


class EmbeddingProvider(Protocol):
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...


def _to_vector(values) -> list[float]:
    if not isinstance(values, list):
        raise EmbeddingError(f"Embedding is not a list: {values!r}")
    try:
        return [float(x) for x in values]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding holds non-numeric values: {e}") from e


# ============================================================
# OLLAMA
# ============================================================

class OllamaEmbedder:
    """
    Calls Ollama's embedding endpoint.

    Request:  { "model": "...", "prompt": "..." }
    Response: { "embedding": [...] } (older builds: { "data": [ { "embedding": [...] } ] })
    """

    def __init__(self, url: str, model: str, dimensions: int, timeout: float = 30.0):
        self.url = url
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout

    def embed_sync(self, text: str) -> list[float]:
        payload = {"model": self.model, "prompt": text}

        try:
            r = requests.post(self.url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.exceptions.RequestException as e:
            raise EmbeddingError(f"Ollama embedding request failed: {str(e)}") from e
        except ValueError as e:
            raise EmbeddingError(f"Ollama embedding response is not JSON: {e}") from e

        if isinstance(data, dict) and data.get("embedding"):
            return _to_vector(data["embedding"])

        items = data.get("data") if isinstance(data, dict) else None
        if isinstance(items, list) and items and isinstance(items[0], dict):
            embedding = items[0].get("embedding")
            if embedding:
                return _to_vector(embedding)

        raise EmbeddingError(f"Unexpected embedding response: {data}")

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed_sync, text)


# ============================================================
# OPENAI
# ============================================================

class OpenAIEmbedder:
    """
    Calls the OpenAI-compatible /embeddings endpoint.

    Request:  { "model": "...", "input": "..." }
    Response: { "data": [ { "embedding": [...] } ] }
    """

    def __init__(self, api_key: str, model: str, dimensions: int, base_url: str = "https://api.openai.com/v1", timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def embed_sync(self, text: str) -> list[float]:
        if not self.api_key:
            raise EmbeddingError("OPENAI_API_KEY is not set")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {"model": self.model, "input": text, "dimensions": self.dimensions}

        try:
            r = requests.post(f"{self.base_url}/embeddings", json=payload, headers=headers, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.exceptions.RequestException as e:
            msg = str(e)
            if e.response is not None:
                msg += f" | Body: {e.response.text}"
            raise EmbeddingError(f"OpenAI embedding request failed: {msg}") from e
        except ValueError as e:
            raise EmbeddingError(f"OpenAI embedding response is not JSON: {e}") from e

        items = data.get("data") if isinstance(data, dict) else None
        if isinstance(items, list) and items and isinstance(items[0], dict) and items[0].get("embedding"):
            return _to_vector(items[0]["embedding"])

        raise EmbeddingError(f"Unexpected embedding response: {data}")

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed_sync, text)


def build_embedder(settings: Settings) -> EmbeddingProvider | None:
    """
    Embedder selected by EMBED_PROVIDER, or None when semantic matching is off.
    """
    if settings.EMBED_PROVIDER == "ollama":
        return OllamaEmbedder(
            url=settings.OLLAMA_EMBED_URL,
            model=settings.OLLAMA_EMBED_MODEL,
            dimensions=settings.VECTOR_DIM,
            timeout=settings.EMBED_TIMEOUT,
        )
    if settings.EMBED_PROVIDER == "openai":
        return OpenAIEmbedder(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_EMBED_MODEL,
            dimensions=settings.VECTOR_DIM,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.EMBED_TIMEOUT,
        )
    return None
