import logging
import zlib
import numpy as np
import requests
from flask import current_app
from studybuddy.services.errors import (
    EmbeddingUnavailable,
    EmbeddingProviderError,
    NoValidInput,
    ProviderContractViolation,
)

logger = logging.getLogger(__name__)


def _synthetic_vector(text, dim):
    """
    Deterministic placeholder embedding used when no provider key is configured.
    Character trigram + word hashing into a fixed-size, L2-normalized vector.
    Carries no semantic meaning beyond shared spelling.
    """
    vec = np.zeros(dim, dtype=np.float64)
    text = text.lower()

    for i in range(len(text) - 2):
        h = zlib.crc32(text[i:i + 3].encode("utf-8")) % dim
        vec[h] += 1.0

    for word in text.split():
        h = zlib.crc32(word.encode("utf-8")) % dim
        vec[h] += 2.0  # Weight words more than char trigrams

    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec.tolist()


class EmbeddingService:
    """Turns text into fixed-dimension vectors via an OpenAI-compatible /embeddings API."""

    def __init__(self, config=None):
        config = config if config is not None else current_app.config
        self.model = config.get("EMBEDDING_MODEL", "text-embedding-3-small")
        self.dimension = int(config.get("EMBEDDING_DIMENSION", 1536))
        self.max_chars = int(config.get("EMBEDDING_MAX_CHARS", 8000))
        self.timeout = config.get("EMBEDDING_TIMEOUT", 30)
        self._resolve_api_key(config)
        self._warned_synthetic = False

    def _resolve_api_key(self, config):
        """OpenAI key wins; an OpenRouter key routes through OpenRouter."""
        openai_key = config.get("OPENAI_API_KEY") or ""
        openrouter_key = config.get("OPENROUTER_API_KEY") or ""
        if openai_key:
            self.api_key = openai_key
            self.base_url = config.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
        elif openrouter_key:
            self.api_key = openrouter_key
            self.base_url = config.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
        else:
            self.api_key = ""
            self.base_url = None
        if config.get("EMBEDDING_BASE_URL"):
            self.base_url = config["EMBEDDING_BASE_URL"]

    @property
    def is_synthetic(self):
        return not self.api_key

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _prepare(self, text):
        return text.strip()[:self.max_chars]

    def _synthesize(self, texts):
        if not self._warned_synthetic:
            logger.warning("No embedding API key configured, using synthetic placeholder vectors")
            self._warned_synthetic = True
        return [_synthetic_vector(t, self.dimension) for t in texts]

    def embed(self, text):
        """
        Embed a single text.

        Raises:
            EmbeddingUnavailable: text is empty after trimming
            EmbeddingProviderError / ProviderContractViolation: provider failure
        """
        if not text or not text.strip():
            raise EmbeddingUnavailable("Text cannot be empty")
        return self._embed([self._prepare(text)])[0]

    def embed_batch(self, texts):
        """
        Embed several texts in one provider call.

        Empty and whitespace-only entries are dropped before sending; the result
        holds one vector per remaining entry, in input order.

        Raises:
            NoValidInput: nothing left after filtering
        """
        valid = [self._prepare(t) for t in texts if t and t.strip()]
        if not valid:
            raise NoValidInput("No valid texts to embed")
        return self._embed(valid)

    def _embed(self, inputs):
        if self.is_synthetic:
            return self._synthesize(inputs)

        payload = {
            "model": self.model,
            "input": inputs,
            "dimensions": self.dimension,
        }
        try:
            resp = requests.post(
                f"{self.base_url}/embeddings",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as e:
            raise EmbeddingProviderError(f"Embedding request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise EmbeddingProviderError(f"Embedding request failed: {e}") from e
        except ValueError as e:
            raise ProviderContractViolation("Embedding provider returned invalid JSON") from e

        return self._parse_vectors(data, len(inputs))

    def _parse_vectors(self, data, expected):
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != expected:
            got = len(items) if isinstance(items, list) else 0
            logger.error("Embedding provider returned %d vectors for %d inputs", got, expected)
            raise ProviderContractViolation(f"Expected {expected} embeddings, got {got}")

        # The API may reorder; "index" ties each vector back to its input
        if all(isinstance(item, dict) and "index" in item for item in items):
            items = sorted(items, key=lambda item: item["index"])

        vectors = []
        for item in items:
            vec = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(vec, list) or len(vec) != self.dimension:
                got = len(vec) if isinstance(vec, list) else 0
                logger.error("Embedding provider returned dimension %d, expected %d", got, self.dimension)
                raise ProviderContractViolation(f"Expected dimension {self.dimension}, got {got}")
            vectors.append([float(x) for x in vec])
        return vectors


def extract_topics(text, limit=5):
    """Most frequent words longer than 4 characters, ties broken by first occurrence."""
    cleaned = "".join(ch if ch.isalnum() or ch.isspace() or ch == "_" else " " for ch in (text or "").lower())
    frequency = {}
    for word in cleaned.split():
        if len(word) > 4:
            frequency[word] = frequency.get(word, 0) + 1
    ranked = sorted(frequency.items(), key=lambda kv: -kv[1])
    return [word for word, _ in ranked[:limit]]


def get_embedding_service():
    """Per-app EmbeddingService, built from the app config on first use."""
    service = current_app.extensions.get("embedding_service")
    if service is None:
        service = EmbeddingService()
        current_app.extensions["embedding_service"] = service
    return service
