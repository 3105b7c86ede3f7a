"""
Embedding Service

On-device embedding generation using fastembed. Implements the ``Embedder``
interface used by the semantic search index.
"""

import logging
from typing import List

import numpy as np

logger = logging.getLogger("knowwhy.common.embedding_service")


class EmbeddingService:
    """
    Embedding service for KnowWhy components.

    Uses fastembed for on-device embedding generation. This avoids external
    API calls and keeps conversation data local. One instance is built by the
    runtime and shared by injection.
    """

    def __init__(
        self,
        mode: str = "femb",
        model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
    ):
        self._mode = mode
        self._model_name = model
        self._model = None
        self._init_model()

    def _init_model(self) -> None:
        """Initialize the underlying fastembed model"""
        if self._mode != "femb":
            logger.warning("Unsupported embedding mode: %s", self._mode)
            return
        try:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=self._model_name)
            logger.info("Embedding service initialized (mode=%s, model=%s)", self._mode, self._model_name)
        except ImportError:
            logger.warning("fastembed package not installed, embeddings unavailable")
        except Exception as e:
            logger.warning("Failed to initialize embedding model %s: %s", self._model_name, e)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._model is not None

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors (L2 normalized)
        """
        if not self._model:
            raise RuntimeError("Embedding model not initialized")

        if not texts:
            return []

        vectors = np.array(list(self._model.embed(texts)), dtype=np.float32)
        return normalize_rows(vectors).tolist()

    def embed_single(self, text: str) -> List[float]:
        if not text:
            raise ValueError("Cannot embed empty text")
        return self.embed([text])[0]


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row, leaving zero rows untouched."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def batch_cosine_similarity(query_vec: List[float], vectors) -> np.ndarray:
    """
    Cosine similarity between a query and multiple vectors, clamped to [0, 1].

    Args:
        query_vec: Query embedding vector
        vectors: Matrix (or list) of embedding vectors to compare against

    Returns:
        Array of similarity scores
    """
    matrix = np.asarray(vectors, dtype=np.float32)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)

    query = np.asarray(query_vec, dtype=np.float32)
    if matrix.shape[1] != query.shape[0]:
        raise ValueError(f"Vector dimension mismatch: {matrix.shape[1]} vs {query.shape[0]}")

    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float32)

    similarities = normalize_rows(matrix) @ (query / query_norm)
    return np.clip(similarities, 0.0, 1.0)
