"""Embedding math and the embedder wrapper."""

import logging

import numpy as np

from .audio import loop_pad
from .exceptions import SpeakerEmbeddingError
from .protocols import EmbedFunction
from .settings import SpeakerIdSettings, settings as default_settings

logger = logging.getLogger(__name__)

NORM_EPSILON = 1e-10


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Return a unit-L2 float32 copy of a vector.

    The epsilon added to the sum of squares keeps an all-zero vector finite.
    """
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    ss = float(np.dot(v.astype(np.float64), v.astype(np.float64))) + NORM_EPSILON
    return (v * np.float32(1.0 / np.sqrt(ss))).astype(np.float32)


def l2_normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Return a copy of a matrix with every row L2-normalized."""
    m = np.asarray(matrix, dtype=np.float32)
    if m.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {m.shape}")
    return np.stack([l2_normalize(row) for row in m]) if len(m) else m.copy()


def compute_centroid(embeddings: list[np.ndarray] | np.ndarray) -> np.ndarray:
    """Compute the unit-normalized centroid of multiple embeddings.

    Args:
        embeddings: Embedding vectors (list or K x D matrix).

    Returns:
        Normalized mean embedding as float32 numpy array.

    Raises:
        ValueError: If embeddings is empty.
    """
    if len(embeddings) == 0:
        raise ValueError("Cannot compute centroid of empty embeddings list")

    mean = np.mean(np.asarray(embeddings, dtype=np.float32), axis=0)
    return l2_normalize(mean)


def fold_into_mean(
    mean: np.ndarray | None,
    count: int,
    embedding: np.ndarray,
) -> tuple[np.ndarray, int]:
    """Fold one embedding into a running mean.

    ``new = normalize((mean * n + embedding) / (n + 1))``

    Args:
        mean: Current unit mean, or None when no mean exists yet.
        count: Number of samples folded into ``mean`` so far.
        embedding: Unit embedding to add.

    Returns:
        Tuple of (new unit mean, new count).
    """
    if mean is None or count <= 0:
        return l2_normalize(embedding), 1

    n = count
    mixed = (mean.astype(np.float32) * n + embedding.astype(np.float32)) / (n + 1)
    return l2_normalize(mixed), n + 1


class Embedder:
    """Wraps an embedding oracle with input padding and output validation.

    Every returned embedding is finite and unit-L2.
    """

    def __init__(
        self,
        embed: EmbedFunction,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._embed = embed
        self._settings = settings or default_settings
        self._min_samples = self._settings.seconds_to_samples(
            self._settings.embed_min_sec
        )

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        return self.embed(samples)

    def embed(self, samples: np.ndarray) -> np.ndarray:
        """Embed PCM16 samples.

        Args:
            samples: Audio samples as int16 numpy array.

        Returns:
            Unit-normalized float32 embedding.

        Raises:
            SpeakerEmbeddingError: If the oracle fails or returns an empty
                or non-finite vector.
        """
        x = np.asarray(samples, dtype=np.int16)
        if len(x) < self._min_samples:
            logger.debug(
                f"Padded embedder input from {len(x)} to {self._min_samples} samples"
            )
            x = loop_pad(x, self._min_samples)

        try:
            raw = self._embed(x)
        except SpeakerEmbeddingError:
            raise
        except Exception as e:
            raise SpeakerEmbeddingError(f"Embedding extraction failed: {e}") from e

        emb = np.asarray(raw if raw is not None else [], dtype=np.float32).reshape(-1)
        if emb.size == 0:
            raise SpeakerEmbeddingError("Empty embedding")
        if not np.all(np.isfinite(emb)):
            raise SpeakerEmbeddingError("Embedding has non-finite values")

        return l2_normalize(emb)
