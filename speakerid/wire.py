"""Portable cluster blob and the stateless verifier built on it.

Layout, little-endian::

    b"SPKC" | version:i32 | K:i32 | D:i32 | payload

Version 2 (current) payload is K x D float32 rows. Version 1 payload is
mean[D] followed by K x D rows; it is still decoded, with the mean kept as
an explicit extra target.
"""

import logging
import struct
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import numpy as np

from .audio import as_pcm16, last_window
from .embedding import Embedder, compute_centroid, l2_normalize, l2_normalize_rows
from .exceptions import FormatError, StateError, ValidationError
from .protocols import EmbedFunction, VadFunction
from .segmentation import last_voiced_window
from .settings import SpeakerIdSettings, settings as default_settings

logger = logging.getLogger(__name__)

MAGIC = b"SPKC"
CURRENT_VERSION = 2
HEADER = struct.Struct("<4siii")
FLOAT32_LE = np.dtype("<f4")


@dataclass
class PortableCluster:
    """Decoded cluster: K unit rows and an optional unit mean."""

    rows: np.ndarray
    mean: np.ndarray | None = None

    @property
    def k(self) -> int:
        return int(self.rows.shape[0])

    @property
    def d(self) -> int:
        return int(self.rows.shape[1])

    def targets(self) -> np.ndarray:
        """Matrix of every target: the cluster rows, then the mean if present."""
        if self.mean is None:
            return self.rows
        return np.vstack([self.rows, self.mean.reshape(1, -1)])


def encode_cluster(
    rows: np.ndarray,
    *,
    mean: np.ndarray | None = None,
    append_mean: bool = False,
) -> bytes:
    """Encode cluster rows as a current-version blob.

    Args:
        rows: K x D matrix (K may be 0).
        mean: Mean to append when ``append_mean`` is set. Computed from the
            rows when omitted.
        append_mean: Store the mean as an extra last row.

    Raises:
        ValidationError: If the matrix is not 2-D with D > 0, or non-finite.
    """
    matrix = np.asarray(rows, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[1] <= 0:
        raise ValidationError(f"Cluster must be K x D with D > 0, got {matrix.shape}")

    if append_mean:
        if mean is None:
            mean = compute_centroid(matrix)
        matrix = np.vstack([matrix, l2_normalize(mean).reshape(1, -1)])

    if not np.all(np.isfinite(matrix)):
        raise ValidationError("Cluster has non-finite values")

    k, d = matrix.shape
    return HEADER.pack(MAGIC, CURRENT_VERSION, k, d) + matrix.astype(FLOAT32_LE).tobytes()


def _read_floats(payload: memoryview, count: int) -> np.ndarray:
    return np.frombuffer(payload[: count * 4], dtype=FLOAT32_LE).astype(np.float32)


def _decode_v1(payload: memoryview, k: int, d: int) -> PortableCluster:
    needed = (k + 1) * d * 4
    if len(payload) < needed:
        raise FormatError(f"Truncated v1 blob: {len(payload)} payload bytes, need {needed}")
    mean = _read_floats(payload, d)
    rows = _read_floats(payload[d * 4 :], k * d).reshape(k, d)
    return PortableCluster(rows=rows, mean=mean)


def _decode_v2(payload: memoryview, k: int, d: int) -> PortableCluster:
    needed = k * d * 4
    if len(payload) < needed:
        raise FormatError(f"Truncated blob: {len(payload)} payload bytes, need {needed}")
    return PortableCluster(rows=_read_floats(payload, k * d).reshape(k, d))


_DECODERS: dict[int, Callable[[memoryview, int, int], PortableCluster]] = {
    1: _decode_v1,
    2: _decode_v2,
}


def decode_cluster(blob: bytes | bytearray | memoryview) -> PortableCluster:
    """Decode a blob produced by :func:`encode_cluster` (or a version 1 writer).

    Rows and mean are re-normalized.

    Raises:
        FormatError: On bad magic, unknown version, bad shape, truncation
            or non-finite values.
    """
    view = memoryview(bytes(blob))
    if len(view) < HEADER.size:
        raise FormatError(f"Blob too short: {len(view)} bytes")

    magic, version, k, d = HEADER.unpack_from(view)
    if magic != MAGIC:
        raise FormatError(f"Bad magic {magic!r}")

    decoder = _DECODERS.get(version)
    if decoder is None:
        raise FormatError(f"Unsupported cluster blob version {version}")
    if k < 0 or d <= 0:
        raise FormatError(f"Bad cluster shape K={k} D={d}")

    cluster = decoder(view[HEADER.size :], k, d)

    if not np.all(np.isfinite(cluster.rows)) or (
        cluster.mean is not None and not np.all(np.isfinite(cluster.mean))
    ):
        raise FormatError("Cluster blob has non-finite values")

    cluster.rows = l2_normalize_rows(cluster.rows)
    if cluster.mean is not None:
        cluster.mean = l2_normalize(cluster.mean)
    return cluster


class Verifier:
    """Scores audio against a portable cluster without touching the filesystem.

    ``verify`` never raises: any failure yields negative infinity.
    """

    def __init__(
        self,
        cluster: PortableCluster,
        embedder: EmbedFunction | Embedder | None = None,
        vad: VadFunction | None = None,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._cluster = cluster
        self._settings = settings or default_settings
        self._embedder: Embedder | None = None
        self._vad = vad
        if embedder is not None:
            self.bind(embedder, vad)

    def bind(self, embedder: EmbedFunction | Embedder, vad: VadFunction | None = None) -> None:
        """Attach (or replace) the embedding oracle and optional VAD."""
        self._embedder = (
            embedder if isinstance(embedder, Embedder) else Embedder(embedder, self._settings)
        )
        if vad is not None:
            self._vad = vad

    @property
    def cluster(self) -> PortableCluster:
        return self._cluster

    @property
    def k(self) -> int:
        return self._cluster.k

    @property
    def d(self) -> int:
        return self._cluster.d

    def window(self, audio: bytes | np.ndarray) -> np.ndarray:
        """Canonical window: last voiced second, or last second without a VAD."""
        return canonical_window(as_pcm16(audio), self._vad, self._settings)

    def verify(self, audio: bytes | np.ndarray) -> float:
        """Return the best cosine score of ``audio`` against every target."""
        try:
            if self._embedder is None:
                raise StateError("No embedder bound to verifier")
            targets = self._cluster.targets()
            if len(targets) == 0:
                return float("-inf")
            query = self._embedder(self.window(audio))
            return float(np.max(targets @ query))
        except Exception as e:
            logger.warning(f"Verification failed: {e}")
            return float("-inf")

    def get_cluster(self, *, append_mean: bool = False) -> bytes:
        return encode_cluster(
            self._cluster.rows, mean=self._cluster.mean, append_mean=append_mean
        )


def canonical_window(
    samples: np.ndarray,
    vad: VadFunction | None,
    settings: SpeakerIdSettings,
) -> np.ndarray:
    want = settings.seconds_to_samples(settings.verifier_window_sec)
    if vad is None:
        return last_window(samples, want)
    return last_voiced_window(
        samples, vad, settings.vad_chunk, want, settings.verifier_vad_threshold
    )


def create_verifier_from_cluster(
    blob: bytes,
    embedder: EmbedFunction | Embedder | None = None,
    vad: VadFunction | None = None,
    settings: SpeakerIdSettings | None = None,
) -> Verifier:
    """Rebuild a verifier from a blob.

    Raises:
        FormatError: If the blob is malformed.
    """
    return Verifier(decode_cluster(blob), embedder, vad, settings)


def create_verifier_from_audio(
    buffers: Iterable[bytes | np.ndarray],
    embedder: EmbedFunction | Embedder,
    vad: VadFunction | None = None,
    settings: SpeakerIdSettings | None = None,
) -> Verifier:
    """Build a verifier from raw enrollment buffers, one exemplar per buffer.

    Raises:
        ValidationError: If no buffers are given.
        SpeakerEmbeddingError: If embedding fails.
    """
    settings = settings or default_settings
    emb = embedder if isinstance(embedder, Embedder) else Embedder(embedder, settings)

    rows = [emb(canonical_window(as_pcm16(buf), vad, settings)) for buf in buffers]
    if not rows:
        raise ValidationError("No enrollment buffers given")

    matrix = np.stack(rows)
    cluster = PortableCluster(rows=matrix, mean=compute_centroid(matrix))
    return Verifier(cluster, emb, vad, settings)
