"""Speaker model: exemplar cluster plus running mean."""

import logging
from dataclasses import dataclass

import numpy as np

from .embedding import Embedder, compute_centroid, fold_into_mean, l2_normalize
from .exceptions import EnrollmentError, NotEnrolledError, SpeakerIdError, ValidationError
from .flex import slice_samples
from .npy_io import validate_array
from .settings import SpeakerIdSettings, settings as default_settings
from .store import SpeakerModelStore

logger = logging.getLogger(__name__)

MEAN_LABEL = "mean"


def cluster_label(index: int) -> str:
    """Target label of the cluster row at zero-based ``index``."""
    return f"c#{index + 1}"


@dataclass
class EnrollmentResult:
    """Outcome of a successful enrollment."""

    cluster_size: int
    embedding_dim: int


class SpeakerModel:
    """Enrollment, online adaptation and target assembly for one speaker.

    The cluster is fixed after enrollment; only the running mean moves.
    Adaptation is bounded by ``adapt_max`` per instance lifetime.
    """

    def __init__(
        self,
        store: SpeakerModelStore,
        embedder: Embedder,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._settings = settings or default_settings
        self._mean: np.ndarray | None = None
        self._count = 0
        self._cluster: np.ndarray | None = None
        self._adapted_this_run = 0

    @property
    def store(self) -> SpeakerModelStore:
        return self._store

    @property
    def mean(self) -> np.ndarray | None:
        return None if self._mean is None else self._mean.copy()

    @property
    def count(self) -> int:
        return self._count

    @property
    def cluster(self) -> np.ndarray | None:
        return None if self._cluster is None else self._cluster.copy()

    @property
    def adapted_this_run(self) -> int:
        return self._adapted_this_run

    def load(self) -> None:
        """Load persisted state, discarding corrupt files."""
        self._cluster = self._store.try_load_cluster()
        loaded = self._store.try_load_mean(self._cluster_dim())
        if loaded is not None:
            self._mean, self._count = loaded
        if self._mean is not None or self._cluster is not None:
            logger.info(
                f"Loaded speaker model: mean={'yes' if self._mean is not None else 'no'} "
                f"count={self._count} "
                f"cluster={0 if self._cluster is None else len(self._cluster)}"
            )

    def has_enrollment(self) -> bool:
        return self._store.has_files()

    def reset(self) -> None:
        """Clear in-memory state. Files on disk are untouched."""
        self._mean = None
        self._count = 0
        self._cluster = None
        self._adapted_this_run = 0
        logger.info("Cleared in-memory mean/cluster")

    # ---- enrollment ----

    def enroll_from_segment(self, voiced: np.ndarray) -> EnrollmentResult:
        """Enroll from one voiced segment.

        The segment is sliced at ``slice_sec``/``slice_hop_sec``; the first
        ``cluster_size`` slice embeddings become the cluster.

        Raises:
            EnrollmentError: If the segment is empty.
            SpeakerEmbeddingError: If the embedder fails.
            StorageError, ValidationError: If persisting fails.
        """
        if len(voiced) == 0:
            raise EnrollmentError("No voiced audio to enroll from")

        s = self._settings
        slices = slice_samples(
            voiced,
            s.seconds_to_samples(s.slice_sec),
            s.seconds_to_samples(s.effective_slice_hop_sec),
        )
        embeddings = [self._embedder(sl) for sl in slices]
        if not embeddings:
            embeddings = [self._embedder(voiced)]

        logger.info(
            f"Enrolling from {len(voiced) / s.sample_rate:.2f}s voiced audio: "
            f"using {min(s.cluster_size, len(embeddings))}/{len(embeddings)} slices"
        )
        return self._commit(embeddings)

    def enroll_from_embeddings(self, embeddings: list[np.ndarray]) -> EnrollmentResult:
        """Enroll from precomputed exemplar embeddings.

        Raises:
            EnrollmentError: If no embeddings are given.
            ValidationError: If embeddings differ in dimension or are non-finite.
        """
        if embeddings is None or len(embeddings) == 0:
            raise EnrollmentError("No embeddings provided")
        return self._commit([np.asarray(e, dtype=np.float32).reshape(-1) for e in embeddings])

    def _commit(self, embeddings: list[np.ndarray]) -> EnrollmentResult:
        k = min(self._settings.cluster_size, len(embeddings))
        if k < 1:
            raise EnrollmentError("Cluster size must be at least 1")

        chosen = embeddings[:k]
        dim = len(chosen[0])
        for emb in chosen:
            if len(emb) != dim:
                raise ValidationError(f"Embedding dim {len(emb)} does not match {dim}")
            validate_array(emb, "embedding")

        cluster = np.stack([l2_normalize(e) for e in chosen])
        mean = compute_centroid(cluster)

        self._store.save_cluster(cluster)
        self._store.save_mean(mean, k)

        cluster_check = self._store.load_cluster(k, dim)
        mean_check = self._store.load_mean(dim)
        validate_array(mean_check, "mean", expected_cols=dim)

        self._cluster = cluster_check
        self._mean = l2_normalize(mean_check)
        self._count = k
        logger.info(f"Enrollment complete: K={k} D={dim}, files verified")
        return EnrollmentResult(cluster_size=k, embedding_dim=dim)

    # ---- scoring support ----

    def targets(self) -> list[tuple[str, np.ndarray]]:
        """Return ``[("mean", m), ("c#1", row0), ...]``.

        The mean is loaded lazily and rebuilt from the cluster when its file
        is missing or unusable.

        Raises:
            NotEnrolledError: If neither a mean nor a cluster is available.
        """
        if self._cluster is None:
            self._cluster = self._store.try_load_cluster()
        dim = self._cluster_dim()
        if self._mean is not None and dim is not None and len(self._mean) != dim:
            logger.warning(f"Mean dim {len(self._mean)} does not match cluster dim {dim}, reloading")
            self._mean = None
        if self._mean is None:
            try:
                self._mean = l2_normalize(self._store.load_mean(dim))
            except SpeakerIdError as e:
                if not e.recoverable:
                    raise
                raise NotEnrolledError(f"No speaker model found: {e}") from e
            self._count = self._store.load_count()

        targets = [(MEAN_LABEL, self._mean)]
        if self._cluster is not None:
            targets.extend((cluster_label(i), row) for i, row in enumerate(self._cluster))
        return targets

    def _cluster_dim(self) -> int | None:
        return None if self._cluster is None else self._cluster.shape[1]

    # ---- online adaptation ----

    def should_adapt(self, score: float) -> bool:
        threshold = self._settings.adapt_threshold
        return (
            threshold >= 0
            and score >= threshold
            and self._adapted_this_run < self._settings.adapt_max
        )

    def adapt(self, segment: np.ndarray) -> None:
        """Fold the embedding of ``segment`` into the running mean and persist it."""
        embedding = self._embedder(segment)
        self._mean, self._count = fold_into_mean(self._mean, self._count, embedding)
        self._store.save_mean(self._mean, self._count)
        self._adapted_this_run += 1
        logger.info(
            f"Adapted running mean: count={self._count} "
            f"(run {self._adapted_this_run}/{self._settings.adapt_max})"
        )
