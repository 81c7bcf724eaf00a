"""Registry of independently identified speaker clusters."""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from . import npy_io
from .audio import as_pcm16, last_window
from .embedding import Embedder, compute_centroid, l2_normalize, l2_normalize_rows
from .exceptions import SpeakerIdError, StateError, UnknownClusterError
from .settings import SpeakerIdSettings, settings as default_settings
from .wire import encode_cluster

logger = logging.getLogger(__name__)


@dataclass
class ManagedCluster:
    """FIFO of at most ``capacity`` embeddings plus their normalized mean."""

    cluster_id: int
    capacity: int
    cluster_path: Path
    mean_path: Path
    rows: deque[np.ndarray] = field(default_factory=deque)
    mean: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.rows = deque(self.rows, maxlen=self.capacity)

    def is_empty(self) -> bool:
        return not self.rows and self.mean is None


class ClusterRegistry:
    """Creates, updates and scores named clusters from raw audio buffers.

    Every buffer is reduced to its last ``verifier_window_sec`` (tiled when
    shorter) before embedding. Each cluster is persisted after every push as
    ``spk_cluster_<id>.npy`` and ``spk_mean_<id>.npy`` and resumed from those
    files on init. All operations hold one lock.
    """

    def __init__(
        self,
        embedder: Embedder,
        directory: str | Path,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._embedder = embedder
        self._directory = Path(directory)
        self._settings = settings or default_settings
        self._lock = threading.Lock()
        self._clusters: dict[int, ManagedCluster] = {}
        self._next_id = 1

    def init_cluster(self, capacity: int) -> int:
        """Create (or resume from disk) a cluster holding up to ``capacity`` embeddings.

        Returns:
            The new cluster id.
        """
        with self._lock:
            cluster_id = self._next_id
            self._next_id += 1

            cluster = ManagedCluster(
                cluster_id=cluster_id,
                capacity=max(1, capacity),
                cluster_path=self._directory / f"spk_cluster_{cluster_id}.npy",
                mean_path=self._directory / f"spk_mean_{cluster_id}.npy",
            )
            self._resume(cluster)
            self._clusters[cluster_id] = cluster

            logger.info(
                f"Initialized cluster {cluster_id} (capacity={cluster.capacity}, "
                f"resumed={len(cluster.rows)})"
            )
            return cluster_id

    def cluster_ids(self) -> list[int]:
        with self._lock:
            return list(self._clusters)

    def size(self, cluster_id: int) -> int:
        with self._lock:
            return len(self._get(cluster_id).rows)

    def push_embedding(
        self,
        cluster_id: int,
        samples: bytes | np.ndarray,
        length: int | None = None,
    ) -> None:
        """Embed one buffer, append it (evicting the oldest) and persist.

        Raises:
            UnknownClusterError: If the id is not registered.
            SpeakerEmbeddingError: If embedding fails.
            StorageError, ValidationError: If persisting fails.
        """
        with self._lock:
            cluster = self._get(cluster_id)
            embedding = self._embedder(self._window(samples, length))

            rows = deque(cluster.rows, maxlen=cluster.capacity)
            rows.append(embedding)
            mean = compute_centroid(list(rows))

            # memory is updated only once both files are written
            npy_io.save_matrix_atomic(cluster.cluster_path, np.stack(rows))
            npy_io.save_vector_atomic(cluster.mean_path, mean)
            cluster.rows = rows
            cluster.mean = mean
            logger.debug(f"Cluster {cluster_id}: {len(cluster.rows)}/{cluster.capacity} embeddings")

    def verify(
        self,
        cluster_id: int,
        samples: bytes | np.ndarray,
        length: int | None = None,
    ) -> float:
        """Best cosine score of one buffer against the mean and every row.

        Never raises: unknown ids, empty clusters, embedding failures and
        dimension mismatches yield negative infinity.
        """
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                return float("-inf")
            if cluster.is_empty():
                self._resume(cluster)
            if cluster.is_empty():
                return float("-inf")

            targets = list(cluster.rows)
            if cluster.mean is not None:
                targets.insert(0, cluster.mean)

            try:
                query = self._embedder(self._window(samples, length))
                return float(max(np.dot(target, query) for target in targets))
            except Exception as e:
                logger.warning(f"Cluster {cluster_id} verification failed: {e}")
                return float("-inf")

    def get_cluster(self, cluster_id: int, *, append_mean: bool = False) -> bytes:
        """Export a cluster as a portable blob.

        Raises:
            UnknownClusterError: If the id is not registered.
            StateError: If the cluster holds no embeddings.
        """
        with self._lock:
            cluster = self._get(cluster_id)
            if not cluster.rows:
                raise StateError(f"Cluster {cluster_id} has no embeddings")
            return encode_cluster(
                np.stack(cluster.rows), mean=cluster.mean, append_mean=append_mean
            )

    def remove_cluster(self, cluster_id: int, *, delete_files: bool = False) -> bool:
        """Forget a cluster, optionally deleting its files."""
        with self._lock:
            cluster = self._clusters.pop(cluster_id, None)
            if cluster is None:
                return False
            if delete_files:
                cluster.cluster_path.unlink(missing_ok=True)
                cluster.mean_path.unlink(missing_ok=True)
            return True

    def _get(self, cluster_id: int) -> ManagedCluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise UnknownClusterError(f"Unknown cluster id: {cluster_id}")
        return cluster

    def _window(self, samples: bytes | np.ndarray, length: int | None) -> np.ndarray:
        pcm = as_pcm16(samples)
        if length is not None:
            pcm = pcm[: max(0, length)]
        want = self._settings.seconds_to_samples(self._settings.verifier_window_sec)
        return last_window(pcm, want)

    def _resume(self, cluster: ManagedCluster) -> None:
        if cluster.cluster_path.exists():
            try:
                rows = l2_normalize_rows(npy_io.load_matrix(cluster.cluster_path))
            except SpeakerIdError as e:
                logger.warning(f"Cluster {cluster.cluster_id} file unusable, starting empty: {e}")
            else:
                cluster.rows.extend(rows)

        if cluster.mean_path.exists():
            try:
                cluster.mean = l2_normalize(npy_io.load_vector(cluster.mean_path))
            except SpeakerIdError as e:
                logger.warning(f"Cluster {cluster.cluster_id} mean unusable: {e}")

        if cluster.mean is None and cluster.rows:
            cluster.mean = compute_centroid(list(cluster.rows))
