"""Speaker model files: running mean, count sidecar and exemplar cluster.

Persisted files are a cache of derivable state. Loads repair legacy
layouts in place, rebuild the mean from the cluster when needed, and
delete files that cannot be recovered. Writes fail loudly.
"""

import logging
from pathlib import Path

import numpy as np

from . import npy_io
from .embedding import compute_centroid, l2_normalize, l2_normalize_rows
from .exceptions import FormatError, SpeakerIdError
from .settings import SpeakerIdSettings

logger = logging.getLogger(__name__)


class SpeakerModelStore:
    """Reads and writes one speaker model's files."""

    def __init__(self, mean_path: str | Path, cluster_path: str | Path) -> None:
        self.mean_path = Path(mean_path)
        self.cluster_path = Path(cluster_path)

    @classmethod
    def from_settings(cls, settings: SpeakerIdSettings) -> "SpeakerModelStore":
        return cls(settings.mean_path, settings.cluster_path)

    @property
    def count_path(self) -> Path:
        return npy_io.count_path(self.mean_path)

    def has_files(self) -> bool:
        """True when both the mean and the cluster file exist."""
        return self.mean_path.exists() and self.cluster_path.exists()

    # ---- writes ----

    def save_mean(self, mean: np.ndarray, count: int) -> None:
        """Persist the running mean as a vector plus its count sidecar."""
        npy_io.save_vector_atomic(self.mean_path, mean)
        npy_io.write_count(self.mean_path, count)

    def save_cluster(self, cluster: np.ndarray) -> None:
        npy_io.save_matrix_atomic(self.cluster_path, cluster)

    def wipe(self) -> bool:
        """Delete all model files.

        Returns:
            True if at least one file was removed.
        """
        removed = False
        for path in (self.mean_path, self.count_path, self.cluster_path):
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            logger.info(f"Wiped speaker model files {self.mean_path}, {self.cluster_path}")
        return removed

    # ---- strict loads with repair ----

    def load_mean(self, expected_dim: int | None = None) -> np.ndarray:
        """Load the running mean, repairing legacy layouts.

        Tried in order:
        1. [1, D] matrix: flattened and rewritten as a vector.
        2. Vector of the expected length: used as is.
        3. ``(1,)`` header with D values of payload: recovered and rewritten.
        4. Otherwise the mean is rebuilt from the cluster file and rewritten.

        Args:
            expected_dim: Required dimension, or None to accept any.

        Returns:
            Mean vector as float32.

        Raises:
            FormatError: (recoverable) If no path yields a mean of the
                expected dimension.
        """
        array: np.ndarray | None = None
        if self.mean_path.exists():
            try:
                array = npy_io.read_array(self.mean_path)
            except SpeakerIdError as e:
                logger.warning(f"Mean file unreadable: {e}")

        got = -1
        if array is not None:
            if array.ndim == 2 and array.shape[0] == 1:
                flat = array[0].copy()
                got = len(flat)
                if _dim_ok(flat, expected_dim):
                    npy_io.save_vector_atomic(self.mean_path, flat)
                    logger.warning(f"Rewrote mean from [1,D] to 1-D vector: {self.mean_path}")
                    return flat

            elif array.ndim == 1 and len(array) == 1 and expected_dim != 1:
                try:
                    payload = npy_io.read_payload(self.mean_path)
                except SpeakerIdError as e:
                    logger.warning(f"Mean payload unreadable: {e}")
                    payload = array
                got = len(payload)
                if len(payload) > 1 and _dim_ok(payload, expected_dim):
                    npy_io.save_vector_atomic(self.mean_path, payload)
                    logger.warning(f"Recovered legacy mean vector: {self.mean_path}")
                    return payload

            elif array.ndim == 1:
                got = len(array)
                if _dim_ok(array, expected_dim):
                    return array

            else:
                folded = npy_io.load_vector(self.mean_path)
                got = len(folded)
                if _dim_ok(folded, expected_dim):
                    mean = l2_normalize(folded)
                    npy_io.save_vector_atomic(self.mean_path, mean)
                    logger.warning(
                        f"Folded {array.shape} mean file into a vector: {self.mean_path}"
                    )
                    return mean

        rebuilt = self._rebuild_mean_from_cluster(expected_dim)
        if rebuilt is not None:
            return rebuilt

        raise FormatError(
            f"Mean dimension mismatch: got {got}, expected {expected_dim}",
            recoverable=True,
        )

    def _rebuild_mean_from_cluster(self, expected_dim: int | None) -> np.ndarray | None:
        if not self.cluster_path.exists():
            return None
        try:
            cluster = npy_io.load_matrix(self.cluster_path)
        except SpeakerIdError as e:
            logger.warning(f"Cannot rebuild mean, cluster unreadable: {e}")
            return None

        if expected_dim is not None and cluster.shape[1] != expected_dim:
            return None

        mean = compute_centroid(l2_normalize_rows(cluster))
        npy_io.save_vector_atomic(self.mean_path, mean)
        logger.warning(f"Rebuilt mean from cluster and rewrote as 1-D vector: {self.mean_path}")
        return mean

    def load_count(self) -> int:
        return npy_io.read_count(self.mean_path, default=1)

    def load_cluster(self, expected_rows: int, expected_dim: int) -> np.ndarray:
        """Load the cluster and check its shape.

        A legacy 1-D file is reshaped to [1, D] and rewritten when a single
        row is expected.

        Raises:
            FormatError: If the shape differs from (expected_rows, expected_dim).
        """
        array = npy_io.read_array(self.cluster_path)

        if array.ndim == 1 and expected_rows == 1:
            row = array
            if len(row) == 1 and expected_dim > 1:
                row = npy_io.read_payload(self.cluster_path)
            if len(row) == expected_dim:
                fixed = row.reshape(1, expected_dim)
                npy_io.save_matrix_atomic(self.cluster_path, fixed)
                logger.warning(
                    f"Rewrote legacy cluster (vector) to 2-D [1,{expected_dim}]: "
                    f"{self.cluster_path}"
                )
                return l2_normalize_rows(fixed)

        if array.ndim != 2 or array.shape != (expected_rows, expected_dim):
            raise FormatError(
                f"Cluster shape {array.shape}, expected ({expected_rows}, {expected_dim})"
            )
        return l2_normalize_rows(array)

    # ---- lenient loads used at startup ----

    def try_load_mean(self, expected_dim: int | None = None) -> tuple[np.ndarray, int] | None:
        """Load (mean, count), deleting the files if they cannot be recovered.

        Args:
            expected_dim: Dimension of the cluster, when one is loaded. A mean
                of another length is rebuilt from the cluster.
        """
        if not self.mean_path.exists():
            return None
        if self.mean_path.stat().st_size < npy_io.MIN_FILE_BYTES:
            self._discard_mean("too small")
            return None

        try:
            mean = self.load_mean(expected_dim)
        except SpeakerIdError as e:
            if not e.recoverable:
                raise
            self._discard_mean(str(e))
            return None

        return l2_normalize(mean), self.load_count()

    def try_load_cluster(self) -> np.ndarray | None:
        """Load the cluster, deleting the file if it is corrupt."""
        if not self.cluster_path.exists():
            return None
        try:
            cluster = npy_io.load_matrix(self.cluster_path)
        except SpeakerIdError as e:
            if not e.recoverable:
                raise
            logger.warning(f"Cluster file unusable ({e}); deleted: {self.cluster_path}")
            self.cluster_path.unlink(missing_ok=True)
            return None
        return l2_normalize_rows(cluster)

    def _discard_mean(self, reason: str) -> None:
        logger.warning(f"Mean file unusable ({reason}); deleted: {self.mean_path}")
        self.mean_path.unlink(missing_ok=True)
        self.count_path.unlink(missing_ok=True)


def _dim_ok(vector: np.ndarray, expected_dim: int | None) -> bool:
    return len(vector) > 0 and (expected_dim is None or len(vector) == expected_dim)
