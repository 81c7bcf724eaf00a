"""Crash-safe float32 ``.npy`` persistence.

Arrays are written to a temporary file in the destination directory,
fsynced, renamed over the destination and re-read for validation. Reads
reject anything that is not a little-endian float32 vector or matrix.
"""

import logging
import os
import tempfile
from pathlib import Path

import numpy as np
from numpy.lib import format as npy_format

from .exceptions import FormatError, StorageError, ValidationError

logger = logging.getLogger(__name__)

# Smallest plausible .npy file; anything shorter is treated as corrupt.
MIN_FILE_BYTES = 64

FLOAT32_LE = np.dtype("<f4")


def validate_array(array: np.ndarray, name: str, expected_cols: int | None = None) -> None:
    """Check that an array is non-empty, finite and (optionally) D columns wide.

    Raises:
        ValidationError: On any violation.
    """
    if array.size == 0:
        raise ValidationError(f"{name} is empty")
    if not np.all(np.isfinite(array)):
        raise ValidationError(f"{name} has non-finite values")
    if expected_cols is not None and array.shape[-1] != expected_cols:
        raise ValidationError(
            f"{name} has {array.shape[-1]} columns, expected {expected_cols}"
        )


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _write_atomic(path: Path, array: np.ndarray) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{path.name}.", suffix=".tmp", dir=path.parent
        )
    except OSError as e:
        raise StorageError(f"Failed to create temporary file for {path}: {e}") from e

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            np.save(f, array, allow_pickle=False)
            f.flush()
            os.fsync(f.fileno())

        try:
            os.replace(tmp, path)
        except OSError:
            # Platforms where rename does not overwrite
            path.unlink(missing_ok=True)
            os.replace(tmp, path)

        _fsync_directory(path.parent)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise StorageError(f"Failed to write {path}: {e}") from e


def _save_validated(path: str | Path, array: np.ndarray, name: str) -> None:
    path = Path(path)
    validate_array(array, name)
    _write_atomic(path, array)

    try:
        written = read_array(path)
    except FormatError as e:
        raise ValidationError(f"{name} unreadable after write to {path}: {e}") from e
    except StorageError as e:
        raise StorageError(f"{name} unreadable after write to {path}: {e}") from e

    if written.shape != array.shape:
        raise ValidationError(
            f"{name} shape {written.shape} after write, expected {array.shape}"
        )
    validate_array(written, f"{name} ({path.name})")
    logger.debug(f"Wrote and validated {name} {array.shape} to {path}")


def save_vector_atomic(path: str | Path, vector: np.ndarray) -> None:
    """Atomically persist a 1-D float32 vector.

    Raises:
        ValidationError: If the vector is empty or non-finite, before or after writing.
        StorageError: If the filesystem write fails.
    """
    v = np.asarray(vector, dtype=FLOAT32_LE).reshape(-1)
    _save_validated(path, v, "vector")


def save_matrix_atomic(path: str | Path, matrix: np.ndarray) -> None:
    """Atomically persist a 2-D float32 matrix (rows x D).

    Raises:
        ValidationError: If the matrix is not 2-D, empty or non-finite.
        StorageError: If the filesystem write fails.
    """
    m = np.asarray(matrix, dtype=FLOAT32_LE)
    if m.ndim != 2:
        raise ValidationError(f"Expected a 2-D matrix, got shape {m.shape}")
    _save_validated(path, m, "matrix")


def read_array(path: str | Path) -> np.ndarray:
    """Read a float32 vector or matrix.

    Raises:
        FormatError: (recoverable) If the file is too small, not a valid
            ``.npy``, not float32, not 1-D/2-D, or truncated.
        StorageError: (recoverable) If the file cannot be opened.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError as e:
        raise StorageError(f"Cannot stat {path}: {e}", recoverable=True) from e

    if size < MIN_FILE_BYTES:
        raise FormatError(f"{path} too small: {size} bytes", recoverable=True)

    try:
        with path.open("rb") as f:
            array = np.load(f, allow_pickle=False)
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}", recoverable=True) from e
    except (ValueError, EOFError) as e:
        raise FormatError(f"Invalid .npy file {path}: {e}", recoverable=True) from e

    if array.dtype != FLOAT32_LE:
        raise FormatError(
            f"{path} has dtype {array.dtype}, expected little-endian float32",
            recoverable=True,
        )
    if array.ndim not in (1, 2):
        raise FormatError(f"{path} has unsupported shape {array.shape}", recoverable=True)

    return np.ascontiguousarray(array, dtype=np.float32)


def read_payload(path: str | Path) -> np.ndarray:
    """Read every float32 value after the header, ignoring the declared shape.

    Recovers vectors written by an older writer that declared shape ``(1,)``
    but stored D values.

    Raises:
        FormatError: (recoverable) If the header cannot be parsed.
    """
    path = Path(path)
    try:
        with path.open("rb") as f:
            version = npy_format.read_magic(f)
            if version == (1, 0):
                _, _, dtype = npy_format.read_array_header_1_0(f)
            else:
                _, _, dtype = npy_format.read_array_header_2_0(f)
            data = f.read()
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}", recoverable=True) from e
    except ValueError as e:
        raise FormatError(f"Invalid .npy header in {path}: {e}", recoverable=True) from e

    if np.dtype(dtype) != FLOAT32_LE:
        raise FormatError(f"{path} payload is not float32", recoverable=True)

    usable = len(data) - (len(data) % FLOAT32_LE.itemsize)
    return np.frombuffer(data[:usable], dtype=FLOAT32_LE).astype(np.float32)


def load_matrix(path: str | Path) -> np.ndarray:
    """Load a matrix; a 1-D file is returned as a single row."""
    array = read_array(path)
    if array.ndim == 1:
        return array.reshape(1, -1)
    return array


def load_vector(path: str | Path) -> np.ndarray:
    """Load a vector.

    A single-row or single-column matrix is flattened; a K x D matrix
    yields its mean row.
    """
    matrix = load_matrix(path)
    if matrix.shape[0] == 1:
        return matrix[0].copy()
    if matrix.shape[1] == 1:
        return matrix[:, 0].copy()
    return matrix.mean(axis=0).astype(np.float32)


def count_path(mean_path: str | Path) -> Path:
    """Sidecar file holding the running-mean sample count."""
    return Path(f"{mean_path}.count")


def write_count(mean_path: str | Path, count: int) -> None:
    """Persist the running-mean sample count as ASCII.

    Raises:
        StorageError: If the write fails.
    """
    path = count_path(mean_path)
    try:
        path.write_text(str(int(count)), encoding="ascii")
    except OSError as e:
        raise StorageError(f"Failed to write count file {path}: {e}") from e


def read_count(mean_path: str | Path, default: int = 1) -> int:
    """Read the running-mean sample count; missing or unparsable gives ``default``."""
    path = count_path(mean_path)
    if not path.exists():
        return default
    try:
        count = int(path.read_text(encoding="ascii").strip())
    except (OSError, ValueError, UnicodeDecodeError):
        logger.warning(f"Unreadable count file {path}, using {default}")
        return default
    return count if count > 0 else default
