"""PCM16 helpers and WAV loading."""

from pathlib import Path

import numpy as np
import soundfile as sf

from .exceptions import AudioConversionError
from .settings import settings


def pcm16_from_bytes(data: bytes) -> np.ndarray:
    """Decode little-endian PCM16 bytes into an int16 array.

    A trailing odd byte is ignored.
    """
    usable = len(data) - (len(data) % 2)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.int16)


def as_pcm16(audio: bytes | bytearray | np.ndarray | None) -> np.ndarray:
    """Coerce raw audio into an owned int16 array.

    Args:
        audio: PCM16LE bytes, an int16 array, or a float array in [-1, 1].

    Returns:
        New int16 numpy array (never a view of the input).
    """
    if audio is None:
        return np.zeros(0, dtype=np.int16)
    if isinstance(audio, (bytes, bytearray)):
        return pcm16_from_bytes(bytes(audio))

    arr = np.asarray(audio)
    if arr.ndim != 1:
        arr = ensure_mono(arr)
    if np.issubdtype(arr.dtype, np.floating):
        return float32_to_pcm16(arr)
    return arr.astype(np.int16, copy=True)


def pcm16_to_float32(samples: np.ndarray) -> np.ndarray:
    """Convert int16 samples to float32 normalized to [-1, 1)."""
    return samples.astype(np.float32) / 32768.0


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16 with clipping."""
    scaled = np.clip(np.asarray(samples, dtype=np.float64) * 32768.0, -32768, 32767)
    return scaled.astype(np.int16)


def ensure_mono(audio: np.ndarray) -> np.ndarray:
    """Ensure audio is mono (single channel).

    Args:
        audio: Input audio, possibly (frames, channels).

    Returns:
        Mono audio with the input dtype.
    """
    if audio.ndim == 1:
        return audio

    if audio.ndim == 2:
        return np.mean(audio, axis=1).astype(audio.dtype)

    raise AudioConversionError(f"Unexpected audio shape: {audio.shape}")


def load_wav_file(
    file_path: str | Path,
    sample_rate: int | None = None,
) -> np.ndarray:
    """Load a PCM WAV file as int16 mono samples.

    Args:
        file_path: Path to the WAV file.
        sample_rate: Required sample rate. Defaults to settings.sample_rate.

    Returns:
        Audio samples as int16 numpy array.

    Raises:
        AudioConversionError: If the file cannot be read or has the wrong rate.
    """
    if sample_rate is None:
        sample_rate = settings.sample_rate

    try:
        samples, file_rate = sf.read(str(file_path), dtype="int16", always_2d=False)
    except Exception as e:
        raise AudioConversionError(f"Failed to load WAV file {file_path}: {e}") from e

    if file_rate != sample_rate:
        raise AudioConversionError(
            f"Unsupported sample rate {file_rate} Hz in {file_path} "
            f"(expected {sample_rate} Hz)"
        )

    return ensure_mono(np.asarray(samples)).astype(np.int16)


def loop_pad(samples: np.ndarray, want: int) -> np.ndarray:
    """Tile samples until exactly ``want`` samples long.

    Longer input is truncated to its first ``want`` samples; empty input
    yields zeros.
    """
    if len(samples) >= want:
        return samples[:want].copy()
    if len(samples) == 0:
        return np.zeros(want, dtype=np.int16)
    reps = -(-want // len(samples))
    return np.tile(samples, reps)[:want].copy()


def last_window(samples: np.ndarray, want: int) -> np.ndarray:
    """Return the last ``want`` samples, loop-padding shorter input."""
    if len(samples) >= want:
        return samples[len(samples) - want :].copy()
    return loop_pad(samples, want)
