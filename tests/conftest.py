"""Pytest fixtures for speakerid tests."""

import zlib
from pathlib import Path

import numpy as np
import pytest

from speakerid.settings import SpeakerIdSettings

BLOCK = 1280
SPEECH_LEVEL = 1000


class HashEmbed:
    """Deterministic embedding oracle: identical samples give identical vectors."""

    def __init__(self, dim: int = 16) -> None:
        self.dim = dim
        self.calls: list[int] = []

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        self.calls.append(len(samples))
        seed = zlib.crc32(np.asarray(samples, dtype=np.int16).tobytes())
        return np.random.default_rng(seed).standard_normal(self.dim).astype(np.float32)


class AmplitudeVad:
    """VAD oracle returning 1.0 for blocks whose peak reaches a threshold."""

    def __init__(self, threshold: int = 100) -> None:
        self.threshold = threshold
        self.calls = 0

    def __call__(self, block: np.ndarray) -> float:
        self.calls += 1
        return 1.0 if np.max(np.abs(block.astype(np.int32))) >= self.threshold else 0.0


class ScriptedVad:
    """VAD oracle replaying a fixed list of probabilities."""

    def __init__(self, probabilities: list[float]) -> None:
        self._probabilities = list(probabilities)
        self._index = 0

    def __call__(self, block: np.ndarray) -> float:
        p = self._probabilities[self._index]
        self._index += 1
        return p


def speech(blocks: int, level: int = SPEECH_LEVEL) -> np.ndarray:
    """Constant-level audio lasting ``blocks`` VAD blocks."""
    return np.full(blocks * BLOCK, level, dtype=np.int16)


def silence(blocks: int) -> np.ndarray:
    """Digital silence lasting ``blocks`` VAD blocks."""
    return np.zeros(blocks * BLOCK, dtype=np.int16)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Directory for persisted speaker model files."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def settings(data_dir: Path) -> SpeakerIdSettings:
    """Default settings writing into a temporary directory."""
    return SpeakerIdSettings(data_dir=data_dir)


@pytest.fixture
def embed() -> HashEmbed:
    return HashEmbed()


@pytest.fixture
def vad() -> AmplitudeVad:
    return AmplitudeVad()


@pytest.fixture
def enrollment_audio() -> np.ndarray:
    """Leading silence, 40 blocks (3.2s) of speech, trailing silence."""
    return np.concatenate([silence(5), speech(40), silence(30)])
