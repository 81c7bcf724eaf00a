"""Speaker verification settings."""

import math
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class SpeakerIdSettings(BaseSettings):
    """Speaker verification engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="SPEAKERID_",
        env_file=".env",
        extra="ignore",
    )

    # Audio settings
    sample_rate: int = 16000
    vad_chunk: int = 1280  # 80ms @ 16kHz

    # Segmentation (VAD state machine)
    on_threshold: float = 0.5
    off_threshold: float = 0.05  # release threshold, hysteresis against chatter
    preroll_frames: int = 0
    silence_after_sec: float = 2.0

    # Slicing
    slice_sec: float = 1.0
    slice_hop_sec: float | None = None  # None -> same as slice_sec
    min_embed_sec: float = 0.25
    embed_min_sec: float = 0.655  # 25ms window + 63 * 10ms hop = 64 fbank frames

    # FLEX scoring
    flex_enabled: bool = True
    flex_sizes_sec: list[float] = [0.25, 0.50, 0.75, 1.00]
    flex_max_sec: float = 1.5
    flex_top_k: int = 3

    # Speaker model
    cluster_size: int = 5
    adapt_threshold: float = -1.0  # < 0 disables online adaptation
    adapt_max: int = 1_000_000

    # Onboarding stream
    onboard_voiced_target_sec: float = 3.0

    # Portable verifier
    verifier_vad_threshold: float = 0.10
    verifier_window_sec: float = 1.0

    # Persisted speaker model
    data_dir: Path = Path("data")
    mean_file: str = "speaker_emb.npy"
    cluster_file: str = "speaker_emb_cluster.npy"

    # sherpa-onnx models (relative to project root)
    models_dir: Path = Path("models")
    speaker_model_file: str = "3dspeaker_speech_campplus_sv_en_voxceleb_16k.onnx"
    vad_model_file: str = "silero_vad.onnx"
    num_threads: int = 1

    def seconds_to_samples(self, seconds: float) -> int:
        """Convert a duration to a sample count (round half up)."""
        return int(math.floor(seconds * self.sample_rate + 0.5))

    @property
    def effective_slice_hop_sec(self) -> float:
        """Hop used for base slicing."""
        return self.slice_sec if self.slice_hop_sec is None else self.slice_hop_sec

    @property
    def mean_path(self) -> Path:
        """Full path to the running-mean file."""
        return self.data_dir / self.mean_file

    @property
    def cluster_path(self) -> Path:
        """Full path to the cluster file."""
        return self.data_dir / self.cluster_file

    @property
    def speaker_model_path(self) -> Path:
        """Full path to the speaker embedding model file."""
        return self.models_dir / self.speaker_model_file

    @property
    def vad_model_path(self) -> Path:
        """Full path to the Silero VAD model file."""
        return self.models_dir / self.vad_model_file


def wake_word_settings(**overrides: object) -> SpeakerIdSettings:
    """Settings tuned for wake-word verification of one-second chunks.

    Uses separate files so the wake-word profile never clashes with the
    regular one.
    """
    values: dict[str, object] = {
        "slice_sec": 1.0,
        "slice_hop_sec": 1.0,
        "min_embed_sec": 1.0,
        "flex_enabled": False,
        "mean_file": "speaker_emb_wwd.npy",
        "cluster_file": "speaker_emb_cluster_wwd.npy",
    }
    values.update(overrides)
    return SpeakerIdSettings(**values)


settings = SpeakerIdSettings()
