"""Explicit context object owning the engine, registry and oracles."""

import logging
from collections.abc import Iterable
from pathlib import Path

import numpy as np

from .audio import as_pcm16, load_wav_file
from .engine import SpeakerIdEngine, VerificationResult
from .model import EnrollmentResult
from .protocols import EmbedFunction, VadFunction
from .registry import ClusterRegistry
from .segmentation import Segmenter, iter_blocks
from .settings import SpeakerIdSettings, settings as default_settings
from .wire import Verifier, create_verifier_from_audio, create_verifier_from_cluster

logger = logging.getLogger(__name__)


class OnboardingStream:
    """Incremental enrollment from streamed audio.

    The first utterance that finalizes with enough voiced audio, or that
    reaches ``onboard_voiced_target_sec`` of voiced audio, is enrolled.
    Later input is ignored.
    """

    def __init__(self, engine: SpeakerIdEngine) -> None:
        self._engine = engine
        self._segmenter = Segmenter(engine.vad, engine.settings)
        s = engine.settings
        self._target = s.seconds_to_samples(s.onboard_voiced_target_sec)
        self._result: EnrollmentResult | None = None

    @property
    def result(self) -> EnrollmentResult | None:
        return self._result

    @property
    def done(self) -> bool:
        return self._result is not None

    def feed(self, samples: bytes | np.ndarray) -> EnrollmentResult | None:
        """Feed audio of any length.

        Returns:
            The enrollment result once enrollment happened, else None.
        """
        if self._result is not None:
            return self._result

        for block, vad_block in iter_blocks(as_pcm16(samples), self._segmenter.block_size):
            segment = self._segmenter.feed_block(block, vad_block)
            if segment is None and self._segmenter.voiced_samples >= self._target:
                segment = self._segmenter.flush()
            if segment is not None:
                self._result = self._engine.enroll_from_voiced(segment.voiced)
                return self._result
        return None

    def finish(self) -> EnrollmentResult | None:
        """Flush at end of stream and enroll from a pending utterance."""
        if self._result is not None:
            return self._result
        segment = self._segmenter.flush()
        if segment is not None:
            self._result = self._engine.enroll_from_voiced(segment.voiced)
        return self._result


class SpeakerIdContext:
    """Owns every engine object for one caller.

    Replaces process-wide defaults: verifiers created here are bound to this
    context's oracles, and registry ids are keys into this context's map.
    """

    def __init__(
        self,
        embed: EmbedFunction,
        vad: VadFunction,
        settings: SpeakerIdSettings | None = None,
        registry_dir: str | Path | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.engine = SpeakerIdEngine(embed, vad, self.settings)
        self._registry_dir = Path(registry_dir) if registry_dir else self.settings.data_dir
        self._registry: ClusterRegistry | None = None

    @classmethod
    def from_models(cls, settings: SpeakerIdSettings | None = None) -> "SpeakerIdContext":
        """Build a context backed by the sherpa-onnx models."""
        from .model_loader import load_default_oracles

        settings = settings or default_settings
        embed, vad = load_default_oracles(settings)
        return cls(embed, vad, settings)

    @property
    def registry(self) -> ClusterRegistry:
        if self._registry is None:
            self._registry = ClusterRegistry(
                self.engine.embedder, self._registry_dir, self.settings
            )
        return self._registry

    def has_enrollment(self) -> bool:
        return self.engine.has_enrollment()

    # ---- enrollment ----

    def start_onboarding_stream(self) -> OnboardingStream:
        return OnboardingStream(self.engine)

    def onboard_from_wav(self, path: str | Path) -> EnrollmentResult:
        """Enroll from a 16 kHz mono PCM16 WAV file."""
        return self.engine.enroll_from_utterance(load_wav_file(path, self.settings.sample_rate))

    # ---- verification ----

    def verify_from_wav(self, path: str | Path) -> VerificationResult | None:
        return self.engine.verify_from_wav(path)

    def create_verifier_from_cluster(self, blob: bytes) -> Verifier:
        return create_verifier_from_cluster(
            blob, self.engine.embedder, self.engine.vad, self.settings
        )

    def create_verifier_from_audio(self, buffers: Iterable[bytes | np.ndarray]) -> Verifier:
        return create_verifier_from_audio(
            buffers, self.engine.embedder, self.engine.vad, self.settings
        )

    def get_cluster(self, *, append_mean: bool = False) -> bytes:
        return self.engine.get_cluster(append_mean=append_mean)

    # ---- lifecycle ----

    def wipe_all_targets_and_reset(self) -> None:
        """Delete the persisted speaker model and clear in-memory state."""
        self.engine.store.wipe()
        self.engine.reset_targets_in_memory()
        logger.info("Wiped speaker model and reset targets")

    def close(self) -> None:
        self.engine.reset_targets_in_memory()
        self._registry = None

    def __enter__(self) -> "SpeakerIdContext":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
