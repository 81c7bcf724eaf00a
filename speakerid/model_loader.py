"""sherpa-onnx backed embedding and VAD oracles."""

import logging

import numpy as np
import sherpa_onnx

from .audio import pcm16_to_float32
from .exceptions import SpeakerEmbeddingError, VADError
from .settings import SpeakerIdSettings, settings as default_settings

logger = logging.getLogger(__name__)


class SherpaSpeakerEmbedder:
    """Speaker embedding oracle using a sherpa-onnx extractor (CAM++ etc.)."""

    def __init__(
        self,
        model_path: str | None = None,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        """Initialize the embedder.

        Args:
            model_path: Path to the ONNX model. Defaults to settings path.
            settings: Engine settings.
        """
        self._settings = settings or default_settings
        self._extractor: sherpa_onnx.SpeakerEmbeddingExtractor | None = None
        self._model_path = model_path or str(self._settings.speaker_model_path)

    def _ensure_loaded(self) -> sherpa_onnx.SpeakerEmbeddingExtractor:
        if self._extractor is None:
            self.load()
        if self._extractor is None:
            raise SpeakerEmbeddingError("Speaker embedding model not loaded")
        return self._extractor

    def load(self) -> None:
        """Load the speaker embedding model."""
        try:
            config = sherpa_onnx.SpeakerEmbeddingExtractorConfig(
                model=self._model_path,
                num_threads=self._settings.num_threads,
                debug=False,
            )
            self._extractor = sherpa_onnx.SpeakerEmbeddingExtractor(config)
        except Exception as e:
            raise SpeakerEmbeddingError(f"Failed to load speaker model: {e}") from e
        logger.info(f"Loaded speaker embedding model {self._model_path}")

    @property
    def embedding_dim(self) -> int:
        """Get the dimension of speaker embeddings."""
        return self._ensure_loaded().dim

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        """Embed int16 samples.

        Raises:
            SpeakerEmbeddingError: If the extractor is not ready or fails.
        """
        extractor = self._ensure_loaded()
        try:
            stream = extractor.create_stream()
            stream.accept_waveform(self._settings.sample_rate, pcm16_to_float32(samples))
            stream.input_finished()

            if not extractor.is_ready(stream):
                raise SpeakerEmbeddingError(
                    "Speaker embedding not ready - audio may be too short"
                )

            return np.array(extractor.compute(stream), dtype=np.float32)

        except SpeakerEmbeddingError:
            raise
        except Exception as e:
            raise SpeakerEmbeddingError(f"Speaker embedding failed: {e}") from e


class SherpaVad:
    """Block-wise VAD oracle using Silero VAD via sherpa-onnx.

    The detector is stateful; each call reports 1.0 while speech is
    detected and 0.0 otherwise.
    """

    def __init__(
        self,
        model_path: str | None = None,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._vad: sherpa_onnx.VoiceActivityDetector | None = None
        self._model_path = model_path or str(self._settings.vad_model_path)

    def _ensure_loaded(self) -> sherpa_onnx.VoiceActivityDetector:
        if self._vad is None:
            self.load()
        if self._vad is None:
            raise VADError("VAD model not loaded")
        return self._vad

    def load(self) -> None:
        """Load the VAD model."""
        try:
            config = sherpa_onnx.VadModelConfig(
                silero_vad=sherpa_onnx.SileroVadModelConfig(
                    model=self._model_path,
                    threshold=self._settings.on_threshold,
                ),
                sample_rate=self._settings.sample_rate,
                num_threads=1,
            )
            self._vad = sherpa_onnx.VoiceActivityDetector(
                config, buffer_size_in_seconds=30
            )
        except Exception as e:
            raise VADError(f"Failed to load VAD model: {e}") from e
        logger.info(f"Loaded VAD model {self._model_path}")

    def reset(self) -> None:
        if self._vad is not None:
            self._vad.reset()

    def __call__(self, block: np.ndarray) -> float:
        vad = self._ensure_loaded()
        try:
            vad.accept_waveform(pcm16_to_float32(block))
            speaking = vad.is_speech_detected()
            # Completed segments are not used; keep the queue bounded
            while not vad.empty():
                vad.pop()
        except Exception as e:
            raise VADError(f"VAD failed: {e}") from e
        return 1.0 if speaking else 0.0


def load_default_oracles(
    settings: SpeakerIdSettings | None = None,
) -> tuple[SherpaSpeakerEmbedder, SherpaVad]:
    """Load the configured speaker embedding and VAD models."""
    settings = settings or default_settings
    embedder = SherpaSpeakerEmbedder(settings=settings)
    embedder.load()
    vad = SherpaVad(settings=settings)
    vad.load()
    return embedder, vad
