"""Speaker verification engine.

Pipeline: PCM16 -> segmentation -> FLEX scoring against the speaker model
-> optional online adaptation of the running mean.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .audio import as_pcm16, load_wav_file
from .embedding import Embedder
from .exceptions import EnrollmentError, SegmentTooShortError
from .flex import FlexScorer
from .model import EnrollmentResult, SpeakerModel
from .protocols import EmbedFunction, VadFunction
from .segmentation import Segment, Segmenter, last_voiced_window, segment_offline
from .settings import SpeakerIdSettings, settings as default_settings
from .store import SpeakerModelStore
from .wire import encode_cluster

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Result of verifying one utterance."""

    full_sec: float
    voiced_sec: float
    best_score: float
    best_strategy: str
    best_target_label: str
    per_target_strategy: dict[str, dict[str, float]] = field(default_factory=dict)
    adapted: bool = False


class SpeakerIdEngine:
    """Single-speaker enrollment and verification engine.

    Not thread-safe: callers must not overlap operations on one instance.
    Embedding and VAD failures propagate as exceptions.
    """

    def __init__(
        self,
        embed: EmbedFunction | Embedder,
        vad: VadFunction,
        settings: SpeakerIdSettings | None = None,
        store: SpeakerModelStore | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._embedder = embed if isinstance(embed, Embedder) else Embedder(embed, self.settings)
        self._vad = vad
        self.store = store or SpeakerModelStore.from_settings(self.settings)
        self.model = SpeakerModel(self.store, self._embedder, self.settings)
        self._scorer = FlexScorer(self._embedder, self.settings)
        self._segmenter = Segmenter(vad, self.settings)

        self.model.load()

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    @property
    def vad(self) -> VadFunction:
        return self._vad

    def embed_once(self, samples: np.ndarray | bytes) -> np.ndarray:
        """Embed one buffer (padded to the embedder minimum)."""
        return self._embedder(as_pcm16(samples))

    def has_enrollment(self) -> bool:
        return self.model.has_enrollment()

    def reset_targets_in_memory(self) -> None:
        """Clear in-memory model state and any in-progress utterance."""
        self.model.reset()
        self._segmenter.reset()

    # ---- enrollment ----

    def enroll_from_utterance(self, samples: np.ndarray | bytes) -> EnrollmentResult:
        """Enroll from a complete recording using its first voiced segment.

        Raises:
            EnrollmentError: If the recording has no voiced segment.
        """
        segments = segment_offline(as_pcm16(samples), self._vad, self.settings)
        if not segments:
            raise EnrollmentError("No voiced segment found")
        return self.model.enroll_from_segment(segments[0].voiced)

    def enroll_from_voiced(self, voiced: np.ndarray) -> EnrollmentResult:
        """Enroll from audio that is already voiced-only."""
        return self.model.enroll_from_segment(as_pcm16(voiced))

    def enroll_from_embeddings(self, embeddings: list[np.ndarray]) -> EnrollmentResult:
        return self.model.enroll_from_embeddings(embeddings)

    # ---- streaming verification ----

    def push_verify(self, samples: np.ndarray | bytes) -> list[VerificationResult]:
        """Push PCM16 of any length.

        Returns:
            One result per utterance finalized during this push.
        """
        segments = self._segmenter.push(as_pcm16(samples))
        return [self._score_segment(segment) for segment in segments]

    def finish_verify(self) -> VerificationResult | None:
        """Flush an in-progress utterance at end of stream."""
        segment = self._segmenter.flush()
        if segment is None:
            return None
        return self._score_segment(segment)

    def verify_voiced_segment(self, voiced: np.ndarray) -> VerificationResult:
        """Score exactly one voiced chunk (full and voiced are the same).

        Raises:
            SegmentTooShortError: If shorter than ``min_embed_sec``.
        """
        voiced = as_pcm16(voiced)
        minimum = self.settings.seconds_to_samples(self.settings.min_embed_sec)
        if len(voiced) < minimum:
            raise SegmentTooShortError(
                f"Voiced chunk has {len(voiced)} samples, minimum is {minimum}"
            )
        return self._score_segment(
            Segment(full=voiced, voiced=voiced, sample_rate=self.settings.sample_rate)
        )

    def verify_samples(self, samples: np.ndarray | bytes) -> VerificationResult | None:
        """Verify a complete recording; returns the last utterance's result."""
        self._segmenter.reset()
        results = self.push_verify(samples)
        tail = self.finish_verify()
        if tail is not None:
            return tail
        return results[-1] if results else None

    def verify_from_wav(self, path: str | Path) -> VerificationResult | None:
        """Verify a 16 kHz mono PCM16 WAV file."""
        return self.verify_samples(load_wav_file(path, self.settings.sample_rate))

    def extract_last_second_voiced(self, samples: np.ndarray | bytes) -> np.ndarray:
        """Return the last ``verifier_window_sec`` of VAD-passing audio."""
        s = self.settings
        return last_voiced_window(
            as_pcm16(samples),
            self._vad,
            s.vad_chunk,
            s.seconds_to_samples(s.verifier_window_sec),
            s.verifier_vad_threshold,
        )

    def get_cluster(self, *, append_mean: bool = False) -> bytes:
        """Export the enrolled cluster as a portable blob.

        Args:
            append_mean: Also store the running mean as an extra last row.

        Raises:
            NotEnrolledError: If no speaker model is available.
        """
        targets = self.model.targets()
        mean = targets[0][1]
        rows = [vec for _, vec in targets[1:]]
        matrix = np.stack(rows) if rows else np.zeros((0, len(mean)), dtype=np.float32)
        return encode_cluster(matrix, mean=mean, append_mean=append_mean)

    def _score_segment(self, segment: Segment) -> VerificationResult:
        flex = self._scorer.score(segment.voiced, self.model.targets())

        adapted = False
        if self.model.should_adapt(flex.best_score) and flex.best_segment is not None:
            self.model.adapt(flex.best_segment)
            adapted = True

        logger.info(
            f"Verified utterance: full={segment.full_sec:.2f}s voiced={segment.voiced_sec:.2f}s "
            f"score={flex.best_score:.4f} ({flex.best_strategy}, {flex.best_target_label})"
        )
        return VerificationResult(
            full_sec=segment.full_sec,
            voiced_sec=segment.voiced_sec,
            best_score=flex.best_score,
            best_strategy=flex.best_strategy,
            best_target_label=flex.best_target_label,
            per_target_strategy=flex.per_target_strategy,
            adapted=adapted,
        )
