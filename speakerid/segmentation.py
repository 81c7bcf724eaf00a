"""VAD-driven segmentation of a PCM16 stream into utterances."""

import logging
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

import numpy as np

from .audio import last_window
from .exceptions import VADError
from .protocols import VadFunction
from .settings import SpeakerIdSettings, settings as default_settings

logger = logging.getLogger(__name__)


class SegmentState(str, Enum):
    """Segmenter state."""

    IDLE = "idle"
    ACTIVE = "active"


@dataclass
class Segment:
    """One finalized utterance."""

    full: np.ndarray  # every sample since activation
    voiced: np.ndarray  # only samples above the release threshold
    sample_rate: int

    @property
    def full_sec(self) -> float:
        return len(self.full) / self.sample_rate

    @property
    def voiced_sec(self) -> float:
        return len(self.voiced) / self.sample_rate


def iter_blocks(
    samples: np.ndarray,
    block_size: int,
) -> Iterator[tuple[np.ndarray, np.ndarray]]:
    """Split samples into consecutive fixed-size blocks.

    Yields:
        Tuples of (block, vad_block). ``block`` is an owned copy of the
        input samples; ``vad_block`` is the same block zero-padded to
        ``block_size`` for VAD evaluation only.
    """
    for start in range(0, len(samples), block_size):
        block = samples[start : start + block_size].copy()
        if len(block) < block_size:
            yield block, np.pad(block, (0, block_size - len(block)))
        else:
            yield block, block


def vad_probability(vad: VadFunction, block: np.ndarray) -> float:
    """Evaluate the VAD oracle on one block.

    Raises:
        VADError: If the oracle fails or returns a non-finite value.
    """
    try:
        p = float(vad(block))
    except VADError:
        raise
    except Exception as e:
        raise VADError(f"VAD evaluation failed: {e}") from e

    if not np.isfinite(p):
        raise VADError(f"VAD returned non-finite probability: {p}")
    return p


class Segmenter:
    """Two-state (IDLE/ACTIVE) VAD segmentation state machine.

    Activation requires ``p >= on_threshold``; once active, blocks with
    ``p >= off_threshold`` extend the voiced buffer and reset the silence
    counter. A segment is finalized after ``silence_after_sec`` of silence,
    or twice that while the voiced buffer is still shorter than
    ``min_embed_sec``. Segments whose voiced part is shorter than
    ``min_embed_sec`` are discarded.

    Not thread-safe.
    """

    def __init__(
        self,
        vad: VadFunction,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._vad = vad
        self._settings = settings or default_settings

        s = self._settings
        self._block_size = s.vad_chunk
        self._soft_limit = s.seconds_to_samples(s.silence_after_sec)
        self._hard_limit = self._soft_limit * 2
        self._min_voiced = s.seconds_to_samples(s.min_embed_sec)
        self._preroll: deque[np.ndarray] = deque(maxlen=max(0, s.preroll_frames))

        self._state = SegmentState.IDLE
        self._full: list[np.ndarray] = []
        self._voiced: list[np.ndarray] = []
        self._voiced_len = 0
        self._silence = 0

    @property
    def state(self) -> SegmentState:
        return self._state

    @property
    def block_size(self) -> int:
        return self._block_size

    @property
    def voiced_samples(self) -> int:
        """Voiced samples collected in the current utterance."""
        return self._voiced_len

    def reset(self) -> None:
        """Drop the in-progress utterance and return to IDLE."""
        self._state = SegmentState.IDLE
        self._preroll.clear()
        self._full = []
        self._voiced = []
        self._voiced_len = 0
        self._silence = 0

    def feed_block(
        self,
        block: np.ndarray,
        vad_block: np.ndarray | None = None,
    ) -> Segment | None:
        """Advance the state machine by one block.

        Args:
            block: Samples appended to the segment buffers.
            vad_block: Samples passed to the VAD. Defaults to ``block``.

        Returns:
            A finalized Segment, or None.
        """
        p = vad_probability(self._vad, block if vad_block is None else vad_block)

        if self._state == SegmentState.IDLE:
            # the preroll includes the activating block, which is then appended again
            self._preroll.append(block)
            if p >= self._settings.on_threshold:
                self._state = SegmentState.ACTIVE
                for frame in self._preroll:
                    self._append(frame, voiced=True)
                self._preroll.clear()
                self._append(block, voiced=True)
                self._silence = 0
                logger.debug(f"Segment activated at p={p:.3f}")
            return None

        if p >= self._settings.off_threshold:
            self._append(block, voiced=True)
            self._silence = 0
            return None

        self._append(block, voiced=False)
        self._silence += len(block)
        limit = (
            self._hard_limit if self._voiced_len < self._min_voiced else self._soft_limit
        )
        if self._silence >= limit:
            return self._finalize()
        return None

    def push(self, samples: np.ndarray) -> list[Segment]:
        """Feed samples of any length.

        Returns:
            Every segment finalized while consuming ``samples``, in order.
        """
        segments: list[Segment] = []
        for block, vad_block in iter_blocks(samples, self._block_size):
            segment = self.feed_block(block, vad_block)
            if segment is not None:
                segments.append(segment)
        return segments

    def flush(self) -> Segment | None:
        """Finalize an ACTIVE utterance at end of stream."""
        if self._state != SegmentState.ACTIVE:
            return None
        return self._finalize()

    def _append(self, block: np.ndarray, *, voiced: bool) -> None:
        self._full.append(block)
        if voiced:
            self._voiced.append(block)
            self._voiced_len += len(block)

    def _finalize(self) -> Segment | None:
        full = _concat(self._full)
        voiced = _concat(self._voiced)
        self.reset()

        if len(voiced) < self._min_voiced:
            logger.debug(
                f"Discarded segment with {len(voiced)} voiced samples "
                f"(minimum {self._min_voiced})"
            )
            return None

        return Segment(full=full, voiced=voiced, sample_rate=self._settings.sample_rate)


def _concat(blocks: list[np.ndarray]) -> np.ndarray:
    if not blocks:
        return np.zeros(0, dtype=np.int16)
    return np.concatenate(blocks).astype(np.int16, copy=False)


def segment_offline(
    samples: np.ndarray,
    vad: VadFunction,
    settings: SpeakerIdSettings | None = None,
) -> list[Segment]:
    """Segment a complete recording.

    Applies the streaming state machine to the whole buffer and finalizes a
    trailing ACTIVE utterance at the end.
    """
    segmenter = Segmenter(vad, settings)
    segments = segmenter.push(samples)
    tail = segmenter.flush()
    if tail is not None:
        segments.append(tail)
    return segments


def collect_voiced(
    samples: np.ndarray,
    vad: VadFunction,
    block_size: int,
    threshold: float,
) -> np.ndarray:
    """Concatenate every block whose VAD probability reaches ``threshold``."""
    kept = [
        block
        for block, vad_block in iter_blocks(samples, block_size)
        if vad_probability(vad, vad_block) >= threshold
    ]
    return _concat(kept)


def last_voiced_window(
    samples: np.ndarray,
    vad: VadFunction,
    block_size: int,
    window: int,
    threshold: float,
) -> np.ndarray:
    """Return the canonical voiced window of a recording.

    Keeps only VAD-passing blocks, then takes the last ``window`` samples,
    tiling shorter voiced audio. Yields zeros when nothing is voiced.
    """
    voiced = collect_voiced(samples, vad, block_size, threshold)
    return last_window(voiced, window)
