"""FLEX multi-resolution best-of scoring."""

import logging
from dataclasses import dataclass, field

import numpy as np

from .audio import loop_pad
from .embedding import Embedder, l2_normalize
from .exceptions import SegmentTooShortError, ValidationError
from .settings import SpeakerIdSettings, settings as default_settings

logger = logging.getLogger(__name__)

BASE_TAG = "base"
WHOLE_TAG = "whole"
NO_MATCH = "none"


def slice_samples(samples: np.ndarray, window: int, hop: int) -> list[np.ndarray]:
    """Slice samples into windows of ``window`` samples every ``hop`` samples.

    A trailing remainder shorter than the window is kept as one final
    partial slice. Every slice is an owned copy.
    """
    if len(samples) == 0 or window <= 0:
        return []
    hop = max(1, hop)

    slices: list[np.ndarray] = []
    start = 0
    while start + window <= len(samples):
        slices.append(samples[start : start + window].copy())
        start += hop
    if start < len(samples):
        slices.append(samples[start:].copy())
    return slices


def multires_tag(window_sec: float) -> str:
    """Strategy tag for a multi-resolution window size (e.g. ``mr0.25``)."""
    return f"mr{window_sec:.2f}"


@dataclass
class FlexResult:
    """Outcome of scoring one voiced segment against a target set."""

    best_score: float = float("-inf")
    best_strategy: str = NO_MATCH
    best_target_label: str = NO_MATCH
    best_segment: np.ndarray | None = None
    # strategy tag ("base_max", "mr0.50_top3_mean", ...) -> target label -> score
    per_target_strategy: dict[str, dict[str, float]] = field(default_factory=dict)
    # "<tag>_max" -> target label -> winning slice index
    best_slice_index: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass
class _Strategy:
    tag: str
    slices: list[np.ndarray]
    scores: np.ndarray  # slices x targets


class FlexScorer:
    """Scores a voiced segment with base, multi-resolution and whole strategies.

    Strategies are evaluated in a fixed order (base, each multi-resolution
    size as configured, whole) and targets in the order given, so the
    global best is deterministic for a deterministic embedder.
    """

    def __init__(
        self,
        embedder: Embedder,
        settings: SpeakerIdSettings | None = None,
    ) -> None:
        self._embedder = embedder
        self._settings = settings or default_settings

    def strategies(self, voiced: np.ndarray) -> list[tuple[str, list[np.ndarray]]]:
        """Build the (tag, slices) list for a voiced segment."""
        s = self._settings
        items: list[tuple[str, list[np.ndarray]]] = []

        base = slice_samples(
            voiced,
            s.seconds_to_samples(s.slice_sec),
            s.seconds_to_samples(s.effective_slice_hop_sec),
        )
        if base:
            items.append((BASE_TAG, base))

        if s.flex_enabled:
            for size in s.flex_sizes_sec:
                window = s.seconds_to_samples(size)
                slices = slice_samples(voiced, window, max(1, window // 2))
                if slices:
                    items.append((multires_tag(size), slices))

        whole = voiced[: s.seconds_to_samples(s.flex_max_sec)].copy()
        min_samples = s.seconds_to_samples(s.min_embed_sec)
        if len(whole) < min_samples:
            whole = loop_pad(whole, min_samples)
        items.append((WHOLE_TAG, [whole]))

        return items

    def score(
        self,
        voiced: np.ndarray,
        targets: list[tuple[str, np.ndarray]],
    ) -> FlexResult:
        """Score a voiced segment against labeled targets.

        Args:
            voiced: Voiced PCM16 samples.
            targets: Ordered (label, embedding) pairs.

        Returns:
            FlexResult with the global best and per-strategy diagnostics.

        Raises:
            SegmentTooShortError: If voiced audio is below ``min_embed_sec``.
            ValidationError: If the target set is empty.
            SpeakerEmbeddingError: If the embedder fails.
        """
        min_samples = self._settings.seconds_to_samples(self._settings.min_embed_sec)
        if len(voiced) < min_samples:
            raise SegmentTooShortError(
                f"Voiced segment has {len(voiced)} samples, "
                f"minimum is {min_samples}"
            )
        if not targets:
            raise ValidationError("No verification targets")

        labels = [label for label, _ in targets]
        target_matrix = np.stack([l2_normalize(vec) for _, vec in targets])

        result = FlexResult()
        for tag, slices in self.strategies(voiced):
            embeddings = np.stack([self._embedder(sl) for sl in slices])
            if embeddings.shape[1] != target_matrix.shape[1]:
                raise ValidationError(
                    f"Embedding dim {embeddings.shape[1]} does not match "
                    f"target dim {target_matrix.shape[1]}"
                )
            strategy = _Strategy(tag, slices, embeddings @ target_matrix.T)
            self._aggregate(strategy, labels, result)

        logger.debug(
            f"FLEX best={result.best_score:.4f} strategy={result.best_strategy} "
            f"target={result.best_target_label}"
        )
        return result

    def _aggregate(
        self,
        strategy: _Strategy,
        labels: list[str],
        result: FlexResult,
    ) -> None:
        scores = strategy.scores
        n_slices = scores.shape[0]

        # argmax returns the first maximum, keeping slice order on ties
        winners = np.argmax(scores, axis=0)
        per_target_max = {
            label: float(scores[winners[ti], ti]) for ti, label in enumerate(labels)
        }
        max_tag = f"{strategy.tag}_max"
        result.per_target_strategy[max_tag] = per_target_max
        result.best_slice_index[max_tag] = {
            label: int(winners[ti]) for ti, label in enumerate(labels)
        }

        for ti, label in enumerate(labels):
            if per_target_max[label] > result.best_score:
                result.best_score = per_target_max[label]
                result.best_strategy = max_tag
                result.best_target_label = label
                result.best_segment = strategy.slices[int(winners[ti])]

        k = min(self._settings.flex_top_k, n_slices)
        if k >= 2:
            per_target_topk: dict[str, float] = {}
            for ti, label in enumerate(labels):
                order = np.argsort(-scores[:, ti], kind="stable")
                per_target_topk[label] = float(np.mean(scores[order[:k], ti]))
            result.per_target_strategy[f"{strategy.tag}_top{k}_mean"] = per_target_topk
