"""speakerid - on-device speaker verification engine.

This package provides:
- VAD-driven segmentation of PCM16 streams
- FLEX multi-resolution best-of scoring
- Enrollment and online adaptation of a speaker model
- Crash-safe persistence of the model with load-time repair
- A portable cluster blob and a stateless verifier

Usage:
    from speakerid import SpeakerIdContext

    ctx = SpeakerIdContext(embed, vad)   # or SpeakerIdContext.from_models()

    # Enroll
    result = ctx.onboard_from_wav("enroll.wav")
    print(f"Enrolled K={result.cluster_size} D={result.embedding_dim}")

    # Verify
    verification = ctx.verify_from_wav("attempt.wav")
    print(f"Score: {verification.best_score:.3f}")

    # Export and verify elsewhere
    verifier = ctx.create_verifier_from_cluster(ctx.get_cluster())
    score = verifier.verify(pcm16le_bytes)
"""

from .audio import as_pcm16, load_wav_file, loop_pad, pcm16_from_bytes
from .context import OnboardingStream, SpeakerIdContext
from .embedding import (
    Embedder,
    compute_centroid,
    fold_into_mean,
    l2_normalize,
)
from .engine import SpeakerIdEngine, VerificationResult
from .exceptions import (
    AudioConversionError,
    EnrollmentError,
    ErrorKind,
    FormatError,
    NotEnrolledError,
    SegmentTooShortError,
    SpeakerEmbeddingError,
    SpeakerIdError,
    StateError,
    StorageError,
    UnknownClusterError,
    VADError,
    ValidationError,
)
from .flex import FlexResult, FlexScorer, slice_samples
from .model import EnrollmentResult, SpeakerModel
from .protocols import EmbedFunction, VadFunction
from .registry import ClusterRegistry
from .segmentation import Segment, Segmenter, SegmentState, segment_offline
from .settings import SpeakerIdSettings, settings, wake_word_settings
from .store import SpeakerModelStore
from .wire import (
    PortableCluster,
    Verifier,
    create_verifier_from_audio,
    create_verifier_from_cluster,
    decode_cluster,
    encode_cluster,
)

__all__ = [
    # Settings
    "SpeakerIdSettings",
    "settings",
    "wake_word_settings",
    # Exceptions
    "ErrorKind",
    "SpeakerIdError",
    "StateError",
    "NotEnrolledError",
    "SegmentTooShortError",
    "EnrollmentError",
    "UnknownClusterError",
    "FormatError",
    "StorageError",
    "ValidationError",
    "SpeakerEmbeddingError",
    "VADError",
    "AudioConversionError",
    # Oracles
    "EmbedFunction",
    "VadFunction",
    # Audio
    "as_pcm16",
    "pcm16_from_bytes",
    "load_wav_file",
    "loop_pad",
    # Embeddings
    "Embedder",
    "l2_normalize",
    "compute_centroid",
    "fold_into_mean",
    # Segmentation
    "Segment",
    "Segmenter",
    "SegmentState",
    "segment_offline",
    # Scoring
    "FlexScorer",
    "FlexResult",
    "slice_samples",
    # Model
    "SpeakerModelStore",
    "SpeakerModel",
    "EnrollmentResult",
    # Engine
    "SpeakerIdEngine",
    "VerificationResult",
    # Wire
    "PortableCluster",
    "Verifier",
    "encode_cluster",
    "decode_cluster",
    "create_verifier_from_cluster",
    "create_verifier_from_audio",
    # Facades
    "ClusterRegistry",
    "SpeakerIdContext",
    "OnboardingStream",
]
