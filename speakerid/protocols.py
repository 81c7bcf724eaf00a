"""Oracle protocols for the neural models the engine depends on."""

from typing import Protocol

import numpy as np


class EmbedFunction(Protocol):
    """Speaker embedding oracle."""

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        """Embed PCM16 samples.

        Args:
            samples: Audio samples as int16 numpy array (16kHz mono).

        Returns:
            D-dimensional float embedding. Empty output means failure.
        """
        ...


class VadFunction(Protocol):
    """Voice activity oracle.

    May be internally stateful, but must accept consecutive fixed-size blocks.
    """

    def __call__(self, block: np.ndarray) -> float:
        """Return the speech probability in [0, 1] for one int16 block."""
        ...
