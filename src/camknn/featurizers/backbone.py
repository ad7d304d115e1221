from __future__ import annotations
import numpy as np
import torch

from ..features import squash_and_normalize

class FrameFeaturizer:
    """Interface for turning one camera frame into a fixed-length logits vector.
    Implement `load` and `logits`; `extract` applies the squash/normalize step on top.
    """
    feature_size: int = 1000

    def __init__(self, device: str = 'cuda', squash_denominator: float = 300.0):
        self.device = torch.device(device if torch.cuda.is_available() else 'cpu')
        self.squash_denominator = squash_denominator
        self.loaded = False

    def load(self) -> None:
        """Build the network and warm it up. Must raise ExtractorInitError on failure."""
        raise NotImplementedError

    def logits(self, frame_bgr: np.ndarray) -> np.ndarray:
        """Return raw logits (feature_size,) for one HxWx3 uint8 BGR frame."""
        raise NotImplementedError

    def extract(self, frame_bgr: np.ndarray) -> np.ndarray:
        return squash_and_normalize(self.logits(frame_bgr), self.squash_denominator)

    def close(self) -> None:
        self.loaded = False
        if self.device.type == 'cuda':
            torch.cuda.empty_cache()
