import numpy as np
import pytest

from camknn.errors import CameraUnavailableError, ExtractorInitError
from camknn.featurizers.backbone import FrameFeaturizer

D = 1000

def unit(i: int, d: int = D, noise: float = 0.0, seed: int = 0) -> np.ndarray:
    v = np.zeros(d, dtype=np.float32)
    v[i] = 1.0
    if noise:
        v += np.random.default_rng(seed).normal(0, noise, d).astype(np.float32)
    return (v / np.linalg.norm(v)).astype(np.float32)

class IdentityFeaturizer(FrameFeaturizer):
    """Frames are already logits vectors."""

    def __init__(self, fail: bool = False):
        super().__init__(device="cpu")
        self.fail = fail
        self.closed = False

    def load(self):
        if self.fail:
            raise ExtractorInitError("weights missing")
        self.loaded = True

    def logits(self, frame):
        return np.asarray(frame, dtype=np.float32) * 300.0

    def close(self):
        self.closed = True
        super().close()

class ListFrameSource:
    def __init__(self, frames=None, fail_open: bool = False):
        self.frames = list(frames or [])
        self.fail_open = fail_open
        self.opened = False
        self.reads = 0

    def push(self, frame):
        self.frames.append(frame)

    def open(self):
        if self.fail_open:
            raise CameraUnavailableError("permission denied")
        self.opened = True

    def read(self):
        if not self.frames:
            raise CameraUnavailableError("no frame")
        self.reads += 1
        return self.frames[0] if len(self.frames) == 1 else self.frames.pop(0)

    def close(self):
        self.opened = False

@pytest.fixture
def featurizer():
    return IdentityFeaturizer()
