
from __future__ import annotations
import logging
import numpy as np
import torch
import cv2
from torchvision.models import squeezenet1_1, SqueezeNet1_1_Weights

from .backbone import FrameFeaturizer
from ..errors import ExtractorInitError

log = logging.getLogger(__name__)

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

def preprocess_bgr(img: np.ndarray, size: int = 227) -> torch.Tensor:
    """Resize to size x size, BGR -> RGB, scale to [0, 1] and apply ImageNet mean/std.
    Returns a (1, 3, size, size) float tensor.
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"expected an HxWx3 frame, got shape {img.shape}")
    rs = cv2.resize(img, (size, size), interpolation=cv2.INTER_LINEAR)
    rgb = cv2.cvtColor(rs, cv2.COLOR_BGR2RGB)
    x = torch.from_numpy(np.ascontiguousarray(rgb)).permute(2, 0, 1).float() / 255.0
    mean = torch.tensor(IMAGENET_MEAN).view(3, 1, 1)
    std = torch.tensor(IMAGENET_STD).view(3, 1, 1)
    return ((x - mean) / std).unsqueeze(0)

class SqueezeNetFeaturizer(FrameFeaturizer):
    feature_size = 1000

    def __init__(self, image_size: int = 227, device: str = "cuda",
                 squash_denominator: float = 300.0, pretrained: bool = True):
        super().__init__(device=device, squash_denominator=squash_denominator)
        self.image_size = image_size
        self.pretrained = pretrained
        self.model = None

    def load(self) -> None:
        if self.loaded:
            return
        try:
            weights = SqueezeNet1_1_Weights.IMAGENET1K_V1 if self.pretrained else None
            model = squeezenet1_1(weights=weights)
            model.to(self.device).eval()
            self.model = model
            # warmup
            warm = np.zeros((self.image_size, self.image_size, 3), dtype=np.uint8)
            out = self.logits(warm)
        except Exception as e:
            self.model = None
            raise ExtractorInitError(f"SqueezeNet failed to load: {e}") from e
        if out.shape != (self.feature_size,):
            self.model = None
            raise ExtractorInitError(f"unexpected logits shape {out.shape}")
        self.loaded = True
        log.info("SqueezeNet 1.1 ready on %s (pretrained=%s)", self.device, self.pretrained)

    @torch.inference_mode()
    def logits(self, frame_bgr: np.ndarray) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("featurizer not loaded")
        x = preprocess_bgr(frame_bgr, self.image_size).to(self.device)
        out = self.model(x)
        vec = out[0].detach().float().cpu().numpy()
        del x, out
        return vec

    def close(self) -> None:
        self.model = None
        super().close()
