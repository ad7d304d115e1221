from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import cv2
import numpy as np
import pandas as pd

from .errors import CameraUnavailableError
from .model.knn import Prediction

log = logging.getLogger(__name__)

class FrameSource(Protocol):
    def open(self) -> None: ...
    def read(self) -> np.ndarray: ...
    def close(self) -> None: ...

class OpenCVCamera:
    """Live camera frames via cv2.VideoCapture. User-facing frames are mirrored."""

    def __init__(self, device: int = 0, width: int = 227, height: int = 227, back_facing: bool = False):
        self.device = device
        self.width = width
        self.height = height
        self.back_facing = back_facing
        self.cap: Optional[cv2.VideoCapture] = None

    def open(self) -> None:
        if self.cap is not None:
            return
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"cannot open camera device {self.device}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap = cap
        log.info("camera %d opened", self.device)

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraUnavailableError("camera is not open")
        ok, frame = self.cap.read()
        if not ok or frame is None:
            raise CameraUnavailableError(f"camera {self.device} returned no frame")
        return frame if self.back_facing else cv2.flip(frame, 1)

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None

def list_frames(frames_dir: str) -> list[Path]:
    return sorted([p for p in Path(frames_dir).glob("*.jpg")] + [p for p in Path(frames_dir).glob("*.png")])

class DirectoryFrameSource:
    """Replays the *.jpg / *.png files of a directory in sorted order, cycling at the end."""

    def __init__(self, frames_dir: str, cycle: bool = True):
        self.frames_dir = frames_dir
        self.cycle = cycle
        self.paths: list[Path] = []
        self.pos = 0

    def open(self) -> None:
        self.paths = list_frames(self.frames_dir)
        if not self.paths:
            raise CameraUnavailableError(f"no frames found in {self.frames_dir}")
        self.pos = 0

    def __len__(self) -> int:
        return len(self.paths)

    def read(self) -> np.ndarray:
        if not self.paths:
            raise CameraUnavailableError("frame source is not open")
        if self.pos >= len(self.paths):
            if not self.cycle:
                raise CameraUnavailableError(f"{self.frames_dir} exhausted")
            self.pos = 0
        p = self.paths[self.pos]
        self.pos += 1
        img = cv2.imread(str(p))
        if img is None:
            raise CameraUnavailableError(f"cannot read frame {p}")
        return img

    def close(self) -> None:
        self.paths = []
        self.pos = 0

@dataclass
class ConfidenceLog:
    class_names: list[str]
    rows: list[dict] = field(default_factory=list)

    def append(self, t_sec: float, pred: Optional[Prediction], source: str = "") -> None:
        row = {"t_sec": t_sec, "source": source, "k": 0, "label": None}
        for n in self.class_names:
            row[f"conf_{n}"] = np.nan
        if pred is not None:
            row["k"] = pred.k
            row["label"] = pred.label
            for n, c in pred.as_dict().items():
                row[f"conf_{n}"] = c
        self.rows.append(row)

    def to_frame(self) -> pd.DataFrame:
        cols = ["t_sec", "source", "k", "label"] + [f"conf_{n}" for n in self.class_names]
        return pd.DataFrame(self.rows, columns=cols)

def save_confidences(df: pd.DataFrame, path: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
