from __future__ import annotations
from dataclasses import dataclass, field

@dataclass
class ExtractorConfig:
    image_size: int = 227
    feature_size: int = 1000
    squash_denominator: float = 300.0
    device: str = "cuda"   # falls back to cpu when cuda is missing
    pretrained: bool = True

@dataclass
class KnnConfig:
    topk: int = 10

@dataclass
class ScheduleConfig:
    frame_interval_s: float = 1.0 / 60
    completion: str = "wait"   # "wait" | "delay"
    measure_every: int = 20
    initial_latency_s: float = 1.0

@dataclass
class CameraConfig:
    device: int = 0
    width: int = 227
    height: int = 227
    back_facing: bool = False  # user-facing frames are mirrored

@dataclass
class PipelineConfig:
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    knn: KnnConfig = field(default_factory=KnnConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    class_names: list[str] = field(default_factory=lambda: ["class_1", "class_2", "class_3"])
