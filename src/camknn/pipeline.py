from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import numpy as np

from .config import PipelineConfig
from .errors import CamKnnError, CameraUnavailableError, ExtractorInitError, NoClassSelectedError
from .featurizers.backbone import FrameFeaturizer
from .io import FrameSource, OpenCVCamera
from .model.knn import KNNClassifier, Prediction
from .scheduling import CompletionPolicy, make_policy

log = logging.getLogger(__name__)

class SessionState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    RECORDING = "recording"
    PAUSED = "paused"
    CLOSED = "closed"

@dataclass
class ClassSpec:
    name: str
    sample_callback: Optional[Callable[[int], None]] = None  # called with the running example count

@dataclass
class CameraStatus:
    granted: bool
    error: Optional[BaseException] = None

def _noop(*_args) -> None:
    return None

@dataclass
class SessionHooks:
    set_confidences: Callable[[Optional[Prediction]], None] = _noop
    on_loaded: Callable[[], None] = _noop
    on_camera_status: Callable[[CameraStatus], None] = _noop

@dataclass
class WebcamClassifier:
    """Capture -> record / classify session driven by a cooperative tick loop.

    Every tick runs on the event loop thread. While a class is selected each
    tick records one example for it; otherwise, once any example exists, each
    tick classifies the current frame and hands the Prediction to
    `hooks.set_confidences`.
    """
    cfg: PipelineConfig = field(default_factory=PipelineConfig)
    classes: Optional[list[ClassSpec]] = None
    hooks: SessionHooks = field(default_factory=SessionHooks)
    featurizer: Optional[FrameFeaturizer] = None
    source: Optional[FrameSource] = None
    policy: Optional[CompletionPolicy] = None
    next_frame: Optional[Callable[[], Awaitable[None]]] = None

    def __post_init__(self):
        if self.classes is None:
            self.classes = [ClassSpec(n) for n in self.cfg.class_names]
        self.knn = KNNClassifier(
            [c.name for c in self.classes],
            feature_size=self.cfg.extractor.feature_size,
            topk=self.cfg.knn.topk,
        )
        if self.featurizer is None:
            from .featurizers.squeezenet import SqueezeNetFeaturizer
            ex = self.cfg.extractor
            self.featurizer = SqueezeNetFeaturizer(
                image_size=ex.image_size, device=ex.device,
                squash_denominator=ex.squash_denominator, pretrained=ex.pretrained,
            )
        if self.source is None:
            cam = self.cfg.camera
            self.source = OpenCVCamera(cam.device, cam.width, cam.height, cam.back_facing)
        if self.policy is None:
            sc = self.cfg.schedule
            self.policy = make_policy(sc.completion, sc.measure_every, sc.initial_latency_s)
        if self.next_frame is None:
            interval = self.cfg.schedule.frame_interval_s
            self.next_frame = lambda: asyncio.sleep(interval)

        self.state = SessionState.IDLE
        self.loaded = False
        self.active = False
        self.was_active = False
        self.current: Optional[int] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    async def ready(self) -> None:
        """Open the frame source, load the extractor and start the loop.

        A frame source that cannot be opened is reported through
        `hooks.on_camera_status` and leaves the session IDLE. Extractor
        failures raise ExtractorInitError.
        """
        if self.state is SessionState.CLOSED:
            raise CamKnnError("session is closed")
        if self.loaded:
            self.start()
            return
        if self.state is SessionState.LOADING:
            return
        try:
            self.source.open()
        except CameraUnavailableError as e:
            log.warning("camera unavailable: %s", e)
            self.hooks.on_camera_status(CameraStatus(granted=False, error=e))
            return
        self.hooks.on_camera_status(CameraStatus(granted=True))

        self._set_state(SessionState.LOADING)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.featurizer.load)
        except ExtractorInitError:
            self._abort_loading()
            raise
        except Exception as e:
            self._abort_loading()
            raise ExtractorInitError(f"feature extractor failed to initialize: {e}") from e

        if self.state is SessionState.CLOSED:
            # closed while loading
            self.featurizer.close()
            return
        self.loaded = True
        self.start()
        self.hooks.on_loaded()

    def _abort_loading(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self._set_state(SessionState.IDLE)
        self.source.close()

    def start(self) -> None:
        if self.active:
            return
        if not self.loaded:
            raise CamKnnError("cannot start before the feature extractor is loaded")
        if self.state is SessionState.CLOSED:
            raise CamKnnError("session is closed")
        self.active = True
        self.was_active = True
        self._generation += 1
        self._set_state(SessionState.RECORDING if self.current is not None else SessionState.READY)
        # the new loop waits for a stale tick still in flight
        previous = self._task
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation, previous))

    def stop(self) -> None:
        """Stop scheduling new ticks. A tick already in flight finishes; its result is dropped."""
        if not self.active:
            return
        self.active = False
        self._generation += 1
        if self.state in (SessionState.READY, SessionState.RECORDING):
            self._set_state(SessionState.IDLE)

    def blur(self) -> None:
        if self.state not in (SessionState.READY, SessionState.RECORDING):
            return
        self.stop()
        self._set_state(SessionState.PAUSED)

    def focus(self) -> None:
        if self.state is SessionState.PAUSED and self.was_active:
            self.start()

    async def wait(self) -> None:
        """Block until the tick loop exits, re-raising anything that killed it."""
        while self._task is not None:
            task = self._task
            await task
            if self._task is task:
                break

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.stop()
        self.current = None
        self.source.close()
        self.featurizer.close()
        self.knn.clear_all()
        self.loaded = False
        self._set_state(SessionState.CLOSED)

    def button_down(self, name) -> None:
        self.current = self.knn.index_of(name)
        if self.state is SessionState.READY:
            self._set_state(SessionState.RECORDING)

    def button_up(self) -> None:
        self.current = None
        if self.state is SessionState.RECORDING:
            self._set_state(SessionState.READY)

    def clear_class(self, name) -> None:
        self.knn.clear_class(name)

    def capture_features(self) -> np.ndarray:
        frame = self.source.read()
        vec = self.featurizer.extract(frame)
        del frame
        return vec

    async def capture_features_async(self) -> np.ndarray:
        """Run capture + inference off the event loop thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.capture_features)

    def record_example(self) -> int:
        if self.current is None:
            raise NoClassSelectedError("record_example called with no class selected")
        return self._store(self.current, self.capture_features())

    def _store(self, idx: int, vec: np.ndarray) -> int:
        count = self.knn.record_example(idx, vec)
        cb = self.classes[idx].sample_callback
        if cb is not None:
            cb(count)
        return count

    async def classify_frame(self) -> Optional[Prediction]:
        vec = await self.capture_features_async()
        ref = self.knn.build_reference_set()
        if ref is None:
            return None
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(None, self.knn.similarities, vec, ref)
        sims = await self.policy.collect(pending)
        pred = self.knn.vote(sims, ref)
        del sims, vec
        return pred

    async def tick(self) -> Optional[Prediction]:
        gen = self._generation
        if self.current is not None:
            idx = self.current
            vec = await self.capture_features_async()
            if gen != self._generation:
                log.debug("session stopped mid-capture; example dropped")
                return None
            self._store(idx, vec)
            return None
        if self.knn.total_examples() == 0:
            return None
        pred = await self.classify_frame()
        if gen != self._generation:
            log.debug("session stopped mid-classification; result dropped")
            return None
        self.hooks.set_confidences(pred)
        return pred

    async def _run(self, gen: int, previous: Optional[asyncio.Task] = None) -> None:
        if previous is not None and not previous.done():
            await previous
        log.debug("tick loop %d started", gen)
        while self._generation == gen:
            try:
                await self.tick()
            except CameraUnavailableError as e:
                if self._generation != gen:
                    break
                log.warning("frame source failed: %s", e)
                self.hooks.on_camera_status(CameraStatus(granted=False, error=e))
                self.stop()
                break
            except Exception:
                if self._generation != gen:
                    # a newer loop owns the session
                    log.exception("stale tick loop %d failed", gen)
                    return
                log.exception("tick loop %d failed", gen)
                self.stop()
                raise
            await self.next_frame()
        log.debug("tick loop %d exited", gen)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            log.info("state %s -> %s", self.state.value, state.value)
            self.state = state
