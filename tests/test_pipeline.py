import asyncio
import itertools
import threading
import numpy as np
import pytest

from camknn.config import PipelineConfig
from camknn.errors import ExtractorInitError, NoClassSelectedError
from camknn.features import l2_norm
from camknn.pipeline import ClassSpec, SessionHooks, SessionState, WebcamClassifier
from camknn.scheduling import CompletionPolicy, MeasuredDelay
from conftest import IdentityFeaturizer, ListFrameSource, unit

async def _yield():
    await asyncio.sleep(0)

def make_session(frames=None, fail_open=False, fail_load=False, policy=None, featurizer=None, cfg=None):
    events = {"conf": [], "loaded": 0, "camera": [], "samples": {"A": [], "B": [], "C": []}}
    classes = [ClassSpec(n, events["samples"][n].append) for n in ("A", "B", "C")]
    hooks = SessionHooks(
        set_confidences=events["conf"].append,
        on_loaded=lambda: events.__setitem__("loaded", events["loaded"] + 1),
        on_camera_status=events["camera"].append,
    )
    s = WebcamClassifier(
        cfg=cfg or PipelineConfig(class_names=["A", "B", "C"]),
        classes=classes,
        hooks=hooks,
        featurizer=featurizer or IdentityFeaturizer(fail=fail_load),
        source=ListFrameSource(frames, fail_open=fail_open),
        policy=policy,
        next_frame=_yield,
    )
    return s, events

def test_ready_start_stop_close():
    s, ev = make_session([unit(0)])

    async def scenario():
        await s.ready()
        assert s.state is SessionState.READY
        assert s.active and s.loaded
        s.start()  # already running
        await s.ready()
        s.stop()
        s.stop()
        await s.wait()

    asyncio.run(scenario())
    assert ev["loaded"] == 1
    assert [c.granted for c in ev["camera"]] == [True]
    assert s.state is SessionState.IDLE
    s.close()
    s.close()
    assert s.state is SessionState.CLOSED
    assert s.featurizer.closed
    assert not s.source.opened

def test_camera_denied_stays_idle():
    s, ev = make_session(fail_open=True)
    asyncio.run(s.ready())
    assert s.state is SessionState.IDLE
    assert len(ev["camera"]) == 1
    assert ev["camera"][0].granted is False
    assert ev["camera"][0].error is not None
    assert ev["loaded"] == 0

def test_extractor_failure_propagates():
    s, ev = make_session([unit(0)], fail_load=True)
    with pytest.raises(ExtractorInitError):
        asyncio.run(s.ready())
    assert s.state is SessionState.IDLE
    assert not s.loaded
    assert ev["loaded"] == 0

def test_record_without_class_fails_fast():
    s, _ = make_session([unit(0)])
    with pytest.raises(NoClassSelectedError):
        s.record_example()

def test_recording_ticks_store_unit_vectors():
    s, ev = make_session([unit(4, noise=0.01)])
    s.button_down("A")

    async def scenario():
        for _ in range(3):
            assert await s.tick() is None

    asyncio.run(scenario())
    assert ev["samples"]["A"] == [1, 2, 3]
    assert s.knn.example_count("A") == 3
    assert ev["conf"] == []
    for v in s.knn.sets[0].vectors:
        assert abs(l2_norm(v) - 1.0) < 1e-5

def test_tick_without_examples_is_noop():
    s, ev = make_session([unit(0)])
    assert asyncio.run(s.tick()) is None
    assert ev["conf"] == []
    assert s.source.reads == 0

def test_classify_frame_insufficient_data():
    s, _ = make_session([unit(0)])
    assert asyncio.run(s.classify_frame()) is None

def test_clear_then_classify_other_class():
    s, ev = make_session([unit(0), unit(1), unit(1)])

    async def scenario():
        s.button_down("A")
        await s.tick()
        s.clear_class("A")
        s.button_down("B")
        await s.tick()
        s.button_up()
        return await s.tick()

    pred = asyncio.run(scenario())
    assert pred.confidence("B") == 1.0
    assert pred.confidence("A") == 0.0
    assert ev["conf"] == [pred]

def test_blur_focus_resume_prior_state():
    s, _ = make_session([unit(0)])

    async def scenario():
        await s.ready()
        s.button_down("B")
        assert s.state is SessionState.RECORDING
        s.blur()
        assert s.state is SessionState.PAUSED and not s.active
        s.blur()
        assert s.state is SessionState.PAUSED
        s.focus()
        assert s.state is SessionState.RECORDING and s.active
        s.button_up()
        assert s.state is SessionState.READY
        s.stop()
        await s.wait()

    asyncio.run(scenario())

def test_focus_without_prior_activity_does_nothing():
    s, _ = make_session([unit(0)])
    s.focus()
    assert s.state is SessionState.IDLE

def test_result_dropped_when_stopped_mid_classification():
    class StopDuring(CompletionPolicy):
        async def collect(self, pending):
            s.stop()
            return await pending

    s, ev = make_session([unit(0)], policy=StopDuring())

    async def scenario():
        await s.ready()
        s.knn.record_example("A", unit(0))
        return await s.tick()

    assert asyncio.run(scenario()) is None
    assert ev["conf"] == []

def test_frame_source_failure_stops_loop():
    s, ev = make_session([])

    async def scenario():
        await s.ready()
        s.button_down("A")
        await s.wait()

    asyncio.run(scenario())
    assert [c.granted for c in ev["camera"]] == [True, False]
    assert not s.active

def test_loop_emits_predictions():
    s, ev = make_session([unit(2)])

    async def scenario():
        await s.ready()
        s.knn.record_example("C", unit(2))
        while not ev["conf"]:
            await asyncio.sleep(0)
        s.stop()
        await s.wait()

    asyncio.run(scenario())
    assert ev["conf"][0].label == "C"
    assert np.isclose(ev["conf"][0].confidences.sum(), 1.0)

class FailingOnceFeaturizer(IdentityFeaturizer):
    """First frame yields all-zero logits, which cannot be normalized."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def logits(self, frame):
        self.calls += 1
        if self.calls == 1:
            return np.zeros(1000, dtype=np.float32)
        return super().logits(frame)

def test_tick_failure_stops_loop_and_allows_restart():
    s, ev = make_session([unit(0)], featurizer=FailingOnceFeaturizer())

    async def scenario():
        await s.ready()
        s.button_down("A")
        with pytest.raises(ValueError):
            await s.wait()
        assert not s.active
        assert s.state is SessionState.IDLE
        s.start()
        assert s.active and s.state is SessionState.RECORDING
        while s.knn.example_count("A") == 0:
            await asyncio.sleep(0)
        s.stop()
        await s.wait()

    asyncio.run(scenario())
    assert ev["samples"]["A"][0] == 1

class GatedFeaturizer(IdentityFeaturizer):
    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def load(self):
        assert self.gate.wait(5)
        super().load()

def test_close_while_loading_releases_extractor():
    feat = GatedFeaturizer()
    s, ev = make_session([unit(0)], featurizer=feat)

    async def scenario():
        task = asyncio.get_running_loop().create_task(s.ready())
        while s.state is not SessionState.LOADING:
            await asyncio.sleep(0)
        s.close()
        feat.gate.set()
        await task

    asyncio.run(scenario())
    assert s.state is SessionState.CLOSED
    assert not s.loaded and not s.active
    assert not feat.loaded and feat.closed
    assert ev["loaded"] == 0

def test_delay_completion_sleeps_on_non_measuring_ticks():
    cfg = PipelineConfig(class_names=["A", "B", "C"])
    cfg.schedule.completion = "delay"
    cfg.schedule.measure_every = 2
    s, ev = make_session([unit(0)], cfg=cfg)
    assert isinstance(s.policy, MeasuredDelay)
    ticks = itertools.count()
    s.policy.clock = lambda: next(ticks) * 0.1
    slept = []

    async def fake_sleep(t):
        slept.append(t)

    s.policy.sleep = fake_sleep

    async def scenario():
        s.button_down("A")
        await s.tick()
        assert s.policy.counter == 0
        s.button_up()
        await s.tick()   # measures
        assert s.policy.counter == 1 and slept == []
        s.button_down("B")
        await s.tick()   # recording leaves the counter alone
        assert s.policy.counter == 1
        s.button_up()
        await s.tick()   # sleeps the measured latency
        await s.tick()   # measures again
        await s.tick()   # sleeps

    asyncio.run(scenario())
    assert slept == [pytest.approx(0.1), pytest.approx(0.1)]
    assert s.policy.counter == 0
    assert len(ev["conf"]) == 4

class GatedPolicy(CompletionPolicy):
    def __init__(self):
        self.gate = asyncio.Event()
        self.entered = 0
        self.inflight = 0
        self.peak = 0

    async def collect(self, pending):
        self.entered += 1
        self.inflight += 1
        self.peak = max(self.peak, self.inflight)
        try:
            await self.gate.wait()
            return await pending
        finally:
            self.inflight -= 1

def test_refocus_waits_for_tick_in_flight():
    policy = GatedPolicy()
    s, ev = make_session([unit(2)], policy=policy)

    async def scenario():
        await s.ready()
        s.knn.record_example("C", unit(2))
        while policy.entered == 0:
            await asyncio.sleep(0)
        s.blur()
        s.focus()
        for _ in range(50):
            await asyncio.sleep(0)
        assert policy.entered == 1
        policy.gate.set()
        while not ev["conf"]:
            await asyncio.sleep(0)
        s.stop()
        await s.wait()

    asyncio.run(scenario())
    assert policy.peak == 1
    assert ev["conf"][0].label == "C"
