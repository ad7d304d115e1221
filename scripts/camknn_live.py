import asyncio
import logging
import time
from typing import List, Optional

import cv2
import numpy as np
import typer
from rich import print
from rich.logging import RichHandler

from camknn.config import PipelineConfig
from camknn.io import ConfidenceLog, OpenCVCamera, save_confidences
from camknn.pipeline import ClassSpec, SessionHooks, SessionState, WebcamClassifier

app = typer.Typer(help="Live webcam few-shot classifier. Hold 1..n to record, c+digit to clear, q to quit.")

BAR_COLORS = [(0, 200, 0), (0, 200, 220), (220, 120, 0), (200, 0, 200), (0, 0, 220)]

class TapSource:
    """Forwards reads to the camera and keeps the latest frame for display."""

    def __init__(self, cam: OpenCVCamera):
        self.cam = cam
        self.last: Optional[np.ndarray] = None

    def open(self):
        self.cam.open()

    def read(self):
        self.last = self.cam.read()
        return self.last

    def take(self) -> Optional[np.ndarray]:
        frame, self.last = self.last, None
        return frame

    def close(self):
        self.cam.close()

def draw_overlay(frame, names, counts, conf, recording: Optional[str]):
    out = frame.copy()
    for i, name in enumerate(names):
        y = 22 + i * 24
        c = 0.0 if conf is None else conf.get(name, 0.0)
        color = BAR_COLORS[i % len(BAR_COLORS)]
        cv2.rectangle(out, (8, y - 14), (8 + int(120 * c), y + 4), color, -1)
        label = f"{i + 1} {name} n={counts[i]} {c * 100:.0f}%"
        cv2.putText(out, label, (12, y), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1, cv2.LINE_AA)
    if recording:
        cv2.putText(out, f"REC {recording}", (8, out.shape[0] - 10),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 255), 2, cv2.LINE_AA)
    return out

@app.command()
def run(
    classes: List[str] = typer.Option(["class_1", "class_2", "class_3"], "--class", help="Repeat per class name."),
    device: int = typer.Option(0, help="cv2.VideoCapture device index"),
    width: int = typer.Option(640),
    height: int = typer.Option(480),
    back_facing: bool = typer.Option(False, help="Do not mirror frames"),
    torch_device: str = typer.Option("cuda", help="Torch device for SqueezeNet (falls back to cpu)"),
    topk: int = typer.Option(10),
    completion: str = typer.Option("wait", help="'wait' or 'delay'"),
    measure_every: int = typer.Option(20),
    fps: float = typer.Option(30.0),
    out_csv: Optional[str] = typer.Option(None, help="Write per-cycle confidences here on exit"),
    verbose: bool = typer.Option(False),
):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format="%(message)s", handlers=[RichHandler()])
    if len(classes) > 9:
        raise typer.BadParameter("at most 9 classes (keys 1..9)")

    cfg = PipelineConfig(class_names=list(classes))
    cfg.camera.device = device
    cfg.camera.width = width
    cfg.camera.height = height
    cfg.camera.back_facing = back_facing
    cfg.extractor.device = torch_device
    cfg.knn.topk = topk
    cfg.schedule.completion = completion
    cfg.schedule.measure_every = measure_every
    cfg.schedule.frame_interval_s = 1.0 / fps

    tap = TapSource(OpenCVCamera(device, width, height, back_facing))
    conf_log = ConfidenceLog(list(classes))
    state = {"conf": None, "quit": False, "clear": False}
    t0 = time.perf_counter()

    def on_conf(pred):
        state["conf"] = None if pred is None else pred.as_dict()
        conf_log.append(time.perf_counter() - t0, pred, source="camera")

    def on_camera(status):
        if status.granted:
            print("[green]Camera granted[/green]")
        else:
            print(f"[red]Camera unavailable[/red]: {status.error}")
            state["quit"] = True

    specs = [ClassSpec(n) for n in classes]
    session: Optional[WebcamClassifier] = None

    async def next_frame():
        await asyncio.sleep(cfg.schedule.frame_interval_s)
        frame = tap.take()
        if frame is None:
            frame = tap.read()
        rec = None if session.current is None else classes[session.current]
        cv2.imshow("camknn", draw_overlay(frame, classes, session.knn.counts(), state["conf"], rec))
        key = cv2.waitKey(1) & 0xFF
        if key == ord("q"):
            state["quit"] = True
            session.stop()
        elif key == ord("c"):
            state["clear"] = True
        elif ord("1") <= key < ord("1") + len(classes):
            idx = key - ord("1")
            if state["clear"]:
                session.clear_class(idx)
                print(f"[yellow]Cleared[/yellow] {classes[idx]}")
                state["clear"] = False
            else:
                session.button_down(idx)
        elif session.current is not None:
            # key released (no autorepeat this frame)
            session.button_up()

    session = WebcamClassifier(
        cfg=cfg,
        classes=specs,
        hooks=SessionHooks(
            set_confidences=on_conf,
            on_loaded=lambda: print("[green]Classifier ready[/green]"),
            on_camera_status=on_camera,
        ),
        source=tap,
        next_frame=next_frame,
    )

    async def main():
        await session.ready()
        if session.state is SessionState.IDLE:
            return
        await session.wait()

    try:
        asyncio.run(main())
    finally:
        session.close()
        cv2.destroyAllWindows()
        if out_csv:
            save_confidences(conf_log.to_frame(), out_csv)
            print(f"[green]Saved confidences[/green] -> {out_csv}")

if __name__ == "__main__":
    app()
