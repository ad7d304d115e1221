import logging
from typing import List

import typer
from rich import print
from rich.logging import RichHandler

from camknn.config import PipelineConfig
from camknn.featurizers.squeezenet import SqueezeNetFeaturizer
from camknn.io import ConfidenceLog, DirectoryFrameSource, save_confidences
from camknn.model.knn import KNNClassifier

app = typer.Typer(help="Offline few-shot classification over directories of frames.")

def _parse_train(items: List[str]) -> list[tuple[str, str]]:
    pairs = []
    for it in items:
        if "=" not in it:
            raise typer.BadParameter(f"expected NAME=DIR, got {it!r}")
        name, d = it.split("=", 1)
        pairs.append((name, d))
    return pairs

@app.command()
def run(
    train: List[str] = typer.Option(..., help="Repeat per class: NAME=frames_dir"),
    query_dir: str = typer.Option(..., help="Directory of frames to classify"),
    out_csv: str = typer.Option("camknn_confidences.csv"),
    topk: int = typer.Option(10),
    device: str = typer.Option("cuda"),
    fps: float = typer.Option(30.0, help="Frame rate used for the t_sec column"),
):
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])
    pairs = _parse_train(train)
    cfg = PipelineConfig(class_names=[n for n, _ in pairs])
    cfg.knn.topk = topk
    cfg.extractor.device = device

    feat = SqueezeNetFeaturizer(
        image_size=cfg.extractor.image_size, device=cfg.extractor.device,
        squash_denominator=cfg.extractor.squash_denominator,
    )
    feat.load()
    knn = KNNClassifier(cfg.class_names, feature_size=cfg.extractor.feature_size, topk=cfg.knn.topk)

    for name, d in pairs:
        src = DirectoryFrameSource(d, cycle=False)
        src.open()
        for _ in range(len(src)):
            knn.record_example(name, feat.extract(src.read()))
        src.close()
        print(f"[green]Recorded[/green] {knn.example_count(name)} examples for {name}")

    conf_log = ConfidenceLog(cfg.class_names)
    query = DirectoryFrameSource(query_dir, cycle=False)
    query.open()
    for i, p in enumerate(list(query.paths)):
        pred = knn.classify(feat.extract(query.read()))
        conf_log.append(i / fps, pred, source=p.name)
    query.close()
    df = conf_log.to_frame()
    save_confidences(df, out_csv)
    feat.close()
    print(f"[green]Saved confidences[/green] -> {out_csv}, rows={len(df)}")
    print(df["label"].value_counts().to_string())

if __name__ == "__main__":
    app()
