from __future__ import annotations
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Optional, Union

from ..features import stack_rows

log = logging.getLogger(__name__)

ClassLabel = Union[int, str]

@dataclass
class ClassExampleSet:
    name: str
    vectors: list[np.ndarray] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.vectors)

    def append(self, vec: np.ndarray) -> None:
        self.vectors.append(vec)

    def clear(self) -> None:
        self.vectors = []

@dataclass
class ReferenceSet:
    """Concatenated example rows plus the cumulative per-class counts they were built from."""
    matrix: np.ndarray        # (N, D), classes in fixed order, empty classes skipped
    boundaries: np.ndarray    # (C,) cumulative counts, boundaries[-1] == N

    @property
    def n_rows(self) -> int:
        return int(self.matrix.shape[0])

    def class_for_row(self, row: int) -> int:
        if row < 0 or row >= self.n_rows:
            raise IndexError(f"row {row} outside reference set of {self.n_rows} rows")
        # side='right' steps over classes with zero examples
        return int(np.searchsorted(self.boundaries, row, side="right"))

    def classes_for_rows(self, rows: np.ndarray) -> np.ndarray:
        rows = np.asarray(rows, dtype=np.int64)
        if rows.size and (rows.min() < 0 or rows.max() >= self.n_rows):
            raise IndexError(f"rows outside reference set of {self.n_rows} rows")
        return np.searchsorted(self.boundaries, rows, side="right")

@dataclass
class Prediction:
    class_names: list[str]
    confidences: np.ndarray   # (C,), count / k per class
    k: int

    @property
    def label(self) -> str:
        return self.class_names[int(np.argmax(self.confidences))]

    def confidence(self, name: str) -> float:
        return float(self.confidences[self.class_names.index(name)])

    def as_dict(self) -> dict[str, float]:
        return {n: float(c) for n, c in zip(self.class_names, self.confidences)}

class KNNClassifier:
    """Online few-shot classifier: per-class example sets and a k-NN majority vote.

    Vectors are expected to be unit length, so the dot product against the
    reference matrix is cosine similarity. Top-K ties go to the lowest row index.
    """

    def __init__(self, class_names: list[str], feature_size: int = 1000, topk: int = 10):
        if not class_names:
            raise ValueError("at least one class is required")
        if len(set(class_names)) != len(class_names):
            raise ValueError(f"class names must be unique: {class_names}")
        if topk < 1:
            raise ValueError(f"topk must be positive, got {topk}")
        self.class_names = list(class_names)
        self.feature_size = feature_size
        self.topk = topk
        self.sets = [ClassExampleSet(n) for n in self.class_names]
        self._reference: Optional[ReferenceSet] = None
        self._stale = True

    def index_of(self, label: ClassLabel) -> int:
        if isinstance(label, str):
            try:
                return self.class_names.index(label)
            except ValueError:
                raise KeyError(f"unknown class {label!r}") from None
        idx = int(label)
        if idx < 0 or idx >= len(self.sets):
            raise IndexError(f"class index {idx} out of range for {len(self.sets)} classes")
        return idx

    def record_example(self, label: ClassLabel, vec: np.ndarray) -> int:
        """Append one feature vector to a class and return its new example count."""
        idx = self.index_of(label)
        v = np.array(vec, dtype=np.float32).reshape(-1)
        if v.shape[0] != self.feature_size:
            raise ValueError(f"expected a {self.feature_size}-d vector, got {v.shape[0]}")
        self.sets[idx].append(v)
        self.invalidate()
        return self.sets[idx].count

    def clear_class(self, label: ClassLabel) -> None:
        idx = self.index_of(label)
        if self.sets[idx].count == 0:
            return
        self.sets[idx].clear()
        self.invalidate()
        log.debug("cleared class %s", self.class_names[idx])

    def clear_all(self) -> None:
        for i in range(len(self.sets)):
            self.clear_class(i)

    def example_count(self, label: ClassLabel) -> int:
        return self.sets[self.index_of(label)].count

    def counts(self) -> list[int]:
        return [s.count for s in self.sets]

    def total_examples(self) -> int:
        return sum(self.counts())

    def invalidate(self) -> None:
        self._stale = True
        self._reference = None

    @property
    def stale(self) -> bool:
        return self._stale

    def build_reference_set(self) -> Optional[ReferenceSet]:
        if not self._stale:
            return self._reference
        blocks = [stack_rows(s.vectors, self.feature_size) for s in self.sets if s.count > 0]
        if blocks:
            self._reference = ReferenceSet(
                matrix=np.concatenate(blocks, axis=0),
                boundaries=np.cumsum(self.counts()),
            )
            log.debug("rebuilt reference set: %d rows", self._reference.n_rows)
        else:
            self._reference = None
        self._stale = False
        return self._reference

    def similarities(self, vec: np.ndarray, ref: ReferenceSet) -> np.ndarray:
        q = np.asarray(vec, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.feature_size:
            raise ValueError(f"expected a {self.feature_size}-d vector, got {q.shape[0]}")
        return ref.matrix @ q

    def vote(self, sims: np.ndarray, ref: ReferenceSet) -> Prediction:
        sims = np.asarray(sims).reshape(-1)
        if sims.shape[0] != ref.n_rows:
            raise ValueError(f"{sims.shape[0]} similarities for {ref.n_rows} reference rows")
        k = min(self.topk, ref.n_rows)
        top = np.argsort(-sims, kind="stable")[:k]
        votes = np.bincount(ref.classes_for_rows(top), minlength=len(self.class_names))
        return Prediction(
            class_names=list(self.class_names),
            confidences=votes.astype(np.float64) / k,
            k=k,
        )

    def classify(self, vec: np.ndarray) -> Optional[Prediction]:
        """Return per-class confidences, or None when no examples have been recorded."""
        ref = self.build_reference_set()
        if ref is None:
            return None
        sims = self.similarities(vec, ref)
        pred = self.vote(sims, ref)
        del sims
        return pred
