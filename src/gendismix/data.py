"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/data.py

Class-partitioned sequence data, per-sequence weights, and the split of the
weighted workload into contiguous per-worker ranges.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ShapeMismatchError

logger = logging.getLogger(__name__)

DNA_ALPHABET = ("A", "C", "G", "T")
_DNA_INDEX = {b: i for i, b in enumerate(DNA_ALPHABET)}


def encode_dna(seq: str) -> np.ndarray:
    """Integer-encode a DNA string (A=0, C=1, G=2, T=3)."""
    clean = seq.strip().upper()
    try:
        return np.fromiter((_DNA_INDEX[ch] for ch in clean), dtype=np.int8, count=len(clean))
    except KeyError as exc:
        raise ValueError(f"Invalid base in sequence '{seq}'") from exc


class DataSet:
    """
    Ordered, read-only collection of integer-encoded sequences.

    Sequences are stored as 1-D int8 arrays; the collection is shared by all
    worker threads during an evaluation and is never mutated after construction.
    """

    def __init__(self, sequences: Sequence[np.ndarray], *, alphabet_size: int = 4, name: str = "") -> None:
        seqs = []
        for i, s in enumerate(sequences):
            arr = np.array(s, dtype=np.int8)
            if arr.ndim != 1:
                raise ValueError(f"sequence {i} must be a 1-D array")
            if arr.size and (arr.min() < 0 or arr.max() >= alphabet_size):
                raise ValueError(f"sequence {i} contains symbols outside [0, {alphabet_size})")
            arr.setflags(write=False)
            seqs.append(arr)
        self._seqs: tuple[np.ndarray, ...] = tuple(seqs)
        self.alphabet_size = int(alphabet_size)
        self.name = name

    @classmethod
    def from_strings(cls, seqs: Sequence[str], *, name: str = "") -> "DataSet":
        return cls([encode_dna(s) for s in seqs], name=name)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, column: str = "sequence", *, name: str = "") -> "DataSet":
        if column not in df.columns:
            raise KeyError(f"column '{column}' not found; available: {list(df.columns)}")
        return cls.from_strings(df[column].astype(str).tolist(), name=name)

    def __len__(self) -> int:
        return len(self._seqs)

    def __getitem__(self, index: int) -> np.ndarray:
        return self._seqs[index]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._seqs)

    def number_of_elements(self) -> int:
        return len(self._seqs)

    def element_at(self, index: int) -> np.ndarray:
        return self._seqs[index]

    def element_length(self) -> Optional[int]:
        """Common sequence length, or None if the lengths vary."""
        lengths = {s.size for s in self._seqs}
        return lengths.pop() if len(lengths) == 1 else None

    def __repr__(self) -> str:
        return f"DataSet(name={self.name!r}, n={len(self)}, length={self.element_length()})"


def check_data_and_weights(
    data: Sequence[DataSet],
    weights: Optional[Sequence[Optional[Sequence[float]]]],
    n_classes: int,
    *,
    weight_sets: Optional[int] = None,
) -> list[np.ndarray]:
    """
    Validate shapes and return one float weight array per data set.

    ``weights=None`` (or a None entry) means weight 1 for every sequence.
    ``weight_sets`` is the number of weight arrays expected (defaults to the
    number of data sets); when it differs from ``len(data)`` every weight array
    must match the length of the single shared data set.
    """
    expected_sets = len(data) if weight_sets is None else weight_sets
    if weight_sets is None and len(data) != n_classes:
        raise ShapeMismatchError(f"Expected {n_classes} data sets (one per class), got {len(data)}.")
    if weights is None:
        weights = [None] * expected_sets
    if len(weights) != expected_sets:
        raise ShapeMismatchError(f"Expected {expected_sets} weight arrays, got {len(weights)}.")

    checked: list[np.ndarray] = []
    for i, w in enumerate(weights):
        ds = data[i] if weight_sets is None else data[0]
        n = len(ds)
        if w is None:
            arr = np.ones(n, dtype=float)
        else:
            arr = np.asarray(w, dtype=float)
            if arr.ndim != 1 or arr.size != n:
                raise ShapeMismatchError(f"The {i}-th weight array has length {arr.size}, data set has {n} sequences.")
            if not np.all(np.isfinite(arr)) or np.any(arr < 0):
                raise ShapeMismatchError(f"The {i}-th weight array must contain finite, non-negative values.")
            arr = arr.copy()
        arr.setflags(write=False)
        checked.append(arr)
    return checked


def weight_sums(weights: Sequence[np.ndarray]) -> np.ndarray:
    """Per-class weight totals followed by the grand total (length C+1)."""
    sums = np.zeros(len(weights) + 1, dtype=float)
    for c, w in enumerate(weights):
        sums[c] = float(np.sum(w))
    sums[-1] = float(sums[:-1].sum())
    return sums


@dataclass(frozen=True, slots=True)
class WorkRange:
    """
    Contiguous slice of the concatenated data, from (start_class, start_seq)
    inclusive to (end_class, end_seq) exclusive.
    """

    start_class: int
    start_seq: int
    end_class: int
    end_seq: int

    def iter_items(self, sizes: Sequence[int]) -> Iterator[tuple[int, int]]:
        for c in range(self.start_class, self.end_class + 1):
            start = self.start_seq if c == self.start_class else 0
            end = self.end_seq if c == self.end_class else sizes[c]
            for n in range(start, end):
                yield c, n

    def count(self, sizes: Sequence[int]) -> int:
        return sum(1 for _ in self.iter_items(sizes))


def _locate(position: int, sizes: Sequence[int]) -> tuple[int, int]:
    c = 0
    while c < len(sizes) - 1 and position >= sizes[c]:
        position -= sizes[c]
        c += 1
    return c, position


def partition_workload(sizes: Sequence[int], threads: int) -> list[WorkRange]:
    """
    Split the concatenated data into ``threads`` contiguous, disjoint ranges
    whose sequence counts differ by at most one.
    """
    if threads < 1:
        raise ValueError("The number of threads has to be positive.")
    total = int(sum(sizes))
    if total < threads:
        raise ShapeMismatchError(
            f"There are fewer sequences ({total}) than threads ({threads}). "
            "Please check your data or reduce the number of threads."
        )
    base, rem = divmod(total, threads)
    ranges: list[WorkRange] = []
    start = 0
    for t in range(threads):
        end = start + base + (1 if t < rem else 0)
        sc, ss = _locate(start, sizes)
        ec, es = _locate(end, sizes) if end < total else (len(sizes) - 1, sizes[-1])
        ranges.append(WorkRange(sc, ss, ec, es))
        start = end
    logger.debug("Partitioned %d sequences into %d ranges: %s", total, threads, ranges)
    return ranges
