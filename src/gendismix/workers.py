"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/workers.py

Per-worker scratch state and the fixed-size thread pool that runs one task
per worker and joins them all before returning.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Sequence, TypeVar

import numpy as np

from .errors import WorkerError
from .scores import DifferentiableSequenceScore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerScratch:
    """
    Everything one worker writes to during an evaluation.

    The scoring functions are exclusively owned by this worker index: worker 0
    holds the caller's instances, every other worker holds clones.
    """

    def __init__(self, index: int, scores: Sequence[DifferentiableSequenceScore]) -> None:
        self.index = index
        self.scores: List[DifferentiableSequenceScore] = list(scores)
        n_classes = len(self.scores)
        self.indices: List[List[int]] = [[] for _ in range(n_classes)]
        self.partials: List[List[float]] = [[] for _ in range(n_classes)]
        self.help = np.zeros(max(2, n_classes), dtype=float)
        self.ll_grad = np.zeros(0, dtype=float)
        self.cll_grad = np.zeros(0, dtype=float)
        self.ll = 0.0
        self.cll = 0.0

    def ensure_dimension(self, dimension: int) -> None:
        if self.ll_grad.size != dimension:
            self.ll_grad = np.zeros(dimension, dtype=float)
            self.cll_grad = np.zeros(dimension, dtype=float)

    def clear_sparse(self, class_index: int) -> None:
        self.indices[class_index].clear()
        self.partials[class_index].clear()

    def set_parameters(self, params: np.ndarray, offsets: np.ndarray) -> None:
        for c, score in enumerate(self.scores):
            score.set_parameters(params, int(offsets[c]))


class WorkerPool:
    """
    ``threads`` worker slots backed by one ThreadPoolExecutor.

    ``run`` submits exactly one task per slot, blocks until every task has
    finished, and only then reports a failure, so no worker is still touching
    its scratch when the caller sees the error.
    """

    def __init__(self, threads: int) -> None:
        if threads < 1:
            raise ValueError("The number of threads has to be positive.")
        self.threads = int(threads)
        self._executor = ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix="gendismix-worker")
        logger.debug("Started worker pool with %d threads", self.threads)

    def run(self, fn: Callable[[int, T], None], items: Sequence[T]) -> None:
        if self._executor is None:
            raise RuntimeError("worker pool has been closed")
        if len(items) != self.threads:
            raise ValueError(f"expected {self.threads} work items, got {len(items)}")
        futures = [self._executor.submit(fn, t, item) for t, item in enumerate(items)]
        wait(futures)
        failed = [(t, f.exception()) for t, f in enumerate(futures) if f.exception() is not None]
        if failed:
            for t, exc in failed:
                logger.error("Worker %d raised %s: %s", t, type(exc).__name__, exc)
            t, exc = failed[0]
            raise WorkerError(t, f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            logger.debug("Stopped worker pool")

    @property
    def closed(self) -> bool:
        return self._executor is None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
