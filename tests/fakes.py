from __future__ import annotations

from collections.abc import Callable, Sequence

import numpy as np

from depthtrack.model import RecursiveFilter


class FakeFilter(RecursiveFilter):
    """Deterministic stand-in: `score` ranks samples, resampling repeats the ranking."""

    def __init__(self, score: Callable[[np.ndarray], np.ndarray] | None = None) -> None:
        self._score = score
        self._population = np.empty((0, 0), dtype=np.float64)
        self.calls: list[str] = []
        self.elapsed_times: list[float] = []
        self.observations: list[np.ndarray] = []
        self.block_history: list[list[list[int]]] = []
        self.resample_counts: list[int] = []

    @property
    def population(self) -> np.ndarray:
        return self._population

    def set_population(self, samples: np.ndarray) -> None:
        self.calls.append("set_population")
        self._population = np.array(samples, dtype=np.float64, copy=True)

    def predict_update(self, observation: np.ndarray, elapsed_time: float, control: np.ndarray) -> None:
        self.calls.append("predict_update")
        self.elapsed_times.append(float(elapsed_time))
        self.observations.append(np.asarray(observation))

    def resample(self, count: int) -> None:
        self.calls.append("resample")
        self.resample_counts.append(int(count))
        if self._score is None:
            order = np.arange(len(self._population))
        else:
            order = np.argsort(-self._score(self._population), kind="stable")
        self._population = self._population[np.resize(order, int(count))]

    def set_sampling_blocks(self, blocks: Sequence[Sequence[int]]) -> None:
        self.calls.append("set_sampling_blocks")
        self.block_history.append([list(block) for block in blocks])

    def mean_state(self) -> np.ndarray:
        return np.mean(self._population, axis=0)


class ShrinkingFilter(FakeFilter):
    """Resamples to one sample fewer than asked."""

    def resample(self, count: int) -> None:
        super().resample(max(1, int(count) - 1))
