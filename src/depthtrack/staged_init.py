from __future__ import annotations

"""Staged multi-body initialization.

Bodies are solved one at a time. While body ``b`` is evaluated every other
body sits at a fixed out-of-view default pose, so its likelihood is not
confounded by neighbours that have not been initialized yet. The run is an
explicit sequence of stages::

    Staging(0) -> Staging(1) -> ... -> Staging(N-1) -> Final -> Steady
"""

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass

import numpy as np

from .body_state import BodyStateModel
from .errors import ConfigurationError
from .model import RecursiveFilter

logger = logging.getLogger("depthtrack.staging")

STAGING = "staging"
FINAL = "final"
STEADY = "steady"


@dataclass(frozen=True)
class Stage:
    kind: str
    body_index: int | None = None

    @staticmethod
    def staging(body_index: int) -> "Stage":
        return Stage(kind=STAGING, body_index=body_index)

    @staticmethod
    def final() -> "Stage":
        return Stage(kind=FINAL)

    @staticmethod
    def steady() -> "Stage":
        return Stage(kind=STEADY)


@dataclass(frozen=True, eq=False)
class StageSnapshot:
    """Population right after the resample that closes `stage`."""

    stage: Stage
    population: np.ndarray


def stage_sequence(body_count: int, *, state_is_partial: bool) -> list[Stage]:
    stages = [Stage.staging(index) for index in range(body_count)] if state_is_partial else []
    return stages + [Stage.final(), Stage.steady()]


class StagedInitializer:
    def __init__(
        self,
        layout: BodyStateModel,
        *,
        default_position: Sequence[float],
        steady_blocks: Sequence[Sequence[int]],
        steady_sample_count: int,
    ) -> None:
        self._layout = layout
        self._default_state = layout.default_state(default_position)
        self._steady_blocks = layout.validate_partition(steady_blocks)
        if steady_sample_count < 1:
            raise ConfigurationError("steady-state sample count must be >= 1")
        self._steady_sample_count = int(steady_sample_count)

    @property
    def default_state(self) -> np.ndarray:
        return np.array(self._default_state, copy=True)

    def _seed_matrix(self, seeds: Sequence[np.ndarray], *, state_is_partial: bool) -> np.ndarray:
        if len(seeds) == 0:
            raise ConfigurationError("at least one initial state is required")

        expected = self._layout.body_dim(0) if state_is_partial else self._layout.total_dim
        if state_is_partial and len({body.dimension for body in self._layout.bodies}) != 1:
            raise ConfigurationError("partial seeds need bodies of equal dimension")
        rows: list[np.ndarray] = []
        for index, seed in enumerate(seeds):
            arr = np.asarray(seed, dtype=np.float64).reshape(-1)
            if arr.size != expected:
                what = "one body's sub-state" if state_is_partial else "the full state"
                raise ConfigurationError(
                    f"initial state {index} has {arr.size} entries, {what} has {expected}"
                )
            rows.append(arr)
        return np.stack(rows)

    def stages(
        self,
        filter_: RecursiveFilter,
        seeds: Sequence[np.ndarray],
        observation: np.ndarray,
        control: np.ndarray,
        *,
        state_is_partial: bool = True,
        set_blocks: Callable[[list[list[int]]], None] | None = None,
        resample: Callable[[int], None] | None = None,
    ) -> Iterator[StageSnapshot]:
        """Run the stages lazily, yielding a snapshot as each one completes.

        `set_blocks(blocks)` and `resample(count)` default to the filter's own
        methods; the orchestrator passes its validating wrappers.
        """
        seed_matrix = self._seed_matrix(seeds, state_is_partial=state_is_partial)
        install = set_blocks or filter_.set_sampling_blocks
        do_resample = resample or filter_.resample
        sample_count = len(seed_matrix)

        if state_is_partial:
            population = np.repeat(self._default_state[None, :], sample_count, axis=0)
        else:
            population = seed_matrix

        for stage in stage_sequence(self._layout.body_count, state_is_partial=state_is_partial):
            if stage.kind == STAGING:
                body = int(stage.body_index)
                logger.info("evaluating body %s (%d/%d)", self._layout.bodies[body].name, body + 1, self._layout.body_count)
                population = np.array(population, copy=True)
                population[:, self._layout.body_slice(body)] = seed_matrix
                install(self._layout.body_block(body))
                filter_.set_population(population)
                filter_.predict_update(observation, 0.0, control)
                do_resample(sample_count)
                population = np.array(filter_.population, copy=True)
            elif stage.kind == FINAL:
                install(self._layout.full_block())
                filter_.set_population(population)
                filter_.predict_update(observation, 0.0, control)
                do_resample(self._steady_sample_count)
                population = np.array(filter_.population, copy=True)
            else:
                install(self._steady_blocks)
            yield StageSnapshot(stage=stage, population=population)

    def run(
        self,
        filter_: RecursiveFilter,
        seeds: Sequence[np.ndarray],
        observation: np.ndarray,
        control: np.ndarray,
        *,
        state_is_partial: bool = True,
        set_blocks: Callable[[list[list[int]]], None] | None = None,
        resample: Callable[[int], None] | None = None,
    ) -> list[StageSnapshot]:
        return list(
            self.stages(
                filter_,
                seeds,
                observation,
                control,
                state_is_partial=state_is_partial,
                set_blocks=set_blocks,
                resample=resample,
            )
        )
