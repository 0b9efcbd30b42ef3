from __future__ import annotations

"""Lifecycle and sampling-block management around a recursive filter."""

import enum
import logging
from collections.abc import Sequence

import numpy as np

from .body_state import BodyStateModel
from .errors import ConfigurationError
from .model import RecursiveFilter
from .staged_init import Stage, StagedInitializer, StageSnapshot

logger = logging.getLogger("depthtrack.orchestrator")


class FilterPhase(enum.Enum):
    UNINITIALIZED = "uninitialized"
    STAGING = "staging"
    STEADY_STATE = "steady_state"


class FilterOrchestrator:
    """Owns one `RecursiveFilter` and walks it through Uninitialized -> Staging -> SteadyState."""

    def __init__(
        self,
        filter_: RecursiveFilter,
        layout: BodyStateModel,
        *,
        steady_blocks: Sequence[Sequence[int]],
        steady_sample_count: int,
        default_position: Sequence[float] = (0.0, 0.0, -1.5),
    ) -> None:
        self._filter = filter_
        self._layout = layout
        self._initializer = StagedInitializer(
            layout,
            default_position=default_position,
            steady_blocks=steady_blocks,
            steady_sample_count=steady_sample_count,
        )
        self._phase = FilterPhase.UNINITIALIZED
        self._stage: Stage | None = None
        self._blocks: list[list[int]] = []
        self._snapshots: list[StageSnapshot] = []

    @property
    def phase(self) -> FilterPhase:
        return self._phase

    @property
    def stage(self) -> Stage | None:
        return self._stage

    @property
    def layout(self) -> BodyStateModel:
        return self._layout

    @property
    def sampling_blocks(self) -> list[list[int]]:
        return [list(block) for block in self._blocks]

    @property
    def snapshots(self) -> tuple[StageSnapshot, ...]:
        return tuple(self._snapshots)

    @property
    def default_state(self) -> np.ndarray:
        return self._initializer.default_state

    @property
    def population(self) -> np.ndarray:
        return self._filter.population

    def zero_control(self) -> np.ndarray:
        return np.zeros(self._layout.total_dim, dtype=np.float64)

    def set_sampling_blocks(self, partition: Sequence[Sequence[int]]) -> None:
        """Swap in a block partition of [0, total_dim); anything else is rejected."""
        blocks = self._layout.validate_partition(partition)
        self._filter.set_sampling_blocks(blocks)
        self._blocks = blocks

    def set_body_block(self, body_index: int) -> None:
        blocks = self._layout.body_block(body_index)
        self._filter.set_sampling_blocks(blocks)
        self._blocks = blocks

    def _install_blocks(self, blocks: Sequence[Sequence[int]]) -> None:
        for body_index in range(self._layout.body_count):
            if self._layout.is_body_block(blocks, body_index):
                self.set_body_block(body_index)
                return
        self.set_sampling_blocks(blocks)

    def resample(self, target_count: int) -> None:
        if int(target_count) < 1:
            raise ValueError("resample target count must be >= 1")
        self._filter.resample(int(target_count))
        size = len(self._filter.population)
        if size != int(target_count):
            raise RuntimeError(f"filter resampled to {size} samples instead of {target_count}")

    def initialize(
        self,
        seeds: Sequence[np.ndarray],
        observation: np.ndarray,
        *,
        state_is_partial: bool = True,
    ) -> np.ndarray:
        """Bootstrap the population from `seeds` against one static observation."""
        self._phase = FilterPhase.STAGING
        self._snapshots = []
        logger.info(
            "received %d initial states for %d bodies (partial=%s)",
            len(seeds),
            self._layout.body_count,
            state_is_partial,
        )
        try:
            for snapshot in self._initializer.stages(
                self._filter,
                seeds,
                observation,
                self.zero_control(),
                state_is_partial=state_is_partial,
                set_blocks=self._install_blocks,
                resample=self.resample,
            ):
                self._stage = snapshot.stage
                self._snapshots.append(snapshot)
        except Exception:
            self._phase = FilterPhase.UNINITIALIZED
            self._stage = None
            raise

        self._phase = FilterPhase.STEADY_STATE
        logger.info(
            "initialized with %d samples and %d sampling blocks",
            len(self._filter.population),
            len(self._blocks),
        )
        return self._filter.mean_state()

    def step(
        self,
        observation: np.ndarray,
        elapsed_time: float,
        control: np.ndarray | None = None,
    ) -> np.ndarray:
        if self._phase is not FilterPhase.STEADY_STATE:
            raise RuntimeError(f"cannot step a filter in phase {self._phase.value}; call initialize first")
        if control is None:
            control = self.zero_control()
        control = np.asarray(control, dtype=np.float64)
        if control.shape != (self._layout.total_dim,):
            raise ConfigurationError(
                f"control input has shape {control.shape}, expected ({self._layout.total_dim},)"
            )
        self._filter.predict_update(observation, float(elapsed_time), control)
        return self._filter.mean_state()

    def mean_state(self) -> np.ndarray:
        if self._phase is FilterPhase.UNINITIALIZED:
            raise RuntimeError("filter is not initialized")
        return self._filter.mean_state()
