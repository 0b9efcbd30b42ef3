from __future__ import annotations

"""Layout of the multi-body state vector and sampling-block bookkeeping.

A state is a flat float vector made of consecutive per-body blocks:

  - ``pose6``: ``x, y, z, rx, ry, rz`` (position in the camera frame and a
    rotation vector),
  - ``joints``: one angle per joint of an articulated body.

Populations are ``(K, total_dim)`` arrays; row order is significant.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

from .errors import ConfigurationError

POSE6 = "pose6"
JOINTS = "joints"
POSE_DIMENSION = 6


@dataclass(frozen=True)
class BodySpec:
    name: str
    kind: str
    dimension: int
    joint_names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in (POSE6, JOINTS):
            raise ConfigurationError(f"unknown body kind {self.kind!r}")
        if self.kind == POSE6 and self.dimension != POSE_DIMENSION:
            raise ConfigurationError("pose6 bodies have exactly 6 dimensions")
        if self.dimension <= 0:
            raise ConfigurationError("body dimension must be positive")
        if self.joint_names and len(self.joint_names) != self.dimension:
            raise ConfigurationError(
                f"body {self.name!r} has {len(self.joint_names)} joint names "
                f"for {self.dimension} dimensions"
            )


class BodyStateModel:
    def __init__(self, bodies: Sequence[BodySpec]) -> None:
        if not bodies:
            raise ConfigurationError("at least one body is required")
        self._bodies = tuple(bodies)
        offsets = [0]
        for body in self._bodies:
            offsets.append(offsets[-1] + body.dimension)
        self._offsets = tuple(offsets)

    @staticmethod
    def rigid_bodies(names: Sequence[str]) -> "BodyStateModel":
        return BodyStateModel([BodySpec(name=str(name), kind=POSE6, dimension=POSE_DIMENSION) for name in names])

    @staticmethod
    def articulated_body(name: str, joint_names: Sequence[str]) -> "BodyStateModel":
        return BodyStateModel(
            [
                BodySpec(
                    name=str(name),
                    kind=JOINTS,
                    dimension=len(joint_names),
                    joint_names=tuple(str(joint) for joint in joint_names),
                )
            ]
        )

    @property
    def bodies(self) -> tuple[BodySpec, ...]:
        return self._bodies

    @property
    def body_count(self) -> int:
        return len(self._bodies)

    @property
    def total_dim(self) -> int:
        return self._offsets[-1]

    def body_dim(self, body_index: int) -> int:
        return self._bodies[body_index].dimension

    def body_slice(self, body_index: int) -> slice:
        if not 0 <= body_index < len(self._bodies):
            raise IndexError(f"body index {body_index} out of range")
        return slice(self._offsets[body_index], self._offsets[body_index + 1])

    def body_indices(self, body_index: int) -> tuple[int, ...]:
        part = self.body_slice(body_index)
        return tuple(range(part.start, part.stop))

    def body_block(self, body_index: int) -> list[list[int]]:
        """Sampling schedule that only touches one body's dimensions."""
        return [list(self.body_indices(body_index))]

    def full_block(self) -> list[list[int]]:
        return [list(range(self.total_dim))]

    def per_body_blocks(self) -> list[list[int]]:
        return [list(self.body_indices(index)) for index in range(self.body_count)]

    def validate_partition(self, blocks: Sequence[Sequence[int]]) -> list[list[int]]:
        """Return `blocks` as lists if they partition [0, total_dim), else raise."""
        normalized = [[int(index) for index in block] for block in blocks]
        if not normalized:
            raise ConfigurationError("sampling blocks must not be empty")

        seen: set[int] = set()
        for block_index, block in enumerate(normalized):
            if not block:
                raise ConfigurationError(f"sampling block {block_index} is empty")
            for index in block:
                if not 0 <= index < self.total_dim:
                    raise ConfigurationError(
                        f"sampling block {block_index} addresses dimension {index} "
                        f"outside [0, {self.total_dim})"
                    )
                if index in seen:
                    raise ConfigurationError(
                        f"dimension {index} appears in more than one sampling block"
                    )
                seen.add(index)

        missing = sorted(set(range(self.total_dim)) - seen)
        if missing:
            raise ConfigurationError(f"sampling blocks leave dimensions {missing} uncovered")
        return normalized

    def is_body_block(self, blocks: Sequence[Sequence[int]], body_index: int) -> bool:
        if len(blocks) != 1:
            return False
        return sorted(int(index) for index in blocks[0]) == list(self.body_indices(body_index))

    def check_state(self, state: np.ndarray) -> np.ndarray:
        arr = np.asarray(state, dtype=np.float64)
        if arr.shape != (self.total_dim,):
            raise ConfigurationError(
                f"state has shape {arr.shape}, expected ({self.total_dim},)"
            )
        return arr

    def get_body(self, state: np.ndarray, body_index: int) -> np.ndarray:
        return np.array(np.asarray(state, dtype=np.float64)[..., self.body_slice(body_index)], copy=True)

    def with_body(self, state: np.ndarray, body_index: int, sub_state: np.ndarray) -> np.ndarray:
        """Copy of `state` with only body `body_index` replaced."""
        sub = np.asarray(sub_state, dtype=np.float64)
        if sub.shape != (self.body_dim(body_index),):
            raise ConfigurationError(
                f"sub-state of size {sub.size} does not match body {body_index} "
                f"dimension {self.body_dim(body_index)}"
            )
        updated = np.array(self.check_state(state), copy=True)
        updated[self.body_slice(body_index)] = sub
        return updated

    def default_state(self, position: Sequence[float]) -> np.ndarray:
        """Every pose body at `position` with identity rotation, joints at zero."""
        state = np.zeros(self.total_dim, dtype=np.float64)
        for index, body in enumerate(self._bodies):
            if body.kind == POSE6:
                part = self.body_slice(index)
                state[part.start : part.start + 3] = np.asarray(position, dtype=np.float64)
        return state

    def pose_body_indices(self) -> list[int]:
        return [index for index, body in enumerate(self._bodies) if body.kind == POSE6]

    def body_position(self, state: np.ndarray, body_index: int) -> np.ndarray:
        body = self._bodies[body_index]
        if body.kind != POSE6:
            raise ValueError(f"body {body.name!r} has no free-floating pose")
        return self.get_body(state, body_index)[:3]

    def body_transform(self, state: np.ndarray, body_index: int) -> np.ndarray:
        """4x4 camera-from-body transform of a pose body."""
        sub = self.get_body(state, body_index)
        if self._bodies[body_index].kind != POSE6:
            raise ValueError(f"body {self._bodies[body_index].name!r} has no free-floating pose")
        transform = np.eye(4, dtype=np.float64)
        transform[:3, :3] = Rotation.from_rotvec(sub[3:6]).as_matrix()
        transform[:3, 3] = sub[:3]
        return transform

    def joint_names(self) -> list[str]:
        names: list[str] = []
        for body in self._bodies:
            if body.kind == JOINTS:
                names.extend(body.joint_names or [f"{body.name}_joint_{i}" for i in range(body.dimension)])
        return names

    def joint_positions(self, state: np.ndarray) -> dict[str, float]:
        """Joint name -> value for every articulated body in `state`."""
        state = self.check_state(state)
        positions: dict[str, float] = {}
        for index, body in enumerate(self._bodies):
            if body.kind != JOINTS:
                continue
            names = body.joint_names or tuple(f"{body.name}_joint_{i}" for i in range(body.dimension))
            for name, value in zip(names, state[self.body_slice(index)], strict=True):
                positions[name] = float(value)
        return positions
