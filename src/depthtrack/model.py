from __future__ import annotations

"""Shared data model and collaborator interfaces for depth-based tracking."""

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace

import numpy as np


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics for a frame of `width_px` x `height_px` pixels."""

    width_px: int
    height_px: int
    fx_px: float
    fy_px: float
    cx_px: float
    cy_px: float
    skew_px: float = 0.0

    @staticmethod
    def from_matrix(
        matrix: Sequence[Sequence[float]] | np.ndarray,
        *,
        width_px: int,
        height_px: int,
    ) -> "CameraIntrinsics":
        arr = np.asarray(matrix, dtype=np.float64)
        if arr.shape != (3, 3):
            raise ValueError("camera matrix must be 3x3")
        return CameraIntrinsics(
            width_px=int(width_px),
            height_px=int(height_px),
            fx_px=float(arr[0, 0]),
            fy_px=float(arr[1, 1]),
            cx_px=float(arr[0, 2]),
            cy_px=float(arr[1, 2]),
            skew_px=float(arr[0, 1]),
        )

    @property
    def matrix(self) -> np.ndarray:
        return np.asarray(
            (
                (self.fx_px, self.skew_px, self.cx_px),
                (0.0, self.fy_px, self.cy_px),
                (0.0, 0.0, 1.0),
            ),
            dtype=np.float64,
        )

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height_px, self.width_px)

    def downsampled(self, factor: int) -> "CameraIntrinsics":
        """Intrinsics for a frame decimated by `factor` (top two matrix rows / factor)."""
        factor = int(factor)
        if factor < 1:
            raise ValueError("downsampling factor must be >= 1")
        if factor == 1:
            return self
        return replace(
            self,
            width_px=self.width_px // factor,
            height_px=self.height_px // factor,
            fx_px=self.fx_px / factor,
            fy_px=self.fy_px / factor,
            cx_px=self.cx_px / factor,
            cy_px=self.cy_px / factor,
            skew_px=self.skew_px / factor,
        )

    def upsampled(self, factor: int, *, width_px: int, height_px: int) -> "CameraIntrinsics":
        """Undo `downsampled`; the full resolution must be given explicitly."""
        factor = int(factor)
        if factor < 1:
            raise ValueError("downsampling factor must be >= 1")
        return replace(
            self,
            width_px=int(width_px),
            height_px=int(height_px),
            fx_px=self.fx_px * factor,
            fy_px=self.fy_px * factor,
            cx_px=self.cx_px * factor,
            cy_px=self.cy_px * factor,
            skew_px=self.skew_px * factor,
        )


@dataclass(frozen=True, eq=False)
class DepthImage:
    """Raw depth frame as delivered by a camera driver or a stored session.

    `data` is either the raw byte buffer (row stride `step`, 0 meaning tightly
    packed) or an already decoded 2D array.
    """

    encoding: str
    width: int
    height: int
    data: bytes | np.ndarray
    timestamp_s: float = 0.0
    frame_index: int = 0
    step: int = 0
    is_bigendian: bool = False


@dataclass(frozen=True, eq=False)
class DataFrame:
    image: DepthImage
    intrinsics: CameraIntrinsics
    ground_truth: np.ndarray | None = None


@dataclass(frozen=True, eq=False)
class RenderResult:
    """Synthetic depth for one state: flat pixel indices (row-major) and depths."""

    indices: np.ndarray
    depth: np.ndarray
    body_ids: np.ndarray

    def as_depth_image(self, shape: tuple[int, int]) -> np.ndarray:
        image = np.full(shape[0] * shape[1], np.inf, dtype=np.float64)
        image[self.indices] = self.depth
        return image.reshape(shape)


@dataclass(frozen=True, eq=False)
class BodyMesh:
    vertices: np.ndarray
    triangles: np.ndarray

    @property
    def center(self) -> np.ndarray:
        if len(self.vertices) == 0:
            return np.zeros(3, dtype=np.float64)
        return np.mean(self.vertices, axis=0)

    @property
    def radius(self) -> float:
        if len(self.vertices) == 0:
            return 0.0
        return float(np.max(np.linalg.norm(self.vertices - self.center[None, :], axis=1)))


@dataclass(frozen=True)
class FrameTransform:
    """Named frame with a 6-DoF pose relative to `parent`."""

    name: str
    parent: str
    translation: tuple[float, float, float]
    rotation_xyzw: tuple[float, float, float, float]


@dataclass(frozen=True, eq=False)
class TrackingResult:
    frame_index: int
    timestamp_s: float
    elapsed_s: float
    mean_state: np.ndarray
    frame_skipped: bool = False
    filter_updated: bool = True
    point_cloud: np.ndarray | None = None
    overlay: np.ndarray | None = None
    transforms: tuple[FrameTransform, ...] = field(default_factory=tuple)


class RecursiveFilter(ABC):
    """Sample-based recursive filter (process model + observation model)."""

    @property
    @abstractmethod
    def population(self) -> np.ndarray:
        """Current samples as a (K, total_dim) array."""

    @abstractmethod
    def set_population(self, samples: np.ndarray) -> None:
        """Replace the sample population wholesale (uniform weights)."""

    @abstractmethod
    def predict_update(
        self,
        observation: np.ndarray,
        elapsed_time: float,
        control: np.ndarray,
    ) -> None:
        """One predict/update cycle over every active sampling block."""

    @abstractmethod
    def resample(self, count: int) -> None:
        """Resize the population with replacement proportional to weight."""

    @abstractmethod
    def set_sampling_blocks(self, blocks: Sequence[Sequence[int]]) -> None:
        """Swap the active sampling-block schedule."""

    @abstractmethod
    def mean_state(self) -> np.ndarray:
        """Weighted mean of the population."""


class Renderer(ABC):
    @abstractmethod
    def render(self, state: np.ndarray, intrinsics: CameraIntrinsics) -> RenderResult:
        """Render one multi-body state into visible pixel indices and depths."""

    def render_batch(self, states: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
        """Depth buffers (S, H, W) for many states; `inf` where nothing is hit."""
        shape = intrinsics.shape
        return np.stack(
            [self.render(state, intrinsics).as_depth_image(shape) for state in np.atleast_2d(states)]
        )


class MeshProvider(ABC):
    @abstractmethod
    def body_meshes(self) -> list[BodyMesh]:
        """Per-body geometry, in body order."""


class KinematicsProvider(ABC):
    @abstractmethod
    def joint_names(self) -> list[str]:
        """Joint names in state order."""

    @abstractmethod
    def root_frame_id(self) -> str:
        """Name of the kinematic root frame."""

    @abstractmethod
    def link_transforms(self, joint_positions: Mapping[str, float]) -> Mapping[str, tuple[str, np.ndarray]]:
        """Link name -> (parent frame, 4x4 transform) for the given joint values."""


class FrameSource(ABC):
    """Ordered (depth frame, camera info, ground truth?) tuples."""

    @abstractmethod
    def size(self) -> int:
        """Number of frames available."""

    @abstractmethod
    def get(self, index: int) -> DataFrame:
        """Frame at `index`."""

    def __len__(self) -> int:
        return self.size()

    def __iter__(self) -> Iterator[DataFrame]:
        for index in range(self.size()):
            yield self.get(index)
