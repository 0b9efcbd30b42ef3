from __future__ import annotations

"""Point-cloud operations used for seeding initial body states."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from random import Random
from typing import Sequence

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree


@dataclass(frozen=True)
class PlaneFit:
    """Plane n . x + d = 0 with unit normal pointing towards the camera."""

    normal: np.ndarray
    offset: float
    inlier_count: int

    def signed_distances(self, points: np.ndarray) -> np.ndarray:
        return points @ self.normal + self.offset


class PointCloudOps(ABC):
    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Backend identifier, e.g. 'numpy'."""

    @abstractmethod
    def voxel_downsample(self, points: np.ndarray, *, voxel_size_m: float, max_points: int) -> np.ndarray:
        """Keep one point per occupied voxel, at most `max_points`."""

    @abstractmethod
    def fit_plane(
        self,
        points: np.ndarray,
        *,
        distance_threshold_m: float,
        iterations: int,
        rng: Random,
    ) -> PlaneFit | None:
        """RANSAC fit of the dominant plane."""

    @abstractmethod
    def euclidean_clusters(
        self,
        points: np.ndarray,
        *,
        tolerance_m: float,
        min_cluster_size: int,
    ) -> list[np.ndarray]:
        """Connected components of points closer than `tolerance_m`, largest first."""


class NumpyPointCloudOps(PointCloudOps):
    @property
    def backend_name(self) -> str:
        return "numpy"

    def voxel_downsample(self, points: np.ndarray, *, voxel_size_m: float, max_points: int) -> np.ndarray:
        arr = _as_points(points)
        if arr.size == 0:
            return arr

        quantized = np.floor(arr / max(voxel_size_m, 1e-6)).astype(np.int64)
        _, first_indices = np.unique(quantized, axis=0, return_index=True)
        filtered = arr[np.sort(first_indices)]

        if len(filtered) <= max_points:
            return filtered
        stride = int(np.ceil(len(filtered) / max(1, max_points)))
        return filtered[::stride][:max_points]

    def fit_plane(
        self,
        points: np.ndarray,
        *,
        distance_threshold_m: float,
        iterations: int,
        rng: Random,
    ) -> PlaneFit | None:
        arr = _as_points(points)
        if len(arr) < 3:
            return None

        best_mask: np.ndarray | None = None
        best_count = 0
        for _ in range(max(1, int(iterations))):
            sample = arr[rng.sample(range(len(arr)), 3)]
            normal = np.cross(sample[1] - sample[0], sample[2] - sample[0])
            norm = float(np.linalg.norm(normal))
            if norm < 1e-9:
                continue
            normal /= norm
            offset = -float(normal @ sample[0])
            mask = np.abs(arr @ normal + offset) <= distance_threshold_m
            count = int(np.sum(mask))
            if count > best_count:
                best_count = count
                best_mask = mask

        if best_mask is None or best_count < 3:
            return None

        # least-squares refinement on the inliers
        inliers = arr[best_mask]
        centroid = np.mean(inliers, axis=0)
        _, _, vt = np.linalg.svd(inliers - centroid[None, :], full_matrices=False)
        normal = vt[-1]
        if normal @ centroid > 0.0:
            normal = -normal
        return PlaneFit(normal=normal, offset=-float(normal @ centroid), inlier_count=best_count)

    def euclidean_clusters(
        self,
        points: np.ndarray,
        *,
        tolerance_m: float,
        min_cluster_size: int,
    ) -> list[np.ndarray]:
        arr = _as_points(points)
        if len(arr) == 0:
            return []

        pairs = cKDTree(arr).query_pairs(r=tolerance_m, output_type="ndarray")
        graph = coo_matrix(
            (np.ones(len(pairs), dtype=np.int8), (pairs[:, 0], pairs[:, 1])),
            shape=(len(arr), len(arr)),
        )
        _, labels = connected_components(graph, directed=False)
        clusters = [arr[labels == label] for label in np.unique(labels)]
        clusters = [cluster for cluster in clusters if len(cluster) >= min_cluster_size]
        clusters.sort(key=len, reverse=True)
        return clusters


def _as_points(points: np.ndarray | Sequence[tuple[float, float, float]]) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError("point cloud must be Nx3")
    return arr
