from __future__ import annotations

"""Pose seeds from object clusters standing on a support plane."""

import logging
import math
from dataclasses import dataclass
from random import Random

import numpy as np

from .depth import finite_points
from .point_cloud import NumpyPointCloudOps, PointCloudOps

logger = logging.getLogger("depthtrack.seeding")


@dataclass(frozen=True)
class ClusterSeedingConfig:
    voxel_size_m: float = 0.01
    max_points: int = 20000
    plane_distance_threshold_m: float = 0.01
    plane_iterations: int = 200
    min_height_m: float = 0.01
    max_height_m: float = 0.5
    cluster_tolerance_m: float = 0.02
    min_cluster_size: int = 20
    position_jitter_m: float = 0.01


def sample_table_clusters(
    points: np.ndarray,
    sample_count: int,
    rng: Random,
    *,
    config: ClusterSeedingConfig | None = None,
    ops: PointCloudOps | None = None,
) -> list[np.ndarray]:
    """Draw `sample_count` 6-DoF seeds (x, y, z, rx, ry, rz) from clusters above the table.

    Clusters are picked proportionally to their size; the position is the
    cluster centroid plus jitter, the rotation a random yaw about the table
    normal. Returns an empty list when no cluster is found.
    """
    config = config or ClusterSeedingConfig()
    ops = ops or NumpyPointCloudOps()
    if sample_count <= 0:
        return []

    cloud = ops.voxel_downsample(
        finite_points(points),
        voxel_size_m=config.voxel_size_m,
        max_points=config.max_points,
    )
    if len(cloud) == 0:
        return []

    plane = ops.fit_plane(
        cloud,
        distance_threshold_m=config.plane_distance_threshold_m,
        iterations=config.plane_iterations,
        rng=rng,
    )
    if plane is None:
        candidates = cloud
        up = np.asarray((0.0, 0.0, -1.0), dtype=np.float64)
    else:
        heights = plane.signed_distances(cloud)
        candidates = cloud[(heights > config.min_height_m) & (heights < config.max_height_m)]
        up = plane.normal

    clusters = ops.euclidean_clusters(
        candidates,
        tolerance_m=config.cluster_tolerance_m,
        min_cluster_size=config.min_cluster_size,
    )
    logger.info("found %d clusters above the support plane", len(clusters))
    if not clusters:
        return []

    centroids = [np.mean(cluster, axis=0) for cluster in clusters]
    sizes = [len(cluster) for cluster in clusters]
    chosen = rng.choices(range(len(clusters)), weights=sizes, k=sample_count)

    seeds: list[np.ndarray] = []
    for index in chosen:
        jitter = np.asarray([rng.gauss(0.0, config.position_jitter_m) for _ in range(3)], dtype=np.float64)
        yaw = rng.uniform(-math.pi, math.pi)
        seeds.append(np.concatenate([centroids[index] + jitter, up * yaw]))
    return seeds
