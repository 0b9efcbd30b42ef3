from __future__ import annotations

import random

import numpy as np

from depthtrack.point_cloud import NumpyPointCloudOps
from depthtrack.seeding import ClusterSeedingConfig, sample_table_clusters


def _table_points() -> np.ndarray:
    xs, zs = np.meshgrid(np.arange(-0.5, 0.5, 0.01), np.arange(0.8, 1.6, 0.01))
    return np.stack([xs.ravel(), np.full(xs.size, 0.2), zs.ravel()], axis=1)


def _box_points(center: tuple[float, float, float]) -> np.ndarray:
    cx, cy, cz = center
    axis = np.arange(-0.04, 0.041, 0.01)
    xs, ys, zs = np.meshgrid(cx + axis, cy + axis, cz + axis)
    return np.stack([xs.ravel(), ys.ravel(), zs.ravel()], axis=1)


def test_seeds_are_drawn_around_objects_on_the_table() -> None:
    box_center = (0.1, 0.13, 1.2)
    nan_rows = np.full((25, 3), np.nan)
    points = np.concatenate([_table_points(), _box_points(box_center), nan_rows])

    seeds = sample_table_clusters(points, 30, random.Random(1), config=ClusterSeedingConfig(voxel_size_m=0.005))

    assert len(seeds) == 30
    for seed in seeds:
        assert seed.shape == (6,)
        assert np.linalg.norm(seed[:3] - np.asarray(box_center)) < 0.06
        # yaw about the table normal only
        assert abs(seed[3]) < 1e-9
        assert abs(seed[5]) < 1e-9


def test_clusters_are_chosen_in_proportion_to_their_size() -> None:
    points = np.concatenate(
        [
            _table_points(),
            _box_points((-0.3, 0.13, 1.0)),
            _box_points((0.3, 0.13, 1.4))[::3],
        ]
    )
    config = ClusterSeedingConfig(voxel_size_m=0.005, min_cluster_size=10)

    seeds = sample_table_clusters(points, 200, random.Random(4), config=config, ops=NumpyPointCloudOps())

    left = sum(1 for seed in seeds if seed[0] < 0.0)
    assert 120 < left < 180


def test_no_clusters_means_no_seeds() -> None:
    assert sample_table_clusters(_table_points(), 10, random.Random(2)) == []
    assert sample_table_clusters(np.full((10, 3), np.nan), 10, random.Random(2)) == []
    assert sample_table_clusters(_table_points(), 0, random.Random(2)) == []


def test_plane_fit_normal_faces_the_camera() -> None:
    plane = NumpyPointCloudOps().fit_plane(
        _table_points(), distance_threshold_m=0.005, iterations=50, rng=random.Random(0)
    )

    assert plane is not None
    np.testing.assert_allclose(np.abs(plane.normal), [0.0, 1.0, 0.0], atol=1e-6)
    assert plane.signed_distances(np.zeros((1, 3)))[0] > 0.0


def test_euclidean_clusters_separate_distant_groups() -> None:
    ops = NumpyPointCloudOps()
    points = np.concatenate([_box_points((0.0, 0.0, 1.0)), _box_points((0.5, 0.0, 1.0))[:30]])

    clusters = ops.euclidean_clusters(points, tolerance_m=0.015, min_cluster_size=5)

    assert [len(cluster) for cluster in clusters] == [729, 30]
    assert ops.euclidean_clusters(np.empty((0, 3)), tolerance_m=0.01, min_cluster_size=1) == []
