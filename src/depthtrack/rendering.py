from __future__ import annotations

"""Analytic depth rendering of multi-body states and the debug overlay."""

from collections.abc import Sequence

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from .body_state import POSE6, BodyStateModel
from .errors import ConfigurationError
from .model import BodyMesh, CameraIntrinsics, Renderer, RenderResult

_MIN_DEPTH_M = 1e-6


def radii_from_meshes(meshes: Sequence[BodyMesh]) -> tuple[float, ...]:
    return tuple(mesh.radius for mesh in meshes)


def pixel_rays(intrinsics: CameraIntrinsics) -> np.ndarray:
    """(H*W, 3) ray directions with unit z, so the ray parameter is the depth."""
    rows, cols = intrinsics.shape
    u, v = np.meshgrid(np.arange(cols, dtype=np.float64), np.arange(rows, dtype=np.float64))
    rays = np.empty((rows * cols, 3), dtype=np.float64)
    rays[:, 0] = ((u - intrinsics.cx_px) / intrinsics.fx_px).ravel()
    rays[:, 1] = ((v - intrinsics.cy_px) / intrinsics.fy_px).ravel()
    rays[:, 2] = 1.0
    return rays


class DiscRenderer(Renderer):
    """Each pose body is a flat disc of fixed radius, normal along the body z axis.

    Bodies with a joint-angle state are not drawn.
    """

    def __init__(self, layout: BodyStateModel, radii_m: Sequence[float], *, chunk_size: int = 64) -> None:
        if len(radii_m) != layout.body_count:
            raise ConfigurationError(
                f"{len(radii_m)} radii given for {layout.body_count} bodies"
            )
        self._layout = layout
        self._radii = np.asarray(radii_m, dtype=np.float64)
        self._chunk_size = max(1, int(chunk_size))
        self._rays_cache: dict[CameraIntrinsics, np.ndarray] = {}

    def _rays(self, intrinsics: CameraIntrinsics) -> np.ndarray:
        rays = self._rays_cache.get(intrinsics)
        if rays is None:
            rays = pixel_rays(intrinsics)
            self._rays_cache = {intrinsics: rays}
        return rays

    def _render_chunk(self, states: np.ndarray, rays: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        sample_count = states.shape[0]
        depth = np.full((sample_count, rays.shape[0]), np.inf, dtype=np.float64)
        body_ids = np.full((sample_count, rays.shape[0]), -1, dtype=np.int64)
        ray_norm2 = np.sum(rays * rays, axis=1)[None, :]

        for body_index, body in enumerate(self._layout.bodies):
            if body.kind != POSE6:
                continue
            sub = states[:, self._layout.body_slice(body_index)]
            centers = sub[:, :3]
            normals = Rotation.from_rotvec(sub[:, 3:6]).as_matrix()[:, :, 2]

            denom = normals @ rays.T
            numer = np.sum(normals * centers, axis=1)[:, None]
            with np.errstate(divide="ignore", invalid="ignore"):
                t = numer / denom
            t[~np.isfinite(t)] = np.inf

            ray_dot_center = centers @ rays.T
            center_norm2 = np.sum(centers * centers, axis=1)[:, None]
            distance2 = t * t * ray_norm2 - 2.0 * t * ray_dot_center + center_norm2
            radius = self._radii[body_index]
            hit = (t > _MIN_DEPTH_M) & np.isfinite(t) & (distance2 <= radius * radius)

            closer = hit & (t < depth)
            depth[closer] = t[closer]
            body_ids[closer] = body_index
        return (depth, body_ids)

    def render(self, state: np.ndarray, intrinsics: CameraIntrinsics) -> RenderResult:
        state = self._layout.check_state(state)
        depth, body_ids = self._render_chunk(state[None, :], self._rays(intrinsics))
        indices = np.flatnonzero(np.isfinite(depth[0]))
        return RenderResult(indices=indices, depth=depth[0, indices], body_ids=body_ids[0, indices])

    def render_batch(self, states: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
        states = np.atleast_2d(np.asarray(states, dtype=np.float64))
        if states.shape[1] != self._layout.total_dim:
            raise ConfigurationError(
                f"states have {states.shape[1]} dimensions, expected {self._layout.total_dim}"
            )
        rays = self._rays(intrinsics)
        chunks = [
            self._render_chunk(states[start : start + self._chunk_size], rays)[0]
            for start in range(0, len(states), self._chunk_size)
        ]
        return np.concatenate(chunks, axis=0).reshape((len(states),) + intrinsics.shape)


def depth_overlay(observed: np.ndarray, rendered: RenderResult, *, max_depth_m: float = 6.0) -> np.ndarray:
    """BGR debug image: observed depth in gray, rendered mean state in color."""
    observed = np.asarray(observed, dtype=np.float64)
    scaled = np.nan_to_num(observed / max(max_depth_m, 1e-6), nan=0.0, posinf=1.0, neginf=0.0)
    gray = np.clip(scaled * 255.0, 0.0, 255.0).astype(np.uint8)
    image = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)

    if rendered.indices.size == 0:
        return image
    levels = np.clip(rendered.depth / max(max_depth_m, 1e-6) * 255.0, 0.0, 255.0).astype(np.uint8)
    colors = cv2.applyColorMap(levels.reshape(-1, 1), cv2.COLORMAP_JET).reshape(-1, 3)
    flat = image.reshape(-1, 3)
    flat[rendered.indices] = colors
    return flat.reshape(image.shape)
