from __future__ import annotations

"""Per-frame tracking driver.

A `TrackingSession` owns one filter and everything shared with it (the
downsampled camera, the frame timestamps, the orchestrator). A single lock
covers the whole of `initialize` and of each `process_frame`, so a frame is
reconstructed, filtered and read out as one unit of work.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import TextIO

import numpy as np

from .body_state import BodyStateModel
from .config import TrackerConfig
from .depth import decode_depth_image, depth_to_point_cloud
from .errors import ConfigurationError, DecodeError
from .meshes import Open3DMeshProvider, require_assets
from .model import (
    CameraIntrinsics,
    DataFrame,
    KinematicsProvider,
    MeshProvider,
    RecursiveFilter,
    Renderer,
    TrackingResult,
)
from .orchestrator import FilterOrchestrator, FilterPhase
from .particle_filter import build_reference_filter
from .rendering import DiscRenderer, depth_overlay, radii_from_meshes
from .transforms import mean_transforms

logger = logging.getLogger("depthtrack.session")

FilterFactory = Callable[[CameraIntrinsics], RecursiveFilter]


class TrackingSession:
    def __init__(
        self,
        config: TrackerConfig,
        *,
        filter_factory: FilterFactory | None = None,
        renderer: Renderer | None = None,
        mesh_provider: MeshProvider | None = None,
        kinematics: KinematicsProvider | None = None,
    ) -> None:
        self._config = config
        self._layout = config.layout()
        self._steady_blocks = config.steady_sampling_blocks(self._layout)
        self._steady_sample_count = config.steady_sample_count(self._layout)
        if config.use_gpu:
            require_assets(config.shader_paths, kind="shader")
        if mesh_provider is None and config.mesh_paths:
            mesh_provider = Open3DMeshProvider(config.mesh_paths)

        self._filter_factory = filter_factory
        self._renderer = renderer
        self._mesh_provider = mesh_provider
        self._kinematics = kinematics

        self._lock = threading.Lock()
        self._orchestrator: FilterOrchestrator | None = None
        self._intrinsics: CameraIntrinsics | None = None
        self._last_frame_stamp: float | None = None
        self._last_update_stamp: float | None = None

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def layout(self) -> BodyStateModel:
        return self._layout

    @property
    def phase(self) -> FilterPhase:
        if self._orchestrator is None:
            return FilterPhase.UNINITIALIZED
        return self._orchestrator.phase

    @property
    def orchestrator(self) -> FilterOrchestrator | None:
        return self._orchestrator

    @property
    def intrinsics(self) -> CameraIntrinsics | None:
        """Camera the filter works at (downsampled)."""
        return self._intrinsics

    @property
    def last_frame_timestamp(self) -> float | None:
        return self._last_frame_stamp

    def _decode(self, frame: DataFrame, *, downsampling_factor: int) -> np.ndarray:
        try:
            return decode_depth_image(
                frame.image,
                downsampling_factor=downsampling_factor,
                data_in_meters=self._config.data_in_meters,
            )
        except DecodeError as exc:
            raise exc.with_frame(frame.image.frame_index, frame.image.timestamp_s) from exc

    def _body_radii(self) -> tuple[float, ...]:
        if self._config.body_radii_m:
            return self._config.body_radii_m
        if self._mesh_provider is not None:
            return radii_from_meshes(self._mesh_provider.body_meshes())
        raise ConfigurationError("either body_radii_m or mesh_paths is needed to render the bodies")

    def _build_filter(self, intrinsics: CameraIntrinsics) -> RecursiveFilter:
        if self._filter_factory is not None:
            return self._filter_factory(intrinsics)
        if self._renderer is None:
            self._renderer = DiscRenderer(self._layout, self._body_radii())
        return build_reference_filter(self._config, self._layout, self._renderer, intrinsics)

    def initialize(
        self,
        frame: DataFrame,
        seeds: Sequence[np.ndarray],
        *,
        state_is_partial: bool = True,
    ) -> np.ndarray:
        """Build the filter for `frame`'s camera and bootstrap it from `seeds`."""
        factor = self._config.downsampling_factor
        with self._lock:
            intrinsics = frame.intrinsics.downsampled(factor)
            observation = self._decode(frame, downsampling_factor=factor)
            if observation.shape != intrinsics.shape:
                raise ConfigurationError(
                    f"camera info is {frame.intrinsics.shape} (rows, cols) but the depth frame is "
                    f"{(frame.image.height, frame.image.width)}"
                )

            orchestrator = FilterOrchestrator(
                self._build_filter(intrinsics),
                self._layout,
                steady_blocks=self._steady_blocks,
                steady_sample_count=self._steady_sample_count,
                default_position=self._config.default_body_position,
            )
            started = time.perf_counter()
            mean = orchestrator.initialize(seeds, observation, state_is_partial=state_is_partial)
            logger.debug("initialization took %.1f ms", (time.perf_counter() - started) * 1000.0)

            self._orchestrator = orchestrator
            self._intrinsics = intrinsics
            self._last_frame_stamp = None
            self._last_update_stamp = None
            return mean

    def process_frame(
        self,
        frame: DataFrame,
        *,
        with_point_cloud: bool = False,
        with_overlay: bool = False,
    ) -> TrackingResult:
        with self._lock:
            if self._orchestrator is None or self._intrinsics is None:
                raise RuntimeError("tracking session is not initialized")
            if with_overlay and self._renderer is None:
                raise ValueError("with_overlay needs a renderer; pass renderer= together with filter_factory")
            started = time.perf_counter()
            image = frame.image
            stamp = float(image.timestamp_s)

            elapsed = 0.0 if self._last_frame_stamp is None else stamp - self._last_frame_stamp
            skipped = elapsed > self._config.frame_skip_threshold_s
            if skipped:
                logger.warning(
                    "frame %d arrived %.3f s after the previous one (threshold %.3f s); frames were skipped",
                    image.frame_index,
                    elapsed,
                    self._config.frame_skip_threshold_s,
                )

            observation = self._decode(frame, downsampling_factor=self._config.downsampling_factor)
            if observation.shape != self._intrinsics.shape:
                raise ConfigurationError(
                    f"depth frame decodes to {observation.shape}, the filter expects {self._intrinsics.shape}"
                )
            self._last_frame_stamp = stamp

            update = not (skipped and self._config.frame_skip_policy == "drop")
            if update:
                update_elapsed = 0.0 if self._last_update_stamp is None else stamp - self._last_update_stamp
                step_started = time.perf_counter()
                mean = self._orchestrator.step(observation, update_elapsed)
                logger.debug("filter step took %.1f ms", (time.perf_counter() - step_started) * 1000.0)
                self._last_update_stamp = stamp
            else:
                logger.info("dropping frame %d from the filter update", image.frame_index)
                mean = self._orchestrator.mean_state()

            point_cloud = self._point_cloud(frame) if with_point_cloud else None
            overlay = None
            if with_overlay:
                overlay = depth_overlay(
                    observation,
                    self._renderer.render(mean, self._intrinsics),
                    max_depth_m=self._config.max_depth_m,
                )
            transforms = mean_transforms(
                mean,
                self._layout,
                prefix=self._config.tf_prefix,
                root_frame=self._config.camera_frame,
                kinematics=self._kinematics,
            )
            logger.debug("frame %d took %.1f ms in total", image.frame_index, (time.perf_counter() - started) * 1000.0)
            return TrackingResult(
                frame_index=image.frame_index,
                timestamp_s=stamp,
                elapsed_s=elapsed,
                mean_state=mean,
                frame_skipped=skipped,
                filter_updated=update,
                point_cloud=point_cloud,
                overlay=overlay,
                transforms=transforms,
            )

    def _point_cloud(self, frame: DataFrame) -> np.ndarray:
        depth = self._decode(frame, downsampling_factor=1)
        if self._intrinsics is None:
            intrinsics = frame.intrinsics
        else:
            intrinsics = self._intrinsics.upsampled(
                self._config.downsampling_factor,
                width_px=frame.image.width,
                height_px=frame.image.height,
            )
        return depth_to_point_cloud(depth, intrinsics)

    def point_cloud(self, frame: DataFrame) -> np.ndarray:
        """Full-resolution (H*W, 3) cloud of `frame`, NaN rows for invalid pixels."""
        with self._lock:
            return self._point_cloud(frame)

    def mean_state(self) -> np.ndarray:
        with self._lock:
            if self._orchestrator is None:
                raise RuntimeError("tracking session is not initialized")
            return self._orchestrator.mean_state()

    def run(
        self,
        frames: Iterable[DataFrame],
        *,
        skip_undecodable: bool = True,
        writer: TrajectoryWriter | None = None,
        with_point_cloud: bool = False,
    ) -> list[TrackingResult]:
        results: list[TrackingResult] = []
        for frame in frames:
            try:
                result = self.process_frame(frame, with_point_cloud=with_point_cloud)
            except DecodeError as exc:
                if not skip_undecodable:
                    raise
                logger.warning("skipping undecodable frame: %s", exc)
                continue
            if writer is not None:
                writer.write(result)
            results.append(result)
        logger.info("processed %d frames", len(results))
        return results


class TrajectoryWriter:
    """Appends one `timestamp value...` line per tracked frame."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._handle: TextIO | None = self._path.open("a", encoding="utf-8")

    @staticmethod
    def in_directory(directory: str | Path, *, now: datetime | None = None) -> "TrajectoryWriter":
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return TrajectoryWriter(Path(directory).expanduser() / f"tracking_data_{stamp}.txt")

    @property
    def path(self) -> Path:
        return self._path

    def write(self, result: TrackingResult) -> None:
        if self._handle is None:
            raise ValueError("trajectory writer is closed")
        values = " ".join(f"{float(value):.9g}" for value in np.asarray(result.mean_state).reshape(-1))
        self._handle.write(f"{result.timestamp_s:.6f} {values}\n")
        self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "TrajectoryWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
