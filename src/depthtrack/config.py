from __future__ import annotations

"""Session parameters for the depth tracker."""

import json
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .body_state import BodyStateModel
from .errors import ConfigurationError, ResourceUnavailable

FRAME_SKIP_POLICIES = ("warn", "drop")
BODY_KINDS = ("rigid", "articulated")


@dataclass(frozen=True)
class TrackerConfig:
    body_names: tuple[str, ...] = ("object",)
    body_kind: str = "rigid"
    joint_names: tuple[str, ...] = ()
    downsampling_factor: int = 2
    data_in_meters: bool = False
    evaluation_count: int = 600
    max_sample_count: int = 1000
    initial_sample_count: int = 100
    sampling_blocks: tuple[tuple[int, ...], ...] = ()
    max_kl_divergence: float = 2.0
    initial_occlusion_prob: float = 0.1
    p_occluded_visible: float = 0.1
    p_occluded_occluded: float = 0.7
    linear_acceleration_sigma: float = 1.0
    angular_acceleration_sigma: float = 10.0
    joint_sigmas: tuple[float, ...] = ()
    damping: float = 5.0
    tail_weight: float = 0.01
    model_sigma: float = 0.003
    sigma_factor: float = 0.00142478
    max_depth_m: float = 6.0
    occlusion_delta_time_s: float = 0.033
    use_gpu: bool = False
    shader_paths: tuple[str, ...] = ()
    mesh_paths: tuple[str, ...] = ()
    body_radii_m: tuple[float, ...] = ()
    default_body_position: tuple[float, float, float] = (0.0, 0.0, -1.5)
    frame_skip_threshold_s: float = 0.04
    frame_skip_policy: str = "warn"
    camera_frame: str = "camera"
    tf_prefix: str = "MEAN"
    resampler: str = "systematic"
    seed: int = 7

    def __post_init__(self) -> None:
        if self.body_kind not in BODY_KINDS:
            raise ConfigurationError(f"body_kind must be one of {BODY_KINDS}, got {self.body_kind!r}")
        if self.frame_skip_policy not in FRAME_SKIP_POLICIES:
            raise ConfigurationError(
                f"frame_skip_policy must be one of {FRAME_SKIP_POLICIES}, got {self.frame_skip_policy!r}"
            )
        if self.downsampling_factor < 1:
            raise ConfigurationError("downsampling_factor must be >= 1")
        if len(self.default_body_position) != 3:
            raise ConfigurationError("default_body_position must have 3 entries")
        if self.body_kind == "articulated" and len(self.joint_sigmas) != len(self.joint_names):
            raise ConfigurationError(
                f"the dimension of the joint sigmas is {len(self.joint_sigmas)} "
                f"while the state dimension is {len(self.joint_names)}"
            )
        if self.body_radii_m and len(self.body_radii_m) != len(self.body_names):
            raise ConfigurationError(
                f"{len(self.body_radii_m)} body radii given for {len(self.body_names)} bodies"
            )

    @staticmethod
    def from_mapping(values: Mapping[str, Any]) -> "TrackerConfig":
        known = {item.name for item in fields(TrackerConfig)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {unknown}")

        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            if key == "sampling_blocks":
                kwargs[key] = tuple(tuple(int(index) for index in block) for block in value)
            elif key in ("body_names", "joint_names", "shader_paths", "mesh_paths"):
                kwargs[key] = tuple(str(item) for item in value)
            elif key in ("joint_sigmas", "body_radii_m", "default_body_position"):
                kwargs[key] = tuple(float(item) for item in value)
            else:
                kwargs[key] = value
        return TrackerConfig(**kwargs)

    def layout(self) -> BodyStateModel:
        if self.body_kind == "articulated":
            if not self.joint_names:
                raise ConfigurationError("articulated bodies need joint_names")
            return BodyStateModel.articulated_body(self.body_names[0], self.joint_names)
        return BodyStateModel.rigid_bodies(self.body_names)

    def steady_sampling_blocks(self, layout: BodyStateModel) -> list[list[int]]:
        if not self.sampling_blocks:
            return default_sampling_blocks(layout)
        return layout.validate_partition(self.sampling_blocks)

    def steady_sample_count(self, layout: BodyStateModel) -> int:
        """Samples per frame so that all blocks together cost `evaluation_count`."""
        return max(1, int(self.evaluation_count) // len(self.steady_sampling_blocks(layout)))


def default_sampling_blocks(layout: BodyStateModel) -> list[list[int]]:
    return layout.per_body_blocks()


def load_tracker_config(path: str | Path) -> TrackerConfig:
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ResourceUnavailable(f"config file not found: {config_path}")
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"config file {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"config file {config_path} must contain a JSON object")
    return TrackerConfig.from_mapping(payload)
