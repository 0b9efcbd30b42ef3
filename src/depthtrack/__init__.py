"""depthtrack -- Multi-body pose tracking from depth images with a render-based particle filter.

Core modules:
  - depth:            Depth frame decoding and point-cloud reconstruction
  - body_state:       Multi-body state layout and sampling-block partitions
  - staged_init:      Per-body staged initialization of the sample population
  - orchestrator:     Filter lifecycle (Uninitialized -> Staging -> SteadyState)
  - session:          Per-frame tracking driver and trajectory output
  - particle_filter:  Coordinate particle filter with motion/observation/resampling parts
  - rendering:        Analytic depth renderer and debug overlay
  - seeding:          Pose seeds from object clusters on a support plane
  - dataset:          Stored session directories and the live frame queue
  - openusd:          OpenUSD export of tracked mean states
"""

from .body_state import BodySpec, BodyStateModel
from .config import TrackerConfig, default_sampling_blocks, load_tracker_config
from .dataset import DirectorySession, LiveFrameQueue, save_directory_session
from .depth import decode_depth_image, depth_to_point_cloud, depth_to_point_grid, supported_encodings
from .errors import ConfigurationError, DecodeError, DepthTrackError, ResourceUnavailable
from .model import (
    BodyMesh,
    CameraIntrinsics,
    DataFrame,
    DepthImage,
    FrameSource,
    FrameTransform,
    KinematicsProvider,
    MeshProvider,
    RecursiveFilter,
    Renderer,
    RenderResult,
    TrackingResult,
)
from .openusd import results_to_stage, results_to_usda
from .orchestrator import FilterOrchestrator, FilterPhase
from .particle_filter import (
    BrownianMotionModel,
    CoordinateParticleFilter,
    DepthObservationModel,
    MultinomialResampler,
    StratifiedResampler,
    SystematicResampler,
    build_reference_filter,
    build_resampler,
)
from .point_cloud import NumpyPointCloudOps, PointCloudOps
from .rendering import DiscRenderer, depth_overlay
from .seeding import ClusterSeedingConfig, sample_table_clusters
from .session import TrackingSession, TrajectoryWriter
from .staged_init import Stage, StagedInitializer, StageSnapshot
from .transforms import mean_transforms

__all__ = [
    # model
    "BodyMesh",
    "BodySpec",
    "BodyStateModel",
    "CameraIntrinsics",
    "DataFrame",
    "DepthImage",
    "FrameSource",
    "FrameTransform",
    "KinematicsProvider",
    "MeshProvider",
    "RecursiveFilter",
    "RenderResult",
    "Renderer",
    "TrackingResult",
    # errors
    "ConfigurationError",
    "DecodeError",
    "DepthTrackError",
    "ResourceUnavailable",
    # tracking
    "BrownianMotionModel",
    "ClusterSeedingConfig",
    "CoordinateParticleFilter",
    "DepthObservationModel",
    "DirectorySession",
    "DiscRenderer",
    "FilterOrchestrator",
    "FilterPhase",
    "LiveFrameQueue",
    "MultinomialResampler",
    "NumpyPointCloudOps",
    "PointCloudOps",
    "Stage",
    "StageSnapshot",
    "StagedInitializer",
    "StratifiedResampler",
    "SystematicResampler",
    "TrackerConfig",
    "TrackingSession",
    "TrajectoryWriter",
    "build_reference_filter",
    "build_resampler",
    "decode_depth_image",
    "default_sampling_blocks",
    "depth_overlay",
    "depth_to_point_cloud",
    "depth_to_point_grid",
    "load_tracker_config",
    "mean_transforms",
    "results_to_stage",
    "results_to_usda",
    "sample_table_clusters",
    "save_directory_session",
    "supported_encodings",
]
