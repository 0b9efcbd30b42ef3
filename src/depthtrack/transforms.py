from __future__ import annotations

"""Transform hierarchy of the mean state for external visualization."""

import numpy as np
from scipy.spatial.transform import Rotation

from .body_state import JOINTS, POSE6, BodyStateModel
from .model import FrameTransform, KinematicsProvider


def prefixed(prefix: str, frame: str) -> str:
    if not prefix:
        return frame
    return f"{prefix}/{frame.lstrip('/')}"


def _from_matrix(name: str, parent: str, transform: np.ndarray) -> FrameTransform:
    transform = np.asarray(transform, dtype=np.float64)
    quat = Rotation.from_matrix(transform[:3, :3]).as_quat()
    return FrameTransform(
        name=name,
        parent=parent,
        translation=tuple(float(value) for value in transform[:3, 3]),
        rotation_xyzw=tuple(float(value) for value in quat),
    )


def mean_transforms(
    state: np.ndarray,
    layout: BodyStateModel,
    *,
    prefix: str = "MEAN",
    root_frame: str = "camera",
    kinematics: KinematicsProvider | None = None,
) -> tuple[FrameTransform, ...]:
    """Frames for every body of `state`, hung below `<prefix>/<root_frame>`.

    The first entry is the identity link from `root_frame` to its prefixed
    copy so the mean estimate can be shown next to other estimates of the
    same scene. Joint bodies are expanded through `kinematics` when given
    and skipped otherwise.
    """
    state = layout.check_state(state)
    root = prefixed(prefix, root_frame)
    frames = [_from_matrix(root, root_frame, np.eye(4))]

    for index, body in enumerate(layout.bodies):
        if body.kind == POSE6:
            frames.append(_from_matrix(prefixed(prefix, body.name), root, layout.body_transform(state, index)))

    if kinematics is not None and any(body.kind == JOINTS for body in layout.bodies):
        links = kinematics.link_transforms(layout.joint_positions(state))
        kinematic_root = kinematics.root_frame_id()
        for link, (parent, transform) in links.items():
            parent_frame = root if parent == kinematic_root else prefixed(prefix, parent)
            frames.append(_from_matrix(prefixed(prefix, link), parent_frame, transform))
    return tuple(frames)


def joint_positions(state: np.ndarray, layout: BodyStateModel) -> dict[str, float]:
    return layout.joint_positions(state)
