from __future__ import annotations

import numpy as np
import pytest

from depthtrack.body_state import BodyStateModel
from depthtrack.model import TrackingResult
from depthtrack.openusd import _safe_name, results_to_stage, results_to_usda


def _results() -> list[TrackingResult]:
    states = [
        np.array([0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.2, 0.0, 1.5, 0.0, 0.0, np.pi / 2.0]),
        np.array([0.01, 0.0, 1.0, 0.0, 0.0, 0.0, 0.2, 0.02, 1.5, 0.0, 0.0, np.pi / 2.0]),
    ]
    return [
        TrackingResult(frame_index=index + 10, timestamp_s=0.033 * index, elapsed_s=0.033 * bool(index), mean_state=state)
        for index, state in enumerate(states)
    ]


def test_safe_prim_names() -> None:
    assert _safe_name("cup/left") == "cup_left"
    assert _safe_name("3d_box") == "n_3d_box"
    assert _safe_name("///") == "item"


def test_results_to_stage_time_samples_each_body() -> None:
    pytest.importorskip("pxr")
    from pxr import Gf, UsdGeom

    layout = BodyStateModel.rigid_bodies(["cup", "box 2"])

    stage = results_to_stage(_results(), layout, camera_frame="camera", time_codes_per_second=30.0)

    assert stage.GetStartTimeCode() == 10.0
    assert stage.GetEndTimeCode() == 11.0
    cup = stage.GetPrimAtPath("/World/camera/cup")
    box = stage.GetPrimAtPath("/World/camera/box_2")
    assert cup.IsValid() and box.IsValid()
    assert cup.GetAttribute("depthtrack:bodyName").Get() == "cup"
    translate = cup.GetAttribute("xformOp:translate")
    assert translate.Get(10.0) == Gf.Vec3d(0.0, 0.0, 1.0)
    assert translate.Get(11.0)[0] == pytest.approx(0.01)
    world = UsdGeom.Xformable(box).ComputeLocalToWorldTransform(11.0)
    x_axis = world.TransformDir(Gf.Vec3d(1.0, 0.0, 0.0))
    assert x_axis[1] == pytest.approx(1.0, abs=1e-9)


def test_joint_bodies_export_joint_arrays() -> None:
    pytest.importorskip("pxr")

    layout = BodyStateModel.articulated_body("arm", ["shoulder", "elbow"])
    results = [TrackingResult(frame_index=0, timestamp_s=0.0, elapsed_s=0.0, mean_state=np.array([0.1, 0.2]))]

    text = results_to_usda(results, layout)

    assert "depthtrack:jointPositions" in text
    assert '"shoulder"' in text
