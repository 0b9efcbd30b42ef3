from __future__ import annotations

"""OpenUSD export of tracked mean states."""

import re
from collections.abc import Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from .body_state import JOINTS, POSE6, BodyStateModel
from .model import TrackingResult

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def _require_pxr() -> tuple[object, object, object, object, object]:
    try:
        from pxr import Gf, Sdf, Usd, UsdGeom, Vt
    except ImportError as exc:  # pragma: no cover
        raise ImportError("OpenUSD Python bindings are required. Install `usd-core`.") from exc
    return Gf, Sdf, Usd, UsdGeom, Vt


def _safe_name(raw: str) -> str:
    value = _SAFE_NAME_RE.sub("_", raw).strip("_")
    if not value:
        value = "item"
    if value[0].isdigit():
        value = f"n_{value}"
    return value


def results_to_stage(
    results: Sequence[TrackingResult],
    layout: BodyStateModel,
    *,
    camera_frame: str = "camera",
    time_codes_per_second: float = 30.0,
) -> object:
    """In-memory stage with one Xform per body, time-sampled at each result's frame index.

    Pose bodies get translate + orient ops in the camera frame; joint bodies
    get a time-sampled `depthtrack:jointPositions` array.
    """
    Gf, Sdf, Usd, UsdGeom, Vt = _require_pxr()

    stage = Usd.Stage.CreateInMemory()
    UsdGeom.SetStageUpAxis(stage, UsdGeom.Tokens.y)
    UsdGeom.SetStageMetersPerUnit(stage, 1.0)
    stage.SetTimeCodesPerSecond(float(time_codes_per_second))

    root_path = f"/World/{_safe_name(camera_frame)}"
    UsdGeom.Xform.Define(stage, "/World")
    UsdGeom.Xform.Define(stage, root_path)
    if results:
        stage.SetStartTimeCode(float(results[0].frame_index))
        stage.SetEndTimeCode(float(results[-1].frame_index))

    for body_index, body in enumerate(layout.bodies):
        prim = UsdGeom.Xform.Define(stage, f"{root_path}/{_safe_name(body.name)}").GetPrim()
        prim.CreateAttribute("depthtrack:bodyName", Sdf.ValueTypeNames.String).Set(body.name)
        stamps = prim.CreateAttribute("depthtrack:timestamp", Sdf.ValueTypeNames.Double)

        if body.kind == POSE6:
            xformable = UsdGeom.Xformable(prim)
            translate = xformable.AddTranslateOp()
            orient = xformable.AddOrientOp(UsdGeom.XformOp.PrecisionDouble)
            for result in results:
                time = float(result.frame_index)
                sub = layout.get_body(result.mean_state, body_index)
                x, y, z, w = Rotation.from_rotvec(sub[3:6]).as_quat()
                translate.Set(Gf.Vec3d(*(float(value) for value in sub[:3])), time)
                orient.Set(Gf.Quatd(float(w), Gf.Vec3d(float(x), float(y), float(z))), time)
                stamps.Set(float(result.timestamp_s), time)
        elif body.kind == JOINTS:
            names = prim.CreateAttribute("depthtrack:jointNames", Sdf.ValueTypeNames.StringArray)
            joint_names = body.joint_names or tuple(f"{body.name}_joint_{i}" for i in range(body.dimension))
            names.Set(Vt.StringArray(list(joint_names)))
            values = prim.CreateAttribute("depthtrack:jointPositions", Sdf.ValueTypeNames.DoubleArray)
            for result in results:
                time = float(result.frame_index)
                sub = np.asarray(layout.get_body(result.mean_state, body_index), dtype=np.float64)
                values.Set(Vt.DoubleArray([float(value) for value in sub]), time)
                stamps.Set(float(result.timestamp_s), time)
    return stage


def results_to_usda(
    results: Sequence[TrackingResult],
    layout: BodyStateModel,
    *,
    camera_frame: str = "camera",
    time_codes_per_second: float = 30.0,
) -> str:
    stage = results_to_stage(
        results,
        layout,
        camera_frame=camera_frame,
        time_codes_per_second=time_codes_per_second,
    )
    return stage.GetRootLayer().ExportToString()
