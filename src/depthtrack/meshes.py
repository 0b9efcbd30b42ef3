from __future__ import annotations

"""Body geometry assets (meshes, shader programs)."""

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import numpy as np

from .errors import ResourceUnavailable
from .model import BodyMesh, MeshProvider

logger = logging.getLogger("depthtrack.meshes")


def _require_open3d() -> Any:
    try:
        import open3d as o3d
    except ImportError as exc:  # pragma: no cover
        raise ImportError("open3d is required for loading body meshes. Install `open3d`.") from exc
    return o3d


def require_assets(paths: Sequence[str | Path], *, kind: str = "asset") -> list[Path]:
    """Resolve `paths`, raising ResourceUnavailable for the first missing one."""
    resolved: list[Path] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if not path.is_file():
            raise ResourceUnavailable(f"{kind} does not exist at: {path}")
        resolved.append(path)
    return resolved


class Open3DMeshProvider(MeshProvider):
    """Loads one triangle mesh per body (OBJ, PLY, STL, ...) once, on first use."""

    def __init__(self, paths: Sequence[str | Path]) -> None:
        self._paths = require_assets(paths, kind="mesh")
        self._meshes: list[BodyMesh] | None = None

    def body_meshes(self) -> list[BodyMesh]:
        if self._meshes is None:
            o3d = _require_open3d()
            meshes: list[BodyMesh] = []
            for path in self._paths:
                mesh = o3d.io.read_triangle_mesh(str(path))
                vertices = np.asarray(mesh.vertices, dtype=np.float64)
                if len(vertices) == 0:
                    raise ResourceUnavailable(f"mesh at {path} has no vertices")
                triangles = np.asarray(mesh.triangles, dtype=np.int64)
                meshes.append(BodyMesh(vertices=vertices, triangles=triangles))
            total = sum(len(mesh.triangles) for mesh in meshes)
            logger.info("loaded %d body meshes, %d triangles in total", len(meshes), total)
            self._meshes = meshes
        return list(self._meshes)
