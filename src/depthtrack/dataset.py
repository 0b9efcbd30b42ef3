from __future__ import annotations

"""Frame sources: stored sessions on disk and a live hand-off queue."""

import collections
import json
import logging
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import cv2
import numpy as np

from .errors import ConfigurationError, ResourceUnavailable
from .model import CameraIntrinsics, DataFrame, DepthImage, FrameSource

logger = logging.getLogger("depthtrack.dataset")

INDEX_FILENAME = "frames.json"


def _frame_record(frame: DataFrame, depth_name: str, encoding: str) -> dict[str, Any]:
    image = frame.image
    record: dict[str, Any] = {
        "depth": depth_name,
        "encoding": encoding,
        "timestamp": float(image.timestamp_s),
        "frame_index": int(image.frame_index),
        "width": int(image.width),
        "height": int(image.height),
        "step": int(image.step),
        "is_bigendian": bool(image.is_bigendian),
        "camera_matrix": frame.intrinsics.matrix.tolist(),
    }
    if frame.ground_truth is not None:
        record["ground_truth"] = np.asarray(frame.ground_truth, dtype=np.float64).reshape(-1).tolist()
    return record


def save_directory_session(directory: str | Path, frames: Sequence[DataFrame]) -> Path:
    """Write `frames` as a session directory readable by `DirectorySession`.

    Integer depth arrays are stored as 16-bit PNG, float arrays as `.npy`,
    and byte buffers verbatim together with their encoding.
    """
    root = Path(directory).expanduser()
    root.mkdir(parents=True, exist_ok=True)

    records: list[dict[str, Any]] = []
    for position, frame in enumerate(frames):
        data = frame.image.data
        stem = f"depth_{position:06d}"
        if isinstance(data, np.ndarray) and np.issubdtype(data.dtype, np.integer):
            name, encoding = f"{stem}.png", "png"
            ok, encoded = cv2.imencode(".png", np.ascontiguousarray(data, dtype=np.uint16))
            if not ok:
                raise ValueError(f"could not encode frame {position} as 16-bit PNG")
            (root / name).write_bytes(encoded.tobytes())
        elif isinstance(data, np.ndarray):
            name, encoding = f"{stem}.npy", "64FC1"
            np.save(root / name, np.asarray(data, dtype=np.float64))
        else:
            encoding = frame.image.encoding
            name = f"{stem}.png" if encoding == "png" else f"{stem}.bin"
            (root / name).write_bytes(bytes(data))
        records.append(_frame_record(frame, name, encoding))

    index_path = root / INDEX_FILENAME
    index_path.write_text(json.dumps({"frames": records}, indent=2), encoding="utf-8")
    logger.info("stored %d frames in %s", len(records), root)
    return index_path


class DirectorySession(FrameSource):
    """Stored session: `frames.json` plus one depth file per frame."""

    def __init__(self, directory: str | Path) -> None:
        self._root = Path(directory).expanduser()
        index_path = self._root / INDEX_FILENAME
        if not index_path.is_file():
            raise ResourceUnavailable(f"session index does not exist at: {index_path}")
        try:
            payload = json.loads(index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"session index {index_path} is not valid JSON: {exc}") from exc
        records = payload.get("frames") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            raise ConfigurationError(f"session index {index_path} needs a 'frames' list")
        self._records: list[dict[str, Any]] = records
        logger.info("loaded session index with %d frames from %s", len(records), self._root)

    @property
    def root(self) -> Path:
        return self._root

    def size(self) -> int:
        return len(self._records)

    def _record(self, index: int) -> dict[str, Any]:
        if not 0 <= index < len(self._records):
            raise IndexError(f"frame {index} out of range for a session of {len(self._records)} frames")
        return self._records[index]

    def camera_matrix(self, index: int) -> np.ndarray:
        return np.asarray(self._record(index)["camera_matrix"], dtype=np.float64)

    def ground_truth(self, index: int) -> np.ndarray | None:
        values = self._record(index).get("ground_truth")
        if values is None:
            return None
        return np.asarray(values, dtype=np.float64)

    def intrinsics(self, index: int) -> CameraIntrinsics:
        record = self._record(index)
        return CameraIntrinsics.from_matrix(
            self.camera_matrix(index),
            width_px=int(record["width"]),
            height_px=int(record["height"]),
        )

    def get(self, index: int) -> DataFrame:
        record = self._record(index)
        path = self._root / str(record["depth"])
        if not path.is_file():
            raise ResourceUnavailable(f"depth frame does not exist at: {path}")
        data: bytes | np.ndarray = np.load(path) if path.suffix == ".npy" else path.read_bytes()

        image = DepthImage(
            encoding=str(record.get("encoding", "png")),
            width=int(record["width"]),
            height=int(record["height"]),
            data=data,
            timestamp_s=float(record.get("timestamp", 0.0)),
            frame_index=int(record.get("frame_index", index)),
            step=int(record.get("step", 0)),
            is_bigendian=bool(record.get("is_bigendian", False)),
        )
        return DataFrame(image=image, intrinsics=self.intrinsics(index), ground_truth=self.ground_truth(index))


class LiveFrameQueue:
    """Hand-off between a camera callback thread and the tracking worker.

    By default every frame is kept and delivered in arrival order. With
    `newest_wins=True` a frame that was not consumed before the next one
    arrived is discarded, so the worker always gets the latest frame.
    """

    def __init__(self, *, newest_wins: bool = False) -> None:
        self._newest_wins = newest_wins
        self._frames: collections.deque[DataFrame] = collections.deque()
        self._condition = threading.Condition()
        self._closed = False
        self._dropped = 0

    @property
    def newest_wins(self) -> bool:
        return self._newest_wins

    @property
    def dropped_count(self) -> int:
        with self._condition:
            return self._dropped

    def put(self, frame: DataFrame) -> None:
        with self._condition:
            if self._closed:
                raise RuntimeError("frame queue is closed")
            if self._newest_wins and self._frames:
                self._dropped += len(self._frames)
                logger.debug("replacing %d unconsumed frames", len(self._frames))
                self._frames.clear()
            self._frames.append(frame)
            self._condition.notify()

    def wait_for_frame(self, timeout: float | None = None) -> DataFrame | None:
        """Next frame, or None when `timeout` seconds pass (or the queue closes) without one."""
        with self._condition:
            self._condition.wait_for(lambda: bool(self._frames) or self._closed, timeout=timeout)
            if not self._frames:
                return None
            return self._frames.popleft()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def __iter__(self) -> Iterator[DataFrame]:
        while True:
            frame = self.wait_for_frame()
            if frame is None:
                return
            yield frame
