from __future__ import annotations

"""Depth frame decoding and point-cloud reconstruction.

Everything here is a pure function of its inputs. Invalid pixels are carried
as NaN all the way through: a missing return never becomes a point at the
camera origin.
"""

import struct

import cv2
import numpy as np

from .errors import ConfigurationError, DecodeError
from .model import CameraIntrinsics, DepthImage

MILLIMETERS_PER_METER = 1000.0

_RAW_ENCODINGS: dict[str, tuple[str, bool]] = {
    # encoding -> (numpy dtype char, holds integer samples)
    "32FC1": ("f4", False),
    "64FC1": ("f8", False),
    "16UC1": ("u2", True),
    "mono16": ("u2", True),
}
_COMPRESSED_DEPTH_HEADER = struct.Struct("<iff")


def supported_encodings() -> tuple[str, ...]:
    return tuple(_RAW_ENCODINGS) + ("png", "16UC1; compressedDepth", "32FC1; compressedDepth")


def _decode_raw(image: DepthImage) -> tuple[np.ndarray, bool]:
    dtype_char, is_integer = _RAW_ENCODINGS[image.encoding]
    dtype = np.dtype((">" if image.is_bigendian else "<") + dtype_char)
    row_bytes = image.width * dtype.itemsize
    step = image.step if image.step > 0 else row_bytes
    if step < row_bytes:
        raise DecodeError(f"row step {step} is smaller than {row_bytes} bytes per row")

    buffer = np.frombuffer(bytes(image.data), dtype=np.uint8)
    expected = step * image.height
    if buffer.size != expected:
        raise DecodeError(
            f"{image.encoding} frame of {image.width}x{image.height} needs {expected} bytes, got {buffer.size}"
        )

    rows = buffer.reshape(image.height, step)[:, :row_bytes]
    values = np.ascontiguousarray(rows).view(dtype).reshape(image.height, image.width)
    return (values.astype(np.float64), is_integer)


def _imdecode(payload: bytes) -> np.ndarray:
    decoded = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if decoded is None:
        raise DecodeError("compressed depth payload could not be decoded")
    if decoded.ndim != 2:
        raise DecodeError(f"compressed depth must be single channel, got shape {decoded.shape}")
    return decoded


def _decode_compressed(image: DepthImage) -> tuple[np.ndarray, bool]:
    payload = bytes(image.data)
    if image.encoding == "png":
        return (_imdecode(payload).astype(np.float64), True)

    if len(payload) <= _COMPRESSED_DEPTH_HEADER.size:
        raise DecodeError("compressedDepth payload is shorter than its header")
    _format, quant_a, quant_b = _COMPRESSED_DEPTH_HEADER.unpack_from(payload)
    decoded = _imdecode(payload[_COMPRESSED_DEPTH_HEADER.size :]).astype(np.float64)
    if image.encoding.startswith("16UC1"):
        return (decoded, True)

    # inverse-depth quantization
    depth = np.full(decoded.shape, np.nan, dtype=np.float64)
    valid = decoded > 0.0
    depth[valid] = quant_a / (decoded[valid] - quant_b)
    return (depth, False)


def _as_matrix(image: DepthImage) -> tuple[np.ndarray, bool]:
    if image.encoding not in supported_encodings():
        raise DecodeError(
            f"unsupported depth encoding {image.encoding!r}; expected one of {supported_encodings()}"
        )
    if isinstance(image.data, np.ndarray):
        values = np.asarray(image.data)
        if values.ndim != 2:
            raise DecodeError(f"depth array must be 2D, got shape {values.shape}")
        return (values.astype(np.float64), np.issubdtype(values.dtype, np.integer))
    if image.encoding in _RAW_ENCODINGS:
        return _decode_raw(image)
    return _decode_compressed(image)


def decode_depth_image(
    image: DepthImage,
    *,
    downsampling_factor: int = 1,
    data_in_meters: bool = False,
) -> np.ndarray:
    """Metric depth matrix (meters, NaN = no return) decimated by `downsampling_factor`."""
    factor = int(downsampling_factor)
    if factor < 1:
        raise ConfigurationError("downsampling factor must be >= 1")

    values, is_integer = _as_matrix(image)
    if values.shape != (image.height, image.width):
        raise DecodeError(
            f"decoded depth has shape {values.shape}, header says {(image.height, image.width)}"
        )

    depth = np.array(values, dtype=np.float64, copy=True)
    invalid = ~np.isfinite(depth) | (depth == 0.0)
    if not is_integer:
        invalid |= depth < 0.0
    depth[invalid] = np.nan
    if not data_in_meters:
        depth /= MILLIMETERS_PER_METER

    if factor == 1:
        return depth
    rows = (depth.shape[0] // factor) * factor
    cols = (depth.shape[1] // factor) * factor
    return np.ascontiguousarray(depth[:rows:factor, :cols:factor])


def depth_to_point_grid(depth: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    """(H, W, 3) camera-frame points; NaN depth gives (NaN, NaN, NaN)."""
    depth = np.asarray(depth, dtype=np.float64)
    if depth.ndim != 2:
        raise ValueError("depth must be a 2D matrix")
    if depth.shape != intrinsics.shape:
        raise ConfigurationError(
            f"intrinsics are for {intrinsics.shape} (rows, cols) but the depth matrix is {depth.shape}"
        )

    rows, cols = depth.shape
    u = np.arange(cols, dtype=np.float64)[None, :]
    v = np.arange(rows, dtype=np.float64)[:, None]
    points = np.empty((rows, cols, 3), dtype=np.float64)
    points[..., 0] = (u - intrinsics.cx_px) * depth / intrinsics.fx_px
    points[..., 1] = (v - intrinsics.cy_px) * depth / intrinsics.fy_px
    points[..., 2] = depth

    invalid = np.isnan(depth)
    points[invalid] = np.nan
    return points


def depth_to_point_cloud(depth: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    """(H*W, 3) points in row-major pixel order: row `v*W + u` is pixel (u, v)."""
    return depth_to_point_grid(depth, intrinsics).reshape(-1, 3)


def finite_points(points: np.ndarray) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return arr[np.isfinite(arr).all(axis=1)]
