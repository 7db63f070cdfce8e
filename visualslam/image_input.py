"""Preparing input images for tracking and choosing close stereo/RGB-D points.

Colour images are reduced to a single grey channel and depth maps are
brought to metric float32. Tracking creates map points from depth
measurements. It takes every point closer than the depth threshold and, when
there are few of those, the closest points up to a fixed count.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

# Luma weights of the ITU-R BT.601 standard, as used for colour-to-grey conversion.
_RED_WEIGHT = 0.299
_GREEN_WEIGHT = 0.587
_BLUE_WEIGHT = 0.114

_DEPTH_FACTOR_EPS = 1e-5
_MIN_CLOSE_POINTS = 100


def to_grayscale(image, rgb: bool) -> np.ndarray:
    """Return a single-channel version of ``image``.

    A 2D image is returned unchanged. Images with 3 or 4 channels are read as
    RGB(A) when ``rgb`` is true and as BGR(A) otherwise; the alpha channel is
    ignored. Integer images are rounded and keep their dtype. Raises
    ValueError for any other shape.
    """
    img = np.asarray(image)
    if img.ndim == 2:
        return img
    if img.ndim != 3:
        raise ValueError(f"image must be 2D or 3D, got {img.ndim} dimensions")
    channels = img.shape[2]
    if channels == 1:
        return img[..., 0]
    if channels not in (3, 4):
        raise ValueError(f"image must have 1, 3 or 4 channels, got {channels}")

    data = img[..., :3].astype(float)
    if rgb:
        red, green, blue = data[..., 0], data[..., 1], data[..., 2]
    else:
        blue, green, red = data[..., 0], data[..., 1], data[..., 2]
    gray = _RED_WEIGHT * red + _GREEN_WEIGHT * green + _BLUE_WEIGHT * blue

    if np.issubdtype(img.dtype, np.integer):
        info = np.iinfo(img.dtype)
        return np.clip(np.rint(gray), info.min, info.max).astype(img.dtype)
    return gray.astype(img.dtype)


def scale_depth(depth, depth_map_factor: float) -> np.ndarray:
    """Convert a depth map to float32 metres by multiplying with ``depth_map_factor``.

    A float32 map is returned untouched when the factor is 1.
    """
    arr = np.asarray(depth)
    if abs(depth_map_factor - 1.0) > _DEPTH_FACTOR_EPS or arr.dtype != np.float32:
        return (arr.astype(np.float64) * depth_map_factor).astype(np.float32)
    return arr


def select_close_points(depths: Sequence[float], th_depth: float) -> list[int]:
    """Indices of keypoints to turn into map points, closest first.

    Only points with positive depth are considered. All points closer than
    ``th_depth`` are taken; beyond that, points are taken in order of depth
    until more than 100 have been taken.
    """
    ordered = sorted((float(z), i) for i, z in enumerate(depths) if z > 0)
    selected: list[int] = []
    for z, index in ordered:
        selected.append(index)
        if z > th_depth and len(selected) > _MIN_CLOSE_POINTS:
            break
    return selected


def count_close_points(
    depths: Sequence[float], tracked: Sequence[bool], th_depth: float
) -> tuple[int, int]:
    """Count close points that are tracked and that are not.

    A point is close when its depth is positive and below ``th_depth``.
    ``tracked`` flags the keypoints matched to a map point that is not an
    outlier. Returns ``(tracked_close, non_tracked_close)``. Raises
    ValueError when the two sequences differ in length.
    """
    if len(depths) != len(tracked):
        raise ValueError("depths and tracked must have the same length")
    tracked_close = 0
    non_tracked_close = 0
    for z, is_tracked in zip(depths, tracked):
        if 0 < z < th_depth:
            if is_tracked:
                tracked_close += 1
            else:
                non_tracked_close += 1
    return tracked_close, non_tracked_close