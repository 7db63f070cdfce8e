"""Writing camera and keyframe trajectories in the TUM and KITTI text formats.

Each frame pose is stored relative to a reference keyframe. If that keyframe
was later culled, the spanning tree is walked up to a keyframe that is still
in the map. Poses are written relative to the first keyframe.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

from visualslam.settings import Sensor


@dataclass(eq=False)
class KeyFrameRecord:
    """A keyframe's world-to-camera pose and its place in the spanning tree.

    ``relative_to_parent`` is the pose relative to ``parent``; it is set when
    the keyframe is marked bad.
    """

    id: int
    timestamp: float
    pose: np.ndarray
    bad: bool = False
    parent: Optional["KeyFrameRecord"] = None
    relative_to_parent: Optional[np.ndarray] = None

    @property
    def rotation(self) -> np.ndarray:
        return np.asarray(self.pose, dtype=float)[:3, :3]

    @property
    def translation(self) -> np.ndarray:
        return np.asarray(self.pose, dtype=float)[:3, 3]

    @property
    def pose_inverse(self) -> np.ndarray:
        return invert_pose(self.pose)

    @property
    def camera_center(self) -> np.ndarray:
        return -self.rotation.T @ self.translation


@dataclass(eq=False)
class FrameRecord:
    """A tracked frame: its pose relative to the reference keyframe."""

    relative_pose: np.ndarray
    reference: KeyFrameRecord
    timestamp: float
    lost: bool = False


def rotation_to_quaternion(rotation) -> np.ndarray:
    """Convert a rotation matrix to a quaternion ``(x, y, z, w)``."""
    r = np.asarray(rotation, dtype=float)
    trace = r[0, 0] + r[1, 1] + r[2, 2]
    q = np.zeros(4)
    if trace > 0:
        t = np.sqrt(trace + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (r[2, 1] - r[1, 2]) * t
        q[1] = (r[0, 2] - r[2, 0]) * t
        q[2] = (r[1, 0] - r[0, 1]) * t
        return q
    i = 0
    if r[1, 1] > r[0, 0]:
        i = 1
    if r[2, 2] > r[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = np.sqrt(r[i, i] - r[j, j] - r[k, k] + 1.0)
    q[i] = 0.5 * t
    t = 0.5 / t
    q[3] = (r[k, j] - r[j, k]) * t
    q[j] = (r[j, i] + r[i, j]) * t
    q[k] = (r[k, i] + r[i, k]) * t
    return q


def invert_pose(pose) -> np.ndarray:
    """Invert a 4x4 rigid transform."""
    p = np.asarray(pose, dtype=float)
    r_inv = p[:3, :3].T
    inv = np.eye(4)
    inv[:3, :3] = r_inv
    inv[:3, 3] = -r_inv @ p[:3, 3]
    return inv


def resolve_reference(keyframe: KeyFrameRecord) -> tuple[KeyFrameRecord, np.ndarray]:
    """Walk up from a culled keyframe to one still in the map.

    Returns that keyframe and the accumulated transform from it to the
    original keyframe. Raises ValueError when a bad keyframe has no parent
    or no relative pose.
    """
    transform = np.eye(4)
    current = keyframe
    while current.bad:
        if current.parent is None or current.relative_to_parent is None:
            raise ValueError(f"bad keyframe {current.id} has no parent to fall back on")
        transform = transform @ np.asarray(current.relative_to_parent, dtype=float)
        current = current.parent
    return current, transform


def _sorted_keyframes(keyframes: Iterable[KeyFrameRecord]) -> list[KeyFrameRecord]:
    ordered = sorted(keyframes, key=lambda kf: kf.id)
    if not ordered:
        raise ValueError("no keyframes in the map")
    return ordered


def _world_pose(frame: FrameRecord, origin_inverse: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    keyframe, trw = resolve_reference(frame.reference)
    trw = trw @ np.asarray(keyframe.pose, dtype=float) @ origin_inverse
    tcw = np.asarray(frame.relative_pose, dtype=float) @ trw
    rwc = tcw[:3, :3].T
    twc = -rwc @ tcw[:3, 3]
    return rwc, twc


def _line(values, precision: int) -> str:
    return " ".join(f"{float(v):.{precision}f}" for v in values)


def save_trajectory_tum(path, keyframes, frames: Sequence[FrameRecord], sensor) -> int:
    """Write every tracked frame as ``timestamp tx ty tz qx qy qz qw``.

    Frames where tracking was lost are skipped. Not available for monocular
    input, whose scale is arbitrary; raises ValueError then. Returns the
    number of lines written.
    """
    if Sensor(sensor) is Sensor.MONOCULAR:
        raise ValueError("the TUM frame trajectory cannot be saved for monocular input")
    origin_inverse = _sorted_keyframes(keyframes)[0].pose_inverse

    written = 0
    with open(os.fspath(path), "w", encoding="utf-8") as out:
        for frame in frames:
            if frame.lost:
                continue
            rwc, twc = _world_pose(frame, origin_inverse)
            q = rotation_to_quaternion(rwc)
            out.write(f"{frame.timestamp:.6f} {_line([*twc, *q], 9)}\n")
            written += 1
    return written


def save_keyframe_trajectory_tum(path, keyframes) -> int:
    """Write every keyframe still in the map as ``timestamp tx ty tz qx qy qz qw``.

    Returns the number of lines written.
    """
    written = 0
    with open(os.fspath(path), "w", encoding="utf-8") as out:
        for keyframe in sorted(keyframes, key=lambda kf: kf.id):
            if keyframe.bad:
                continue
            q = rotation_to_quaternion(keyframe.rotation.T)
            center = keyframe.camera_center
            out.write(f"{keyframe.timestamp:.6f} {_line([*center, *q], 7)}\n")
            written += 1
    return written


def save_trajectory_kitti(path, keyframes, frames: Sequence[FrameRecord]) -> int:
    """Write every frame as the 12 entries of its 3x4 camera-to-world matrix.

    Returns the number of lines written.
    """
    origin_inverse = _sorted_keyframes(keyframes)[0].pose_inverse

    written = 0
    with open(os.fspath(path), "w", encoding="utf-8") as out:
        for frame in frames:
            rwc, twc = _world_pose(frame, origin_inverse)
            values = np.column_stack((rwc, twc)).reshape(-1)
            out.write(_line(values, 9) + "\n")
            written += 1
    return written