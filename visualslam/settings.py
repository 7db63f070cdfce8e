"""Camera and feature-extractor settings read from a tracking settings file.

Settings files are flat YAML mappings with keys such as ``Camera.fx``. The
OpenCV flavour of YAML is accepted: a leading ``%YAML:1.0`` line is
ignored and ``!!opencv-matrix`` nodes are read as numpy arrays. As with the
original file reader, a key that is missing reads as zero.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import yaml

_DEFAULT_FPS = 30.0
_DEPTH_FACTOR_EPS = 1e-5
_OPENCV_MATRIX_TAG = "tag:yaml.org,2002:opencv-matrix"


class Sensor(enum.IntEnum):
    """Input sensor the tracker works with."""

    MONOCULAR = 0
    STEREO = 1
    RGBD = 2


def _number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key, 0)
    return float(value) if value is not None else 0.0


def _integer(data: Mapping[str, Any], key: str) -> int:
    return int(round(_number(data, key)))


@dataclass(frozen=True)
class CameraSettings:
    """Pinhole calibration, distortion and sensor-specific thresholds."""

    fx: float
    fy: float
    cx: float
    cy: float
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    bf: float = 0.0
    fps: float = _DEFAULT_FPS
    rgb: bool = False
    th_depth: float | None = None
    depth_map_factor: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], sensor: Sensor) -> "CameraSettings":
        """Read calibration keys; ``th_depth`` and ``depth_map_factor`` only where the sensor uses them."""
        sensor = Sensor(sensor)
        fx = _number(data, "Camera.fx")
        bf = _number(data, "Camera.bf")

        fps = _number(data, "Camera.fps")
        if fps == 0:
            fps = _DEFAULT_FPS

        th_depth = None
        if sensor in (Sensor.STEREO, Sensor.RGBD):
            if fx == 0:
                raise ValueError("Camera.fx must be non-zero to compute the depth threshold")
            th_depth = bf * _number(data, "ThDepth") / fx

        depth_map_factor = None
        if sensor is Sensor.RGBD:
            raw = _number(data, "DepthMapFactor")
            depth_map_factor = 1.0 if abs(raw) < _DEPTH_FACTOR_EPS else 1.0 / raw

        return cls(
            fx=fx,
            fy=_number(data, "Camera.fy"),
            cx=_number(data, "Camera.cx"),
            cy=_number(data, "Camera.cy"),
            k1=_number(data, "Camera.k1"),
            k2=_number(data, "Camera.k2"),
            p1=_number(data, "Camera.p1"),
            p2=_number(data, "Camera.p2"),
            k3=_number(data, "Camera.k3"),
            bf=bf,
            fps=fps,
            rgb=bool(_integer(data, "Camera.RGB")),
            th_depth=th_depth,
            depth_map_factor=depth_map_factor,
        )

    @property
    def camera_matrix(self) -> np.ndarray:
        """The 3x3 intrinsic matrix K (float32)."""
        k = np.eye(3, dtype=np.float32)
        k[0, 0] = self.fx
        k[1, 1] = self.fy
        k[0, 2] = self.cx
        k[1, 2] = self.cy
        return k

    @property
    def distortion(self) -> np.ndarray:
        """Distortion coefficients ``k1 k2 p1 p2`` followed by ``k3`` when it is non-zero."""
        coeffs = [self.k1, self.k2, self.p1, self.p2]
        if self.k3 != 0:
            coeffs.append(self.k3)
        return np.array(coeffs, dtype=np.float32)

    @property
    def min_frames(self) -> int:
        """Minimum frames between keyframe insertions."""
        return 0

    @property
    def max_frames(self) -> int:
        """Maximum frames between keyframe insertions, one second of frames."""
        return int(self.fps)


@dataclass(frozen=True)
class OrbSettings:
    """Parameters of the ORB feature extractor."""

    n_features: int
    scale_factor: float
    n_levels: int
    ini_th_fast: int
    min_th_fast: int

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrbSettings":
        return cls(
            n_features=_integer(data, "ORBextractor.nFeatures"),
            scale_factor=_number(data, "ORBextractor.scaleFactor"),
            n_levels=_integer(data, "ORBextractor.nLevels"),
            ini_th_fast=_integer(data, "ORBextractor.iniThFAST"),
            min_th_fast=_integer(data, "ORBextractor.minThFAST"),
        )

    @property
    def initializer_features(self) -> int:
        """Features extracted for monocular map initialisation: twice the usual number."""
        return 2 * self.n_features


class _SettingsLoader(yaml.SafeLoader):
    """Safe loader that understands OpenCV matrix nodes."""


def _construct_opencv_matrix(loader: yaml.SafeLoader, node: yaml.Node) -> np.ndarray:
    fields = loader.construct_mapping(node, deep=True)
    try:
        rows = int(fields["rows"])
        cols = int(fields["cols"])
        values = fields["data"]
    except KeyError as exc:
        raise yaml.constructor.ConstructorError(
            None, None, f"opencv-matrix node lacks {exc.args[0]!r}", node.start_mark
        ) from None
    return np.asarray(values, dtype=float).reshape(rows, cols)


_SettingsLoader.add_constructor(_OPENCV_MATRIX_TAG, _construct_opencv_matrix)


def load_settings(path) -> dict[str, Any]:
    """Read a settings file into a flat dictionary.

    Raises FileNotFoundError when the file does not exist and ValueError when
    it does not hold a mapping.
    """
    text = Path(path).read_text(encoding="utf-8")
    lines = text.splitlines()
    if lines and lines[0].lstrip().startswith("%YAML:"):
        lines = lines[1:]
    data = yaml.load("\n".join(lines), Loader=_SettingsLoader)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"settings file {path} does not hold a mapping")
    return data