"""Similarity transform (Sim3) estimation between two keyframes.

Points observed by two cameras are matched. The solver looks for the
rotation, translation and scale that map points seen in camera 2 onto the
same points seen in camera 1. It uses RANSAC over three-point samples.
Each hypothesis comes from Horn's closed-form absolute orientation with unit
quaternions. It is checked by reprojecting the points into both images.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

# Chi-square value at 99% for two degrees of freedom.
_CHI2_2DOF = 9.210
_SAMPLE_SIZE = 3


@dataclass(frozen=True)
class Sim3Correspondence:
    """A matched point in the coordinates of camera 1 and of camera 2.

    ``sigma2_1`` and ``sigma2_2`` are the squared scale-level uncertainties of
    the keypoints observing the point in each keyframe.
    """

    point_1: Sequence[float]
    point_2: Sequence[float]
    sigma2_1: float = 1.0
    sigma2_2: float = 1.0


@dataclass(frozen=True)
class Sim3:
    """Similarity ``x1 = scale * rotation @ x2 + translation``."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float

    @property
    def matrix(self) -> np.ndarray:
        """The 4x4 transform T12 taking camera-2 points to camera 1."""
        t = np.eye(4)
        t[:3, :3] = self.scale * self.rotation
        t[:3, 3] = self.translation
        return t

    @property
    def inverse_matrix(self) -> np.ndarray:
        """The 4x4 transform T21 taking camera-1 points to camera 2."""
        sr_inv = (1.0 / self.scale) * self.rotation.T
        t = np.eye(4)
        t[:3, :3] = sr_inv
        t[:3, 3] = -sr_inv @ self.translation
        return t

    def apply(self, points) -> np.ndarray:
        """Map camera-2 points of shape (n, 3) into camera 1."""
        p = _as_points(points)
        return self.scale * p @ self.rotation.T + self.translation


@dataclass(frozen=True)
class Sim3Result:
    """Outcome of a RANSAC run.

    ``transform`` is the accepted 4x4 T12, or None. ``inliers`` has one flag
    per entry of the match list given to the solver. ``no_more`` tells that
    the solver has used up its iterations.
    """

    transform: Optional[np.ndarray]
    inliers: tuple[bool, ...]
    n_inliers: int
    no_more: bool


def _as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim == 1 and arr.size == 0:
        return arr.reshape(0, 3)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"points must have shape (n, 3), got {arr.shape}")
    return arr


def _rodrigues(rvec: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(rvec))
    if theta == 0.0:
        return np.eye(3)
    k = rvec / theta
    kx = np.array([[0.0, -k[2], k[1]], [k[2], 0.0, -k[0]], [-k[1], k[0], 0.0]])
    return (
        math.cos(theta) * np.eye(3)
        + (1.0 - math.cos(theta)) * np.outer(k, k)
        + math.sin(theta) * kx
    )


def compute_sim3(points1, points2, fix_scale=True) -> Sim3:
    """Closed-form similarity aligning ``points2`` onto ``points1``.

    Both inputs have shape (n, 3). With ``fix_scale`` the scale is 1.
    Raises ValueError for mismatched or empty inputs, and when the scale
    cannot be computed because the points of set 2 all coincide.
    """
    p1 = _as_points(points1)
    p2 = _as_points(points2)
    if len(p1) != len(p2):
        raise ValueError("points1 and points2 must have the same length")
    if len(p1) == 0:
        raise ValueError("at least one point pair is required")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    m = pr2.T @ pr1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array(
        [
            [n11, n12, n13, n14],
            [n12, n22, n23, n24],
            [n13, n23, n33, n34],
            [n14, n24, n34, n44],
        ]
    )

    # Eigenvector of the highest eigenvalue is the rotation quaternion.
    _, evecs = np.linalg.eigh(n)
    q = evecs[:, -1]
    vec = q[1:]
    vec_norm = float(np.linalg.norm(vec))
    if vec_norm == 0.0:
        rotation = np.eye(3)
    else:
        angle = math.atan2(vec_norm, q[0])
        rotation = _rodrigues(2.0 * angle * vec / vec_norm)

    p3 = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        den = float(np.sum(p3**2))
        if den == 0.0:
            raise ValueError("scale is undefined: points of set 2 coincide")
        scale = float(np.sum(pr1 * p3)) / den
        if scale == 0.0:
            raise ValueError("scale is undefined: points of set 1 coincide")

    translation = o1 - scale * rotation @ o2
    return Sim3(rotation=rotation, translation=translation, scale=scale)


def project(points, transform, k) -> np.ndarray:
    """Transform points of shape (n, 3) by a 4x4 matrix and project them with K."""
    p = _as_points(points)
    t = np.asarray(transform, dtype=float)
    pc = p @ t[:3, :3].T + t[:3, 3]
    return camera_to_image(pc, k)


def camera_to_image(points, k) -> np.ndarray:
    """Project camera-frame points of shape (n, 3) to pixels with the 3x3 matrix K."""
    p = _as_points(points)
    kk = np.asarray(k, dtype=float)
    fx, fy, cx, cy = kk[0, 0], kk[1, 1], kk[0, 2], kk[1, 2]
    with np.errstate(all="ignore"):
        inv_z = 1.0 / p[:, 2]
        return np.column_stack((fx * p[:, 0] * inv_z + cx, fy * p[:, 1] * inv_z + cy))


class Sim3Solver:
    """RANSAC search for the similarity between two keyframes.

    ``correspondences`` lists one entry per map point of keyframe 1; entries
    that are None have no usable match in keyframe 2.
    """

    def __init__(self, correspondences, k1, k2, fix_scale=True, rng=None):
        self._n_matches = len(correspondences)
        kept = [(i, c) for i, c in enumerate(correspondences) if c is not None]
        self._indices = np.array([i for i, _ in kept], dtype=int)
        self._x1 = np.array([c.point_1 for _, c in kept], dtype=float).reshape(-1, 3)
        self._x2 = np.array([c.point_2 for _, c in kept], dtype=float).reshape(-1, 3)
        # Thresholds are whole pixels squared, as the matcher stores them.
        self._max_error1 = np.array(
            [int(_CHI2_2DOF * c.sigma2_1) for _, c in kept], dtype=float
        )
        self._max_error2 = np.array(
            [int(_CHI2_2DOF * c.sigma2_2) for _, c in kept], dtype=float
        )
        self._k1 = np.asarray(k1, dtype=float)
        self._k2 = np.asarray(k2, dtype=float)
        self._p1_im1 = camera_to_image(self._x1, self._k1)
        self._p2_im2 = camera_to_image(self._x2, self._k2)
        self.fix_scale = bool(fix_scale)
        self._rng = rng if rng is not None else random.Random()

        self._best_mask = np.zeros(len(kept), dtype=bool)
        self._best_count = 0
        self._best: Optional[Sim3] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self._x1)

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300) -> None:
        """Set RANSAC parameters and restart the iteration count."""
        n = self.n_correspondences
        if n == 0 or min_inliers == n:
            n_iterations = 1
        else:
            epsilon = min_inliers / n
            if epsilon >= 1:
                n_iterations = 1
            elif epsilon <= 0 or probability >= 1:
                n_iterations = max_iterations
            else:
                n_iterations = math.ceil(math.log(1 - probability) / math.log(1 - epsilon**3))

        self.probability = probability
        self.min_inliers = min_inliers
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self.iterations = 0

    def find(self) -> Sim3Result:
        """Run RANSAC until a transform is accepted or the iterations are used up."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> Sim3Result:
        """Run up to ``n_iterations`` more RANSAC iterations."""
        n = self.n_correspondences
        none = (False,) * self._n_matches
        if n < self.min_inliers or n < _SAMPLE_SIZE:
            return Sim3Result(None, none, 0, True)

        current = 0
        while self.iterations < self.max_iterations and current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.sample(range(n), _SAMPLE_SIZE)
            try:
                with np.errstate(all="ignore"):
                    sim3 = compute_sim3(self._x1[sample], self._x2[sample], self.fix_scale)
            except (ValueError, np.linalg.LinAlgError):
                continue

            mask = self._check_inliers(sim3)
            count = int(mask.sum())
            if count >= self._best_count:
                self._best_mask = mask
                self._best_count = count
                self._best = sim3
                if count > self.min_inliers:
                    return Sim3Result(sim3.matrix, self._expand(mask), count, False)

        return Sim3Result(None, none, 0, self.iterations >= self.max_iterations)

    def estimated_rotation(self) -> Optional[np.ndarray]:
        return None if self._best is None else self._best.rotation.copy()

    def estimated_translation(self) -> Optional[np.ndarray]:
        return None if self._best is None else self._best.translation.copy()

    def estimated_scale(self) -> Optional[float]:
        return None if self._best is None else self._best.scale

    def _check_inliers(self, sim3: Sim3) -> np.ndarray:
        with np.errstate(all="ignore"):
            p2_im1 = project(self._x2, sim3.matrix, self._k1)
            p1_im2 = project(self._x1, sim3.inverse_matrix, self._k2)
            err1 = np.sum((self._p1_im1 - p2_im1) ** 2, axis=1)
            err2 = np.sum((p1_im2 - self._p2_im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _expand(self, mask: np.ndarray) -> tuple[bool, ...]:
        flags = [False] * self._n_matches
        for index in self._indices[mask]:
            flags[index] = True
        return tuple(flags)