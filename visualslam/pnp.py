"""RANSAC camera pose estimation from 3D-2D matches using EPnP hypotheses."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from visualslam.epnp import compute_pose

_EPNP_MIN_POINTS = 4


@dataclass(frozen=True)
class PnPCorrespondence:
    """A map point in world coordinates and the undistorted keypoint it matches.

    ``sigma2`` is the squared scale-level uncertainty of the keypoint.
    """

    point_3d: Sequence[float]
    point_2d: Sequence[float]
    sigma2: float = 1.0


@dataclass(frozen=True)
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is a 4x4 float32 world-to-camera transform, or None when no pose
    was accepted. ``inliers`` has one flag per entry of the match list given
    to the solver (empty when there is no pose). ``no_more`` tells that the
    solver has used up its iterations.
    """

    pose: Optional[np.ndarray]
    inliers: tuple[bool, ...]
    n_inliers: int
    no_more: bool


def _pose_matrix(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = rotation
    pose[:3, 3] = np.asarray(translation).reshape(3)
    return pose


class PnPSolver:
    """RANSAC over minimal EPnP samples followed by refinement on the inliers.

    ``correspondences`` lists one entry per keypoint of the frame; entries
    that are None are keypoints without a usable map point.
    """

    def __init__(self, correspondences, fx, fy, cx, cy, rng=None):
        self._n_matches = len(correspondences)
        kept = [(i, c) for i, c in enumerate(correspondences) if c is not None]
        self._keypoint_indices = np.array([i for i, _ in kept], dtype=int)
        self._points_3d = np.array([c.point_3d for _, c in kept], dtype=float).reshape(-1, 3)
        self._points_2d = np.array([c.point_2d for _, c in kept], dtype=float).reshape(-1, 2)
        self._sigma2 = np.array([c.sigma2 for _, c in kept], dtype=float)
        self._intrinsics = (float(fx), float(fy), float(cx), float(cy))
        self._rng = rng if rng is not None else random.Random()

        self.iterations = 0
        self._best_mask = np.zeros(len(kept), dtype=bool)
        self._best_count = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self._points_3d)

    def set_ransac_parameters(
        self,
        probability=0.99,
        min_inliers=8,
        max_iterations=300,
        min_set=4,
        epsilon=0.4,
        th2=5.991,
    ) -> None:
        """Set RANSAC parameters, adjusted to the number of correspondences."""
        if min_set < _EPNP_MIN_POINTS:
            raise ValueError(f"min_set must be at least {_EPNP_MIN_POINTS}")
        n = self.n_correspondences

        min_inliers = max(int(n * epsilon), min_inliers, min_set)
        if n > 0 and epsilon < min_inliers / n:
            epsilon = min_inliers / n

        if min_inliers == n:
            n_iterations = 1
        elif epsilon >= 1:
            n_iterations = 1
        elif epsilon <= 0 or probability >= 1:
            n_iterations = max_iterations
        else:
            n_iterations = math.ceil(math.log(1 - probability) / math.log(1 - epsilon**3))

        self.probability = probability
        self.min_inliers = min_inliers
        self.min_set = min_set
        self.epsilon = epsilon
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self._max_errors = self._sigma2 * th2

    def find(self) -> PnPResult:
        """Run RANSAC until a pose is found or the iterations are used up."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> PnPResult:
        """Run at least ``n_iterations`` more RANSAC iterations."""
        n = self.n_correspondences
        if n < self.min_inliers:
            return PnPResult(None, (), 0, True)

        current = 0
        while self.iterations < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.sample(range(n), self.min_set)
            estimate = self._estimate(sample)
            if estimate is None:
                continue
            mask = self._check_inliers(*estimate)
            count = int(mask.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_mask = mask
                    self._best_count = count
                    self._best_pose = _pose_matrix(*estimate)

                refined = self._refine()
                if refined is not None:
                    return refined

        if self.iterations >= self.max_iterations:
            if self._best_count >= self.min_inliers and self._best_pose is not None:
                return PnPResult(
                    self._best_pose.copy(),
                    self._expand(self._best_mask),
                    self._best_count,
                    True,
                )
            return PnPResult(None, (), 0, True)
        return PnPResult(None, (), 0, False)

    def _estimate(self, indices):
        idx = np.asarray(indices, dtype=int)
        try:
            pose = compute_pose(self._points_3d[idx], self._points_2d[idx], *self._intrinsics)
        except np.linalg.LinAlgError:
            return None
        return pose.rotation, pose.translation

    def _check_inliers(self, rotation, translation) -> np.ndarray:
        fx, fy, cx, cy = self._intrinsics
        with np.errstate(all="ignore"):
            pcs = self._points_3d @ np.asarray(rotation).T + np.asarray(translation).reshape(3)
            inv_z = 1.0 / pcs[:, 2]
            ue = cx + fx * pcs[:, 0] * inv_z
            ve = cy + fy * pcs[:, 1] * inv_z
            error2 = (self._points_2d[:, 0] - ue) ** 2 + (self._points_2d[:, 1] - ve) ** 2
            return error2 < self._max_errors

    def _refine(self) -> Optional[PnPResult]:
        indices = np.flatnonzero(self._best_mask)
        if len(indices) < _EPNP_MIN_POINTS:
            return None
        estimate = self._estimate(indices)
        if estimate is None:
            return None
        mask = self._check_inliers(*estimate)
        count = int(mask.sum())
        if count > self.min_inliers:
            return PnPResult(_pose_matrix(*estimate), self._expand(mask), count, False)
        return None

    def _expand(self, mask: np.ndarray) -> tuple[bool, ...]:
        flags = [False] * self._n_matches
        for keypoint in self._keypoint_indices[mask]:
            flags[keypoint] = True
        return tuple(flags)