"""Efficient Perspective-n-Point (EPnP) camera pose estimation.

Given 3D points in world coordinates and their 2D projections in an image
taken by a pinhole camera, recover the rotation and translation that map
world coordinates into camera coordinates.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

_GAUSS_NEWTON_ITERATIONS = 5
_CONTROL_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_MIN_CORRESPONDENCES = 4


@dataclass(frozen=True)
class PoseEstimate:
    """Camera pose (world to camera) and its mean reprojection error in pixels."""

    rotation: np.ndarray
    translation: np.ndarray
    error: float


def _as_points(points, dim: int, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != dim:
        raise ValueError(f"{name} must have shape (n, {dim}), got {arr.shape}")
    return arr


def _choose_control_points(pws: np.ndarray) -> np.ndarray:
    centroid = pws.mean(axis=0)
    centered = pws - centroid
    u, s, _ = np.linalg.svd(centered.T @ centered)
    cws = np.empty((4, 3))
    cws[0] = centroid
    cws[1:] = centroid + np.sqrt(s / len(pws))[:, None] * u.T
    return cws


def _barycentric_coordinates(pws: np.ndarray, cws: np.ndarray) -> np.ndarray:
    cc_inv = np.linalg.pinv((cws[1:] - cws[0]).T)
    alphas = np.empty((len(pws), 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def _build_m(alphas, points_2d, fx, fy, cx, cy) -> np.ndarray:
    u = points_2d[:, 0][:, None]
    v = points_2d[:, 1][:, None]
    m = np.zeros((2 * len(alphas), 12))
    m[0::2, 0::3] = alphas * fx
    m[0::2, 2::3] = alphas * (cx - u)
    m[1::2, 1::3] = alphas * fy
    m[1::2, 2::3] = alphas * (cy - v)
    return m


def _compute_l_6x10(v: np.ndarray) -> np.ndarray:
    vr = v.reshape(4, 4, 3)
    dv = np.stack([vr[:, a] - vr[:, b] for a, b in _CONTROL_PAIRS], axis=1)

    def d(p: int, q: int) -> np.ndarray:
        return np.einsum("jk,jk->j", dv[p], dv[q])

    return np.column_stack(
        [
            d(0, 0), 2 * d(0, 1), d(1, 1), 2 * d(0, 2), 2 * d(1, 2),
            d(2, 2), 2 * d(0, 3), 2 * d(1, 3), 2 * d(2, 3), d(3, 3),
        ]
    )


def _compute_rho(cws: np.ndarray) -> np.ndarray:
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _CONTROL_PAIRS])


def _lstsq(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.linalg.lstsq(a, b, rcond=None)[0]


def _betas_approx_1(l_6x10, rho) -> np.ndarray:
    # betas10 = [B11 B12 B22 B13 B23 B33 B14 B24 B34 B44], using B11 B12 B13 B14
    b4 = _lstsq(l_6x10[:, [0, 1, 3, 6]], rho)
    if b4[0] < 0:
        b0 = np.sqrt(-b4[0])
        return np.concatenate(([b0], -b4[1:] / b0))
    b0 = np.sqrt(b4[0])
    return np.concatenate(([b0], b4[1:] / b0))


def _leading_betas(b) -> tuple[float, float]:
    if b[0] < 0:
        b0 = np.sqrt(-b[0])
        b1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        b0 = np.sqrt(b[0])
        b1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        b0 = -b0
    return b0, b1


def _betas_approx_2(l_6x10, rho) -> np.ndarray:
    # Using B11 B12 B22.
    b3 = _lstsq(l_6x10[:, :3], rho)
    b0, b1 = _leading_betas(b3)
    return np.array([b0, b1, 0.0, 0.0])


def _betas_approx_3(l_6x10, rho) -> np.ndarray:
    # Using B11 B12 B22 B13 B23.
    b5 = _lstsq(l_6x10[:, :5], rho)
    b0, b1 = _leading_betas(b5)
    return np.array([b0, b1, b5[3] / b0, 0.0])


def _gauss_newton_system(l, rho, betas):
    b0, b1, b2, b3 = betas
    a = np.column_stack(
        [
            2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
            l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
            l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
            l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
        ]
    )
    products = np.array(
        [b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
         b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3]
    )
    return a, rho - l @ products


def _gauss_newton(l_6x10, rho, betas) -> np.ndarray:
    betas = np.array(betas, dtype=float)
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        a, b = _gauss_newton_system(l_6x10, rho, betas)
        try:
            betas += qr_solve(a, b)
        except np.linalg.LinAlgError:
            break
    return betas


def _estimate_r_and_t(pcs: np.ndarray, pws: np.ndarray):
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation[2] = -rotation[2]
    return rotation, pc0 - rotation @ pw0


def _candidate(null_basis, betas, alphas, pws, points_2d, intrinsics):
    ccs = np.tensordot(betas, null_basis, axes=1).reshape(4, 3)
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    rotation, translation = _estimate_r_and_t(pcs, pws)
    error = reprojection_error(rotation, translation, pws, points_2d, *intrinsics)
    return rotation, translation, error


def compute_pose(points_3d, points_2d, fx, fy, cx, cy) -> PoseEstimate:
    """Estimate the world-to-camera pose from 3D-2D correspondences.

    Raises ValueError when fewer than four correspondences are given or the
    shapes disagree, and numpy.linalg.LinAlgError when no pose can be formed.
    """
    pws = _as_points(points_3d, 3, "points_3d")
    uv = _as_points(points_2d, 2, "points_2d")
    if len(pws) != len(uv):
        raise ValueError("points_3d and points_2d must have the same length")
    if len(pws) < _MIN_CORRESPONDENCES:
        raise ValueError(f"at least {_MIN_CORRESPONDENCES} correspondences are required")

    intrinsics = (fx, fy, cx, cy)
    with np.errstate(all="ignore"):
        cws = _choose_control_points(pws)
        alphas = _barycentric_coordinates(pws, cws)
        m = _build_m(alphas, uv, fx, fy, cx, cy)
        u, _, _ = np.linalg.svd(m.T @ m)
        null_basis = u.T[[11, 10, 9, 8]]

        l_6x10 = _compute_l_6x10(null_basis)
        rho = _compute_rho(cws)

        candidates = []
        for approx in (_betas_approx_1, _betas_approx_2, _betas_approx_3):
            betas = _gauss_newton(l_6x10, rho, approx(l_6x10, rho))
            try:
                candidates.append(_candidate(null_basis, betas, alphas, pws, uv, intrinsics))
            except np.linalg.LinAlgError:
                candidates.append((None, None, float("inf")))

    best = 0
    if candidates[1][2] < candidates[0][2]:
        best = 1
    if candidates[2][2] < candidates[best][2]:
        best = 2
    rotation, translation, error = candidates[best]
    if rotation is None:
        raise np.linalg.LinAlgError("no pose could be estimated")
    return PoseEstimate(rotation=rotation, translation=translation, error=float(error))


def reprojection_error(rotation, translation, points_3d, points_2d, fx, fy, cx, cy) -> float:
    """Mean pixel distance between observed points and projected 3D points."""
    pws = _as_points(points_3d, 3, "points_3d")
    uv = _as_points(points_2d, 2, "points_2d")
    r = np.asarray(rotation, dtype=float)
    t = np.asarray(translation, dtype=float).reshape(3)
    with np.errstate(all="ignore"):
        pcs = pws @ r.T + t
        inv_z = 1.0 / pcs[:, 2]
        ue = cx + fx * pcs[:, 0] * inv_z
        ve = cy + fy * pcs[:, 1] * inv_z
        return float(np.mean(np.hypot(uv[:, 0] - ue, uv[:, 1] - ve)))


def qr_solve(a, b) -> np.ndarray:
    """Solve ``a @ x = b`` in the least-squares sense by Householder QR.

    The inputs are not modified. Raises numpy.linalg.LinAlgError when a
    column of ``a`` is entirely zero.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    nr, nc = a.shape
    if len(b) != nr:
        raise ValueError("a and b must have the same number of rows")
    diag_norm = np.zeros(nc)
    diag_r = np.zeros(nc)

    for k in range(nc):
        eta = np.max(np.abs(a[k:, k]))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] /= eta
        sigma = np.sqrt(np.sum(a[k:, k] ** 2))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        diag_norm[k] = sigma * a[k, k]
        diag_r[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = (a[k:, k] @ a[k:, j]) / diag_norm[k]
            a[k:, j] -= tau * a[k:, k]

    # b <- Q^T b
    for j in range(nc):
        tau = (a[j:, j] @ b[j:]) / diag_norm[j]
        b[j:] -= tau * a[j:, j]

    # x = R^-1 b
    x = np.zeros(nc)
    for i in reversed(range(nc)):
        x[i] = (b[i] - a[i, i + 1:] @ x[i + 1:]) / diag_r[i]
    return x


def mat_to_quat(rotation) -> np.ndarray:
    """Convert a rotation matrix to a quaternion ``(x, y, z, w)``."""
    r = np.asarray(rotation, dtype=float)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = [r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0]
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = [1.0 + r[0, 0] - r[1, 1] - r[2, 2], r[1, 0] + r[0, 1],
             r[2, 0] + r[0, 2], r[1, 2] - r[2, 1]]
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = [r[1, 0] + r[0, 1], 1.0 + r[1, 1] - r[0, 0] - r[2, 2],
             r[2, 1] + r[1, 2], r[2, 0] - r[0, 2]]
        n4 = q[1]
    else:
        q = [r[2, 0] + r[0, 2], r[2, 1] + r[1, 2],
             1.0 + r[2, 2] - r[0, 0] - r[1, 1], r[0, 1] - r[1, 0]]
        n4 = q[2]
    return np.array(q) * (0.5 / np.sqrt(n4))


def relative_error(r_true, t_true, r_est, t_est) -> tuple[float, float]:
    """Relative rotation and translation errors of an estimate against ground truth."""
    q_true = mat_to_quat(r_true)
    q_est = mat_to_quat(r_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(np.linalg.norm(q_true - q_est), np.linalg.norm(q_true + q_est)) / q_norm
    t_true = np.asarray(t_true, dtype=float).reshape(3)
    t_est = np.asarray(t_est, dtype=float).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)