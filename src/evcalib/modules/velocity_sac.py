# src/evcalib/modules/velocity_sac.py
from __future__ import annotations

from typing import Sequence

import numpy as np

from .flow_corr import MIN_DEPTH, OpticalFlowCorr
from .sac import Ransac, SacProblem
from ..geom.camera import PinholeIntrinsic, sub_mats
from ..geom.so3 import quat_to_matrix
from ..geom.spline import So3Spline
from ..system.proposal import Evidence, Proposal

# (pixel (2,), pixel velocity (2,), depth)
Dynamic = tuple[np.ndarray, np.ndarray, float]


class VisualVelocitySacProblem(SacProblem[np.ndarray]):
    """
    Linear velocity of the depth sensor (in its own frame) from per-pixel flow
    and depth, with the rotational flow removed using the rotation spline.

    For a static point: flow = (1/d) * A(pixel) @ v + B(pixel) @ omega, with
    omega the sensor angular velocity taken from the spline at the point's
    body-clock time. Three points give an over-determined 6x3 system.
    """

    sample_size = 3

    def __init__(
        self,
        dynamics: Sequence[Dynamic],
        intri: PinholeIntrinsic,
        time_by_br: float | Sequence[float],
        spline: So3Spline,
        so3_dn_to_br: np.ndarray,
        seed: int | None = None,
    ):
        super().__init__(len(dynamics), seed=seed)
        self.dynamics = list(dynamics)
        self.intri = intri
        self.spline = spline
        self.so3_dn_to_br = np.asarray(so3_dn_to_br, dtype=np.float64)

        n = len(self.dynamics)
        times = np.broadcast_to(np.asarray(time_by_br, dtype=np.float64), (n,))
        R_br_to_dn = quat_to_matrix(self.so3_dn_to_br).T

        self._a = np.zeros((n, 2, 3), dtype=np.float64)
        self._b = np.zeros((n, 2), dtype=np.float64)
        for i, (pixel, vel, depth) in enumerate(self.dynamics):
            omega_dn = R_br_to_dn @ spline.angular_velocity(float(times[i]))
            a_mat, b_mat = sub_mats(intri.fx, intri.fy, intri.cx, intri.cy, np.asarray(pixel, np.float64))
            self._a[i] = a_mat / float(depth)
            self._b[i] = np.asarray(vel, dtype=np.float64) - b_mat @ omega_dn

    def compute_model(self, indices: np.ndarray) -> np.ndarray | None:
        idx = np.asarray(indices)
        A = self._a[idx].reshape(-1, 3)
        b = self._b[idx].reshape(-1)
        v, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
        if rank < 3 or not np.all(np.isfinite(v)):
            return None
        return v

    def distances(self, model: np.ndarray, indices: np.ndarray) -> np.ndarray:
        idx = np.asarray(indices)
        pred = self._a[idx] @ model
        return np.linalg.norm(pred - self._b[idx], axis=1)


def propose_velocity(
    dynamics: Sequence[Dynamic],
    intri: PinholeIntrinsic,
    time_by_br: float | Sequence[float],
    spline: So3Spline,
    so3_dn_to_br: np.ndarray,
    *,
    ransac_thresh: float = 10.0,
    ransac_prob: float = 0.99,
    max_iterations: int = 200,
    min_inlier_ratio: float = 0.5,
    seed: int | None = None,
) -> Proposal:
    """
    Robust linear velocity of the depth sensor for one frame.

    Args:
        dynamics: (pixel, pixel velocity, depth) per tracked point.
        time_by_br: body-clock time of the frame, or one time per point.
        ransac_thresh: inlier threshold on the flow residual (pixels / second).
        min_inlier_ratio: minimal inlier fraction to accept the estimate.

    Points whose depth is not above MIN_DEPTH are dropped before sampling.

    Returns:
        Proposal named "velocity_sac"; model is the (3,) velocity.
        If failed, valid=False and model is zero.
    """
    zero = np.zeros(3, dtype=np.float64)
    ev = Evidence(num_inliers=0, inlier_ratio=0.0, residual_median=None)

    keep = [i for i, d in enumerate(dynamics) if float(d[2]) > MIN_DEPTH]
    dynamics = [dynamics[i] for i in keep]
    if np.ndim(time_by_br) > 0:
        time_by_br = [time_by_br[i] for i in keep]

    n = len(dynamics)
    if n < VisualVelocitySacProblem.sample_size:
        return Proposal("velocity_sac", zero, ev, valid=False, reason=f"REJECT_VEL_TOO_FEW_POINTS:{n}")

    problem = VisualVelocitySacProblem(dynamics, intri, time_by_br, spline, so3_dn_to_br, seed=seed)
    ransac = Ransac(problem, threshold=ransac_thresh, max_iterations=max_iterations, probability=ransac_prob)
    res = ransac.run()
    if res is None:
        return Proposal("velocity_sac", zero, ev, valid=False, reason="REJECT_VEL_SAC_FAILED")

    ev.num_inliers = res.num_inliers
    ev.inlier_ratio = res.num_inliers / float(n)
    if res.num_inliers < problem.sample_size or ev.inlier_ratio < min_inlier_ratio:
        return Proposal("velocity_sac", zero, ev, valid=False,
                        reason=f"REJECT_VEL_TOO_FEW_INLIERS:{res.num_inliers}")

    v = problem.optimize_model(res.inliers, res.model)
    if v is None:
        return Proposal("velocity_sac", zero, ev, valid=False, reason="REJECT_VEL_REFINE_FAILED")

    ev.residual_median = float(np.median(problem.distances(v, res.inliers)))
    return Proposal("velocity_sac", v, ev, valid=True, reason="VEL_OK")


def visual_velocity_estimation_ransac(
    dynamics: Sequence[Dynamic],
    intri: PinholeIntrinsic,
    time_by_br: float,
    spline: So3Spline,
    so3_dn_to_br: np.ndarray,
    **kwargs,
) -> np.ndarray | None:
    prop = propose_velocity(dynamics, intri, time_by_br, spline, so3_dn_to_br, **kwargs)
    return prop.model if prop.valid else None


def propose_velocity_corr(
    corrs: Sequence[OpticalFlowCorr],
    readout: float,
    intri: PinholeIntrinsic,
    time_offset: float,
    spline: So3Spline,
    so3_dn_to_br: np.ndarray,
    **kwargs,
) -> Proposal:
    """
    propose_velocity from flow correspondences.

    Each point is looked up at its own rolling-shutter corrected time
    mid_point_time(readout) + time_offset. Correspondences without a valid
    depth are left out.
    """
    usable = [c for c in corrs if c.has_valid_depth()]
    dynamics = [(c.mid_point(), c.mid_point_vel(readout), c.depth) for c in usable]
    times = [c.mid_point_time(readout) + time_offset for c in usable]
    return propose_velocity(dynamics, intri, times, spline, so3_dn_to_br, **kwargs)


def visual_velocity_estimation_ransac_corr(
    corrs: Sequence[OpticalFlowCorr],
    readout: float,
    intri: PinholeIntrinsic,
    time_offset: float,
    spline: So3Spline,
    so3_dn_to_br: np.ndarray,
    **kwargs,
) -> np.ndarray | None:
    prop = propose_velocity_corr(corrs, readout, intri, time_offset, spline, so3_dn_to_br, **kwargs)
    return prop.model if prop.valid else None
