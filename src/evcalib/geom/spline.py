# src/evcalib/geom/spline.py
from __future__ import annotations

from dataclasses import dataclass
from math import comb, factorial

import numpy as np

from .so3 import exp, log, quat_to_matrix


class OutOfSplineRangeError(ValueError):
    """A spline was queried outside of [min_time, max_time)."""


@dataclass(frozen=True)
class SplineMeta:
    """
    Uniform knot window of a B-spline.

    A window of `num_knots` control points of order `order` is valid on
    [start_time, start_time + (num_knots - order + 1) * dt).
    """
    start_time: float
    dt: float
    num_knots: int
    order: int = 4

    @property
    def min_time(self) -> float:
        return self.start_time

    @property
    def max_time(self) -> float:
        return self.start_time + (self.num_knots - self.order + 1) * self.dt

    @property
    def dt_inv(self) -> float:
        return 1.0 / self.dt

    def time_in_range(self, t: float) -> bool:
        return self.min_time <= t < self.max_time

    def compute_spline_index(self, t: float) -> tuple[int, float]:
        """
        Returns:
          index: first control point of the segment containing t
          u: normalized time inside the segment, in [0, 1)
        """
        if not self.time_in_range(t):
            raise OutOfSplineRangeError(
                f"time {t:.9f} outside spline range [{self.min_time:.9f}, {self.max_time:.9f})"
            )
        s = (t - self.start_time) / self.dt
        index = int(np.floor(s))
        # floating point may push s onto the last (exclusive) boundary
        index = min(index, self.num_knots - self.order)
        return index, s - index


def blending_matrix(order: int, cumulative: bool = False) -> np.ndarray:
    """
    Uniform B-spline blending matrix M, weights = M @ [1, u, ..., u^(k-1)].

    Row s holds the polynomial coefficients of control point s. The
    cumulative variant sums rows s..k-1, as used by Lie-group splines.
    """
    k = order
    M = np.zeros((k, k), dtype=np.float64)
    for s in range(k):
        for n in range(k):
            total = sum(
                (-1) ** (l - s) * comb(k, l - s) * (k - 1 - l) ** (k - 1 - n)
                for l in range(s, k)
            )
            M[s, n] = comb(k - 1, n) * total / factorial(k - 1)
    if cumulative:
        M = np.flip(np.cumsum(np.flip(M, axis=0), axis=0), axis=0)
    return M


def base_coefficients(order: int, u: float, derivative: int = 0) -> np.ndarray:
    p = np.zeros(order, dtype=np.float64)
    for n in range(derivative, order):
        p[n] = factorial(n) / factorial(n - derivative) * u ** (n - derivative)
    return p


def evaluate_rd(knots: np.ndarray, u: float, dt_inv: float, derivative: int = 0) -> np.ndarray:
    """Value (or time derivative) of a vector spline segment given its `order` knots."""
    knots = np.asarray(knots, dtype=np.float64)
    order = knots.shape[0]
    w = blending_matrix(order) @ base_coefficients(order, u, derivative)
    return (dt_inv ** derivative) * (w @ knots)


def evaluate_lie(knots: list[np.ndarray], u: float, dt_inv: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Rotation and body-frame angular velocity of a cumulative SO3 spline segment.

    Args:
        knots: `order` rotation matrices (3,3)
        u: normalized segment time
        dt_inv: inverse knot spacing

    Returns:
        R: (3,3) rotation at u
        omega: (3,) angular velocity expressed in the rotated (body) frame
    """
    order = len(knots)
    Mc = blending_matrix(order, cumulative=True)
    lam = Mc @ base_coefficients(order, u, 0)
    dlam = dt_inv * (Mc @ base_coefficients(order, u, 1))

    R = np.array(knots[0], dtype=np.float64)
    omega = np.zeros(3, dtype=np.float64)
    for j in range(1, order):
        d = log(knots[j - 1].T @ knots[j])
        A = exp(lam[j] * d)
        R = R @ A
        omega = A.T @ omega + dlam[j] * d
    return R, omega


class So3Spline:
    """Uniform cumulative B-spline on SO3; knots are [x, y, z, w] quaternions."""

    def __init__(self, start_time: float, dt: float, knots: np.ndarray, order: int = 4):
        knots = np.asarray(knots, dtype=np.float64).reshape(-1, 4)
        if knots.shape[0] < order:
            raise ValueError(f"So3Spline needs at least {order} knots, got {knots.shape[0]}")
        self.knots = knots / np.linalg.norm(knots, axis=1, keepdims=True)
        self._mats = [quat_to_matrix(q) for q in self.knots]
        self.meta = SplineMeta(float(start_time), float(dt), knots.shape[0], order)

    @property
    def min_time(self) -> float:
        return self.meta.min_time

    @property
    def max_time(self) -> float:
        return self.meta.max_time

    def evaluate_with_velocity(self, t: float) -> tuple[np.ndarray, np.ndarray]:
        i, u = self.meta.compute_spline_index(t)
        return evaluate_lie(self._mats[i:i + self.meta.order], u, self.meta.dt_inv)

    def evaluate(self, t: float) -> np.ndarray:
        return self.evaluate_with_velocity(t)[0]

    def angular_velocity(self, t: float) -> np.ndarray:
        """Angular velocity in the body frame at time t."""
        return self.evaluate_with_velocity(t)[1]

    def meta_for_range(self, t_min: float, t_max: float) -> SplineMeta:
        return _meta_for_range(self.meta, t_min, t_max)

    def knots_for(self, meta: SplineMeta) -> np.ndarray:
        offset = _knot_offset(self.meta, meta)
        return self.knots[offset:offset + meta.num_knots].copy()


class RdSpline:
    """Uniform B-spline on R^d."""

    def __init__(self, start_time: float, dt: float, knots: np.ndarray, order: int = 4):
        knots = np.asarray(knots, dtype=np.float64)
        if knots.ndim == 1:
            knots = knots.reshape(-1, 1)
        if knots.shape[0] < order:
            raise ValueError(f"RdSpline needs at least {order} knots, got {knots.shape[0]}")
        self.knots = knots
        self.meta = SplineMeta(float(start_time), float(dt), knots.shape[0], order)

    @property
    def min_time(self) -> float:
        return self.meta.min_time

    @property
    def max_time(self) -> float:
        return self.meta.max_time

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:
        i, u = self.meta.compute_spline_index(t)
        return evaluate_rd(self.knots[i:i + self.meta.order], u, self.meta.dt_inv, derivative)

    def meta_for_range(self, t_min: float, t_max: float) -> SplineMeta:
        return _meta_for_range(self.meta, t_min, t_max)

    def knots_for(self, meta: SplineMeta) -> np.ndarray:
        offset = _knot_offset(self.meta, meta)
        return self.knots[offset:offset + meta.num_knots].copy()


def _meta_for_range(meta: SplineMeta, t_min: float, t_max: float) -> SplineMeta:
    i0, _ = meta.compute_spline_index(t_min)
    i1, _ = meta.compute_spline_index(t_max)
    return SplineMeta(
        start_time=meta.start_time + i0 * meta.dt,
        dt=meta.dt,
        num_knots=i1 - i0 + meta.order,
        order=meta.order,
    )


def _knot_offset(full: SplineMeta, sub: SplineMeta) -> int:
    offset = int(round((sub.start_time - full.start_time) / full.dt))
    if offset < 0 or offset + sub.num_knots > full.num_knots or sub.order != full.order:
        raise ValueError("spline meta is not a window of this spline")
    return offset
