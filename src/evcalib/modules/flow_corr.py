# src/evcalib/modules/flow_corr.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from ..system.state import CameraFrame

# depths at or below this carry no usable inverse depth
MIN_DEPTH = 1e-3
INVALID_INV_DEPTH = -1.0


def lagrange_triple_mid_fod(t: Sequence[float], x: Sequence[float]) -> float:
    """First-order derivative at t[1] of the quadratic through three samples."""
    t0, t1, t2 = t
    x0, x1, x2 = x
    return (
        x0 * (t1 - t2) / ((t0 - t1) * (t0 - t2))
        + x1 * (2.0 * t1 - t0 - t2) / ((t1 - t0) * (t1 - t2))
        + x2 * (t1 - t0) / ((t2 - t0) * (t2 - t1))
    )


@dataclass(frozen=True)
class OpticalFlowCorr:
    """
    One tracked feature over three consecutive frames. Sample MID is the
    anchor; `rd_factor_ary[i]` is the rolling-shutter row factor
    (row / image height - rs_exp_factor) of sample i.
    """
    MID = 1

    time_ary: tuple[float, float, float]
    x_trace_ary: tuple[float, float, float]
    y_trace_ary: tuple[float, float, float]
    rd_factor_ary: tuple[float, float, float]
    depth: float
    inv_depth: float
    frame: CameraFrame | None = field(default=None, compare=False, repr=False)
    with_depth_observability: bool = False
    weight: float = 1.0

    @classmethod
    def create(
        cls,
        time_ary: Sequence[float],
        x_trace_ary: Sequence[float],
        y_trace_ary: Sequence[float],
        depth: float,
        frame: CameraFrame,
        rs_exp_factor: float,
        *,
        with_depth_observability: bool = False,
        weight: float = 1.0,
    ) -> "OpticalFlowCorr":
        if not (len(time_ary) == len(x_trace_ary) == len(y_trace_ary) == 3):
            raise ValueError("OpticalFlowCorr needs exactly three samples")
        height = float(frame.height)
        rd = tuple(float(y) / height - rs_exp_factor for y in y_trace_ary)
        depth = float(depth)
        return cls(
            time_ary=tuple(float(v) for v in time_ary),
            x_trace_ary=tuple(float(v) for v in x_trace_ary),
            y_trace_ary=tuple(float(v) for v in y_trace_ary),
            rd_factor_ary=rd,
            depth=depth,
            inv_depth=1.0 / depth if depth > MIN_DEPTH else INVALID_INV_DEPTH,
            frame=frame,
            with_depth_observability=with_depth_observability,
            weight=weight,
        )

    def has_valid_depth(self) -> bool:
        return self.inv_depth > 0.0

    def mid_point(self) -> np.ndarray:
        return np.array([self.x_trace_ary[self.MID], self.y_trace_ary[self.MID]])

    def mid_point_time(self, readout: float) -> float:
        return self.time_ary[self.MID] + self.rd_factor_ary[self.MID] * readout

    def mid_readout_factor(self) -> float:
        return self.rd_factor_ary[self.MID]

    def mid_point_vel(self, readout: float) -> np.ndarray:
        """Pixel velocity of the anchor sample, sample times readout-corrected."""
        times = [t + rd * readout for t, rd in zip(self.time_ary, self.rd_factor_ary)]
        return np.array([
            lagrange_triple_mid_fod(times, self.x_trace_ary),
            lagrange_triple_mid_fod(times, self.y_trace_ary),
        ])
