# src/evcalib/modules/flow_factor.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np

from .flow_corr import OpticalFlowCorr
from ..geom.camera import sub_mats
from ..geom.so3 import hat, quat_to_matrix
from ..geom.spline import SplineMeta, evaluate_lie, evaluate_rd
from ..system.state import CalibParams

SO3_BLOCK_SIZE = 4
POS_BLOCK_SIZE = 3
# SO3_DnToBr, POS_DnInBr, TO_DnToBr, READOUT_TIME, FX, FY, CX, CY, ALPHA, BETA, DEPTH_INFO
TAIL_BLOCK_SIZES = (4, 3, 1, 1, 1, 1, 1, 1, 1, 1, 1)


class DepthModel(Enum):
    INVERSE_DEPTH = "inverse_depth"
    DEPTH = "depth"


@dataclass(frozen=True)
class FlowFactorConfig:
    # which derivative of the scale spline is the linear velocity:
    # 1 for a position spline, 0 for a velocity spline
    time_deriv: int = 1
    depth_model: DepthModel = DepthModel.INVERSE_DEPTH

    def __post_init__(self):
        if self.time_deriv not in (0, 1, 2):
            raise ValueError(f"time_deriv must be 0, 1 or 2, got {self.time_deriv}")
        if not isinstance(self.depth_model, DepthModel):
            object.__setattr__(self, "depth_model", DepthModel(self.depth_model))


def _inv_depth_scale(alpha, beta, depth_info):
    return depth_info / (alpha + beta * depth_info)


def _depth_scale(alpha, beta, depth_info):
    return 1.0 / (alpha * depth_info + beta)


class FlowMotionFactor:
    """
    Residual between the pixel velocity predicted from the spline motion and
    the one observed in an optical-flow correspondence.

    Parameter blocks, in this fixed order:
      [ SO3 | ... | SO3 | LIN_SCALE | ... | LIN_SCALE | SO3_DnToBr | POS_DnInBr |
        TO_DnToBr | READOUT_TIME | FX | FY | CX | CY | ALPHA | BETA | DEPTH_INFO ]
    SO3 blocks are [x, y, z, w] quaternions. Access is by index only.
    """

    def __init__(
        self,
        so3_meta: SplineMeta,
        scale_meta: SplineMeta,
        corr: OpticalFlowCorr,
        weight: float | None = None,
        config: FlowFactorConfig = FlowFactorConfig(),
    ):
        if config.depth_model is DepthModel.INVERSE_DEPTH and not corr.has_valid_depth():
            raise ValueError("correspondence has no valid inverse depth")
        self.so3_meta = so3_meta
        self.scale_meta = scale_meta
        self.corr = corr
        self.weight = corr.weight if weight is None else float(weight)
        self.config = config
        self._scale_fn = (
            _inv_depth_scale if config.depth_model is DepthModel.INVERSE_DEPTH else _depth_scale
        )

        self.so3_dn_to_br_offset = so3_meta.num_knots + scale_meta.num_knots
        self.pos_dn_in_br_offset = self.so3_dn_to_br_offset + 1
        self.to_dn_to_br_offset = self.pos_dn_in_br_offset + 1
        self.readout_time_offset = self.to_dn_to_br_offset + 1
        self.fx_offset = self.readout_time_offset + 1
        self.fy_offset = self.fx_offset + 1
        self.cx_offset = self.fy_offset + 1
        self.cy_offset = self.cx_offset + 1
        self.alpha_offset = self.cy_offset + 1
        self.beta_offset = self.alpha_offset + 1
        self.depth_info_offset = self.beta_offset + 1

    @property
    def num_blocks(self) -> int:
        return self.depth_info_offset + 1

    def block_sizes(self) -> list[int]:
        return (
            [SO3_BLOCK_SIZE] * self.so3_meta.num_knots
            + [POS_BLOCK_SIZE] * self.scale_meta.num_knots
            + list(TAIL_BLOCK_SIZES)
        )

    def residual(self, blocks: Sequence[np.ndarray]) -> np.ndarray:
        if len(blocks) != self.num_blocks:
            raise ValueError(f"expected {self.num_blocks} parameter blocks, got {len(blocks)}")

        R_dn_to_br = quat_to_matrix(blocks[self.so3_dn_to_br_offset])
        pos_dn_in_br = np.asarray(blocks[self.pos_dn_in_br_offset], dtype=np.float64)
        R_br_to_dn = R_dn_to_br.T

        to_dn_to_br = float(blocks[self.to_dn_to_br_offset][0])
        readout = float(blocks[self.readout_time_offset][0])
        fx = float(blocks[self.fx_offset][0])
        fy = float(blocks[self.fy_offset][0])
        cx = float(blocks[self.cx_offset][0])
        cy = float(blocks[self.cy_offset][0])
        alpha = float(blocks[self.alpha_offset][0])
        beta = float(blocks[self.beta_offset][0])
        depth_info = float(blocks[self.depth_info_offset][0])

        time_by_br = self.corr.mid_point_time(readout) + to_dn_to_br

        i_so3, u_so3 = self.so3_meta.compute_spline_index(time_by_br)
        i_scale, u_scale = self.scale_meta.compute_spline_index(time_by_br)
        scale_offset = i_scale + self.so3_meta.num_knots

        order = self.so3_meta.order
        so3_knots = [quat_to_matrix(blocks[i_so3 + j]) for j in range(order)]
        R_br_to_br0, ang_vel_in_br = evaluate_lie(so3_knots, u_so3, self.so3_meta.dt_inv)

        ang_vel_in_br0 = R_br_to_br0 @ ang_vel_in_br
        ang_vel_in_dn = R_br_to_dn @ ang_vel_in_br

        scale_knots = np.stack([
            np.asarray(blocks[scale_offset + j], dtype=np.float64)
            for j in range(self.scale_meta.order)
        ])
        lin_vel_br_in_br0 = evaluate_rd(
            scale_knots, u_scale, self.scale_meta.dt_inv, self.config.time_deriv
        )

        # velocity of the Dn origin: body velocity plus the lever-arm term
        lin_vel_dn_in_br0 = -hat(R_br_to_br0 @ pos_dn_in_br) @ ang_vel_in_br0 + lin_vel_br_in_br0
        lin_vel_dn_in_dn = R_br_to_dn @ R_br_to_br0.T @ lin_vel_dn_in_br0

        a_mat, b_mat = sub_mats(fx, fy, cx, cy, self.corr.mid_point())
        scale = self._scale_fn(alpha, beta, depth_info)
        pred = scale * (a_mat @ lin_vel_dn_in_dn) + b_mat @ ang_vel_in_dn

        return self.weight * (pred - self.corr.mid_point_vel(readout))

    def __call__(self, blocks: Sequence[np.ndarray]) -> np.ndarray:
        return self.residual(blocks)

    def numeric_jacobians(self, blocks: Sequence[np.ndarray], eps: float = 1e-6) -> list[np.ndarray]:
        """
        Central-difference Jacobians, one (2, block size) matrix per block,
        in the ambient coordinates of each block.
        """
        base = [np.array(b, dtype=np.float64, copy=True).reshape(-1) for b in blocks]
        jacobians = []
        for bi, block in enumerate(base):
            J = np.zeros((2, block.shape[0]), dtype=np.float64)
            for k in range(block.shape[0]):
                h = eps * max(1.0, abs(block[k]))
                plus = [b.copy() for b in base]
                minus = [b.copy() for b in base]
                plus[bi][k] += h
                minus[bi][k] -= h
                J[:, k] = (self.residual(plus) - self.residual(minus)) / (2.0 * h)
            jacobians.append(J)
        return jacobians


def create_flow_factor(
    calib: CalibParams,
    corr: OpticalFlowCorr,
    weight: float | None = None,
    config: FlowFactorConfig = FlowFactorConfig(),
    *,
    pad: float | None = None,
) -> tuple[FlowMotionFactor, list[np.ndarray]] | None:
    """
    Cut spline windows around the correspondence time and build the factor
    together with its initial parameter blocks.

    The window covers `pad` seconds (one rotation knot spacing by default) on
    each side, clipped to the splines, so that perturbed time offsets and
    readouts stay inside it.

    Returns:
        (factor, blocks), or None if the correspondence has no usable depth
        for the chosen depth model.
    """
    if config.depth_model is DepthModel.INVERSE_DEPTH:
        if not corr.has_valid_depth():
            return None
        depth_info = corr.inv_depth
    else:
        if corr.depth <= 0.0:
            return None
        depth_info = corr.depth

    t = corr.mid_point_time(calib.readout_time) + calib.time_offset
    pad = calib.so3_spline.meta.dt if pad is None else float(pad)

    def _window(spline):
        spline.meta.compute_spline_index(t)
        lo = max(spline.min_time, t - pad)
        hi = min(np.nextafter(spline.max_time, -np.inf), t + pad)
        return spline.meta_for_range(lo, hi)

    so3_meta = _window(calib.so3_spline)
    scale_meta = _window(calib.scale_spline)
    factor = FlowMotionFactor(so3_meta, scale_meta, corr, weight, config)
    return factor, calib.factor_parameter_blocks(so3_meta, scale_meta, depth_info)
