from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from ..geom.spline import RdSpline, So3Spline, SplineMeta
from ..geom.so3 import identity_quat

if TYPE_CHECKING:
    from ..modules.event_surface import ActiveEventSurface
    from ..modules.norm_flow import EventNormFlow, NormFlowPack


@dataclass
class CameraFrame:
    timestamp: float
    image: np.ndarray | None = None
    id: int = 0
    image_height: int | None = None  # used when no image is kept

    @property
    def height(self) -> int:
        if self.image is not None:
            return int(self.image.shape[0])
        if self.image_height is None:
            raise ValueError("CameraFrame has neither an image nor an image_height")
        return int(self.image_height)


@dataclass
class CalibParams:
    """
    Calibration state read by FlowMotionFactor. Dn is the depth/event sensor,
    Br the reference body whose motion the splines describe.
    """
    so3_spline: So3Spline
    scale_spline: RdSpline
    so3_dn_to_br: np.ndarray = field(default_factory=identity_quat)   # [x, y, z, w]
    pos_dn_in_br: np.ndarray = field(default_factory=lambda: np.zeros(3))
    time_offset: float = 0.0      # TO_DnToBr, t_Br = t_Dn + time_offset
    readout_time: float = 0.0
    fx: float = 1.0
    fy: float = 1.0
    cx: float = 0.0
    cy: float = 0.0
    alpha: float = 1.0
    beta: float = 0.0

    def factor_parameter_blocks(
        self,
        so3_meta: SplineMeta,
        scale_meta: SplineMeta,
        depth_info: float,
    ) -> list[np.ndarray]:
        """
        Blocks in FlowMotionFactor order:
        [SO3 ... | LIN_SCALE ... | SO3_DnToBr | POS_DnInBr | TO_DnToBr |
         READOUT_TIME | FX | FY | CX | CY | ALPHA | BETA | DEPTH_INFO]
        """
        blocks = [q.copy() for q in self.so3_spline.knots_for(so3_meta)]
        blocks += [p.copy() for p in self.scale_spline.knots_for(scale_meta)]
        blocks.append(np.asarray(self.so3_dn_to_br, dtype=np.float64).copy())
        blocks.append(np.asarray(self.pos_dn_in_br, dtype=np.float64).copy())
        for v in (self.time_offset, self.readout_time, self.fx, self.fy, self.cx, self.cy,
                  self.alpha, self.beta, depth_info):
            blocks.append(np.array([float(v)]))
        return blocks


@dataclass
class SystemState:
    surface: ActiveEventSurface
    extractor: EventNormFlow
    frame_idx: int = 0
    last_pack: NormFlowPack | None = None
    cache: dict = field(default_factory=dict)
