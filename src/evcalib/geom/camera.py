# src/evcalib/geom/camera.py
from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np


@dataclass
class PinholeIntrinsic:
    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float
    # OpenCV radial-tangential layout: k1, k2, p1, p2, k3
    dist: np.ndarray = field(default_factory=lambda: np.zeros(5, dtype=np.float64))

    def __post_init__(self):
        self.dist = np.asarray(self.dist, dtype=np.float64).reshape(-1)

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.dist != 0.0))

    @classmethod
    def from_config(cls, cfg: dict) -> "PinholeIntrinsic":
        return cls(
            width=int(cfg["width"]),
            height=int(cfg["height"]),
            fx=float(cfg["fx"]),
            fy=float(cfg["fy"]),
            cx=float(cfg["cx"]),
            cy=float(cfg["cy"]),
            dist=np.asarray(cfg.get("dist", [0.0] * 5), dtype=np.float64),
        )

    def project(self, p_cam: np.ndarray) -> np.ndarray:
        """Distortion-free projection of (3,) or (N,3) camera-frame points."""
        p = np.atleast_2d(np.asarray(p_cam, dtype=np.float64))
        uv = np.stack([
            self.fx * p[:, 0] / p[:, 2] + self.cx,
            self.fy * p[:, 1] / p[:, 2] + self.cy,
        ], axis=1)
        return uv[0] if np.ndim(p_cam) == 1 else uv


class VisualUndistortionMap:
    """Precomputed OpenCV remap tables removing lens distortion of one camera."""

    def __init__(self, intri: PinholeIntrinsic):
        self.intri = intri
        size = (intri.width, intri.height)
        self.map1, self.map2 = cv2.initUndistortRectifyMap(
            intri.K, intri.dist, None, intri.K, size, cv2.CV_32FC1
        )

    def remove_distortion(self, img: np.ndarray, nearest: bool = False) -> np.ndarray:
        """
        Args:
            img: raster of shape (height, width[, C]).
            nearest: use nearest-neighbour sampling, for maps whose values must
                not be blended (raw timestamps, polarity labels).
        """
        interp = cv2.INTER_NEAREST if nearest else cv2.INTER_LINEAR
        return cv2.remap(img, self.map1, self.map2, interpolation=interp,
                         borderMode=cv2.BORDER_CONSTANT, borderValue=0)

    def undistort_point(self, pt: np.ndarray) -> np.ndarray:
        """Distorted pixel -> undistorted pixel (same intrinsics)."""
        src = np.asarray(pt, dtype=np.float64).reshape(-1, 1, 2)
        dst = cv2.undistortPoints(src, self.intri.K, self.intri.dist, P=self.intri.K)
        out = dst.reshape(-1, 2)
        return out[0] if np.asarray(pt).ndim == 1 else out


def sub_a_mat(fx, fy, up, vp) -> np.ndarray:
    """Pixel-velocity Jacobian w.r.t. camera linear velocity (scaled by inverse depth)."""
    return np.array([
        [-fx, 0.0, up],
        [0.0, -fy, vp],
    ])


def sub_b_mat(fx, fy, up, vp) -> np.ndarray:
    """Pixel-velocity Jacobian w.r.t. camera angular velocity."""
    return np.array([
        [up * vp / fy, -fx - up * up / fx, fx * vp / fy],
        [fy + vp * vp / fy, -up * vp / fx, -fy * up / fx],
    ])


def sub_mats(fx, fy, cx, cy, feat: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    up = feat[0] - cx
    vp = feat[1] - cy
    return sub_a_mat(fx, fy, up, vp), sub_b_mat(fx, fy, up, vp)
