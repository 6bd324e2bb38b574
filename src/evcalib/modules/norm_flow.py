# src/evcalib/modules/norm_flow.py
from __future__ import annotations

import os
from dataclasses import dataclass, field

import cv2
import numpy as np
import yaml

from .event_surface import ActiveEventSurface, NEGATIVE_COLOR, POSITIVE_COLOR
from .plane_sac import EventLocalPlaneSacProblem, centralization
from .sac import Ransac
from ..system.events import Event, EventBatch

# raw times below this are pixels that never fired
MIN_VALID_TIME = 1e-3

SEED_CLAIMED_COLOR = (0, 0, 255)
SEED_VERIFIED_COLOR = (0, 255, 0)
FLOW_LINE_COLOR = (0, 255, 0)

REJECT_REASONS = (
    "REJECT_NEIGHBOR_OCCUPIED",
    "REJECT_TOO_FEW_SAMPLES",
    "REJECT_SAC_FAILED",
    "REJECT_LOW_INLIER_RATIO",
    "REJECT_REFIT_FAILED",
    "REJECT_DEGENERATE_FLOW",
)


@dataclass(frozen=True)
class NormFlow:
    timestamp: float
    pos: tuple[int, int]   # (x, y)
    flow: np.ndarray       # (2,) pixels / second, along the local time gradient


@dataclass(frozen=True)
class NormFlowPack:
    raw_time_surface: np.ndarray   # (H,W) float64
    polarity_map: np.ndarray       # (H,W) uint8
    inliers_occupy: np.ndarray     # (H,W) uint8, 255 where a pixel supported a plane
    flows: list[NormFlow]
    timestamp: float
    nf_seeds_img: np.ndarray       # BGR, seeds drawn on the time surface
    nfs_img: np.ndarray            # BGR, flow lines drawn on the time surface
    stats: dict = field(default_factory=dict)

    def _events_where(self, keep: np.ndarray) -> EventBatch | None:
        ys, xs = np.nonzero(keep)
        if ys.size == 0:
            return None
        events = [
            Event(float(self.raw_time_surface[y, x]), int(x), int(y), bool(self.polarity_map[y, x]))
            for y, x in zip(ys, xs)
        ]
        return EventBatch.create(events)

    def active_events(self, dt: float) -> EventBatch | None:
        """Pixels that fired within `dt` of the pack timestamp, as events (raster order)."""
        et = self.raw_time_surface
        keep = (et >= MIN_VALID_TIME) & (self.timestamp - et <= dt)
        return self._events_where(keep)

    def norm_flow_events(self) -> EventBatch | None:
        """Timestamped pixels that are inliers of some fitted plane."""
        keep = (self.raw_time_surface >= MIN_VALID_TIME) & (self.inliers_occupy != 0)
        return self._events_where(keep)

    def visualization(self, dt: float) -> np.ndarray:
        """2x2 mosaic: seeds | flows over active events | norm-flow events."""
        h, w = self.nf_seeds_img.shape[:2]

        def _draw(batch: EventBatch | None) -> np.ndarray:
            mat = np.zeros((h, w, 3), np.uint8)
            if batch is not None:
                for e in batch:
                    mat[e.y, e.x] = POSITIVE_COLOR if e.polarity else NEGATIVE_COLOR
            return mat

        top = cv2.hconcat([self.nf_seeds_img, self.nfs_img])
        bottom = cv2.hconcat([_draw(self.active_events(dt)), _draw(self.norm_flow_events())])
        return cv2.vconcat([top, bottom])


class PlaneDumpSession:
    """
    Writes fitted local planes as `event_local_planes<n>.yaml` under
    `debug_dir`. Nothing is written if the directory does not exist.
    """

    def __init__(self, debug_dir: str):
        self.debug_dir = debug_dir
        self.count = 0

    @property
    def enabled(self) -> bool:
        return os.path.isdir(self.debug_dir)

    def dump(self, planes: list[tuple[np.ndarray, np.ndarray]]) -> str | None:
        if not self.enabled:
            return None
        path = os.path.join(self.debug_dir, f"event_local_planes{self.count}.yaml")
        self.count += 1
        doc = {
            "event_local_planes": [
                {
                    "abc": [float(v) for v in abc],
                    "inliers": [[float(v) for v in row] for row in inliers],
                }
                for abc, inliers in planes
            ]
        }
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(doc, f, sort_keys=False)
        return path


class EventNormFlow:
    """Normal flow from local plane fits on the time surface of an ActiveEventSurface."""

    def __init__(
        self,
        surface: ActiveEventSurface,
        *,
        undistort: bool = False,
        max_flow_norm: float = 4e3,
        recent_window_factor: float = 1.5,
        seed: int | None = None,
        plane_dump: PlaneDumpSession | None = None,
    ):
        self.surface = surface
        self.undistort = undistort
        self.max_flow_norm = float(max_flow_norm)
        self.recent_window_factor = float(recent_window_factor)
        self.plane_dump = plane_dump
        self._rng = np.random.default_rng(seed)

    def extract_norm_flows(
        self,
        decay_sec: float,
        win_size: int,
        neighbor_dist: int,
        good_ratio_thd: float,
        time_dist_event_to_plane_thd: float,
        ransac_max_iter: int,
    ) -> NormFlowPack:
        """
        Fit a local plane around every recently fired pixel and turn its slope
        into a normal-flow vector.

        Args:
            decay_sec: time-surface decay; pixels older than
                recent_window_factor * decay_sec are ignored.
            win_size: half size of the square fitting window.
            neighbor_dist: a pixel is skipped if an already claimed seed lies
                within this Chebyshev distance.
            good_ratio_thd: minimal fraction of the window that must hold
                recent events, and minimal RANSAC inlier ratio.
            time_dist_event_to_plane_thd: RANSAC threshold along t (seconds).
            ransac_max_iter: RANSAC iteration cap.

        Returns:
            NormFlowPack with the accepted flows, masks and debug rasters.
        """
        rts_mat, p_mat = self.surface.raw_time_surface(True, self.undistort)
        ts_img = self.surface.time_surface(True, self.undistort, 0, decay_sec)
        time_last = self.surface.time_latest

        lower = max(MIN_VALID_TIME, time_last - self.recent_window_factor * decay_sec)
        mask = (rts_mat >= lower) & (rts_mat <= time_last)

        ts_img = cv2.cvtColor(ts_img, cv2.COLOR_GRAY2BGR)
        ts_img_nfs = ts_img.copy()

        ws = int(win_size)
        nd = int(neighbor_dist)
        margin = max(ws, nd)
        win_sample_count = (2 * ws + 1) * (2 * ws + 1)
        win_sample_count_thd = int(win_sample_count * good_ratio_thd)
        rows, cols = mask.shape

        occupy = np.zeros((rows, cols), np.uint8)
        inliers_occupy = np.zeros((rows, cols), np.uint8)
        nfs: list[NormFlow] = []
        planes: list[tuple[np.ndarray, np.ndarray]] = []
        stats = {"num_candidates": 0, "num_seeds": 0, "num_flows": 0}
        stats.update({r: 0 for r in REJECT_REASONS})

        # row-major: a claimed seed shadows later pixels in its neighbourhood
        for y in range(margin, rows - margin):
            for x in range(margin, cols - margin):
                if not mask[y, x]:
                    continue
                stats["num_candidates"] += 1

                if occupy[y - nd:y + nd + 1, x - nd:x + nd + 1].any():
                    stats["REJECT_NEIGHBOR_OCCUPIED"] += 1
                    continue

                win_mask = mask[y - ws:y + ws + 1, x - ws:x + ws + 1]
                dys, dxs = np.nonzero(win_mask)
                if dys.size < win_sample_count_thd:
                    stats["REJECT_TOO_FEW_SAMPLES"] += 1
                    continue
                ys = dys + (y - ws)
                xs = dxs + (x - ws)
                in_range = np.column_stack([xs, ys, rts_mat[ys, xs]]).astype(np.float64)
                time_cen = float(rts_mat[y, x])

                ts_img[y, x] = SEED_CLAIMED_COLOR
                occupy[y, x] = 255
                stats["num_seeds"] += 1

                centered = centralization(in_range)
                problem = EventLocalPlaneSacProblem(centered, seed=self._rng.integers(1 << 31))
                ransac = Ransac(problem, threshold=time_dist_event_to_plane_thd,
                                max_iterations=ransac_max_iter)
                res = ransac.run()
                if res is None:
                    stats["REJECT_SAC_FAILED"] += 1
                    continue
                if res.num_inliers / float(in_range.shape[0]) < good_ratio_thd:
                    stats["REJECT_LOW_INLIER_RATIO"] += 1
                    continue

                abc = problem.optimize_model(res.inliers, res.model)
                if abc is None:
                    stats["REJECT_REFIT_FAILED"] += 1
                    continue

                nf = flow_from_plane(abc)
                if float(nf @ nf) > self.max_flow_norm * self.max_flow_norm:
                    # plane almost orthogonal to the t axis
                    stats["REJECT_DEGENERATE_FLOW"] += 1
                    continue

                nfs.append(NormFlow(time_cen, (x, y), nf))
                inliers_occupy[ys[res.inliers], xs[res.inliers]] = 255
                stats["num_flows"] += 1

                ts_img[y, x] = SEED_VERIFIED_COLOR
                tip = (int(round(x + 0.01 * nf[0])), int(round(y + 0.01 * nf[1])))
                cv2.line(ts_img_nfs, tip, (x, y), FLOW_LINE_COLOR, 1)

                if self.plane_dump is not None:
                    planes.append((abc, centered[res.inliers]))

        if self.plane_dump is not None and planes:
            self.plane_dump.dump(planes)

        return NormFlowPack(
            raw_time_surface=rts_mat,
            polarity_map=p_mat,
            inliers_occupy=inliers_occupy,
            flows=nfs,
            timestamp=time_last,
            nf_seeds_img=ts_img,
            nfs_img=ts_img_nfs,
            stats=stats,
        )


def flow_from_plane(abc: np.ndarray) -> np.ndarray:
    """Normal flow of the plane t = -(A x + B y + C): grad(t) / |grad(t)|^2."""
    dtdx, dtdy = -abc[0], -abc[1]
    g2 = dtdx * dtdx + dtdy * dtdy
    if g2 <= 0.0:
        return np.array([np.inf, np.inf])
    return np.array([dtdx, dtdy]) / g2
