# src/evcalib/system/runner.py
from __future__ import annotations

from .events import EventBatch
from .proposal import Proposal
from .state import CalibParams, SystemState
from .telemetry import Telemetry
from ..geom.camera import PinholeIntrinsic
from ..modules.event_surface import ActiveEventSurface
from ..modules.flow_corr import OpticalFlowCorr
from ..modules.norm_flow import EventNormFlow, NormFlowPack, PlaneDumpSession
from ..modules.velocity_sac import propose_velocity_corr


def init_state(cfg: dict, *, seed: int | None = None) -> SystemState:
    """Build the event surface and the normal-flow extractor from a config dict."""
    intri = PinholeIntrinsic.from_config(cfg["camera"])
    surface_cfg = cfg.get("surface", {})
    nf_cfg = cfg.get("norm_flow", {})

    surface = ActiveEventSurface(intri, filter_thd=float(surface_cfg.get("filter_thd", 0.01)))

    debug_dir = cfg.get("output", {}).get("debug_dir")
    extractor = EventNormFlow(
        surface,
        undistort=bool(nf_cfg.get("undistort", False)),
        max_flow_norm=float(nf_cfg.get("max_flow_norm", 4e3)),
        recent_window_factor=float(nf_cfg.get("recent_window_factor", 1.5)),
        seed=seed if seed is not None else nf_cfg.get("seed"),
        plane_dump=PlaneDumpSession(debug_dir) if debug_dir else None,
    )
    return SystemState(surface=surface, extractor=extractor)


def step(state: SystemState, batch: EventBatch, cfg: dict, telemetry: Telemetry) -> NormFlowPack:
    """
    One window: ingest the batch, then extract normal flows.

    Assumptions:
      - batches arrive in time order, events inside a batch are time ordered
      - state was built by init_state (or equivalent)
    """
    if batch is None or len(batch) == 0:
        raise ValueError("runner.step requires a non-empty event batch.")

    surface_cfg = cfg.get("surface", {})
    nf_cfg = cfg.get("norm_flow", {})

    # --- 1) Surface update
    state.surface.ingest(batch, draw_event_mat=bool(surface_cfg.get("draw_event_mat", True)))

    # --- 2) Normal flow
    pack = state.extractor.extract_norm_flows(
        decay_sec=float(nf_cfg.get("decay_sec", 0.02)),
        win_size=int(nf_cfg.get("win_size", 2)),
        neighbor_dist=int(nf_cfg.get("neighbor_dist", 1)),
        good_ratio_thd=float(nf_cfg.get("good_ratio_thd", 0.7)),
        time_dist_event_to_plane_thd=float(nf_cfg.get("time_dist_event_to_plane_thd", 2e-3)),
        ransac_max_iter=int(nf_cfg.get("ransac_max_iter", 20)),
    )
    state.last_pack = pack

    # --- 3) Telemetry
    telemetry.log_frame(state.frame_idx, {
        "ts": float(batch.timestamp),
        "num_events": len(batch),
        "norm_flow": {k: int(v) for k, v in pack.stats.items()},
        "reason": "NORM_FLOW_OK" if pack.flows else "NORM_FLOW_EMPTY",
    })
    state.frame_idx += 1
    return pack


def velocity_step(
    corrs: list[OpticalFlowCorr],
    calib: CalibParams,
    intri: PinholeIntrinsic,
    cfg: dict,
    telemetry: Telemetry,
    frame_idx: int,
) -> Proposal:
    """Robust linear velocity of one RGBD frame from its flow correspondences."""
    vel_cfg = cfg.get("velocity", {})
    prop = propose_velocity_corr(
        corrs,
        calib.readout_time,
        intri,
        calib.time_offset,
        calib.so3_spline,
        calib.so3_dn_to_br,
        ransac_thresh=float(vel_cfg.get("ransac_thresh", 10.0)),
        ransac_prob=float(vel_cfg.get("ransac_prob", 0.99)),
        max_iterations=int(vel_cfg.get("max_iterations", 200)),
        min_inlier_ratio=float(vel_cfg.get("min_inlier_ratio", 0.5)),
        seed=vel_cfg.get("seed"),
    )
    telemetry.log_frame(frame_idx, {
        "num_corrs": len(corrs),
        "velocity": [float(v) for v in prop.model] if prop.valid else None,
        "valid": bool(prop.valid),
        "reason": str(prop.reason),
        "num_inliers": int(prop.evidence.num_inliers),
        "inlier_ratio": float(prop.evidence.inlier_ratio),
        "residual_median": (None if prop.evidence.residual_median is None else float(prop.evidence.residual_median)),
    })
    return prop
