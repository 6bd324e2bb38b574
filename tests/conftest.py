"""Shared synthetic-data fixtures."""

import numpy as np
import pytest


@pytest.fixture
def intri():
    from evcalib.geom.camera import PinholeIntrinsic
    return PinholeIntrinsic(width=640, height=480, fx=500.0, fy=480.0, cx=320.0, cy=240.0)


@pytest.fixture
def small_intri():
    from evcalib.geom.camera import PinholeIntrinsic
    return PinholeIntrinsic(width=64, height=48, fx=60.0, fy=60.0, cx=32.0, cy=24.0)


@pytest.fixture
def make_edge_events():
    """Straight edge sweeping the image at constant velocity (px/s), one event per pixel."""
    def _make(width, height, velocity, t_start=0.1, polarity=True):
        from evcalib.system.events import Event, EventBatch

        v = np.asarray(velocity, dtype=np.float64)
        ys, xs = np.mgrid[0:height, 0:width]
        t = t_start + (v[0] * xs + v[1] * ys) / float(v @ v)
        order = np.argsort(t.ravel(), kind="stable")
        events = [
            Event(float(t.ravel()[i]), int(xs.ravel()[i]), int(ys.ravel()[i]), polarity)
            for i in order
        ]
        return EventBatch.create(events)
    return _make


@pytest.fixture
def make_corr():
    """
    OpticalFlowCorr whose readout-corrected trace is linear with the given
    pixel velocity around `tau_mid` (time on the corrected clock).
    """
    def _make(pixel, flow, depth, tau_mid, readout=0.0, rs_exp_factor=0.5,
              height=480, step=0.01):
        from evcalib.modules.flow_corr import OpticalFlowCorr
        from evcalib.system.state import CameraFrame

        frame = CameraFrame(timestamp=tau_mid, image_height=height)
        taus = [tau_mid - step, tau_mid, tau_mid + step]
        xs = [pixel[0] + flow[0] * (tau - tau_mid) for tau in taus]
        ys = [pixel[1] + flow[1] * (tau - tau_mid) for tau in taus]
        ts = [tau - (y / height - rs_exp_factor) * readout for tau, y in zip(taus, ys)]
        return OpticalFlowCorr.create(ts, xs, ys, depth, frame, rs_exp_factor)
    return _make
