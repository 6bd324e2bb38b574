"""Tests for the pinhole intrinsics and the flow Jacobians."""

import numpy as np
import pytest


def test_intrinsic_from_config():
    """Config dicts map onto intrinsics; distortion defaults to zero."""
    from evcalib.geom.camera import PinholeIntrinsic

    intri = PinholeIntrinsic.from_config({"width": 240, "height": 180, "fx": 200, "fy": 199, "cx": 120, "cy": 90})
    np.testing.assert_array_equal(intri.K, [[200, 0, 120], [0, 199, 90], [0, 0, 1]])
    assert intri.dist.shape == (5,)
    assert not intri.has_distortion

    distorted = PinholeIntrinsic.from_config({
        "width": 240, "height": 180, "fx": 200, "fy": 199, "cx": 120, "cy": 90,
        "dist": [-0.3, 0.1, 0.0, 0.0, 0.0],
    })
    assert distorted.has_distortion


def test_project(intri):
    """Projection of single points and stacks of points."""
    uv = intri.project(np.array([0.2, -0.1, 2.0]))
    np.testing.assert_allclose(uv, [320.0 + 50.0, 240.0 - 24.0])

    pts = np.array([[0.0, 0.0, 1.0], [1.0, 1.0, 1.0]])
    np.testing.assert_allclose(intri.project(pts), [[320.0, 240.0], [820.0, 720.0]])


@pytest.mark.parametrize("pixel", [(100.0, 50.0), (320.0, 240.0), (600.0, 400.0)])
def test_sub_mats_match_projected_motion(intri, pixel):
    """A/Z and B map camera velocities onto the pixel velocity of a static point."""
    from evcalib.geom.camera import sub_mats
    from evcalib.geom.so3 import hat

    depth = 2.5
    p = depth * np.array([(pixel[0] - intri.cx) / intri.fx, (pixel[1] - intri.cy) / intri.fy, 1.0])
    v = np.array([0.3, -0.2, 0.4])
    w = np.array([0.1, 0.25, -0.15])

    # static point seen from a moving camera
    p_dot = -v - hat(w) @ p
    h = 1e-6
    numeric = (intri.project(p + h * p_dot) - intri.project(p - h * p_dot)) / (2.0 * h)

    a_mat, b_mat = sub_mats(intri.fx, intri.fy, intri.cx, intri.cy, np.array(pixel))
    np.testing.assert_allclose(a_mat @ v / depth + b_mat @ w, numeric, rtol=1e-6, atol=1e-6)


def test_undistort_point_identity_without_distortion(intri):
    """Zero distortion leaves pixels in place."""
    from evcalib.geom.camera import VisualUndistortionMap

    undist = VisualUndistortionMap(intri)
    np.testing.assert_allclose(undist.undistort_point(np.array([100.0, 50.0])), [100.0, 50.0], atol=1e-6)
    pts = np.array([[10.0, 20.0], [300.0, 400.0]])
    np.testing.assert_allclose(undist.undistort_point(pts), pts, atol=1e-6)


def test_remove_distortion_keeps_raster_layout(small_intri):
    """Undistorted rasters keep shape and dtype, with and without nearest sampling."""
    from evcalib.geom.camera import PinholeIntrinsic, VisualUndistortionMap

    intri = PinholeIntrinsic(
        width=small_intri.width, height=small_intri.height,
        fx=small_intri.fx, fy=small_intri.fy, cx=small_intri.cx, cy=small_intri.cy,
        dist=[-0.2, 0.05, 0.0, 0.0, 0.0],
    )
    undist = VisualUndistortionMap(intri)

    img = np.full((intri.height, intri.width), 7, np.uint8)
    out = undist.remove_distortion(img)
    assert out.shape == img.shape and out.dtype == np.uint8

    labels = np.ones((intri.height, intri.width), np.uint8)
    out = undist.remove_distortion(labels, nearest=True)
    assert set(np.unique(out)) <= {0, 1}
