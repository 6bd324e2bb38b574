"""Tests for uniform B-splines on R^d and SO3."""

import numpy as np
import pytest


def test_cubic_blending_matrix():
    """Order-4 blending matrix equals the textbook cubic B-spline matrix."""
    from evcalib.geom.spline import blending_matrix

    expected = np.array([
        [1.0, -3.0, 3.0, -1.0],
        [4.0, 0.0, -6.0, 3.0],
        [1.0, 3.0, 3.0, -3.0],
        [0.0, 0.0, 0.0, 1.0],
    ]) / 6.0
    np.testing.assert_allclose(blending_matrix(4), expected, atol=1e-15)


@pytest.mark.parametrize("order", [3, 4, 5])
def test_blending_weights_partition_unity(order):
    """Basis weights sum to one; the first cumulative weight is always one."""
    from evcalib.geom.spline import base_coefficients, blending_matrix

    for u in (0.0, 0.3, 0.77):
        w = blending_matrix(order) @ base_coefficients(order, u)
        assert w.sum() == pytest.approx(1.0)
        wc = blending_matrix(order, cumulative=True) @ base_coefficients(order, u)
        assert wc[0] == pytest.approx(1.0)


def test_spline_index_and_range():
    """Index and normalized time of a query; queries outside the range raise."""
    from evcalib.geom.spline import OutOfSplineRangeError, SplineMeta

    meta = SplineMeta(start_time=0.0, dt=0.1, num_knots=6, order=4)
    assert meta.max_time == pytest.approx(0.3)

    i, u = meta.compute_spline_index(0.25)
    assert i == 2
    assert u == pytest.approx(0.5)

    with pytest.raises(OutOfSplineRangeError):
        meta.compute_spline_index(-1e-9)
    with pytest.raises(OutOfSplineRangeError):
        meta.compute_spline_index(meta.max_time)
    assert issubclass(OutOfSplineRangeError, ValueError)


def test_rd_spline_reproduces_linear_motion():
    """Control points on a line give constant velocity and zero acceleration."""
    from evcalib.geom.spline import RdSpline

    dt = 0.1
    vel = np.array([0.3, -0.1, 0.2])
    knots = np.array([vel * j * dt for j in range(8)])
    spline = RdSpline(0.0, dt, knots)

    for t in (0.0, 0.13, 0.26, 0.49):
        np.testing.assert_allclose(spline.evaluate(t, 1), vel, atol=1e-12)
        np.testing.assert_allclose(spline.evaluate(t, 2), 0.0, atol=1e-10)
        np.testing.assert_allclose(spline.evaluate(t), vel * (t + dt), atol=1e-12)


def test_so3_spline_constant_angular_velocity():
    """Knots along one rotation axis give that body rate and the matching rotation."""
    from evcalib.geom.so3 import exp, matrix_to_quat
    from evcalib.geom.spline import So3Spline

    dt = 0.1
    omega = np.array([0.1, -0.2, 0.3])
    knots = np.array([matrix_to_quat(exp(omega * j * dt)) for j in range(8)])
    spline = So3Spline(0.0, dt, knots)

    for t in (0.0, 0.17, 0.33, 0.49):
        R, w = spline.evaluate_with_velocity(t)
        np.testing.assert_allclose(w, omega, atol=1e-10)
        np.testing.assert_allclose(R, exp(omega * (t + dt)), atol=1e-10)


def test_so3_spline_normalizes_knots():
    """Scaled quaternions are stored as unit quaternions."""
    from evcalib.geom.spline import So3Spline

    knots = np.tile([0.0, 0.0, 0.0, 2.0], (4, 1))
    spline = So3Spline(0.0, 0.1, knots)
    np.testing.assert_allclose(np.linalg.norm(spline.knots, axis=1), 1.0)
    np.testing.assert_allclose(spline.evaluate(0.05), np.eye(3), atol=1e-12)


def test_spline_needs_order_knots():
    """Fewer knots than the order is rejected."""
    from evcalib.geom.spline import RdSpline, So3Spline

    with pytest.raises(ValueError):
        RdSpline(0.0, 0.1, np.zeros((3, 3)))
    with pytest.raises(ValueError):
        So3Spline(0.0, 0.1, np.tile([0.0, 0.0, 0.0, 1.0], (3, 1)))


def test_window_meta_matches_full_spline():
    """A knot window evaluates like the full spline inside its range."""
    from evcalib.geom.spline import RdSpline, evaluate_rd

    rng = np.random.default_rng(0)
    spline = RdSpline(0.0, 0.1, rng.normal(size=(10, 3)))
    meta = spline.meta_for_range(0.1, 0.25)
    assert meta.start_time == pytest.approx(0.1)
    assert meta.num_knots == 5

    knots = spline.knots_for(meta)
    np.testing.assert_array_equal(knots, spline.knots[1:6])
    for t in (0.1, 0.18, 0.25):
        i, u = meta.compute_spline_index(t)
        local = evaluate_rd(knots[i:i + 4], u, meta.dt_inv, 1)
        np.testing.assert_allclose(local, spline.evaluate(t, 1), atol=1e-12)


def test_knots_for_rejects_foreign_meta():
    """A window outside the knot vector is refused."""
    from evcalib.geom.spline import RdSpline, SplineMeta

    spline = RdSpline(0.0, 0.1, np.zeros((6, 2)))
    with pytest.raises(ValueError):
        spline.knots_for(SplineMeta(start_time=0.2, dt=0.1, num_knots=6, order=4))
