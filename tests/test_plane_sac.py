"""Tests for the generic RANSAC loop and the event local-plane problem."""

import numpy as np


def _plane_samples(A=0.01, B=-0.02, C=0.5):
    ys, xs = np.mgrid[-2:3, -2:3]
    xs = xs.ravel().astype(np.float64)
    ys = ys.ravel().astype(np.float64)
    ts = -(A * xs + B * ys + C)
    return np.column_stack([xs, ys, ts])


def test_centralization_zero_mean():
    """Centred samples have zero mean and keep their spread."""
    from evcalib.modules.plane_sac import centralization

    data = _plane_samples() + np.array([10.0, 20.0, 3.0])
    out = centralization(data)
    np.testing.assert_allclose(out.mean(axis=0), 0.0, atol=1e-12)
    np.testing.assert_allclose(out - out[0], data - data[0], atol=1e-12)


def test_plane_model_from_exact_samples():
    """A least-squares fit on exact plane samples returns the generating coefficients."""
    from evcalib.modules.plane_sac import EventLocalPlaneSacProblem

    data = _plane_samples()
    problem = EventLocalPlaneSacProblem(data, seed=0)
    abc = problem.compute_model(np.arange(data.shape[0]))
    np.testing.assert_allclose(abc, [0.01, -0.02, 0.5], atol=1e-12)
    assert np.all(problem.distances(abc, np.arange(data.shape[0])) < 1e-12)


def test_ransac_exact_plane_all_inliers():
    """On exact data every sample is an inlier and the model is recovered."""
    from evcalib.modules.plane_sac import EventLocalPlaneSacProblem
    from evcalib.modules.sac import Ransac

    data = _plane_samples()
    problem = EventLocalPlaneSacProblem(data, seed=1)
    res = Ransac(problem, threshold=1e-6, max_iterations=50).run()

    assert res is not None
    assert res.num_inliers == data.shape[0]
    assert res.iterations <= 50
    abc = problem.optimize_model(res.inliers, res.model)
    np.testing.assert_allclose(abc, [0.01, -0.02, 0.5], atol=1e-10)


def test_ransac_rejects_outliers():
    """Samples far off the plane along t are not counted as inliers."""
    from evcalib.modules.plane_sac import EventLocalPlaneSacProblem
    from evcalib.modules.sac import Ransac

    data = _plane_samples()
    outliers = data[:5].copy()
    outliers[:, 2] += np.array([0.3, -0.2, 0.5, 0.25, -0.4])
    mixed = np.vstack([data, outliers])

    problem = EventLocalPlaneSacProblem(mixed, seed=3)
    res = Ransac(problem, threshold=1e-4, max_iterations=500).run()

    assert res is not None
    assert res.num_inliers == data.shape[0]
    assert np.all(res.inliers < data.shape[0])
    abc = problem.optimize_model(res.inliers, res.model)
    np.testing.assert_allclose(abc, [0.01, -0.02, 0.5], atol=1e-10)


def test_ransac_needs_minimal_sample():
    """Fewer points than the minimal sample gives no model."""
    from evcalib.modules.plane_sac import EventLocalPlaneSacProblem
    from evcalib.modules.sac import Ransac

    problem = EventLocalPlaneSacProblem(_plane_samples()[:2], seed=0)
    assert Ransac(problem, threshold=1e-3).run() is None


def test_ransac_is_reproducible_with_seed():
    """Identical seeds draw identical samples."""
    from evcalib.modules.plane_sac import EventLocalPlaneSacProblem
    from evcalib.modules.sac import Ransac

    rng = np.random.default_rng(11)
    data = _plane_samples()
    data[:, 2] += rng.normal(scale=1e-3, size=data.shape[0])

    a = Ransac(EventLocalPlaneSacProblem(data, seed=5), threshold=1e-3, max_iterations=30).run()
    b = Ransac(EventLocalPlaneSacProblem(data, seed=5), threshold=1e-3, max_iterations=30).run()
    np.testing.assert_array_equal(a.sample, b.sample)
    np.testing.assert_array_equal(a.inliers, b.inliers)


def test_ransac_continues_after_zero_inlier_first_model():
    """A first model without inliers still sets the iteration bound, so later clean samples are found."""
    from evcalib.modules.sac import Ransac, SacProblem

    class OffsetProblem(SacProblem):
        sample_size = 2

        def __init__(self, data):
            super().__init__(len(data), seed=0)
            self.data = np.asarray(data, dtype=np.float64)
            self.draws = 0

        def draw_sample(self):
            self.draws += 1
            if self.draws == 1:
                return np.array([10, 11])  # both outliers, mean far from every point
            return super().draw_sample()

        def compute_model(self, indices):
            return float(self.data[np.asarray(indices)].mean())

        def distances(self, model, indices):
            return np.abs(self.data[np.asarray(indices)] - model)

    problem = OffsetProblem([0.0] * 10 + [100.0, 300.0])
    res = Ransac(problem, threshold=0.5, max_iterations=100).run()

    assert problem.draws > 1
    assert res is not None
    assert res.num_inliers == 10
    assert res.model == 0.0
