# src/evcalib/modules/plane_sac.py
from __future__ import annotations

import numpy as np

from .sac import SacProblem


def centralization(samples) -> np.ndarray:
    """(N,3) [x, y, t] samples minus their mean, for a better conditioned fit."""
    data = np.asarray(samples, dtype=np.float64).reshape(-1, 3)
    return data - data.mean(axis=0)


class EventLocalPlaneSacProblem(SacProblem[np.ndarray]):
    """
    Local plane t = -(A*x + B*y + C) through a window of [x, y, t] samples.

    Model coefficients are [A, B, C]; the distance is measured along t.
    """

    sample_size = 3

    def __init__(self, data: np.ndarray, seed: int | None = None):
        self.data = np.asarray(data, dtype=np.float64).reshape(-1, 3)
        super().__init__(self.data.shape[0], seed=seed)

    @staticmethod
    def point_to_plane_distance(x, y, t, A, B, C):
        t_pred = -(A * x + B * y + C)
        return np.abs(t - t_pred)

    def compute_model(self, indices: np.ndarray) -> np.ndarray | None:
        sel = self.data[np.asarray(indices)]
        M = np.column_stack([sel[:, 0], sel[:, 1], np.ones(sel.shape[0])])
        b = -sel[:, 2]
        try:
            abc = np.linalg.solve(M.T @ M, M.T @ b)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(abc)):
            return None
        return abc

    def distances(self, model: np.ndarray, indices: np.ndarray) -> np.ndarray:
        sel = self.data[np.asarray(indices)]
        return self.point_to_plane_distance(sel[:, 0], sel[:, 1], sel[:, 2], *model)
