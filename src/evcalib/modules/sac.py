# src/evcalib/modules/sac.py
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, TypeVar

import numpy as np

ModelT = TypeVar("ModelT")


class SacProblem(ABC, Generic[ModelT]):
    """
    A model that can be fitted by sample consensus.

    Subclasses provide a minimal-sample solver, a per-point distance and an
    inlier refinement. Sampling draws from `self.rng`; pass a seed for
    reproducible runs.
    """

    sample_size: int = 3

    def __init__(self, num_data: int, seed: int | None = None):
        self.num_data = int(num_data)
        self.rng = np.random.default_rng(seed)

    @abstractmethod
    def compute_model(self, indices: np.ndarray) -> ModelT | None:
        """Fit a model to the given sample; None when the sample is degenerate."""

    @abstractmethod
    def distances(self, model: ModelT, indices: np.ndarray) -> np.ndarray:
        """Distance of each indexed datum to the model."""

    def optimize_model(self, inliers: np.ndarray, model: ModelT) -> ModelT | None:
        return self.compute_model(inliers)

    def draw_sample(self) -> np.ndarray:
        return self.rng.choice(self.num_data, size=self.sample_size, replace=False)

    def select_within_distance(self, model: ModelT, threshold: float) -> np.ndarray:
        all_idx = np.arange(self.num_data)
        d = self.distances(model, all_idx)
        return all_idx[np.isfinite(d) & (d < threshold)]


@dataclass
class SacResult(Generic[ModelT]):
    model: ModelT
    inliers: np.ndarray
    sample: np.ndarray
    iterations: int

    @property
    def num_inliers(self) -> int:
        return int(self.inliers.shape[0])


class Ransac(Generic[ModelT]):
    """
    Plain RANSAC: keep the minimal-sample model with the most inliers.

    The iteration count adapts to the best inlier ratio seen so far
    (confidence `probability`) and never exceeds `max_iterations`.
    """

    def __init__(
        self,
        problem: SacProblem[ModelT],
        threshold: float,
        max_iterations: int = 1000,
        probability: float = 0.99,
    ):
        self.problem = problem
        self.threshold = float(threshold)
        self.max_iterations = int(max_iterations)
        self.probability = float(probability)

    def run(self) -> SacResult[ModelT] | None:
        prob = self.problem
        if prob.num_data < prob.sample_size:
            return None

        best_model = None
        best_sample = None
        best_count = -1  # the first model always sets the iteration bound
        k = 1.0
        iterations = 0
        skipped = 0
        eps = np.finfo(np.float64).eps

        while iterations < k:
            sample = prob.draw_sample()
            model = prob.compute_model(sample)
            if model is None:
                skipped += 1
                if skipped >= 10 * self.max_iterations:
                    break
                continue

            count = prob.select_within_distance(model, self.threshold).shape[0]
            if count > best_count:
                best_count = count
                best_model = model
                best_sample = sample

                w = best_count / float(prob.num_data)
                p_no_outliers = 1.0 - w ** prob.sample_size
                p_no_outliers = min(max(p_no_outliers, eps), 1.0 - eps)
                k = math.log(1.0 - self.probability) / math.log(p_no_outliers)

            iterations += 1
            if iterations > self.max_iterations:
                break

        if best_model is None:
            return None
        inliers = prob.select_within_distance(best_model, self.threshold)
        return SacResult(best_model, inliers, best_sample, iterations)
