from dataclasses import dataclass
import numpy as np

@dataclass
class Evidence:
    num_inliers: int = 0
    inlier_ratio: float = 0.0
    residual_median: float | None = None

@dataclass
class Proposal:
    name: str
    model: np.ndarray
    evidence: Evidence
    valid: bool = True
    reason: str = ""
