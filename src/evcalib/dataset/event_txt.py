from __future__ import annotations

import os
from typing import Iterator

import numpy as np

from ..system.events import EventBatch


class EventTxtSequence:
    """
    Plain-text event recording, one `t x y p` line per event (t in seconds,
    p in {0, 1}). Lines starting with '#' are skipped.
    """

    def __init__(self, path: str):
        self.path = path
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Missing event file: {path}")
        data = np.loadtxt(path, comments="#", ndmin=2)
        if data.size == 0:
            data = np.zeros((0, 4))
        if data.shape[1] < 4:
            raise ValueError(f"Expected 't x y p' columns in {path}, got {data.shape[1]}")
        order = np.argsort(data[:, 0], kind="stable")
        data = data[order]
        self.t = data[:, 0].astype(np.float64)
        self.x = data[:, 1].astype(np.int32)
        self.y = data[:, 2].astype(np.int32)
        self.p = data[:, 3] > 0

    def __len__(self) -> int:
        return int(self.t.shape[0])

    def iter_batches(
        self,
        window_sec: float,
        *,
        start_time: float | None = None,
        max_batches: int | None = None,
    ) -> Iterator[tuple[int, EventBatch]]:
        if window_sec <= 0:
            raise ValueError(f"window_sec must be positive, got {window_sec}")
        if len(self) == 0:
            return
        t0 = float(self.t[0]) if start_time is None else float(start_time)
        t_end = float(self.t[-1])
        idx = 0
        while t0 <= t_end and (max_batches is None or idx < max_batches):
            t1 = t0 + window_sec
            i0 = int(np.searchsorted(self.t, t0, side="left"))
            i1 = int(np.searchsorted(self.t, t1, side="left"))
            t0 = t1
            if i1 <= i0:
                continue
            yield idx, EventBatch.from_arrays(self.t[i0:i1], self.x[i0:i1], self.y[i0:i1], self.p[i0:i1])
            idx += 1
