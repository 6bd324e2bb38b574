from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

import numpy as np


@dataclass(frozen=True)
class Event:
    timestamp: float
    x: int
    y: int
    polarity: bool

    @property
    def pos(self) -> tuple[int, int]:
        return self.x, self.y


@dataclass(frozen=True)
class EventBatch:
    """Ordered events; `timestamp` is the time of the last event."""
    timestamp: float
    events: tuple[Event, ...]

    @classmethod
    def create(cls, events: Sequence[Event]) -> "EventBatch":
        if len(events) == 0:
            raise ValueError("EventBatch requires at least one event")
        return cls(float(events[-1].timestamp), tuple(events))

    @classmethod
    def from_arrays(
        cls,
        t: np.ndarray,
        x: np.ndarray,
        y: np.ndarray,
        polarity: np.ndarray,
    ) -> "EventBatch":
        """
        Build from parallel arrays, the (t, x, y, polarity) layout event
        loaders hand out. Timestamps are seconds.
        """
        t = np.asarray(t, dtype=np.float64)
        x = np.asarray(x)
        y = np.asarray(y)
        p = np.asarray(polarity)
        if not (t.shape == x.shape == y.shape == p.shape):
            raise ValueError("t, x, y and polarity must share one shape")
        events = [
            Event(float(ti), int(xi), int(yi), bool(pi))
            for ti, xi, yi, pi in zip(t, x, y, p)
        ]
        return cls.create(events)

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def to_numpy(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        t = np.array([e.timestamp for e in self.events], dtype=np.float64)
        x = np.array([e.x for e in self.events], dtype=np.int32)
        y = np.array([e.y for e in self.events], dtype=np.int32)
        p = np.array([e.polarity for e in self.events], dtype=bool)
        return t, x, y, p
