# src/evcalib/modules/event_surface.py
from __future__ import annotations

import cv2
import numpy as np

from ..geom.camera import PinholeIntrinsic, VisualUndistortionMap
from ..system.events import Event, EventBatch

# BGR colours of the event raster
POSITIVE_COLOR = (255, 0, 0)
NEGATIVE_COLOR = (0, 0, 255)


class ActiveEventSurface:
    """
    Surface of active events (SAE) of one event camera.

    Keeps, per polarity, the time of the last accepted edge at every pixel
    (`sae`) and the time of the last seen event (`sae_latest`). A new event
    only counts as an edge if it is more than `filter_thd` seconds after the
    previous edge of its polarity, or if the opposite polarity fired more
    recently at that pixel. Everything else is treated as bounce.

    Arrays are (height, width), indexed [y, x]. Not thread safe: one writer
    per surface.
    """

    def __init__(self, intri: PinholeIntrinsic, filter_thd: float = 0.01):
        self.intri = intri
        self.filter_thd = float(filter_thd)
        self._undisto_map = VisualUndistortionMap(intri)

        shape = (intri.height, intri.width)
        self._sae = [np.zeros(shape, np.float64), np.zeros(shape, np.float64)]
        self._sae_latest = [np.zeros(shape, np.float64), np.zeros(shape, np.float64)]
        self._time_latest = 0.0
        self._event_img = self._blank_event_img()

    def _blank_event_img(self) -> np.ndarray:
        return np.zeros((self.intri.height, self.intri.width, 3), np.uint8)

    @property
    def time_latest(self) -> float:
        return self._time_latest

    def sae(self, polarity: bool) -> np.ndarray:
        return self._sae[int(bool(polarity))].copy()

    def sae_latest(self, polarity: bool) -> np.ndarray:
        return self._sae_latest[int(bool(polarity))].copy()

    def last_event_time(self, x: int, y: int, polarity: bool) -> float:
        return float(self._sae[int(bool(polarity))][y, x])

    def latest_seen_time(self, x: int, y: int, polarity: bool) -> float:
        return float(self._sae_latest[int(bool(polarity))][y, x])

    def _check_bounds(self, x, y) -> None:
        x = np.asarray(x)
        y = np.asarray(y)
        bad = (x < 0) | (x >= self.intri.width) | (y < 0) | (y >= self.intri.height)
        if np.any(bad):
            i = int(np.flatnonzero(bad)[0])
            raise ValueError(
                f"event pixel ({int(x.reshape(-1)[i])}, {int(y.reshape(-1)[i])}) outside "
                f"{self.intri.width}x{self.intri.height} image"
            )

    def grab_event(self, event: Event, draw_event_mat: bool = True) -> None:
        self._check_bounds(event.x, event.y)
        self._update(event.timestamp, event.x, event.y, event.polarity, draw_event_mat)

    def grab_events(self, batch: EventBatch, draw_event_mat: bool = True) -> None:
        # whole batch is rejected before any pixel is touched
        self._check_bounds([e.x for e in batch], [e.y for e in batch])
        for event in batch:
            self._update(event.timestamp, event.x, event.y, event.polarity, draw_event_mat)

    def ingest(self, events: Event | EventBatch, draw_event_mat: bool = True) -> None:
        if isinstance(events, Event):
            self.grab_event(events, draw_event_mat)
        elif isinstance(events, EventBatch):
            self.grab_events(events, draw_event_mat)
        else:
            raise TypeError(f"cannot ingest {type(events).__name__}")

    def ingest_arrays(
        self,
        t: np.ndarray,
        x: np.ndarray,
        y: np.ndarray,
        polarity: np.ndarray,
        draw_event_mat: bool = True,
    ) -> None:
        """Same as ingesting the events one by one, in array order."""
        self._check_bounds(x, y)
        for ti, xi, yi, pi in zip(np.asarray(t, np.float64), np.asarray(x), np.asarray(y), np.asarray(polarity)):
            self._update(float(ti), int(xi), int(yi), bool(pi), draw_event_mat)

    def _update(self, et: float, ex: int, ey: int, ep: bool, draw: bool) -> None:
        pol = 1 if ep else 0
        sae = self._sae[pol]
        t_last = sae[ey, ex]
        t_last_inv = self._sae[1 - pol][ey, ex]

        if (et > t_last + self.filter_thd) or (t_last_inv > t_last):
            sae[ey, ex] = et
        self._sae_latest[pol][ey, ex] = et
        self._time_latest = et

        if draw:
            self._event_img[ey, ex] = POSITIVE_COLOR if ep else NEGATIVE_COLOR

    def event_img_mat(self, reset_mat: bool = False, undisto_mat: bool = False) -> np.ndarray:
        mat = self._event_img.copy()
        if reset_mat:
            self._event_img = self._blank_event_img()
        if undisto_mat:
            return self._undisto_map.remove_distortion(mat)
        return mat

    def time_surface(
        self,
        ignore_polarity: bool = True,
        undisto_mat: bool = False,
        median_blur_kernel_size: int = 0,
        decay_sec: float = 0.02,
    ) -> np.ndarray:
        """
        Exponentially decayed time surface as a uint8 (height, width) image.

        With polarity, negative-dominant pixels map below 127 and positive
        ones above; without, 0 means stale and 255 means just fired.
        """
        sae0, sae1 = self._sae
        most_recent = np.maximum(sae0, sae1)
        ts = np.exp(-(self._time_latest - most_recent) / decay_sec)

        if not ignore_polarity:
            ts *= np.where(sae1 > sae0, 1.0, -1.0)
            ts = 255.0 * (ts + 1.0) / 2.0
        else:
            ts = 255.0 * ts
        img = np.clip(np.rint(ts), 0, 255).astype(np.uint8)

        if median_blur_kernel_size > 0:
            img = cv2.medianBlur(img, 2 * median_blur_kernel_size + 1)

        if undisto_mat:
            return self._undisto_map.remove_distortion(img)
        return img

    def raw_time_surface(
        self,
        ignore_polarity: bool = True,
        undisto_mat: bool = False,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns:
          time_map: (H,W) float64 most recent edge time (signed by dominant
            polarity unless ignore_polarity)
          polarity_map: (H,W) uint8, 1 where positive edges are the most recent
        """
        sae0, sae1 = self._sae
        positive = sae1 > sae0
        time_map = np.maximum(sae0, sae1)
        polarity_map = positive.astype(np.uint8)
        if not ignore_polarity:
            time_map = time_map * np.where(positive, 1.0, -1.0)

        if undisto_mat:
            return (
                self._undisto_map.remove_distortion(time_map, nearest=True),
                self._undisto_map.remove_distortion(polarity_map, nearest=True),
            )
        return time_map, polarity_map
