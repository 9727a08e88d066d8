"""Timing utilities and statistics about rendered images.

``Timer`` measures stages of a run and ``RenderMetrics`` collects the
statistics of every rendered view into a report.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)


def depth_coverage(depth: np.ndarray) -> float:
    """Fraction of pixels in a depth image which have a depth."""
    if depth.size == 0:
        return 0.0
    return float(np.count_nonzero(~np.isnan(depth))) / depth.size


def depth_range(depth: np.ndarray) -> Optional[tuple]:
    """Smallest and largest depth in the image, None if nothing was rendered."""
    valid = depth[~np.isnan(depth)]
    if valid.size == 0:
        return None
    return float(valid.min()), float(valid.max())


class Timer:
    """Measures elapsed time. Works as a context manager, a decorator or with laps.

    Args:
        name: Name used in log messages
        logger: Logger to use, the module logger if None
    """

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._laps: Dict[str, float] = {}
        self._last_lap: Optional[float] = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None
        self._last_lap = self.start_time

    def stop(self) -> float:
        """Stops the timer and returns the elapsed time in seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def timeit(self, func: Callable) -> Callable:
        """Decorator which times every call of ``func``."""
        def wrapper(*args, **kwargs):
            with self:
                return func(*args, **kwargs)

        return wrapper

    def lap(self, name: str) -> float:
        """Records the time since the previous lap, or since the start, under ``name``."""
        now = time.perf_counter()
        if self.start_time is None:
            self.start_time = now
        previous = self._last_lap if self._last_lap is not None else self.start_time
        lap_time = now - previous
        self._last_lap = now
        self._laps[name] = lap_time

        self.logger.debug(f"{self.name} - {name}: {lap_time:.4f}s")
        return lap_time

    @property
    def timings(self) -> Dict[str, float]:
        return dict(self._laps)

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds. Stays fixed once the timer is stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class RenderMetrics:
    """Statistics of a rendering run."""

    def __init__(self):
        self.metrics: Dict = {
            "n_faces": 0,
            "n_vertexes": 0,
            "resolution": None,
            "views": [],
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict, List, None]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def add_view(self, name: str, faces_rendered: int, depth: np.ndarray, time_s: float) -> Dict:
        """Records the statistics of a single rendered view.

        Args:
            name: Name of the view
            faces_rendered: Number of faces that were drawn
            depth: Rendered depth image
            time_s: Time it took to render

        Returns:
            The statistics of the view
        """
        limits = depth_range(depth)
        view = {
            "name": name,
            "faces_rendered": int(faces_rendered),
            "coverage": depth_coverage(depth),
            "depth_min": None if limits is None else limits[0],
            "depth_max": None if limits is None else limits[1],
            "render_time_s": time_s,
        }
        self.metrics["views"].append(view)
        logger.debug(f"View {name}: {faces_rendered} faces, coverage {view['coverage']:.3f}")
        return view

    def to_dict(self) -> Dict:
        metrics = self.metrics.copy()
        metrics["views"] = [dict(v) for v in self.metrics["views"]]
        metrics["stage_timings"] = dict(self.metrics["stage_timings"])
        return metrics

    def summary(self) -> str:
        """Human readable summary."""
        views = self.metrics["views"]
        lines = [
            "Render Metrics:",
            f"  Faces: {self.metrics['n_faces']}",
            f"  Vertexes: {self.metrics['n_vertexes']}",
        ]
        if self.metrics["resolution"] is not None:
            width, height = self.metrics["resolution"]
            lines.append(f"  Resolution: {width}x{height}")
        lines.append(f"  Views: {len(views)}")

        if views:
            rendered = [v["faces_rendered"] for v in views]
            coverage = [v["coverage"] for v in views]
            lines.append(f"  Faces rendered per view: {np.mean(rendered):.1f} (min {min(rendered)}, max {max(rendered)})")
            lines.append(f"  Mean coverage: {100.0 * np.mean(coverage):.1f}%")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
