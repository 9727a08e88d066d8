"""Point cloud reader and writer interfaces used by the file codecs.

Codecs never depend on a concrete cloud type. They read points through a
``PointCloudReader`` and emit points through a ``PointCloudWriter``. Small
adapters wrap numpy arrays and packed arrays.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

import numpy as np

from .packed import IndexArray, PackedArray, PackedBigArrayPoint3D

logger = logging.getLogger(__name__)


class PointCloudReader(abc.ABC):
    """Read access to a point cloud with optional per point color."""

    @abc.abstractmethod
    def size(self) -> int:
        """Number of points."""

    @abc.abstractmethod
    def get(self, index: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Location of a point as a length 3 array."""

    @abc.abstractmethod
    def get_rgb(self, index: int) -> int:
        """Color of a point encoded as 0xRRGGBB."""

    @abc.abstractmethod
    def colors(self) -> bool:
        """True if the points have color."""

    def points(self) -> np.ndarray:
        """All locations as an Nx3 array."""
        output = np.empty((self.size(), 3))
        for i in range(self.size()):
            self.get(i, output[i])
        return output

    def rgb(self) -> np.ndarray:
        """All colors as an array of 0xRRGGBB integers."""
        return np.array([self.get_rgb(i) for i in range(self.size())], dtype=np.int32)


class PointCloudWriter(abc.ABC):
    """Receives points one at a time from a codec."""

    @abc.abstractmethod
    def initialize(self, size: int, has_color: bool) -> None:
        """Called once before any points with the expected number of points."""

    @abc.abstractmethod
    def start_point(self) -> None:
        ...

    @abc.abstractmethod
    def stop_point(self) -> None:
        ...

    @abc.abstractmethod
    def location(self, x: float, y: float, z: float) -> None:
        ...

    @abc.abstractmethod
    def color(self, rgb: int) -> None:
        ...

    def add(self, x: float, y: float, z: float, rgb: Optional[int] = None) -> None:
        self.start_point()
        self.location(x, y, z)
        if rgb is not None:
            self.color(rgb)
        self.stop_point()


class ArrayCloudReader(PointCloudReader):
    """Reader over an Nx3 array and an optional array of 0xRRGGBB colors."""

    def __init__(self, points, rgb=None):
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"Expected Nx3 points array, got shape {points.shape}")
        if rgb is not None:
            rgb = np.asarray(rgb, dtype=np.int32).ravel()
            if rgb.shape[0] != points.shape[0]:
                raise ValueError(f"Color count {rgb.shape[0]} != point count {points.shape[0]}")
        self._points = points
        self._rgb = rgb

    def size(self) -> int:
        return self._points.shape[0]

    def get(self, index: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        if out is None:
            return self._points[index].copy()
        out[:] = self._points[index]
        return out

    def get_rgb(self, index: int) -> int:
        return 0 if self._rgb is None else int(self._rgb[index])

    def colors(self) -> bool:
        return self._rgb is not None

    def points(self) -> np.ndarray:
        return self._points.copy()

    def rgb(self) -> np.ndarray:
        if self._rgb is None:
            return np.zeros(self.size(), dtype=np.int32)
        return self._rgb.copy()


def wrap_reader(points, rgb=None) -> PointCloudReader:
    """Wraps points and optional colors as a reader.

    Args:
        points: Nx3 array or a packed array of 3D points
        rgb: Optional colors, either a sequence of 0xRRGGBB or an ``IndexArray``
    """
    if isinstance(points, PackedArray):
        points = points.to_array()
    if isinstance(rgb, IndexArray):
        rgb = rgb.to_array()
    return ArrayCloudReader(points, rgb)


class ArrayCloudWriter(PointCloudWriter):
    """Collects points into packed storage."""

    def __init__(self, points: Optional[PackedArray] = None, rgb: Optional[IndexArray] = None):
        self.points = PackedBigArrayPoint3D() if points is None else points
        self.rgb = IndexArray() if rgb is None else rgb
        self.has_color = False
        self._location = np.zeros(3)
        self._color = 0

    def initialize(self, size: int, has_color: bool) -> None:
        self.points.reset()
        self.points.reserve(size)
        self.rgb.reset()
        self.has_color = has_color

    def start_point(self) -> None:
        self._location[:] = 0.0
        self._color = 0

    def stop_point(self) -> None:
        self.points.append(self._location)
        if self.has_color:
            self.rgb.append(self._color)

    def location(self, x: float, y: float, z: float) -> None:
        self._location[:] = (x, y, z)

    def color(self, rgb: int) -> None:
        self._color = rgb

    def to_reader(self) -> PointCloudReader:
        return wrap_reader(self.points, self.rgb if self.has_color else None)
