"""Intrinsic camera models.

The renderer only needs a pair of functions which convert between pixel and
normalized image coordinates. This module builds those pairs for a pinhole
camera and for a pinhole camera with Brown radial/tangential lens
distortion. Both functions take and return Nx2 arrays.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Converts an Nx2 array of points from one 2D coordinate system into another
PointTransform = Callable[[np.ndarray], np.ndarray]


@dataclass
class ImageDimension:
    width: int = 0
    height: int = 0

    def set_to(self, width: int, height: int) -> "ImageDimension":
        self.width = width
        self.height = height
        return self


@dataclass
class CameraPinhole:
    """Pinhole camera intrinsic parameters, in pixels."""

    fx: float = 0.0
    fy: float = 0.0
    skew: float = 0.0
    cx: float = 0.0
    cy: float = 0.0
    width: int = 0
    height: int = 0


@dataclass
class CameraPinholeBrown(CameraPinhole):
    """Pinhole camera with Brown lens distortion.

    ``radial`` holds up to three radial coefficients (k1, k2, k3) and
    ``t1``, ``t2`` are the tangential coefficients.
    """

    radial: List[float] = field(default_factory=list)
    t1: float = 0.0
    t2: float = 0.0

    def is_distorted(self) -> bool:
        return any(k != 0.0 for k in self.radial) or self.t1 != 0.0 or self.t2 != 0.0


def create_intrinsic(
    width: int,
    height: int,
    hfov: float,
    vfov: float = -1.0,
    model: Optional[CameraPinhole] = None,
) -> CameraPinhole:
    """Creates a camera with the principal point at the image center from its field of view.

    Args:
        width: Image width
        height: Image height
        hfov: Horizontal field of view, degrees
        vfov: Vertical field of view, degrees. If <= 0 then fy = fx.
        model: Optional model to write the parameters into

    Returns:
        The camera model
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image shape {width}x{height}")
    if not 0.0 < hfov < 180.0:
        raise ValueError(f"Horizontal field of view must be in (0, 180), got {hfov}")

    if model is None:
        model = CameraPinhole()
    model.width = width
    model.height = height
    model.skew = 0.0
    model.cx = width / 2.0
    model.cy = height / 2.0
    model.fx = model.cx / math.tan(math.radians(hfov / 2.0))
    if vfov <= 0:
        model.fy = model.fx
    else:
        model.fy = model.cy / math.tan(math.radians(vfov / 2.0))

    logger.debug(f"Created intrinsics fx={model.fx:.2f} fy={model.fy:.2f} for {width}x{height}")
    return model


def intrinsic_matrix(model: CameraPinhole) -> np.ndarray:
    """3x3 calibration matrix K."""
    return np.array([
        [model.fx, model.skew, model.cx],
        [0.0, model.fy, model.cy],
        [0.0, 0.0, 1.0]
    ])


def _pixel_to_norm(model: CameraPinhole, pixels: np.ndarray) -> np.ndarray:
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    y = (pixels[:, 1] - model.cy) / model.fy
    x = (pixels[:, 0] - model.cx - model.skew * y) / model.fx
    return np.column_stack((x, y))


def _norm_to_pixel(model: CameraPinhole, norm: np.ndarray) -> np.ndarray:
    norm = np.asarray(norm, dtype=np.float64).reshape(-1, 2)
    x = model.fx * norm[:, 0] + model.skew * norm[:, 1] + model.cx
    y = model.fy * norm[:, 1] + model.cy
    return np.column_stack((x, y))


def pinhole_transforms(model: CameraPinhole) -> Tuple[PointTransform, PointTransform]:
    """Returns the (pixel_to_norm, norm_to_pixel) functions of a pinhole camera."""
    if model.fx == 0.0 or model.fy == 0.0:
        raise ValueError("Camera focal length has not been set")

    def pixel_to_norm(pixels: np.ndarray) -> np.ndarray:
        return _pixel_to_norm(model, pixels)

    def norm_to_pixel(norm: np.ndarray) -> np.ndarray:
        return _norm_to_pixel(model, norm)

    return pixel_to_norm, norm_to_pixel


def _opencv_coefficients(model: CameraPinholeBrown) -> np.ndarray:
    if len(model.radial) > 3:
        raise ValueError(f"At most 3 radial coefficients are supported, got {len(model.radial)}")
    radial = list(model.radial) + [0.0] * (3 - len(model.radial))
    # OpenCV ordering is k1, k2, p1, p2, k3
    return np.array([radial[0], radial[1], model.t1, model.t2, radial[2]], dtype=np.float64)


def distort_normalized(model: CameraPinholeBrown, norm: np.ndarray) -> np.ndarray:
    """Applies Brown distortion to undistorted normalized image coordinates.

    Args:
        model: Camera with the distortion coefficients
        norm: Nx2 array of normalized image coordinates

    Returns:
        Nx2 array of distorted normalized image coordinates
    """
    norm = np.asarray(norm, dtype=np.float64).reshape(-1, 2)
    coefficients = _opencv_coefficients(model)
    if not model.is_distorted() or norm.shape[0] == 0:
        return norm.copy()

    # Points on the z = 1 plane projected by an identity camera stay normalized
    points = np.column_stack((norm, np.ones(norm.shape[0])))
    zero = np.zeros(3)
    distorted, _ = cv2.projectPoints(points, zero, zero, np.eye(3), coefficients)
    return distorted.reshape(-1, 2).astype(np.float64)


def brown_transforms(model: CameraPinholeBrown) -> Tuple[PointTransform, PointTransform]:
    """Returns the (pixel_to_norm, norm_to_pixel) functions of a camera with lens distortion.

    ``pixel_to_norm`` takes distorted pixels and returns undistorted normalized
    coordinates. ``norm_to_pixel`` goes the other way. The distortion is
    removed iteratively using OpenCV.
    """
    if model.fx == 0.0 or model.fy == 0.0:
        raise ValueError("Camera focal length has not been set")
    coefficients = _opencv_coefficients(model)
    identity = np.eye(3)

    def pixel_to_norm(pixels: np.ndarray) -> np.ndarray:
        distorted = _pixel_to_norm(model, pixels)
        if not model.is_distorted() or distorted.shape[0] == 0:
            return distorted
        undistorted = cv2.undistortPoints(distorted.reshape(-1, 1, 2), identity, coefficients)
        return undistorted.reshape(-1, 2).astype(np.float64)

    def norm_to_pixel(norm: np.ndarray) -> np.ndarray:
        return _norm_to_pixel(model, distort_normalized(model, norm))

    return pixel_to_norm, norm_to_pixel
