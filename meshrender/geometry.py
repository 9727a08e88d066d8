"""Geometric primitives used by the renderer.

This module implements rigid body transforms, helpers that build camera
poses which look at a point, and the 2D polygon operations used while
rasterizing: bounding boxes, convex containment and edge functions.

Camera frames follow the computer vision convention: +z points out of the
camera, +x to the right of the image and +y down the image.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)


class Se3:
    """Rigid body transform, p' = R @ p + T.

    Args:
        R: 3x3 rotation matrix. Identity if not provided.
        T: Translation vector. Zero if not provided.
    """

    def __init__(self, R: Optional[np.ndarray] = None, T: Optional[np.ndarray] = None):
        self.R = np.eye(3) if R is None else np.array(R, dtype=np.float64).reshape(3, 3)
        self.T = np.zeros(3) if T is None else np.array(T, dtype=np.float64).reshape(3)

    @classmethod
    def from_matrix(cls, pose: np.ndarray) -> "Se3":
        """Creates a transform from a 3x4 [R|t] or 4x4 homogeneous matrix."""
        pose = np.asarray(pose, dtype=np.float64)
        if pose.shape not in ((3, 4), (4, 4)):
            raise ValueError(f"Expected a 3x4 or 4x4 pose matrix, got shape {pose.shape}")
        return cls(pose[:3, :3], pose[:3, 3])

    @classmethod
    def from_euler(
        cls,
        seq: str,
        angles: Sequence[float],
        T: Optional[Sequence[float]] = None,
        degrees: bool = False,
    ) -> "Se3":
        """Creates a transform from Euler angles, e.g. ``Se3.from_euler("xyz", [0.1, 0, 0])``."""
        R = Rotation.from_euler(seq, angles, degrees=degrees).as_matrix()
        return cls(R, T)

    def to_matrix(self) -> np.ndarray:
        """Returns the transform as a 3x4 [R|t] matrix."""
        return np.hstack((self.R, self.T.reshape(3, 1)))

    def transform(self, point) -> np.ndarray:
        """Applies the transform to a single 3D point."""
        return self.R @ np.asarray(point, dtype=np.float64) + self.T

    def transform_reverse(self, point) -> np.ndarray:
        """Applies the inverse transform to a single 3D point."""
        return self.R.T @ (np.asarray(point, dtype=np.float64) - self.T)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Applies the transform to an Nx3 array of points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"Expected Nx3 points array, got shape {points.shape}")
        return points @ self.R.T + self.T

    def concat(self, other: "Se3") -> "Se3":
        """Transform equivalent to applying this transform followed by ``other``."""
        return Se3(other.R @ self.R, other.R @ self.T + other.T)

    def concat_invert(self, other: "Se3") -> "Se3":
        """Transform equivalent to applying this transform followed by the inverse of ``other``."""
        return self.concat(other.invert())

    def invert(self) -> "Se3":
        R_inv = self.R.T
        return Se3(R_inv, -R_inv @ self.T)

    def set_to(self, src: "Se3") -> "Se3":
        self.R[:] = src.R
        self.T[:] = src.T
        return self

    def reset(self) -> "Se3":
        self.R[:] = np.eye(3)
        self.T[:] = 0.0
        return self

    def copy(self) -> "Se3":
        return Se3(self.R, self.T)

    def __repr__(self) -> str:
        return f"Se3(R={self.R.tolist()}, T={self.T.tolist()})"


def point_at(x: float, y: float, z: float) -> np.ndarray:
    """Rotation matrix whose +z column points at (x, y, z).

    The columns form a right handed orthonormal basis, so ``R.T @ p`` expresses
    ``p`` in a frame that looks directly at the point.

    Args:
        x, y, z: Point that the new +z axis should point towards

    Returns:
        3x3 rotation matrix
    """
    axis_z = np.array([x, y, z], dtype=np.float64)
    norm = np.linalg.norm(axis_z)
    if norm == 0.0:
        raise ValueError("Can't point at the origin")
    axis_z /= norm

    # Use the y axis as a reference unless it's nearly parallel to the target direction
    reference = np.array([0.0, 1.0, 0.0])
    if abs(axis_z @ reference) > 0.99:
        reference = np.array([1.0, 0.0, 0.0])

    axis_x = np.cross(reference, axis_z)
    axis_x /= np.linalg.norm(axis_x)
    axis_y = np.cross(axis_z, axis_x)
    return np.column_stack((axis_x, axis_y, axis_z))


def look_at(eye, target, up=(0.0, -1.0, 0.0)) -> Se3:
    """World to view transform for a camera at ``eye`` looking at ``target``.

    Args:
        eye: Camera location in world coordinates
        target: Point the optical axis passes through
        up: World direction that appears at the top of the image

    Returns:
        Transform from world to camera view
    """
    eye = np.asarray(eye, dtype=np.float64)
    forward = np.asarray(target, dtype=np.float64) - eye
    norm = np.linalg.norm(forward)
    if norm == 0.0:
        raise ValueError("Camera location and target are the same point")
    axis_z = forward / norm

    # image +y points down, the opposite of up
    down = -np.asarray(up, dtype=np.float64)
    axis_x = np.cross(down, axis_z)
    norm_x = np.linalg.norm(axis_x)
    if norm_x < 1e-12:
        raise ValueError(f"Up vector {tuple(up)} is parallel to the viewing direction")
    axis_x /= norm_x
    axis_y = np.cross(axis_z, axis_x)

    R = np.vstack((axis_x, axis_y, axis_z))
    return Se3(R, -R @ eye)


def orbit_poses(
    target,
    distance: float,
    n_views: int,
    elevation: float = 20.0,
    up=(0.0, -1.0, 0.0),
) -> List[Se3]:
    """Poses evenly spaced on a ring around a point, each looking at it.

    Args:
        target: Point being orbited in world coordinates
        distance: Distance from the target to every camera
        n_views: Number of poses
        elevation: Angle above the plane orthogonal to ``up``, degrees

    Returns:
        List of world to view transforms
    """
    if n_views <= 0:
        raise ValueError(f"Number of views must be positive, got {n_views}")
    if distance <= 0:
        raise ValueError(f"Orbit distance must be positive, got {distance}")

    target = np.asarray(target, dtype=np.float64)
    up = np.asarray(up, dtype=np.float64)
    up = up / np.linalg.norm(up)

    # Two directions which span the plane orthogonal to up. With the default up
    # vector the first view is on the -z side of the target looking along +z
    front = point_at(*up)[:, 0]
    side = np.cross(up, front)

    elevation_rad = math.radians(elevation)
    poses = []
    for i in range(n_views):
        azimuth = 2.0 * math.pi * i / n_views
        direction = math.cos(elevation_rad) * (
            math.cos(azimuth) * front + math.sin(azimuth) * side
        ) + math.sin(elevation_rad) * up
        poses.append(look_at(target + distance * direction, target, up))

    logger.debug(f"Created {n_views} orbit poses at distance {distance:.3f}")
    return poses


@dataclass
class Rectangle2D:
    """Integer axis aligned rectangle. Lower extent inclusive, upper extent exclusive."""

    x0: int = 0
    y0: int = 0
    x1: int = 0
    y1: int = 0

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    def area(self) -> int:
        if self.x1 <= self.x0 or self.y1 <= self.y0:
            return 0
        return self.width * self.height

    def set_to(self, x0: int, y0: int, x1: int, y1: int) -> "Rectangle2D":
        self.x0, self.y0, self.x1, self.y1 = x0, y0, x1, y1
        return self


def polygon_bounding_box(
    width: int,
    height: int,
    polygon: np.ndarray,
    out: Optional[Rectangle2D] = None,
) -> Rectangle2D:
    """Bounding box of a polygon clipped to the image.

    The lower extent is the floor of the smallest coordinate and the upper
    extent is the ceiling of the largest coordinate plus one, then both are
    clipped to [0, width) x [0, height).

    Args:
        width: Image width
        height: Image height
        polygon: Nx2 array of vertexes in pixels
        out: Optional rectangle to write the results into

    Returns:
        The bounding box
    """
    polygon = np.asarray(polygon, dtype=np.float64)
    if out is None:
        out = Rectangle2D()
    lower = np.floor(polygon.min(axis=0))
    upper = np.ceil(polygon.max(axis=0)) + 1
    out.x0 = max(0, int(lower[0]))
    out.y0 = max(0, int(lower[1]))
    out.x1 = min(width, int(upper[0]))
    out.y1 = min(height, int(upper[1]))
    return out


def contains_convex(polygon: np.ndarray, px, py) -> np.ndarray:
    """Crossing number test for points inside a convex polygon.

    Each edge counts as a crossing when the point's row lies in the half open
    span of the edge, which makes adjacent polygons that share an edge claim
    every point on it exactly once.

    Args:
        polygon: Nx2 array of vertexes
        px: x coordinates of the points, any shape which broadcasts with ``py``
        py: y coordinates of the points

    Returns:
        Boolean array, True where the point is inside
    """
    polygon = np.asarray(polygon, dtype=np.float64)
    px = np.asarray(px, dtype=np.float64)
    py = np.asarray(py, dtype=np.float64)
    inside = np.zeros(np.broadcast(px, py).shape, dtype=bool)

    n = polygon.shape[0]
    for i in range(n):
        ax, ay = polygon[i]
        bx, by = polygon[i - 1]
        # Horizontal edges can never be crossed
        if ay == by:
            continue
        crosses = (ay > py) != (by > py)
        intersect_x = (bx - ax) * (py - ay) / (by - ay) + ax
        inside ^= crosses & (px < intersect_x)
    return inside


def edge_function(x0, y0, x1, y1, x2, y2):
    """Twice the signed area of the triangle (p0, p1, p2). Works element wise on arrays."""
    return (x2 - x0) * (y1 - y0) - (y2 - y0) * (x1 - x0)
