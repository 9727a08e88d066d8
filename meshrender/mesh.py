"""Polygon mesh data model.

A ``VertexMesh`` stores convex polygons with an arbitrary number of vertices.
Vertex positions live in a packed array and each face is a run of indexes
inside ``face_vertexes``. The runs are delimited by ``face_offsets``, so face
``i`` occupies ``face_vertexes[face_offsets[i]:face_offsets[i + 1]]``.
Texture coordinates, when present, are stored per face-vertex instance in
parallel with ``face_vertexes``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from .packed import (
    IndexArray,
    PackedArrayPoint3D,
    PackedBigArrayPoint2D,
    PackedBigArrayPoint3D,
)

logger = logging.getLogger(__name__)


def pack_rgb(rgb) -> np.ndarray:
    """Packs an (..., 3) array of 8-bit channels into 0xRRGGBB integers."""
    rgb = np.asarray(rgb).astype(np.int32)
    return (rgb[..., 0] << 16) | (rgb[..., 1] << 8) | rgb[..., 2]


def unpack_rgb(values) -> np.ndarray:
    """Splits 0xRRGGBB integers into an (..., 3) uint8 array."""
    values = np.asarray(values, dtype=np.int64)
    return np.stack(
        ((values >> 16) & 0xFF, (values >> 8) & 0xFF, values & 0xFF), axis=-1
    ).astype(np.uint8)


class MeshPolygonAccess:
    """Read only access to the polygons of a mesh as point lists."""

    def __init__(self, mesh: "VertexMesh"):
        self._mesh = mesh

    def size(self) -> int:
        return self._mesh.size()

    def get_polygon(self, which: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Vertexes of face ``which`` as an Nx3 array."""
        return self._mesh.get_face_vectors(which, out)


class VertexMesh:
    """Mesh made up of convex polygons which reference a shared list of vertexes.

    Face indexes are not validated against ``vertexes`` when they are added.
    An out of range index only surfaces once it is dereferenced.
    """

    def __init__(self):
        # 3D location of each vertex
        self.vertexes = PackedBigArrayPoint3D()
        # Texture coordinates for each face-vertex instance, fraction of width and height
        self.texture = PackedBigArrayPoint2D(dtype=np.float32)
        # Normal vectors referenced by face_normals
        self.normals = PackedArrayPoint3D(dtype=np.float32)
        # Which normal each face uses
        self.face_normals = IndexArray()
        # Optional per-vertex color encoded as 0xRRGGBB
        self.rgb = IndexArray()
        # Vertex indexes of every face, one run per face
        self.face_vertexes = IndexArray()
        # Start of each face inside face_vertexes, always has size() + 1 elements
        self.face_offsets = IndexArray()
        self.face_offsets.append(0)
        # File name of the texture image, empty if there is none
        self.texture_name = ""

    def size(self) -> int:
        """Number of faces."""
        return self.face_offsets.size() - 1

    def get_face_size(self, which: int) -> int:
        """Number of vertexes in a face.

        Args:
            which: Index of the face

        Returns:
            Number of face-vertex instances the face references
        """
        return self.face_offsets.get(which + 1) - self.face_offsets.get(which)

    def get_shape_vertex(self, which: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Copies the location of a single face-vertex instance.

        Args:
            which: Index into ``face_vertexes``
            out: Optional length 3 array to write into

        Returns:
            Location of the vertex referenced by ``face_vertexes[which]``
        """
        return self.vertexes.get_copy(self.face_vertexes.get(which), out)

    def get_face_vectors(self, which: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Copies the vertex locations of a face.

        Args:
            which: Index of the face
            out: Optional array to write into. Must have at least as many rows
                as the face has vertexes.

        Returns:
            Nx3 array with the face's vertexes in order
        """
        idx0 = self.face_offsets.get(which)
        idx1 = self.face_offsets.get(which + 1)
        points = self.vertexes.take(self.face_vertexes[idx0:idx1])
        if out is None:
            return points
        out[: points.shape[0]] = points
        return out[: points.shape[0]]

    def add_face_vectors(self, points) -> None:
        """Appends the points as new vertexes and creates a face which references them."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        start = self.vertexes.size()
        self.vertexes.append_all(points)
        self.face_vertexes.extend(np.arange(start, start + points.shape[0]))
        self.face_offsets.append(self.face_vertexes.size())

    def get_texture(self, which: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Copies the texture coordinates of a face into an Nx2 array."""
        idx0 = self.face_offsets.get(which)
        idx1 = self.face_offsets.get(which + 1)
        coordinates = self.texture.take(np.arange(idx0, idx1))
        if out is None:
            return coordinates
        out[: coordinates.shape[0]] = coordinates
        return out[: coordinates.shape[0]]

    def add_texture(self, count: int, interleaved_xy) -> None:
        """Appends ``count`` texture coordinates stored as x0, y0, x1, y1, ...

        Keeping the number of texture coordinates in sync with ``face_vertexes``
        is the caller's responsibility.
        """
        values = np.asarray(interleaved_xy, dtype=np.float32).ravel()
        if values.shape[0] < 2 * count:
            raise ValueError(f"Expected {2 * count} values, got {values.shape[0]}")
        self.texture.append_all(values[: 2 * count])

    def get_face_normal(self, face: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Copies the normal assigned to a face.

        Args:
            face: Index of the face
            out: Optional length 3 array to write into

        Returns:
            The face normal
        """
        return self.normals.get_copy(self.face_normals.get(face), out)

    def get_face_normal_temp(self, face: int) -> np.ndarray:
        """Face normal in storage that is overwritten on the next access."""
        return self.normals.get_temp(self.face_normals.get(face))

    def compute_face_normals(self) -> None:
        """Computes one normal per face from its first three vertexes.

        The normal is the normalized cross product of (v1 - v0) and (v2 - v1).
        Faces with more than three vertexes are assumed to be planar. Faces with
        fewer than three vertexes, or collinear ones, get a zero vector.
        """
        start_time = time.perf_counter()
        offsets = self.face_offsets.to_array()
        counts = np.diff(offsets)
        normals = np.zeros((self.size(), 3), dtype=np.float64)

        valid = np.nonzero(counts >= 3)[0]
        if valid.size > 0:
            first = offsets[valid]
            v0 = self.vertexes.take(self.face_vertexes[first])
            v1 = self.vertexes.take(self.face_vertexes[first + 1])
            v2 = self.vertexes.take(self.face_vertexes[first + 2])
            cross = np.cross(v1 - v0, v2 - v1)
            norms = np.linalg.norm(cross, axis=1)
            nonzero = norms > 0
            cross[nonzero] /= norms[nonzero, np.newaxis]
            normals[valid] = cross

        self.normals.reset()
        self.normals.append_all(normals.astype(np.float32))
        self.face_normals.reset()
        self.face_normals.extend(np.arange(self.size()))

        logger.debug(
            f"Computed {self.size()} face normals "
            f"(elapsed time: {time.perf_counter() - start_time:.4f}s)"
        )

    def is_textured(self) -> bool:
        """True if the faces have texture coordinates."""
        return self.texture.size() > 0

    def is_normals(self) -> bool:
        """True if each face has been assigned a normal."""
        return self.face_normals.size() > 0

    def check_offsets(self) -> bool:
        """Returns True if face_offsets starts at zero, never decreases and ends at face_vertexes.size()."""
        offsets = self.face_offsets.data
        if offsets.shape[0] == 0 or offsets[0] != 0:
            return False
        if np.any(np.diff(offsets) < 0):
            return False
        return int(offsets[-1]) == self.face_vertexes.size()

    def set_to(self, src: "VertexMesh") -> "VertexMesh":
        """Turns this mesh into a deep copy of ``src``."""
        self.vertexes.set_to(src.vertexes)
        self.texture.set_to(src.texture)
        self.normals.set_to(src.normals)
        self.face_normals.set_to(src.face_normals)
        self.rgb.set_to(src.rgb)
        self.face_vertexes.set_to(src.face_vertexes)
        self.face_offsets.set_to(src.face_offsets)
        self.texture_name = src.texture_name
        return self

    def reset(self) -> "VertexMesh":
        """Removes all faces, vertexes and attributes. Allocated storage is kept."""
        self.vertexes.reset()
        self.texture.reset()
        self.normals.reset()
        self.face_normals.reset()
        self.rgb.reset()
        self.face_vertexes.reset()
        self.face_offsets.reset()
        self.face_offsets.append(0)
        self.texture_name = ""
        return self

    def to_access(self) -> MeshPolygonAccess:
        """Wraps the mesh so each face can be read as an Nx3 array of points.

        Returns:
            Read only accessor backed by this mesh
        """
        return MeshPolygonAccess(self)

    def __repr__(self) -> str:
        return (
            f"VertexMesh(faces={self.size()}, vertexes={self.vertexes.size()}, "
            f"textured={self.is_textured()}, texture_name={self.texture_name!r})"
        )
