"""PLY file reading and writing.

Supports ASCII and binary (little and big endian) files which contain a
vertex element (x, y, z with optional normals and uchar colors) and an
optional face element with a list of vertex indexes and an optional list of
texture coordinates. The texture image name is stored in a comment line of
the form ``comment TextureFile <name>``.

Data is exchanged through the ``PlyReader`` and ``PlyWriter`` interfaces so
the same code handles meshes and point clouds.
"""

from __future__ import annotations

import abc
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, TextIO, Tuple

import numpy as np

from .cloud import PointCloudReader, PointCloudWriter
from .mesh import VertexMesh
from .packed import IndexArray

logger = logging.getLogger(__name__)

# PLY type name to struct format character
_PLY_TYPES = {
    "char": "b", "int8": "b",
    "uchar": "B", "uint8": "B",
    "short": "h", "int16": "h",
    "ushort": "H", "uint16": "H",
    "int": "i", "int32": "i",
    "uint": "I", "uint32": "I",
    "float": "f", "float32": "f",
    "double": "d", "float64": "d",
}

_FORMATS = ("ascii", "binary_little_endian", "binary_big_endian")

_TEXTURE_COMMENT = "TextureFile"


class PlyFormatError(ValueError):
    """Raised when a PLY file is malformed or uses an unsupported layout."""


class PlyWriter(abc.ABC):
    """Source of the data which is written to a PLY file."""

    @abc.abstractmethod
    def vertex_count(self) -> int:
        ...

    @abc.abstractmethod
    def polygon_count(self) -> int:
        ...

    @abc.abstractmethod
    def is_color(self) -> bool:
        """True if vertexes have a color."""

    @abc.abstractmethod
    def is_textured(self) -> bool:
        """True if polygons have texture coordinates."""

    def is_vertex_normals(self) -> bool:
        return False

    def texture_name(self) -> str:
        """Name of the texture image, empty if there is none."""
        return ""

    @abc.abstractmethod
    def vertexes(self) -> np.ndarray:
        """All vertex locations, Nx3."""

    def vertex_normals(self) -> np.ndarray:
        return np.zeros((self.vertex_count(), 3))

    def colors(self) -> np.ndarray:
        """Vertex colors as 0xRRGGBB integers."""
        return np.zeros(self.vertex_count(), dtype=np.int32)

    @abc.abstractmethod
    def get_indexes(self, which: int) -> np.ndarray:
        """Vertex indexes of a polygon."""

    def get_texture_coors(self, which: int) -> np.ndarray:
        """Interleaved (x, y) texture coordinates of a polygon."""
        return np.zeros(0, dtype=np.float32)


class PlyReader(abc.ABC):
    """Receives the contents of a PLY file as it's decoded."""

    @abc.abstractmethod
    def initialize(self, vertex_count: int, polygon_count: int, has_color: bool) -> None:
        ...

    @abc.abstractmethod
    def add_vertexes(self, points: np.ndarray, rgb: Optional[np.ndarray]) -> None:
        """Adds Nx3 vertex locations and, if the file has color, their 0xRRGGBB colors."""

    def add_vertex_normals(self, normals: np.ndarray) -> None:
        pass

    @abc.abstractmethod
    def add_polygon(self, indexes: np.ndarray) -> None:
        ...

    def add_texture(self, count: int, coordinates: np.ndarray) -> None:
        pass

    def set_texture_name(self, name: str) -> None:
        pass


@dataclass
class PlyHeader:
    format: str = ""
    vertex_count: int = -1
    polygon_count: int = 0
    # (name, struct format) of each scalar vertex property
    vertex_properties: List[Tuple[str, str]] = field(default_factory=list)
    # (name, count format, value format) of each face list property
    face_properties: List[Tuple[str, str, str]] = field(default_factory=list)
    texture_name: str = ""

    @property
    def has_color(self) -> bool:
        names = {name for name, _ in self.vertex_properties}
        return {"red", "green", "blue"} <= names

    @property
    def has_normals(self) -> bool:
        names = {name for name, _ in self.vertex_properties}
        return {"nx", "ny", "nz"} <= names


def _ply_type(name: str) -> str:
    try:
        return _PLY_TYPES[name.lower()]
    except KeyError:
        raise PlyFormatError(f"Unsupported PLY data type '{name}'") from None


class _MeshWriter(PlyWriter):
    def __init__(self, mesh: VertexMesh, colors: Optional[IndexArray]):
        self.mesh = mesh
        if colors is None and mesh.rgb.size() > 0:
            colors = mesh.rgb
        if colors is not None and colors.size() != mesh.vertexes.size():
            raise ValueError(f"Color count {colors.size()} != vertex count {mesh.vertexes.size()}")
        self._colors = colors

    def vertex_count(self) -> int:
        return self.mesh.vertexes.size()

    def polygon_count(self) -> int:
        return self.mesh.size()

    def is_color(self) -> bool:
        return self._colors is not None

    def is_textured(self) -> bool:
        return self.mesh.is_textured()

    def texture_name(self) -> str:
        return self.mesh.texture_name

    def vertexes(self) -> np.ndarray:
        return self.mesh.vertexes.to_array()

    def colors(self) -> np.ndarray:
        if self._colors is None:
            return super().colors()
        return self._colors.to_array()

    def get_indexes(self, which: int) -> np.ndarray:
        idx0 = self.mesh.face_offsets.get(which)
        idx1 = self.mesh.face_offsets.get(which + 1)
        return self.mesh.face_vertexes[idx0:idx1]

    def get_texture_coors(self, which: int) -> np.ndarray:
        return self.mesh.get_texture(which).ravel()


class _CloudWriter(PlyWriter):
    def __init__(self, cloud: PointCloudReader, save_rgb: bool):
        self.cloud = cloud
        self.save_rgb = save_rgb

    def vertex_count(self) -> int:
        return self.cloud.size()

    def polygon_count(self) -> int:
        return 0

    def is_color(self) -> bool:
        return self.save_rgb

    def is_textured(self) -> bool:
        return False

    def vertexes(self) -> np.ndarray:
        return self.cloud.points()

    def colors(self) -> np.ndarray:
        return self.cloud.rgb()

    def get_indexes(self, which: int) -> np.ndarray:
        raise IndexError("Point clouds have no polygons")


class _MeshReader(PlyReader):
    def __init__(self, mesh: VertexMesh):
        self.mesh = mesh

    def initialize(self, vertex_count: int, polygon_count: int, has_color: bool) -> None:
        self.mesh.reset()
        self.mesh.vertexes.reserve(vertex_count)
        self.mesh.face_vertexes.reserve(polygon_count * 3)

    def add_vertexes(self, points: np.ndarray, rgb: Optional[np.ndarray]) -> None:
        self.mesh.vertexes.append_all(points)
        if rgb is not None:
            self.mesh.rgb.extend(rgb)

    def add_polygon(self, indexes: np.ndarray) -> None:
        self.mesh.face_vertexes.extend(indexes)
        self.mesh.face_offsets.append(self.mesh.face_vertexes.size())

    def add_texture(self, count: int, coordinates: np.ndarray) -> None:
        self.mesh.add_texture(count, coordinates)

    def set_texture_name(self, name: str) -> None:
        self.mesh.texture_name = name


class _CloudReader(PlyReader):
    def __init__(self, output: PointCloudWriter):
        self.output = output
        self.has_color = False

    def initialize(self, vertex_count: int, polygon_count: int, has_color: bool) -> None:
        self.has_color = has_color
        self.output.initialize(vertex_count, has_color)

    def add_vertexes(self, points: np.ndarray, rgb: Optional[np.ndarray]) -> None:
        for i in range(points.shape[0]):
            x, y, z = points[i]
            self.output.add(x, y, z, None if rgb is None else int(rgb[i]))

    def add_polygon(self, indexes: np.ndarray) -> None:
        pass


def _header_lines(data: PlyWriter, format_name: str, scalar: str) -> List[str]:
    lines = ["ply", f"format {format_name} 1.0", "comment Created using meshrender"]
    if data.texture_name():
        lines.append(f"comment {_TEXTURE_COMMENT} {data.texture_name()}")
    lines.append(f"element vertex {data.vertex_count()}")
    lines += [f"property {scalar} {axis}" for axis in ("x", "y", "z")]
    if data.is_vertex_normals():
        lines += [f"property {scalar} {axis}" for axis in ("nx", "ny", "nz")]
    if data.is_color():
        lines += [f"property uchar {channel}" for channel in ("red", "green", "blue")]
    if data.polygon_count() > 0:
        lines.append(f"element face {data.polygon_count()}")
        lines.append("property list uchar int vertex_indices")
        if data.is_textured():
            lines.append("property list uchar float texcoord")
    lines.append("end_header")
    return lines


def _check_polygon(size: int, which: int) -> None:
    if size > 255:
        raise ValueError(f"Polygon {which} has {size} vertexes, PLY lists are limited to 255")


def save_ascii(data: PlyWriter, output: TextIO) -> None:
    """Writes the data as an ASCII PLY file.

    Args:
        data: Source of the vertexes and polygons
        output: Text stream
    """
    start_time = time.perf_counter()
    output.write("\n".join(_header_lines(data, "ascii", "float")) + "\n")

    vertexes = data.vertexes()
    normals = data.vertex_normals() if data.is_vertex_normals() else None
    colors = data.colors() if data.is_color() else None
    for i in range(data.vertex_count()):
        x, y, z = vertexes[i]
        line = f"{x:.9g} {y:.9g} {z:.9g}"
        if normals is not None:
            nx, ny, nz = normals[i]
            line += f" {nx:.9g} {ny:.9g} {nz:.9g}"
        if colors is not None:
            rgb = int(colors[i])
            line += f" {(rgb >> 16) & 0xFF} {(rgb >> 8) & 0xFF} {rgb & 0xFF}"
        output.write(line + "\n")

    for i in range(data.polygon_count()):
        indexes = data.get_indexes(i)
        _check_polygon(len(indexes), i)
        words = [str(len(indexes))] + [str(int(v)) for v in indexes]
        if data.is_textured():
            coordinates = data.get_texture_coors(i)
            if len(coordinates) != 2 * len(indexes):
                raise ValueError(f"Polygon {i} has {len(indexes)} vertexes but {len(coordinates)} texture values")
            words.append(str(len(coordinates)))
            words += [f"{float(v):.9g}" for v in coordinates]
        output.write(" ".join(words) + "\n")

    output.flush()
    logger.debug(
        f"Saved ASCII PLY with {data.vertex_count()} vertexes and {data.polygon_count()} polygons "
        f"(elapsed time: {time.perf_counter() - start_time:.3f}s)"
    )


def save_binary(data: PlyWriter, output: BinaryIO, order: str = "big", save_as_float: bool = True) -> None:
    """Writes the data as a binary PLY file.

    Args:
        data: Source of the vertexes and polygons
        output: Binary stream
        order: Byte order, "little" or "big"
        save_as_float: If True locations are written as 4-byte floats, otherwise as 8-byte doubles
    """
    if order not in ("little", "big"):
        raise ValueError(f"Unknown byte order '{order}'")
    start_time = time.perf_counter()
    scalar = "float" if save_as_float else "double"
    header = _header_lines(data, f"binary_{order}_endian", scalar)
    output.write(("\n".join(header) + "\n").encode("ascii"))

    prefix = "<" if order == "little" else ">"
    scalar_dtype = np.dtype(prefix + ("f4" if save_as_float else "f8"))

    fields = [("x", scalar_dtype), ("y", scalar_dtype), ("z", scalar_dtype)]
    if data.is_vertex_normals():
        fields += [("nx", scalar_dtype), ("ny", scalar_dtype), ("nz", scalar_dtype)]
    if data.is_color():
        fields += [("red", "u1"), ("green", "u1"), ("blue", "u1")]

    records = np.zeros(data.vertex_count(), dtype=np.dtype(fields))
    vertexes = data.vertexes()
    if data.vertex_count() > 0:
        records["x"], records["y"], records["z"] = vertexes[:, 0], vertexes[:, 1], vertexes[:, 2]
        if data.is_vertex_normals():
            normals = data.vertex_normals()
            records["nx"], records["ny"], records["nz"] = normals[:, 0], normals[:, 1], normals[:, 2]
        if data.is_color():
            colors = np.asarray(data.colors(), dtype=np.int64)
            records["red"] = (colors >> 16) & 0xFF
            records["green"] = (colors >> 8) & 0xFF
            records["blue"] = colors & 0xFF
    output.write(records.tobytes())

    for i in range(data.polygon_count()):
        indexes = data.get_indexes(i)
        size = len(indexes)
        _check_polygon(size, i)
        output.write(struct.pack(f"{prefix}B{size}i", size, *[int(v) for v in indexes]))
        if data.is_textured():
            coordinates = data.get_texture_coors(i)
            if len(coordinates) != 2 * size:
                raise ValueError(f"Polygon {i} has {size} vertexes but {len(coordinates)} texture values")
            output.write(struct.pack(f"{prefix}B{2 * size}f", 2 * size, *[float(v) for v in coordinates]))

    output.flush()
    logger.debug(
        f"Saved binary PLY with {data.vertex_count()} vertexes and {data.polygon_count()} polygons "
        f"(elapsed time: {time.perf_counter() - start_time:.3f}s)"
    )


def save_mesh_ascii(mesh: VertexMesh, output: TextIO, colors: Optional[IndexArray] = None) -> None:
    """Saves a mesh. Vertex colors come from ``colors`` or else ``mesh.rgb`` when it's filled in."""
    save_ascii(_MeshWriter(mesh, colors), output)


def save_mesh_binary(
    mesh: VertexMesh,
    output: BinaryIO,
    colors: Optional[IndexArray] = None,
    order: str = "big",
    save_as_float: bool = True,
) -> None:
    save_binary(_MeshWriter(mesh, colors), output, order, save_as_float)


def save_cloud_ascii(cloud: PointCloudReader, save_rgb: bool, output: TextIO) -> None:
    save_ascii(_CloudWriter(cloud, save_rgb), output)


def save_cloud_binary(
    cloud: PointCloudReader,
    output: BinaryIO,
    save_rgb: bool,
    order: str = "big",
    save_as_float: bool = True,
) -> None:
    save_binary(_CloudWriter(cloud, save_rgb), output, order, save_as_float)


def _read_line(input: BinaryIO) -> str:
    line = input.readline()
    if not line:
        raise PlyFormatError("Unexpected end of file in header")
    return line.decode("ascii", errors="replace").strip()


def read_header(input: BinaryIO) -> PlyHeader:
    """Parses the header and leaves the stream at the start of the body."""
    header = PlyHeader()
    if _read_line(input).lower() != "ply":
        raise PlyFormatError("Expected PLY at start of file")

    element = None
    while True:
        line = _read_line(input)
        if line == "end_header":
            break
        words = line.split()
        if not words:
            continue
        if words[0] in ("comment", "obj_info"):
            if len(words) >= 3 and words[1] == _TEXTURE_COMMENT:
                header.texture_name = line.split(None, 2)[2]
            continue
        if len(words) == 1:
            raise PlyFormatError(f"Expected more than one word: '{line}'")

        if words[0] == "format":
            if words[1] not in _FORMATS:
                raise PlyFormatError(f"Unknown format {words[1]}")
            header.format = words[1]
        elif words[0] == "element":
            if len(words) != 3:
                raise PlyFormatError(f"Malformed element line: '{line}'")
            element = words[1]
            try:
                count = int(words[2])
            except ValueError:
                raise PlyFormatError(f"Bad element count: '{line}'") from None
            if element == "vertex":
                header.vertex_count = count
            elif element == "face":
                header.polygon_count = count
            elif count > 0:
                raise PlyFormatError(f"Unsupported element '{element}'")
        elif words[0] == "property":
            if words[1] == "list":
                if len(words) != 5:
                    raise PlyFormatError(f"Unexpected number of words in property list: '{line}'")
                if element != "face":
                    raise PlyFormatError(f"List property outside of the face element: '{line}'")
                header.face_properties.append((words[4], _ply_type(words[2]), _ply_type(words[3])))
            else:
                if len(words) != 3:
                    raise PlyFormatError(f"Unexpected number of words in property: '{line}'")
                if element == "vertex":
                    header.vertex_properties.append((words[2].lower(), _ply_type(words[1])))
                elif element == "face":
                    raise PlyFormatError(f"Scalar face properties are not supported: '{line}'")
        else:
            raise PlyFormatError(f"Unknown header element: '{line}'")

    if header.vertex_count < 0:
        raise PlyFormatError("File is missing vertex count")
    if not header.format:
        raise PlyFormatError("Format is never specified")
    for axis in ("x", "y", "z"):
        if axis not in {name for name, _ in header.vertex_properties}:
            raise PlyFormatError(f"Vertex element is missing property '{axis}'")
    return header


def _split_vertex_columns(header: PlyHeader, columns) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """Extracts locations, colors and normals from per property columns."""
    points = np.column_stack([np.asarray(columns["x"], dtype=np.float64),
                              np.asarray(columns["y"], dtype=np.float64),
                              np.asarray(columns["z"], dtype=np.float64)])
    rgb = None
    if header.has_color:
        red = np.asarray(columns["red"], dtype=np.int64) & 0xFF
        green = np.asarray(columns["green"], dtype=np.int64) & 0xFF
        blue = np.asarray(columns["blue"], dtype=np.int64) & 0xFF
        rgb = ((red << 16) | (green << 8) | blue).astype(np.int32)
    normals = None
    if header.has_normals:
        normals = np.column_stack([np.asarray(columns[name], dtype=np.float64) for name in ("nx", "ny", "nz")])
    return points.reshape(-1, 3), rgb, normals


def _check_indexes(indexes: np.ndarray, vertex_count: int, polygon: int) -> None:
    if indexes.size > 0 and (indexes.min() < 0 or indexes.max() >= vertex_count):
        raise PlyFormatError(
            f"Polygon {polygon} references a vertex outside of [0, {vertex_count}): {indexes.tolist()}"
        )


def _emit_face_list(output: PlyReader, name: str, values: np.ndarray, header: PlyHeader, polygon: int) -> None:
    if name == "vertex_indices" or name == "vertex_index":
        indexes = values.astype(np.int32)
        _check_indexes(indexes, header.vertex_count, polygon)
        output.add_polygon(indexes)
    elif name == "texcoord":
        if values.shape[0] % 2 != 0:
            raise PlyFormatError(f"Polygon {polygon} has an odd number of texture values")
        output.add_texture(values.shape[0] // 2, values.astype(np.float32))
    elif polygon == 0:
        logger.warning(f"Skipping unknown face property '{name}'")


def _read_ascii(input: BinaryIO, header: PlyHeader, output: PlyReader) -> None:
    lines = (
        line for line in (raw.decode("ascii", errors="replace").strip() for raw in input)
        if line and not line.startswith("comment")
    )

    names = [name for name, _ in header.vertex_properties]
    columns = {name: np.zeros(header.vertex_count) for name in names}
    for i in range(header.vertex_count):
        line = next(lines, None)
        if line is None:
            raise PlyFormatError(f"Unexpected end of file after {i} vertexes")
        words = line.split()
        if len(words) != len(names):
            raise PlyFormatError(f"Unexpected number of words in vertex {i}: '{line}'")
        try:
            for name, word in zip(names, words):
                columns[name][i] = float(word)
        except ValueError:
            raise PlyFormatError(f"Bad number in vertex {i}: '{line}'") from None

    points, rgb, normals = _split_vertex_columns(header, columns)
    output.add_vertexes(points, rgb)
    if normals is not None:
        output.add_vertex_normals(normals)

    for i in range(header.polygon_count):
        line = next(lines, None)
        if line is None:
            raise PlyFormatError(f"Unexpected end of file after {i} polygons")
        words = line.split()
        location = 0
        try:
            for name, _, _ in header.face_properties:
                count = int(words[location])
                values = np.array([float(w) for w in words[location + 1 : location + 1 + count]])
                if values.shape[0] != count:
                    raise PlyFormatError(f"Polygon {i} is truncated: '{line}'")
                location += 1 + count
                _emit_face_list(output, name, values, header, i)
        except (ValueError, IndexError) as e:
            if isinstance(e, PlyFormatError):
                raise
            raise PlyFormatError(f"Malformed polygon {i}: '{line}'") from e
        if location != len(words):
            raise PlyFormatError(f"Unexpected number of words in polygon {i}: '{line}'")


def _read_exact(input: BinaryIO, size: int, what: str) -> bytes:
    data = input.read(size)
    if len(data) != size:
        raise PlyFormatError(f"Read unexpected number of bytes for {what}. {len(data)} vs {size}")
    return data


def _read_binary(input: BinaryIO, header: PlyHeader, output: PlyReader) -> None:
    prefix = "<" if header.format == "binary_little_endian" else ">"

    record = np.dtype([(name, prefix + code) for name, code in header.vertex_properties])
    body = _read_exact(input, record.itemsize * header.vertex_count, "vertexes")
    vertexes = np.frombuffer(body, dtype=record, count=header.vertex_count)

    points, rgb, normals = _split_vertex_columns(header, vertexes)
    output.add_vertexes(points, rgb)
    if normals is not None:
        output.add_vertex_normals(normals)

    for i in range(header.polygon_count):
        for name, count_code, value_code in header.face_properties:
            count_format = prefix + count_code
            count = struct.unpack(count_format, _read_exact(input, struct.calcsize(count_format), "list count"))[0]
            values_format = f"{prefix}{count}{value_code}"
            values = struct.unpack(values_format, _read_exact(input, struct.calcsize(values_format), "list values"))
            _emit_face_list(output, name, np.array(values), header, i)


def read(input: BinaryIO, output: PlyReader) -> PlyHeader:
    """Decodes a PLY file from a binary stream.

    Args:
        input: Binary stream positioned at the start of the file
        output: Receives the decoded data

    Returns:
        The parsed header
    """
    start_time = time.perf_counter()
    header = read_header(input)
    output.initialize(header.vertex_count, header.polygon_count, header.has_color)
    if header.texture_name:
        output.set_texture_name(header.texture_name)

    if header.format == "ascii":
        _read_ascii(input, header, output)
    else:
        _read_binary(input, header, output)

    logger.debug(
        f"Read {header.format} PLY with {header.vertex_count} vertexes and {header.polygon_count} polygons "
        f"(elapsed time: {time.perf_counter() - start_time:.3f}s)"
    )
    return header


def read_mesh(input: BinaryIO, mesh: Optional[VertexMesh] = None) -> VertexMesh:
    """Reads a mesh. Vertex colors, if present, are stored in ``mesh.rgb``."""
    if mesh is None:
        mesh = VertexMesh()
    read(input, _MeshReader(mesh))
    return mesh


def read_cloud(input: BinaryIO, output: PointCloudWriter) -> None:
    """Reads the vertexes of a PLY file as a point cloud. Polygons are ignored."""
    read(input, _CloudReader(output))
