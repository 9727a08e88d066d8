"""Wavefront OBJ and MTL file support.

The reader is lenient: a line which can't be parsed is logged and skipped
instead of aborting the file. Indexes in the file are 1-based and negative
values count backwards from the most recently defined element of the same
kind (vertex, texture vertex or normal).

Texture coordinates in OBJ files live in their own pool. When building a
``VertexMesh`` they are expanded so that the mesh holds one coordinate per
face-vertex. A face's normal is taken from the normal index of its first
vertex.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TextIO, Tuple, Union

import numpy as np

from .cloud import PointCloudReader, PointCloudWriter
from .mesh import VertexMesh

logger = logging.getLogger(__name__)


def convert_to_int(red: float, green: float, blue: float) -> int:
    """Converts a color with channels from 0 to 1 into 0xRRGGBB."""
    return (int(255 * red + 0.5) << 16) | (int(255 * green + 0.5) << 8) | int(255 * blue + 0.5)


def _fmt(value) -> str:
    return repr(float(value))


class ObjFileWriter:
    """Writes OBJ elements one line at a time.

    Indexes passed in are 0-based and are converted to the 1-based form used by
    the file. Negative indexes are written as is, -1 being the last element.
    """

    def __init__(self, output: TextIO):
        self.output = output
        self.vertex_count = 0
        self.texture_count = 0
        self.normal_count = 0

    @staticmethod
    def _index(value: int) -> str:
        value = int(value)
        return str(value if value < 0 else value + 1)

    def add_comment(self, comment: str) -> None:
        for line in comment.splitlines() or [""]:
            self.output.write(f"# {line}\n")

    def add_library(self, name: str) -> None:
        self.output.write(f"mtllib {name}\n")

    def add_material(self, name: str) -> None:
        self.output.write(f"usemtl {name}\n")

    def add_vertex(self, x: float, y: float, z: float, color: Optional[Tuple[float, float, float]] = None) -> None:
        """Adds a vertex. The optional color has channels from 0 to 1."""
        line = f"v {_fmt(x)} {_fmt(y)} {_fmt(z)}"
        if color is not None:
            line += " " + " ".join(_fmt(c) for c in color)
        self.output.write(line + "\n")
        self.vertex_count += 1

    def add_vertex_normal(self, x: float, y: float, z: float) -> None:
        self.output.write(f"vn {_fmt(x)} {_fmt(y)} {_fmt(z)}\n")
        self.normal_count += 1

    def add_texture_vertex(self, x: float, y: float) -> None:
        self.output.write(f"vt {_fmt(x)} {_fmt(y)}\n")
        self.texture_count += 1

    def add_point(self, vertex: int) -> None:
        self.output.write(f"p {self._index(vertex)}\n")

    def add_line(self, vertexes: Sequence[int]) -> None:
        self.output.write("l " + " ".join(self._index(v) for v in vertexes) + "\n")

    def add_face(
        self,
        vertexes: Sequence[int],
        textures: Optional[Sequence[int]] = None,
        normals: Optional[Sequence[int]] = None,
    ) -> None:
        """Adds a face. Texture and normal indexes are optional and parallel to ``vertexes``."""
        words = []
        for i, vertex in enumerate(vertexes):
            word = self._index(vertex)
            if textures is not None and normals is not None:
                word += f"/{self._index(textures[i])}/{self._index(normals[i])}"
            elif textures is not None:
                word += f"/{self._index(textures[i])}"
            elif normals is not None:
                word += f"//{self._index(normals[i])}"
            words.append(word)
        self.output.write("f " + " ".join(words) + "\n")


class _StopParsing(Exception):
    """Raised by a hook to end parsing early."""


class ObjFileReader:
    """Decodes OBJ text and passes each element to a hook.

    Subclasses override the ``add_*`` hooks they care about. Indexes passed to
    hooks are 0-based.
    """

    def __init__(self):
        self.vertex_count = 0
        self.texture_count = 0
        self.normal_count = 0
        self.error_count = 0

    def parse(self, lines: Iterable[str]) -> None:
        """Reads every line. Lines ending in a backslash continue on the next line."""
        self.vertex_count = 0
        self.texture_count = 0
        self.normal_count = 0
        self.error_count = 0

        pending: List[str] = []
        for line_number, raw in enumerate(lines, start=1):
            chunk = raw.strip()
            if not chunk or chunk[0] == "#":
                continue
            if chunk.endswith("\\"):
                pending.append(chunk[:-1].strip())
                continue
            if pending:
                pending.append(chunk)
                line = " ".join(pending)
                pending = []
            else:
                line = chunk

            words = line.split()
            try:
                self._parse_words(words, line_number)
            except _StopParsing:
                return
            except (ValueError, IndexError) as e:
                self.handle_error(f"{line_number} Bad object description {words[0]} '{e}'")

    def _parse_words(self, words: List[str], line_number: int) -> None:
        kind = words[0]
        if kind == "v":
            x, y, z = float(words[1]), float(words[2]), float(words[3])
            if len(words) == 7:
                self.add_vertex_with_color(x, y, z, float(words[4]), float(words[5]), float(words[6]))
            else:
                self.add_vertex(x, y, z)
            self.vertex_count += 1
        elif kind == "vn":
            self.add_vertex_normal(float(words[1]), float(words[2]), float(words[3]))
            self.normal_count += 1
        elif kind == "vt":
            self.add_vertex_texture(float(words[1]), float(words[2]))
            self.texture_count += 1
        elif kind == "p":
            vertexes = [self._ensure_index(int(w), self.vertex_count) for w in words[1:]]
            if not vertexes:
                raise ValueError("point without a vertex")
            for vertex in vertexes:
                self.add_point(vertex)
        elif kind == "l":
            self.add_line([self._ensure_index(int(w), self.vertex_count) for w in words[1:]])
        elif kind == "f":
            self._parse_face(words[1:])
        elif kind == "mtllib":
            self.add_library(words[1])
        elif kind == "usemtl":
            self.add_material(words[1])
        else:
            self.handle_error(f"{line_number} Unknown object type. '{kind}'")

    @staticmethod
    def _ensure_index(found: int, count: int) -> int:
        """Converts a 1-based or negative relative index in the file into a 0-based index."""
        if found > 0:
            return found - 1
        if found == 0:
            raise ValueError("index 0 is not valid")
        if count + found < 0:
            raise ValueError(f"relative index {found} is before the first of {count} elements")
        return count + found

    def _parse_face(self, words: List[str]) -> None:
        if not words:
            raise ValueError("face without vertexes")
        vertexes: List[int] = []
        textures: List[int] = []
        normals: List[int] = []
        for word in words:
            parts = word.split("/")
            if len(parts) > 3:
                raise ValueError(f"too many components in '{word}'")
            vertexes.append(self._ensure_index(int(parts[0]), self.vertex_count))
            if len(parts) >= 2 and parts[1]:
                textures.append(self._ensure_index(int(parts[1]), self.texture_count))
            if len(parts) == 3 and parts[2]:
                normals.append(self._ensure_index(int(parts[2]), self.normal_count))

        n = len(vertexes)
        if textures and len(textures) != n:
            raise ValueError("texture indexes must be given for every vertex or none")
        if normals and len(normals) != n:
            raise ValueError("normal indexes must be given for every vertex or none")
        self.add_face(vertexes, textures or None, normals or None)

    def add_library(self, name: str) -> None:
        pass

    def add_material(self, name: str) -> None:
        pass

    def add_vertex(self, x: float, y: float, z: float) -> None:
        pass

    def add_vertex_with_color(self, x: float, y: float, z: float, red: float, green: float, blue: float) -> None:
        """Vertex with a color. Channels range from 0 to 1."""
        self.add_vertex(x, y, z)

    def add_vertex_normal(self, x: float, y: float, z: float) -> None:
        pass

    def add_vertex_texture(self, x: float, y: float) -> None:
        pass

    def add_point(self, vertex: int) -> None:
        pass

    def add_line(self, vertexes: List[int]) -> None:
        pass

    def add_face(self, vertexes: List[int], textures: Optional[List[int]], normals: Optional[List[int]]) -> None:
        pass

    def handle_error(self, message: str) -> None:
        self.error_count += 1
        logger.warning(message)


class _MeshObjReader(ObjFileReader):
    """Builds a VertexMesh from OBJ elements."""

    def __init__(self, mesh: VertexMesh):
        super().__init__()
        self.active = mesh
        self.texture_pool: List[Tuple[float, float]] = []

    def add_vertex(self, x, y, z):
        self.active.vertexes.append((x, y, z))

    def add_vertex_with_color(self, x, y, z, red, green, blue):
        self.active.vertexes.append((x, y, z))
        self.active.rgb.append(convert_to_int(red, green, blue))

    def add_vertex_normal(self, x, y, z):
        self.active.normals.append((x, y, z))

    def add_vertex_texture(self, x, y):
        self.texture_pool.append((x, y))

    def add_face(self, vertexes, textures, normals):
        mesh = self.active
        start = mesh.face_vertexes.size()

        if textures is not None:
            coordinates = np.array([self.texture_pool[t] for t in textures], dtype=np.float32)
            # Faces without texture coordinates get zeros so the arrays stay parallel
            missing = start - mesh.texture.size()
            if missing > 0:
                mesh.texture.append_all(np.zeros((missing, 2), dtype=np.float32))
            mesh.texture.append_all(coordinates)
        elif mesh.texture.size() > 0:
            mesh.texture.append_all(np.zeros((len(vertexes), 2), dtype=np.float32))

        if normals is not None:
            mesh.face_normals.append(normals[0])

        mesh.face_vertexes.extend(vertexes)
        mesh.face_offsets.append(mesh.face_vertexes.size())

    def finish(self, mesh: VertexMesh) -> None:
        if 0 < mesh.face_normals.size() != mesh.size():
            logger.warning(
                f"Only {mesh.face_normals.size()} of {mesh.size()} faces have normals. Discarding face normals"
            )
            mesh.face_normals.reset()


def save_cloud(cloud: PointCloudReader, output: TextIO) -> None:
    """Writes a point cloud as vertexes and points. Colors are saved as vertex colors."""
    obj = ObjFileWriter(output)
    obj.add_comment("Created by meshrender")
    has_color = cloud.colors()
    point = np.zeros(3)
    for i in range(cloud.size()):
        x, y, z = cloud.get(i, point)
        if has_color:
            rgb = cloud.get_rgb(i)
            color = (((rgb >> 16) & 0xFF) / 255.0, ((rgb >> 8) & 0xFF) / 255.0, (rgb & 0xFF) / 255.0)
            obj.add_vertex(x, y, z, color)
        else:
            obj.add_vertex(x, y, z)
        obj.add_point(-1)


def load_cloud(input: Iterable[str], output: PointCloudWriter) -> None:
    """Reads every vertex in an OBJ file as a point."""
    points: List[Tuple[float, float, float]] = []
    colors: List[int] = []

    class _Reader(ObjFileReader):
        def add_vertex(self, x, y, z):
            points.append((x, y, z))
            colors.append(-1)

        def add_vertex_with_color(self, x, y, z, red, green, blue):
            points.append((x, y, z))
            colors.append(convert_to_int(red, green, blue))

    _Reader().parse(input)

    has_color = any(c >= 0 for c in colors)
    output.initialize(len(points), has_color)
    for (x, y, z), rgb in zip(points, colors):
        output.add(x, y, z, max(rgb, 0) if has_color else None)


def save_mesh(mesh: VertexMesh, output: TextIO) -> None:
    """Writes a mesh. If it has a texture name, a material with the texture's base name is referenced."""
    start_time = time.perf_counter()
    obj = ObjFileWriter(output)
    obj.add_comment("Created by meshrender")
    if mesh.texture_name:
        base_name = Path(mesh.texture_name).stem
        obj.add_library(f"{base_name}.mtl")
        obj.add_material(base_name)

    vertexes = mesh.vertexes.to_array()
    has_color = mesh.rgb.size() > 0
    for i in range(vertexes.shape[0]):
        x, y, z = vertexes[i]
        if has_color:
            rgb = mesh.rgb.get(i)
            color = (((rgb >> 16) & 0xFF) / 255.0, ((rgb >> 8) & 0xFF) / 255.0, (rgb & 0xFF) / 255.0)
            obj.add_vertex(x, y, z, color)
        else:
            obj.add_vertex(x, y, z)

    for normal in mesh.normals.to_array():
        obj.add_vertex_normal(*normal)

    textured = mesh.is_textured()
    for coordinate in mesh.texture.to_array():
        obj.add_texture_vertex(*coordinate)

    with_normals = mesh.face_normals.size() == mesh.size() and mesh.size() > 0
    for face in range(mesh.size()):
        idx0 = mesh.face_offsets.get(face)
        idx1 = mesh.face_offsets.get(face + 1)
        vertexes_face = mesh.face_vertexes[idx0:idx1]
        textures = list(range(idx0, idx1)) if textured else None
        normals = [mesh.face_normals.get(face)] * (idx1 - idx0) if with_normals else None
        obj.add_face(vertexes_face, textures, normals)

    logger.debug(
        f"Saved OBJ with {mesh.vertexes.size()} vertexes and {mesh.size()} faces "
        f"(elapsed time: {time.perf_counter() - start_time:.3f}s)"
    )


def load_mesh(input: Iterable[str], mesh: Optional[VertexMesh] = None) -> VertexMesh:
    """Reads a single mesh from OBJ text. Materials are ignored."""
    if mesh is None:
        mesh = VertexMesh()
    mesh.reset()
    reader = _MeshObjReader(mesh)
    reader.parse(input)
    reader.finish(mesh)
    return mesh


def save_mtl(texture_file: str, output: TextIO) -> None:
    """Writes an MTL file with a single material that's named after the texture's base name."""
    base_name = Path(texture_file).stem
    output.write(
        f"newmtl {base_name}\n"
        "Ka 1.0 1.0 1.0\n"
        "Kd 1.0 1.0 1.0\n"
        "Ks 0.0 0.0 0.0\n"
        "d 1.0\n"
        "Ns 0.0\n"
        "illum 0\n"
        f"map_Kd {texture_file}\n"
    )


def read_mtl_textures(path: Union[str, Path]) -> Dict[str, str]:
    """Reads the texture file (map_Kd) of every material (newmtl) in an MTL file."""
    material_to_texture: Dict[str, str] = {}
    material = ""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            words = line.split()
            if len(words) < 2:
                continue
            if words[0] == "newmtl":
                material = words[1]
            elif words[0] == "map_Kd":
                material_to_texture[material] = words[1]
    return material_to_texture


class ObjLoadFromFiles:
    """Loads an OBJ file and the MTL files it references, creating one mesh per material.

    Meshes are stored in ``shape_to_mesh`` keyed by material name. Geometry which
    isn't assigned to a material is stored under the empty string.

    Vertex indexes are shared by the whole file, so faces keep the file's
    indexes even after being split up by material.
    """

    def __init__(self):
        self.shape_to_mesh: Dict[str, VertexMesh] = {}
        self.ignored_material = False
        self.material_to_texture: Dict[str, str] = {}

    def load(self, path: Union[str, Path], output_mesh: Optional[VertexMesh] = None) -> Dict[str, VertexMesh]:
        """Loads the file.

        Args:
            path: Path to the OBJ file
            output_mesh: If provided it's used as storage and only the first
                material is read. ``ignored_material`` is set if there were more.

        Returns:
            Mapping from material name to mesh
        """
        path = Path(path)
        start_time = time.perf_counter()
        self.shape_to_mesh = {}
        self.ignored_material = False
        loader = self

        active = output_mesh if output_mesh is not None else VertexMesh()
        active.reset()
        self.shape_to_mesh[""] = active

        class _Reader(_MeshObjReader):
            first = True

            def add_library(self, name):
                loader.material_to_texture.update(read_mtl_textures(path.parent / name))

            def add_material(self, name):
                if self.first and self.active.vertexes.size() == 0:
                    loader.shape_to_mesh.pop("", None)

                if output_mesh is not None:
                    if not self.first or self.active.vertexes.size() != 0:
                        loader.ignored_material = True
                        raise _StopParsing()
                else:
                    self.active = VertexMesh()
                self.first = False

                if name in loader.material_to_texture:
                    self.active.texture_name = loader.material_to_texture[name]
                else:
                    logger.warning(f"Unknown material '{name}'")
                loader.shape_to_mesh[name] = self.active

        reader = _Reader(active)
        with open(path, "r", encoding="utf-8") as f:
            reader.parse(f)
        for mesh in self.shape_to_mesh.values():
            reader.finish(mesh)

        logger.info(
            f"Loaded {len(self.shape_to_mesh)} meshes from {path.name} "
            f"(elapsed time: {time.perf_counter() - start_time:.2f}s)"
        )
        return self.shape_to_mesh
