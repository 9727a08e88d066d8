"""Loading and saving meshes, point clouds and texture images by file name.

The file format is selected from the file extension.
"""

from __future__ import annotations

import enum
import logging
import time
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from . import obj, ply
from .cloud import ArrayCloudWriter, PointCloudReader, PointCloudWriter
from .mesh import VertexMesh

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class MeshFormat(enum.Enum):
    PLY = "ply"
    OBJ = "obj"

    @classmethod
    def from_path(cls, path: PathLike) -> "MeshFormat":
        suffix = Path(path).suffix.lower().lstrip(".")
        for value in cls:
            if value.value == suffix:
                return value
        raise ValueError(f"Unknown mesh file type '{Path(path).suffix}' for {path}")


def load_mesh(path: PathLike, mesh: Optional[VertexMesh] = None) -> VertexMesh:
    """Loads a PLY or OBJ mesh.

    For OBJ files the first material's mesh is loaded and its texture name is
    taken from the referenced MTL file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Mesh file not found: {path}")
    if mesh is None:
        mesh = VertexMesh()

    start_time = time.perf_counter()
    file_format = MeshFormat.from_path(path)
    if file_format is MeshFormat.PLY:
        with open(path, "rb") as f:
            ply.read_mesh(f, mesh)
    else:
        loader = obj.ObjLoadFromFiles()
        loader.load(path, mesh)
        if loader.ignored_material:
            logger.warning(f"{path.name} has multiple materials, only the first one was loaded")

    logger.info(
        f"Loaded {path.name}: {mesh.size()} faces, {mesh.vertexes.size()} vertexes "
        f"(elapsed time: {time.perf_counter() - start_time:.2f}s)"
    )
    return mesh


def save_mesh(path: PathLike, mesh: VertexMesh, binary: bool = True) -> None:
    """Saves a mesh. PLY files are binary unless ``binary`` is False.

    When saving a textured OBJ an MTL file that references the texture is
    written beside it.
    """
    path = Path(path)
    file_format = MeshFormat.from_path(path)
    if file_format is MeshFormat.PLY:
        if binary:
            with open(path, "wb") as f:
                ply.save_mesh_binary(mesh, f)
        else:
            with open(path, "w", encoding="utf-8") as f:
                ply.save_mesh_ascii(mesh, f)
    else:
        with open(path, "w", encoding="utf-8") as f:
            obj.save_mesh(mesh, f)
        if mesh.texture_name:
            mtl_path = path.parent / f"{Path(mesh.texture_name).stem}.mtl"
            with open(mtl_path, "w", encoding="utf-8") as f:
                obj.save_mtl(mesh.texture_name, f)
    logger.info(f"Saved mesh to {path}")


def load_cloud(path: PathLike, output: Optional[PointCloudWriter] = None) -> PointCloudWriter:
    """Loads the vertexes of a PLY or OBJ file as a point cloud."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Point cloud file not found: {path}")
    if output is None:
        output = ArrayCloudWriter()

    if MeshFormat.from_path(path) is MeshFormat.PLY:
        with open(path, "rb") as f:
            ply.read_cloud(f, output)
    else:
        with open(path, "r", encoding="utf-8") as f:
            obj.load_cloud(f, output)
    return output


def save_cloud(path: PathLike, cloud: PointCloudReader, binary: bool = True) -> None:
    path = Path(path)
    if MeshFormat.from_path(path) is MeshFormat.PLY:
        if binary:
            with open(path, "wb") as f:
                ply.save_cloud_binary(cloud, f, cloud.colors())
        else:
            with open(path, "w", encoding="utf-8") as f:
                ply.save_cloud_ascii(cloud, cloud.colors(), f)
    else:
        with open(path, "w", encoding="utf-8") as f:
            obj.save_cloud(cloud, f)
    logger.info(f"Saved {cloud.size()} points to {path}")


def load_texture(mesh_path: PathLike, mesh: VertexMesh) -> Optional[np.ndarray]:
    """Reads the mesh's texture image, located relative to the mesh file.

    If the mesh names no texture, or the image can't be read, its texture
    coordinates are cleared so it renders with flat colors.

    Returns:
        HxWx3 uint8 RGB image or None
    """
    if not mesh.texture_name:
        if mesh.is_textured():
            logger.info("Mesh has texture coordinates but no texture image. Discarding coordinates")
            mesh.texture.reset()
        return None

    texture_path = Path(mesh_path).parent / mesh.texture_name
    image = cv2.imread(str(texture_path), cv2.IMREAD_COLOR)
    if image is None:
        logger.warning(f"Failed to read texture image {texture_path}")
        mesh.texture.reset()
        return None

    logger.info(f"Loaded texture {texture_path.name} with shape {image.shape}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
