"""Software rasterizer for polygon meshes.

``RenderMesh`` projects the faces of a ``VertexMesh`` into a camera and
produces a color image and a depth image. Faces are either filled with a
single color or texture mapped with perspective correct interpolation of
the texture coordinates. Visibility is resolved with a depth buffer.

Known approximations:

* A flat colored face has a single depth, the depth of its first vertex.
* On textured faces depth is interpolated linearly in screen space while
  texture coordinates are interpolated perspective correctly.
* Faces with any vertex at or behind the camera plane are skipped entirely.
* Faces are assumed to be convex and planar.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import cv2
import numpy as np

from .camera import (
    CameraPinhole,
    CameraPinholeBrown,
    ImageDimension,
    PointTransform,
    brown_transforms,
    create_intrinsic,
    pinhole_transforms,
)
from .geometry import Rectangle2D, Se3, contains_convex, edge_function, polygon_bounding_box
from .mesh import VertexMesh, unpack_rgb

logger = logging.getLogger(__name__)

# Returns the 0xRRGGBB color of a face given its index
SurfaceColor = Callable[[int], int]


def _default_surface_color(face: int) -> int:
    return 0xFF0000


class RenderWorkspace:
    """Scratch data for the face currently being rendered."""

    def __init__(self):
        # Face vertexes in the camera reference frame, Nx3
        self.mesh_cam = np.zeros((0, 3))
        # Face vertexes projected onto the image in pixels, Nx2
        self.polygon_proj = np.zeros((0, 2))
        # Texture coordinates of the face vertexes, Nx2
        self.polygon_tex = np.zeros((0, 2), dtype=np.float32)
        # Triangle from the fan triangulation of the current face
        self.triangle = np.zeros((3, 2))
        # Pixel region which is searched
        self.aabb = Rectangle2D()


class RenderMesh:
    """Renders a mesh into a depth image and an RGB image.

    Usage: configure the camera, set ``world_to_view``, optionally set a
    texture image, then call ``render``. Each call overwrites the images.
    Not safe to call concurrently on the same instance.
    """

    def __init__(self):
        # Color of pixels which no face projects onto
        self.default_color_rgb = 0xFFFFFF
        # Color of a face when it isn't texture mapped
        self.surface_color: SurfaceColor = _default_surface_color
        # Rendered depth image. NaN where there is no depth
        self.depth_image = np.full((1, 1), np.nan, dtype=np.float32)
        # Rendered color image, RGB channel order
        self.rgb_image = np.zeros((1, 1, 3), dtype=np.uint8)
        # Transform from the mesh's world frame to the camera view
        self.world_to_view = Se3()
        # If True only faces whose normal points towards the camera are rendered
        self.check_face_normal = False
        # If True faces are always rendered with surface_color, even when texture data is present
        self.force_colorizer = False
        # Number of faces which were rendered in the last call
        self.faces_rendered = 0

        self.resolution = ImageDimension()
        self.pixel_to_norm: Optional[PointTransform] = None
        self.norm_to_pixel: Optional[PointTransform] = None

        self.texture_image = np.zeros((1, 1, 3), dtype=np.uint8)
        self.has_texture_image = False

        self.workspace = RenderWorkspace()

    def set_camera(
        self,
        pixel_to_norm: PointTransform,
        norm_to_pixel: PointTransform,
        width: int,
        height: int,
    ) -> None:
        """Specifies the camera as a pair of coordinate transforms and the image shape."""
        self.pixel_to_norm = pixel_to_norm
        self.norm_to_pixel = norm_to_pixel
        self.resolution.set_to(width, height)

    def set_camera_pinhole(self, hfov: float, width: int, height: int) -> None:
        """Specifies a pinhole camera from its horizontal field of view in degrees."""
        model = create_intrinsic(width, height, hfov)
        self.set_camera(*pinhole_transforms(model), model.width, model.height)

    def set_camera_model(self, model: CameraPinhole) -> None:
        """Specifies the camera from an intrinsic model, with or without lens distortion."""
        if isinstance(model, CameraPinholeBrown):
            transforms = brown_transforms(model)
        else:
            transforms = pinhole_transforms(model)
        self.set_camera(*transforms, model.width, model.height)

    def set_texture_image(self, image: np.ndarray) -> None:
        """Sets the texture which textured meshes are mapped with. HxWx3 uint8 in RGB order."""
        image = np.asarray(image)
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected an HxWx3 texture image, got shape {image.shape}")
        self.texture_image = np.ascontiguousarray(image, dtype=np.uint8)
        self.has_texture_image = True

    def render(self, mesh: VertexMesh) -> None:
        """Renders the mesh and writes the results into ``rgb_image`` and ``depth_image``.

        Args:
            mesh: The mesh, in world coordinates
        """
        if self.resolution.width <= 0 or self.resolution.height <= 0:
            raise ValueError("Intrinsics not set")
        if self.norm_to_pixel is None:
            raise ValueError("Camera transforms not set")

        start_time = time.perf_counter()

        if self.check_face_normal and mesh.face_normals.size() == 0:
            mesh.compute_face_normals()

        self.initialize_images()
        self.faces_rendered = 0

        world_camera = self.world_to_view.transform_reverse(np.zeros(3))

        use_colorizer = (
            self.force_colorizer or mesh.texture.size() == 0 or not self.has_texture_image
        )

        # Every vertex in the camera frame, and its projection when it's in front of the camera
        vertexes_cam = self.world_to_view.transform_points(mesh.vertexes.to_array())
        in_front = vertexes_cam[:, 2] > 0
        pixels = np.full((vertexes_cam.shape[0], 2), np.nan)
        if np.any(in_front):
            visible = vertexes_cam[in_front]
            with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                pixels[in_front] = self.norm_to_pixel(visible[:, :2] / visible[:, 2:3])
        # Vertexes too close to the camera plane can overflow when projected
        projected = in_front & np.all(np.isfinite(pixels), axis=1)

        offsets = mesh.face_offsets.data
        face_vertexes = mesh.face_vertexes.data
        workspace = self.workspace

        for shape_idx in range(1, offsets.shape[0]):
            idx0 = int(offsets[shape_idx - 1])
            idx1 = int(offsets[shape_idx])
            face = shape_idx - 1

            if idx0 >= idx1:
                continue

            if self.check_face_normal and not self.is_front_visible(mesh, face, idx0, world_camera):
                continue

            indexes = face_vertexes[idx0:idx1]
            # Skip faces that are even partially behind the camera or failed to project
            if not np.all(projected[indexes]):
                continue

            workspace.mesh_cam = vertexes_cam[indexes]
            workspace.polygon_proj = pixels[indexes]

            if use_colorizer:
                self.project_surface_color(workspace.mesh_cam, workspace.polygon_proj, face)
            else:
                workspace.polygon_tex = mesh.get_texture(face)
                self.project_surface_texture(
                    workspace.mesh_cam, workspace.polygon_proj, workspace.polygon_tex
                )

            self.faces_rendered += 1

        logger.debug(
            f"Rendered {self.faces_rendered}/{mesh.size()} faces "
            f"(elapsed time: {time.perf_counter() - start_time:.3f}s)"
        )

    @staticmethod
    def is_front_visible(mesh: VertexMesh, face: int, idx0: int, world_camera: np.ndarray) -> bool:
        """Returns True if the front of the face is visible from the camera.

        Args:
            mesh: Mesh with face normals
            face: Index of the face
            idx0: Location of the face's first vertex in ``face_vertexes``
            world_camera: Camera location in world coordinates
        """
        normal = mesh.get_face_normal_temp(face)

        # vector from the camera to a vertex
        v = mesh.vertexes.get_copy(mesh.face_vertexes.get(idx0)) - world_camera

        return float(v @ normal.astype(np.float64)) < 0.0

    @staticmethod
    def compute_bounding_box(
        width: int,
        height: int,
        polygon: np.ndarray,
        out: Optional[Rectangle2D] = None,
    ) -> Rectangle2D:
        """Bounding box of a projected polygon clipped to be inside the image."""
        return polygon_bounding_box(width, height, polygon, out)

    @staticmethod
    def edge_function(x0, y0, x1, y1, x2, y2):
        return edge_function(x0, y0, x1, y1, x2, y2)

    def initialize_images(self) -> None:
        """Resizes the output images to the resolution and fills them with background values."""
        height, width = self.resolution.height, self.resolution.width
        self.depth_image = np.full((height, width), np.nan, dtype=np.float32)
        self.rgb_image = np.empty((height, width, 3), dtype=np.uint8)
        self.rgb_image[:] = unpack_rgb(self.default_color_rgb)

    def project_surface_color(self, mesh_cam: np.ndarray, polygon_proj: np.ndarray, face: int) -> None:
        """Fills the polygon with one color.

        Every pixel inside the polygon's bounding box is tested for containment.
        The whole face has the depth of its first vertex.

        Args:
            mesh_cam: Nx3 face vertexes in the camera frame
            polygon_proj: Nx2 face vertexes projected onto the image
            face: Index of the face, passed to ``surface_color``
        """
        depth = np.float32(mesh_cam[0][2])
        color = unpack_rgb(self.surface_color(face))

        aabb = self.compute_bounding_box(
            self.resolution.width, self.resolution.height, polygon_proj, self.workspace.aabb
        )
        if aabb.area() == 0:
            return

        pixel_y, pixel_x = np.mgrid[aabb.y0 : aabb.y1, aabb.x0 : aabb.x1]
        depth_region = self.depth_image[aabb.y0 : aabb.y1, aabb.x0 : aabb.x1]

        # NaN means nothing has been rendered there yet. Ties go to the existing value
        closer = np.isnan(depth_region) | (depth < depth_region)
        mask = closer & contains_convex(polygon_proj, pixel_x, pixel_y)

        depth_region[mask] = depth
        self.rgb_image[aabb.y0 : aabb.y1, aabb.x0 : aabb.x1][mask] = color

    def project_surface_texture(
        self,
        mesh_cam: np.ndarray,
        polygon_proj: np.ndarray,
        polygon_tex: np.ndarray,
    ) -> None:
        """Renders a texture mapped convex polygon.

        The polygon is split into a triangle fan around its first vertex.
        Barycentric coordinates are computed with edge functions in pixel
        coordinates divided by the image size.

        Args:
            mesh_cam: Nx3 face vertexes in the camera frame
            polygon_proj: Nx2 face vertexes projected onto the image
            polygon_tex: Nx2 texture coordinates of the face vertexes
        """
        width, height = self.resolution.width, self.resolution.height
        scale = np.float32(max(width, height))

        polygon_proj = np.asarray(polygon_proj, dtype=np.float64)
        scaled = polygon_proj.astype(np.float32) / scale
        depths = np.asarray(mesh_cam, dtype=np.float64)[:, 2].astype(np.float32)
        tex = np.asarray(polygon_tex, dtype=np.float32)

        tex_width = np.float32(self.texture_image.shape[1] - 1)
        tex_height = np.float32(self.texture_image.shape[0] - 1)

        triangle = self.workspace.triangle
        for vert_c in range(2, polygon_proj.shape[0]):
            vert_a = 0
            vert_b = vert_c - 1

            Z0, Z1, Z2 = depths[vert_a], depths[vert_b], depths[vert_c]
            ax, ay = scaled[vert_a]
            bx, by = scaled[vert_b]
            cx, cy = scaled[vert_c]

            area = edge_function(ax, ay, bx, by, cx, cy)
            if area == 0:
                continue

            triangle[0] = polygon_proj[vert_a]
            triangle[1] = polygon_proj[vert_b]
            triangle[2] = polygon_proj[vert_c]

            aabb = self.compute_bounding_box(width, height, triangle, self.workspace.aabb)
            if aabb.area() == 0:
                continue

            pixel_y, pixel_x = np.mgrid[aabb.y0 : aabb.y1, aabb.x0 : aabb.x1]
            inside = contains_convex(triangle, pixel_x, pixel_y)
            if not np.any(inside):
                continue
            pixel_x = pixel_x[inside]
            pixel_y = pixel_y[inside]

            px = pixel_x.astype(np.float32) / scale
            py = pixel_y.astype(np.float32) / scale

            alpha = edge_function(bx, by, cx, cy, px, py) / area
            beta = edge_function(cx, cy, ax, ay, px, py) / area
            gamma = edge_function(ax, ay, bx, by, px, py) / area

            # Depth is interpolated linearly in screen space
            depth = alpha * Z0 + beta * Z1 + gamma * Z2

            current = self.depth_image[pixel_y, pixel_x]
            passes = np.isnan(current) | (depth < current)
            if not np.any(passes):
                continue
            alpha, beta, gamma = alpha[passes], beta[passes], gamma[passes]
            pixel_x, pixel_y, depth = pixel_x[passes], pixel_y[passes], depth[passes]

            # Perspective correct interpolation of the texture coordinates
            one_over_w = alpha / Z0 + beta / Z1 + gamma / Z2
            u = (alpha * tex[vert_a, 0] / Z0 + beta * tex[vert_b, 0] / Z1 + gamma * tex[vert_c, 0] / Z2) / one_over_w
            v = (alpha * tex[vert_a, 1] / Z0 + beta * tex[vert_b, 1] / Z1 + gamma * tex[vert_c, 1] / Z2) / one_over_w

            # texture coordinates have +y pointing up
            pix_tex_x = u * tex_width
            pix_tex_y = (1.0 - v) * tex_height

            colors = self.interpolate_texture_rgb(pix_tex_x, pix_tex_y)

            self.depth_image[pixel_y, pixel_x] = depth
            self.rgb_image[pixel_y, pixel_x] = colors

    def interpolate_texture_rgb(self, px: np.ndarray, py: np.ndarray) -> np.ndarray:
        """Samples the texture image with bilinear interpolation.

        Coordinates outside of the image take the value of the closest border pixel.

        Args:
            px: x pixel coordinates in the texture image
            py: y pixel coordinates in the texture image

        Returns:
            Nx3 uint8 array of RGB values
        """
        px = np.asarray(px, dtype=np.float32).ravel()
        py = np.asarray(py, dtype=np.float32).ravel()
        n = px.shape[0]
        if n == 0:
            return np.zeros((0, 3), dtype=np.uint8)

        # remap wants 2D maps with a bounded width
        cols = min(n, 4096)
        rows = -(-n // cols)
        padding = rows * cols - n
        map_x = np.pad(px, (0, padding)).reshape(rows, cols)
        map_y = np.pad(py, (0, padding)).reshape(rows, cols)

        sampled = cv2.remap(
            self.texture_image,
            map_x,
            map_y,
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        return sampled.reshape(-1, 3)[:n]
