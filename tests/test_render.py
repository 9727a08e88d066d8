"""Tests for the mesh renderer.

Checks the rasterization of simple shapes with known projections, depth
ordering between faces, texture mapping and back face culling.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from meshrender.camera import CameraPinholeBrown, create_intrinsic
from meshrender.geometry import Rectangle2D
from meshrender.mesh import VertexMesh
from meshrender.render import RenderMesh


def create_quad(half_width=1.0, z=10.0, reverse=False):
    """Square facing away from a camera at the origin, or towards it when reversed."""
    mesh = VertexMesh()
    corners = [
        [-half_width, -half_width, z],
        [half_width, -half_width, z],
        [half_width, half_width, z],
        [-half_width, half_width, z],
    ]
    if reverse:
        corners = corners[::-1]
    mesh.vertexes.append_all(corners)
    mesh.face_vertexes.extend([0, 1, 2, 3])
    mesh.face_offsets.append(4)
    return mesh


def create_renderer(width=300, height=200, hfov=90):
    alg = RenderMesh()
    alg.check_face_normal = False
    intrinsics = create_intrinsic(width, height, hfov, -1, CameraPinholeBrown())
    alg.set_camera_model(intrinsics)
    return alg


def count_not_background(alg):
    return int(np.count_nonzero(np.any(alg.rgb_image != 255, axis=2)))


class TestRenderMesh(unittest.TestCase):
    """End to end rendering."""

    def test_all_together(self):
        alg = create_renderer()
        alg.render(create_quad())

        self.assertEqual(alg.rgb_image.shape, (200, 300, 3))
        self.assertEqual(alg.depth_image.shape, (200, 300))
        self.assertEqual(alg.faces_rendered, 1)
        self.assertNotEqual(count_not_background(alg), 0)

        # fx = 150, so the quad covers x in [135, 165] and y in [85, 115]
        np.testing.assert_array_equal(alg.rgb_image[100, 150], [255, 0, 0])
        self.assertEqual(alg.depth_image[100, 150], 10.0)
        self.assertTrue(np.isnan(alg.depth_image[10, 10]))
        np.testing.assert_array_equal(alg.rgb_image[10, 10], [255, 255, 255])

    def test_intrinsics_not_set(self):
        alg = RenderMesh()
        with self.assertRaises(ValueError):
            alg.render(create_quad())

    def test_background_color(self):
        alg = create_renderer()
        alg.default_color_rgb = 0x102030
        alg.render(VertexMesh())
        np.testing.assert_array_equal(alg.rgb_image[0, 0], [0x10, 0x20, 0x30])
        self.assertTrue(np.all(np.isnan(alg.depth_image)))

    def test_closest_face_wins(self):
        for order in [(0, 1), (1, 0)]:
            quads = [create_quad(1.0, 10.0), create_quad(0.2, 5.0)]
            mesh = VertexMesh()
            for i in order:
                mesh.add_face_vectors(quads[i].vertexes.to_array())

            colors = {10.0: 0xFF0000, 5.0: 0x0000FF}
            alg = create_renderer()
            alg.surface_color = lambda face: colors[float(mesh.get_face_vectors(face)[0, 2])]
            alg.render(mesh)

            self.assertEqual(alg.faces_rendered, 2)
            np.testing.assert_array_equal(alg.rgb_image[100, 150], [0, 0, 255])
            self.assertEqual(alg.depth_image[100, 150], 5.0)
            np.testing.assert_array_equal(alg.rgb_image[100, 137], [255, 0, 0])
            self.assertEqual(alg.depth_image[100, 137], 10.0)

    def test_skip_behind_camera(self):
        mesh = VertexMesh()
        mesh.add_face_vectors([[-1, -1, 10], [1, -1, 10], [0, 1, -1]])
        alg = create_renderer()
        alg.render(mesh)
        self.assertEqual(alg.faces_rendered, 0)
        self.assertEqual(count_not_background(alg), 0)

    def test_skip_overflowing_projection(self):
        mesh = create_quad()
        # in front of the camera but so close that the projection overflows
        mesh.add_face_vectors([[1, 1, 1e-310], [2, 1, 10], [1, 2, 10]])

        for radial in [[], [0.05, -0.01]]:
            alg = RenderMesh()
            model = CameraPinholeBrown(radial=radial, t1=0.001)
            alg.set_camera_model(create_intrinsic(300, 200, 90, -1, model))
            alg.render(mesh)
            self.assertEqual(alg.faces_rendered, 1)
            self.assertEqual(alg.depth_image[100, 150], 10.0)

    def test_world_to_view(self):
        # Quad behind the camera is brought into view by the transform
        alg = create_renderer()
        alg.world_to_view.T[:] = [0, 0, 20]
        alg.render(create_quad(z=-10.0))
        self.assertEqual(alg.faces_rendered, 1)
        self.assertEqual(alg.depth_image[100, 150], 10.0)

    def test_check_face_normal(self):
        alg = create_renderer()
        alg.check_face_normal = True

        mesh = create_quad()
        alg.render(mesh)
        self.assertTrue(mesh.is_normals())
        self.assertEqual(alg.faces_rendered, 0)
        self.assertEqual(count_not_background(alg), 0)

        alg.render(create_quad(reverse=True))
        self.assertEqual(alg.faces_rendered, 1)
        self.assertNotEqual(count_not_background(alg), 0)

    def test_textured(self):
        mesh = create_quad()
        mesh.add_texture(4, [0, 0, 1, 0, 1, 1, 0, 1])

        alg = create_renderer()
        texture = np.zeros((8, 8, 3), dtype=np.uint8)
        texture[:, :] = [0, 255, 0]
        alg.set_texture_image(texture)
        alg.render(mesh)

        self.assertEqual(alg.faces_rendered, 1)
        np.testing.assert_array_equal(alg.rgb_image[100, 150], [0, 255, 0])
        np.testing.assert_allclose(alg.depth_image[100, 150], 10.0, rtol=1e-5)

        # the colorizer can be forced even with texture data
        alg.force_colorizer = True
        alg.render(mesh)
        np.testing.assert_array_equal(alg.rgb_image[100, 150], [255, 0, 0])

    def test_textured_without_image(self):
        mesh = create_quad()
        mesh.add_texture(4, [0, 0, 1, 0, 1, 1, 0, 1])
        alg = create_renderer()
        alg.render(mesh)
        np.testing.assert_array_equal(alg.rgb_image[100, 150], [255, 0, 0])

    def test_texture_orientation(self):
        # top half of the texture is blue and the bottom half is white
        texture = np.full((64, 64, 3), 255, dtype=np.uint8)
        texture[:32] = [0, 0, 255]

        mesh = create_quad()
        # v = 1 is the top of the texture and is mapped to the quad's smallest image y
        mesh.add_texture(4, [0, 1, 1, 1, 1, 0, 0, 0])

        alg = create_renderer()
        alg.set_texture_image(texture)
        alg.render(mesh)
        np.testing.assert_array_equal(alg.rgb_image[88, 150], [0, 0, 255])
        np.testing.assert_array_equal(alg.rgb_image[112, 150], [255, 255, 255])

    def test_set_texture_image_bad_shape(self):
        alg = RenderMesh()
        with self.assertRaises(ValueError):
            alg.set_texture_image(np.zeros((4, 4)))

    def test_set_camera_pinhole(self):
        alg = RenderMesh()
        alg.set_camera_pinhole(90, 300, 200)
        alg.render(create_quad())
        self.assertEqual(alg.rgb_image.shape, (200, 300, 3))
        self.assertEqual(alg.faces_rendered, 1)


class TestBoundingBox(unittest.TestCase):
    """Bounding box of projected polygons."""

    def setUp(self):
        self.polygon = np.array([[-5, -1], [-5, 100], [90, 100], [90, -1]], dtype=float)

    def test_bounded_by_image(self):
        aabb = Rectangle2D()
        RenderMesh.compute_bounding_box(60, 50, self.polygon, aabb)
        self.assertEqual((aabb.x0, aabb.y0, aabb.x1, aabb.y1), (0, 0, 60, 50))

    def test_exclusive_upper_extent(self):
        aabb = RenderMesh.compute_bounding_box(200, 200, self.polygon)
        self.assertEqual((aabb.x0, aabb.y0, aabb.x1, aabb.y1), (0, 0, 91, 101))


class TestProjectSurface(unittest.TestCase):
    """Filling a known rectangle."""

    def setUp(self):
        self.polygon = np.array([[10, 15], [40, 15], [40, 35], [10, 35]], dtype=float)

    def count(self, alg):
        count_depth = int(np.count_nonzero(~np.isnan(alg.depth_image)))
        return count_depth, count_not_background(alg)

    def test_project_surface_color(self):
        alg = RenderMesh()
        alg.resolution.set_to(100, 120)
        alg.initialize_images()

        # only the first vertex's depth is used
        shape_in_camera = np.zeros((4, 3))
        shape_in_camera[0] = [0, 0, 10]

        alg.project_surface_color(shape_in_camera, self.polygon, 0)

        self.assertEqual(int(np.count_nonzero(alg.depth_image == 10)), 600)
        self.assertEqual(self.count(alg), (600, 600))

    def test_project_surface_texture(self):
        class ConstantTexture(RenderMesh):
            def interpolate_texture_rgb(self, px, py):
                return np.tile(np.array([0, 0, 1], dtype=np.uint8), (len(px), 1))

        alg = ConstantTexture()
        alg.resolution.set_to(100, 120)
        alg.initialize_images()

        shape_in_camera = np.tile([0.0, 0.0, 10.0], (4, 1))
        texture = (self.polygon / 50).astype(np.float32)

        alg.project_surface_texture(shape_in_camera, self.polygon, texture)

        self.assertEqual(self.count(alg), (600, 600))

    def test_interpolate_texture_rgb(self):
        alg = RenderMesh()
        texture = np.zeros((2, 2, 3), dtype=np.uint8)
        texture[0, 1] = [100, 100, 100]
        texture[1, 0] = [200, 0, 0]
        alg.set_texture_image(texture)

        colors = alg.interpolate_texture_rgb(
            np.array([0.0, 1.0, 0.5, -5.0, 0.0]),
            np.array([0.0, 0.0, 0.0, 0.0, 10.0]),
        )
        self.assertEqual(colors.shape, (5, 3))
        np.testing.assert_array_equal(colors[0], [0, 0, 0])
        np.testing.assert_array_equal(colors[1], [100, 100, 100])
        np.testing.assert_allclose(colors[2], [50, 50, 50], atol=1)
        # outside of the image the border is used
        np.testing.assert_array_equal(colors[3], [0, 0, 0])
        np.testing.assert_array_equal(colors[4], [200, 0, 0])

    def test_interpolate_many(self):
        alg = RenderMesh()
        alg.set_texture_image(np.full((3, 3, 3), 7, dtype=np.uint8))
        n = 10_001
        colors = alg.interpolate_texture_rgb(np.ones(n), np.ones(n))
        self.assertEqual(colors.shape, (n, 3))
        self.assertTrue(np.all(colors == 7))


class TestFrontVisible(unittest.TestCase):
    """Normals pointing towards the camera are visible."""

    def test_circle(self):
        mesh = VertexMesh()
        r = 5.0
        point_cam = np.array([0.0, 2.0, 2.0])

        for i in range(30):
            yaw = np.pi * i / 15
            c = np.cos(yaw)
            s = np.sin(yaw)

            mesh.reset()
            mesh.face_normals.append(0)
            mesh.normals.append([-c, -s, 0])
            mesh.face_vertexes.append(0)
            mesh.vertexes.append([r * c, 2 + r * s, 2])
            self.assertTrue(RenderMesh.is_front_visible(mesh, 0, 0, point_cam))

            mesh.reset()
            mesh.face_vertexes.append(0)
            mesh.vertexes.append([r * c, 2 + r * s, 2])
            mesh.face_normals.append(0)
            mesh.normals.append([c, s, 0])
            self.assertFalse(RenderMesh.is_front_visible(mesh, 0, 0, point_cam))


class TestEdgeFunction(unittest.TestCase):

    def test_sign(self):
        # the sign flips when the point crosses the edge
        self.assertGreater(RenderMesh.edge_function(0, 0, 1, 0, 0.5, -1), 0)
        self.assertLess(RenderMesh.edge_function(0, 0, 1, 0, 0.5, 1), 0)
        self.assertEqual(RenderMesh.edge_function(0, 0, 1, 0, 3, 0), 0)


if __name__ == "__main__":
    unittest.main()
