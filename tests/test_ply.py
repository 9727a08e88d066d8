"""Tests for PLY reading and writing."""

import io
import struct
import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from meshrender import ply
from meshrender.cloud import ArrayCloudWriter, wrap_reader
from meshrender.mesh import VertexMesh
from meshrender.packed import IndexArray


def create_points():
    return np.array([[i * 123.45, i - 1.01, i + 2.34] for i in range(10)])


def create_colors():
    colors = []
    for i in range(10):
        r = (10 * i) & 0xFF
        g = (28 * i) & 0xFF
        b = (58 * i) & 0xFF
        colors.append((r << 16) | (g << 8) | b)
    return np.array(colors)


def create_mesh():
    """Ten triangles over ten vertexes with texture coordinates."""
    mesh = VertexMesh()
    mesh.texture_name = "foo"
    n = 10
    for i in range(n):
        mesh.vertexes.append([i, 2, 3])
        mesh.face_vertexes.extend([(i * 3) % n, (i * 3 + 1) % n, (i * 3 + 2) % n])
        mesh.face_offsets.append(mesh.face_vertexes.size())
        for idx_poly in range(3):
            mesh.texture.append([1, idx_poly])
    return mesh


def to_binary_stream(text: io.StringIO) -> io.BytesIO:
    return io.BytesIO(text.getvalue().encode("utf-8"))


class TestPlyCloud(unittest.TestCase):
    """Point clouds with and without color."""

    def setUp(self):
        self.points = create_points()
        self.colors = create_colors()

    def test_ascii(self):
        output = io.StringIO()
        ply.save_cloud_ascii(wrap_reader(self.points), False, output)

        found = ArrayCloudWriter()
        ply.read_cloud(to_binary_stream(output), found)
        self.assertFalse(found.has_color)
        np.testing.assert_allclose(found.points.to_array(), self.points, atol=1e-8)

    def test_ascii_rgb(self):
        output = io.StringIO()
        ply.save_cloud_ascii(wrap_reader(self.points, self.colors), True, output)

        found = ArrayCloudWriter()
        ply.read_cloud(to_binary_stream(output), found)
        self.assertTrue(found.has_color)
        np.testing.assert_allclose(found.points.to_array(), self.points, atol=1e-8)
        np.testing.assert_array_equal(found.rgb.to_array(), self.colors)

    def test_binary(self):
        for as_float in [True, False]:
            for color in [True, False]:
                output = io.BytesIO()
                reader = wrap_reader(self.points, self.colors if color else None)
                ply.save_cloud_binary(reader, output, color, "big", as_float)

                found = ArrayCloudWriter()
                ply.read_cloud(io.BytesIO(output.getvalue()), found)

                tol = 1e-3 if as_float else 1e-12
                np.testing.assert_allclose(found.points.to_array(), self.points, atol=tol)
                if color:
                    np.testing.assert_array_equal(found.rgb.to_array(), self.colors)
                else:
                    self.assertEqual(found.rgb.size(), 0)


class TestPlyMesh(unittest.TestCase):
    """Meshes with colors and texture coordinates."""

    def setUp(self):
        self.mesh = create_mesh()
        self.colors = IndexArray()
        self.colors.extend(np.arange(10) + 5)

    def assert_same(self, found, with_colors=True):
        np.testing.assert_allclose(found.vertexes.to_array(), self.mesh.vertexes.to_array())
        self.assertTrue(self.mesh.face_vertexes.is_equals(found.face_vertexes))
        self.assertTrue(self.mesh.face_offsets.is_equals(found.face_offsets))
        np.testing.assert_allclose(found.texture.to_array(), self.mesh.texture.to_array(), atol=1e-6)
        self.assertEqual(found.texture_name, "foo")
        if with_colors:
            self.assertTrue(self.colors.is_equals(found.rgb))

    def test_binary(self):
        for order in ["little", "big"]:
            output = io.BytesIO()
            ply.save_mesh_binary(self.mesh, output, self.colors, order, True)
            found = ply.read_mesh(io.BytesIO(output.getvalue()))
            self.assert_same(found)

    def test_binary_double(self):
        output = io.BytesIO()
        ply.save_mesh_binary(self.mesh, output, self.colors, "little", False)
        self.assertIn(b"property double x", output.getvalue())
        self.assert_same(ply.read_mesh(io.BytesIO(output.getvalue())))

    def test_ascii(self):
        output = io.StringIO()
        ply.save_mesh_ascii(self.mesh, output, self.colors)

        # each face, with its texture coordinates, is on its own line
        lines = output.getvalue().splitlines()
        body = lines[lines.index("end_header") + 1:]
        self.assertEqual(len(body), 20)
        self.assertEqual(body[10].split()[:5], ["3", "0", "1", "2", "6"])

        self.assert_same(ply.read_mesh(to_binary_stream(output)))

    def test_mesh_rgb_used_by_default(self):
        self.mesh.rgb.set_to(self.colors)
        output = io.BytesIO()
        ply.save_mesh_binary(self.mesh, output)
        self.assert_same(ply.read_mesh(io.BytesIO(output.getvalue())))

    def test_read_resets_mesh(self):
        output = io.BytesIO()
        ply.save_mesh_binary(self.mesh, output)

        found = VertexMesh()
        found.add_face_vectors([[1, 1, 1], [2, 2, 2], [3, 3, 3]])
        found.rgb.append(1)
        ply.read_mesh(io.BytesIO(output.getvalue()), found)
        self.assert_same(found, with_colors=False)
        self.assertEqual(found.rgb.size(), 0)

    def test_texture_name(self):
        mesh = VertexMesh()
        mesh.texture_name = "foo"
        output = io.BytesIO()
        ply.save_mesh_binary(mesh, output)
        found = ply.read_mesh(io.BytesIO(output.getvalue()))
        self.assertEqual(found.texture_name, "foo")
        self.assertEqual(found.size(), 0)

    def test_color_count_mismatch(self):
        colors = IndexArray()
        colors.extend([1, 2, 3])
        with pytest.raises(ValueError):
            ply.save_mesh_binary(self.mesh, io.BytesIO(), colors)

    def test_too_many_vertexes_in_polygon(self):
        mesh = VertexMesh()
        mesh.add_face_vectors(np.zeros((256, 3)))
        with pytest.raises(ValueError):
            ply.save_mesh_ascii(mesh, io.StringIO())


class TestPlyRead(unittest.TestCase):
    """Files written by other software, and malformed files."""

    def parse(self, text):
        return ply.read_mesh(io.BytesIO(text.encode("ascii")))

    def test_other_properties(self):
        text = "\n".join([
            "ply",
            "format ascii 1.0",
            "comment made by hand",
            "element vertex 3",
            "property float x",
            "property float y",
            "property float z",
            "property float nx",
            "property float ny",
            "property float nz",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "element face 1",
            "property list uchar int vertex_index",
            "end_header",
            "0 0 0 0 0 1 255 0 0",
            "1 0 0 0 0 1 0 255 0",
            "0 1 0 0 0 1 0 0 255",
            "3 0 1 2",
        ]) + "\n"
        mesh = self.parse(text)
        self.assertEqual(mesh.size(), 1)
        np.testing.assert_allclose(mesh.get_face_vectors(0)[1], [1, 0, 0])
        self.assertEqual(list(mesh.rgb), [0xFF0000, 0x00FF00, 0x0000FF])
        self.assertFalse(mesh.is_textured())

    def test_binary_little_endian_by_hand(self):
        header = "\n".join([
            "ply",
            "format binary_little_endian 1.0",
            "element vertex 3",
            "property double x",
            "property double y",
            "property double z",
            "element face 1",
            "property list uchar uint vertex_indices",
            "end_header",
        ]) + "\n"
        body = struct.pack("<9d", 0, 0, 1, 1, 0, 1, 0, 1, 1) + struct.pack("<B3I", 3, 2, 1, 0)
        mesh = ply.read_mesh(io.BytesIO(header.encode("ascii") + body))
        self.assertTrue(mesh.face_vertexes.is_equals([2, 1, 0]))
        np.testing.assert_allclose(mesh.vertexes.to_array()[:, 2], [1, 1, 1])

    def test_unknown_face_property(self):
        header = [
            "element vertex 3",
            "property float x", "property float y", "property float z",
            "element face 2",
            "property list uchar int vertex_indices",
            "property list uchar int flags",
            "end_header",
        ]
        ascii_text = "\n".join(
            ["ply", "format ascii 1.0"] + header + ["0 0 1", "1 0 1", "0 1 1", "3 0 1 2 2 7 8", "3 2 1 0 0"]
        ) + "\n"
        binary = "\n".join(["ply", "format binary_big_endian 1.0"] + header).encode("ascii") + b"\n"
        binary += struct.pack(">9f", 0, 0, 1, 1, 0, 1, 0, 1, 1)
        binary += struct.pack(">B3iB2i", 3, 0, 1, 2, 2, 7, 8) + struct.pack(">B3iB", 3, 2, 1, 0, 0)

        for data in [ascii_text.encode("ascii"), binary]:
            with self.assertLogs("meshrender.ply", level="WARNING") as logs:
                mesh = ply.read_mesh(io.BytesIO(data))
            self.assertEqual(len(logs.records), 1)
            self.assertIn("flags", logs.output[0])
            self.assertEqual(mesh.size(), 2)
            self.assertTrue(mesh.face_vertexes.is_equals([0, 1, 2, 2, 1, 0]))

    def test_not_ply(self):
        with pytest.raises(ply.PlyFormatError):
            self.parse("obj\nformat ascii 1.0\nend_header\n")

    def test_missing_format(self):
        with pytest.raises(ply.PlyFormatError):
            self.parse("ply\nelement vertex 0\nproperty float x\nproperty float y\nproperty float z\nend_header\n")

    def test_missing_vertex(self):
        with pytest.raises(ply.PlyFormatError):
            self.parse("ply\nformat ascii 1.0\nend_header\n")

    def test_unknown_type(self):
        with pytest.raises(ply.PlyFormatError):
            self.parse("ply\nformat ascii 1.0\nelement vertex 1\nproperty float128 x\nend_header\n")

    def test_unsupported_element(self):
        text = "\n".join([
            "ply", "format ascii 1.0", "element vertex 0",
            "property float x", "property float y", "property float z",
            "element edge 2", "property int vertex1", "property int vertex2",
            "end_header", "",
        ])
        with pytest.raises(ply.PlyFormatError):
            self.parse(text)

    def test_truncated_header(self):
        with pytest.raises(ply.PlyFormatError):
            self.parse("ply\nformat ascii 1.0\nelement vertex 1\n")

    def test_truncated_body(self):
        output = io.BytesIO()
        ply.save_mesh_binary(create_mesh(), output)
        data = output.getvalue()
        with pytest.raises(ply.PlyFormatError):
            ply.read_mesh(io.BytesIO(data[:-5]))

        text = "\n".join([
            "ply", "format ascii 1.0", "element vertex 3",
            "property float x", "property float y", "property float z",
            "end_header", "0 0 0", "1 1 1",
        ]) + "\n"
        with pytest.raises(ply.PlyFormatError):
            self.parse(text)

    def test_index_out_of_range(self):
        text = "\n".join([
            "ply", "format ascii 1.0", "element vertex 3",
            "property float x", "property float y", "property float z",
            "element face 1", "property list uchar int vertex_indices",
            "end_header", "0 0 0", "1 0 0", "0 1 0", "3 0 1 3",
        ]) + "\n"
        with pytest.raises(ply.PlyFormatError):
            self.parse(text)


if __name__ == "__main__":
    unittest.main()
