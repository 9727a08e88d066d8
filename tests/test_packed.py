"""Tests for the packed array module.

The same behaviour is checked against the single buffer and the block
storage implementations.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from meshrender.packed import (
    BlockGrowth,
    IndexArray,
    PackedArrayPoint2D,
    PackedArrayPoint3D,
    PackedBigArray,
    PackedBigArrayPoint3D,
    PackedBigArrayPoint4D,
    PackedLinearArray,
    PackedTupleArray,
    PackedTupleBigArray,
)


def create_arrays():
    """Every implementation configured so block boundaries are crossed quickly."""
    return [
        PackedArrayPoint3D(reserved=2),
        PackedBigArrayPoint3D(reserved=2, block_size=4),
        PackedBigArrayPoint3D(reserved=2, block_size=4, growth=BlockGrowth.FIXED),
    ]


class TestPackedArray(unittest.TestCase):
    """Contract shared by every packed array."""

    def setUp(self):
        self.points = np.array([[i, i * 2.0, -i] for i in range(11)])

    def test_append_and_get(self):
        for array in create_arrays():
            for p in self.points:
                array.append(p)
            self.assertEqual(array.size(), 11)
            self.assertEqual(len(array), 11)
            for i, p in enumerate(self.points):
                np.testing.assert_allclose(array.get_copy(i), p)
                np.testing.assert_allclose(array.get_temp(i), p)

    def test_append_all(self):
        for array in create_arrays():
            array.append(self.points[0])
            array.append_all(self.points[1:])
            np.testing.assert_allclose(array.to_array(), self.points)

            # a flat list is interpreted as interleaved tuples
            array.append_all([1, 2, 3, 4, 5, 6])
            self.assertEqual(array.size(), 13)
            np.testing.assert_allclose(array.get_copy(12), [4, 5, 6])

    def test_append_all_bad_length(self):
        for array in create_arrays():
            with self.assertRaises(ValueError):
                array.append_all([1, 2, 3, 4])

    def test_get_temp_is_reused(self):
        for array in create_arrays():
            array.append_all(self.points)
            first = array.get_temp(1)
            second = array.get_temp(2)
            self.assertIs(first, second)
            np.testing.assert_allclose(first, self.points[2])

    def test_get_copy_into_dst(self):
        for array in create_arrays():
            array.append_all(self.points)
            dst = np.zeros(3)
            result = array.get_copy(5, dst)
            self.assertIs(result, dst)
            np.testing.assert_allclose(dst, self.points[5])

    def test_set(self):
        for array in create_arrays():
            array.append_all(self.points)
            array.set(9, [100, 200, 300])
            np.testing.assert_allclose(array.get_copy(9), [100, 200, 300])
            # neighbours are untouched
            np.testing.assert_allclose(array.get_copy(8), self.points[8])
            np.testing.assert_allclose(array.get_copy(10), self.points[10])

    def test_reset_keeps_storage(self):
        for array in create_arrays():
            array.append_all(self.points)
            array.reset()
            self.assertEqual(array.size(), 0)
            array.append([7, 8, 9])
            self.assertEqual(array.size(), 1)
            np.testing.assert_allclose(array.get_copy(0), [7, 8, 9])

    def test_reserve(self):
        for array in create_arrays():
            array.reserve(100)
            self.assertEqual(array.size(), 0)
            array.append_all(self.points)
            np.testing.assert_allclose(array.to_array(), self.points)

    def test_for_idx(self):
        for array in create_arrays():
            array.append_all(self.points)
            visited = []

            def op(index, p):
                visited.append(index)
                np.testing.assert_allclose(p, self.points[index])
                p[0] = -1

            array.for_idx(2, 9, op)
            self.assertEqual(visited, list(range(2, 9)))
            # modifications are written back
            values = array.to_array()
            np.testing.assert_allclose(values[2:9, 0], -1)
            np.testing.assert_allclose(values[:2], self.points[:2])
            np.testing.assert_allclose(values[9:], self.points[9:])

    def test_take(self):
        for array in create_arrays():
            array.append_all(self.points)
            indexes = [10, 0, 5, 5, 3]
            np.testing.assert_allclose(array.take(indexes), self.points[indexes])

    def test_set_to(self):
        for src in create_arrays():
            src.append_all(self.points)
            for dst in create_arrays():
                dst.append([1, 1, 1])
                dst.set_to(src)
                np.testing.assert_allclose(dst.to_array(), self.points)

                # deep copy
                src.set(0, [5, 5, 5])
                np.testing.assert_allclose(dst.get_copy(0), self.points[0])
                src.set(0, self.points[0])

    def test_set_to_dof_mismatch(self):
        with self.assertRaises(ValueError):
            PackedArrayPoint3D().set_to(PackedArrayPoint2D())

    def test_iteration(self):
        for array in create_arrays():
            array.append_all(self.points)
            found = list(array)
            self.assertEqual(len(found), 11)
            np.testing.assert_allclose(np.array(found), self.points)

    def test_element_type(self):
        array = PackedBigArrayPoint4D(dtype=np.float32)
        self.assertEqual(array.get_element_type(), (np.dtype(np.float32), 4))

    def test_invalid_dof(self):
        with self.assertRaises(ValueError):
            PackedLinearArray(0)
        with self.assertRaises(ValueError):
            PackedBigArray(3, block_size=0)


class TestPackedBigArray(unittest.TestCase):
    """Storage layout of the block array."""

    def test_grow_first(self):
        array = PackedBigArray(2, reserved=1, block_size=8, growth=BlockGrowth.GROW_FIRST)
        for i in range(5):
            array.append([i, i])
        # a single block which is still smaller than a full block
        self.assertEqual(len(array.blocks), 1)
        self.assertLessEqual(array.blocks[0].shape[0], 8)

        for i in range(5, 20):
            array.append([i, i])
        self.assertEqual(len(array.blocks), 3)
        for block in array.blocks:
            self.assertEqual(block.shape[0], 8)
        np.testing.assert_allclose(array.to_array()[:, 0], np.arange(20))

    def test_fixed(self):
        array = PackedBigArray(2, reserved=1, block_size=8, growth=BlockGrowth.FIXED)
        self.assertEqual(len(array.blocks), 1)
        self.assertEqual(array.blocks[0].shape[0], 8)
        array.append_all(np.zeros((17, 2)))
        self.assertEqual(len(array.blocks), 3)

    def test_empty_to_array(self):
        array = PackedBigArrayPoint3D()
        self.assertEqual(array.to_array().shape, (0, 3))


class TestTupleArrays(unittest.TestCase):
    """Byte tuples."""

    def test_tuples(self):
        for array in [PackedTupleArray(5), PackedTupleBigArray(5, block_size=3)]:
            for i in range(7):
                array.append(np.full(5, i, dtype=np.uint8))
            self.assertEqual(array.get_element_type(), (np.dtype(np.uint8), 5))
            np.testing.assert_array_equal(array.get_copy(6), [6, 6, 6, 6, 6])


class TestIndexArray(unittest.TestCase):
    """Growable integer array."""

    def test_append_extend(self):
        array = IndexArray(reserved=1)
        array.append(4)
        array.extend([5, 6, 7])
        self.assertEqual(array.size(), 4)
        self.assertEqual(list(array), [4, 5, 6, 7])
        self.assertEqual(array.get(2), 6)
        self.assertEqual(array[-1], 7)
        self.assertTrue(array.is_equals([4, 5, 6, 7]))
        self.assertFalse(array.is_equals([4, 5, 6]))

    def test_set_reset(self):
        array = IndexArray()
        array.extend(range(20))
        array.set(3, -1)
        self.assertEqual(array.get(3), -1)
        self.assertIs(array.reset(), array)
        self.assertEqual(array.size(), 0)
        self.assertEqual(array.to_array().shape, (0,))

    def test_set_to(self):
        src = IndexArray()
        src.extend([1, 2, 3])
        dst = IndexArray()
        dst.append(9)
        dst.set_to(src)
        self.assertTrue(dst.is_equals(src))
        src.set(0, 10)
        self.assertEqual(dst.get(0), 1)

    def test_index_out_of_range(self):
        array = IndexArray(reserved=10)
        array.extend([1, 2, 3])
        # reserved capacity past the size can't be read or written
        for index in [3, 9, -1]:
            with self.assertRaises(IndexError):
                array.get(index)
            with self.assertRaises(IndexError):
                array.set(index, 5)
        array.reset()
        with self.assertRaises(IndexError):
            array.get(0)


if __name__ == "__main__":
    unittest.main()
