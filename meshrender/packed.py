"""Packed storage for large collections of fixed size tuples.

Points, normals and byte descriptors are stored interleaved inside numpy
buffers rather than as one Python object per element. Two storage strategies
are implemented:

* ``PackedLinearArray`` keeps every tuple in a single buffer which is
  reallocated (doubling) when it runs out of space.
* ``PackedBigArray`` keeps tuples in a list of blocks. Growing never copies
  existing blocks, which bounds the cost of appending to clouds with
  millions of points at the price of block + offset addressing.

Element access follows two conventions. ``get_copy`` always writes into
caller owned storage (or a new array) and is safe to keep. ``get_temp``
returns a single array owned by the container which is overwritten by the
next ``get_temp`` or ``for_idx`` call; copy it before holding on to it.
"""

from __future__ import annotations

import abc
import enum
import logging
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Called with (index, temporary tuple view)
ProcessIndex = Callable[[int, np.ndarray], None]


class BlockGrowth(enum.Enum):
    """Growth policy for block arrays."""

    # The first block grows until it reaches the block size, then new blocks are added
    GROW_FIRST = "grow_first"
    # Every block is allocated at the full block size
    FIXED = "fixed"


class PackedArray(abc.ABC):
    """Abstract contract for a sequence of tuples with a fixed degree of freedom.

    Args:
        dof: Number of components in each tuple
        dtype: numpy data type of the components
    """

    def __init__(self, dof: int, dtype=np.float64):
        if dof <= 0:
            raise ValueError(f"Degree of freedom must be positive, got {dof}")
        self.dof = dof
        self.dtype = np.dtype(dtype)
        # tuple that the result is temporarily written to
        self._temp = np.zeros(dof, dtype=self.dtype)

    @abc.abstractmethod
    def reset(self) -> None:
        """Remove all elements. Allocated memory is kept."""

    @abc.abstractmethod
    def reserve(self, num_tuples: int) -> None:
        """Ensure there is storage for at least ``num_tuples`` without reallocating."""

    @abc.abstractmethod
    def append(self, element: Sequence) -> None:
        """Copy the tuple onto the end of the array."""

    @abc.abstractmethod
    def append_all(self, points) -> None:
        """Append an N x dof block of tuples."""

    @abc.abstractmethod
    def set(self, index: int, element: Sequence) -> None:
        """Overwrite the tuple at ``index``. The index must be less than ``size()``."""

    @abc.abstractmethod
    def size(self) -> int:
        """Number of tuples stored."""

    @abc.abstractmethod
    def for_idx(self, idx0: int, idx1: int, op: ProcessIndex) -> None:
        """Visit tuples in [idx0, idx1) in ascending order.

        ``op`` receives the index and a temporary view. Changes made to the view
        are written back before moving on to the next tuple.
        """

    @abc.abstractmethod
    def take(self, indexes) -> np.ndarray:
        """Gather the tuples at ``indexes`` into a new K x dof array."""

    @abc.abstractmethod
    def to_array(self) -> np.ndarray:
        """Copy of all tuples as an N x dof array."""

    @abc.abstractmethod
    def _read(self, index: int, dst: np.ndarray) -> None:
        """Copy tuple ``index`` into ``dst``."""

    def get_temp(self, index: int) -> np.ndarray:
        """Returns the tuple in storage which is reused on the next call."""
        self._read(index, self._temp)
        return self._temp

    def get_copy(self, index: int, dst: Optional[np.ndarray] = None) -> np.ndarray:
        """Copies the tuple into ``dst``, which is created if not provided."""
        if dst is None:
            dst = np.empty(self.dof, dtype=self.dtype)
        self._read(index, dst)
        return dst

    def set_to(self, src: "PackedArray") -> "PackedArray":
        """Makes this array a deep copy of ``src``."""
        if src.dof != self.dof:
            raise ValueError(f"Degree of freedom mismatch: {src.dof} != {self.dof}")
        self.reset()
        self.reserve(src.size())
        self.append_all(src.to_array())
        return self

    def get_element_type(self) -> Tuple[np.dtype, int]:
        """Returns the component data type and the tuple size."""
        return self.dtype, self.dof

    def __len__(self) -> int:
        return self.size()

    def __iter__(self) -> Iterator[np.ndarray]:
        for i in range(self.size()):
            yield self.get_copy(i)

    def _as_tuples(self, points) -> np.ndarray:
        array = np.asarray(points, dtype=self.dtype)
        if array.size % self.dof != 0:
            raise ValueError(f"Expected a multiple of {self.dof} values, got {array.size}")
        return array.reshape(-1, self.dof)


class PackedLinearArray(PackedArray):
    """Tuples stored in a single contiguous, interleaved buffer."""

    def __init__(self, dof: int, dtype=np.float64, reserved: int = 10):
        super().__init__(dof, dtype)
        self._data = np.zeros((max(reserved, 1), dof), dtype=self.dtype)
        self._size = 0

    @property
    def data(self) -> np.ndarray:
        """View of the filled part of the internal buffer."""
        return self._data[: self._size]

    def reset(self) -> None:
        self._size = 0

    def reserve(self, num_tuples: int) -> None:
        if num_tuples <= self._data.shape[0]:
            return
        data = np.zeros((num_tuples, self.dof), dtype=self.dtype)
        data[: self._size] = self._data[: self._size]
        self._data = data

    def _grow(self, required: int) -> None:
        if required > self._data.shape[0]:
            self.reserve(max(required, 2 * self._data.shape[0]))

    def append(self, element: Sequence) -> None:
        self._grow(self._size + 1)
        self._data[self._size] = element
        self._size += 1

    def append_all(self, points) -> None:
        tuples = self._as_tuples(points)
        n = tuples.shape[0]
        self._grow(self._size + n)
        self._data[self._size : self._size + n] = tuples
        self._size += n

    def set(self, index: int, element: Sequence) -> None:
        self._data[index] = element

    def _read(self, index: int, dst: np.ndarray) -> None:
        dst[:] = self._data[index]

    def size(self) -> int:
        return self._size

    def for_idx(self, idx0: int, idx1: int, op: ProcessIndex) -> None:
        temp = self._temp
        for i in range(idx0, idx1):
            temp[:] = self._data[i]
            op(i, temp)
            self._data[i] = temp

    def take(self, indexes) -> np.ndarray:
        return self._data[np.asarray(indexes, dtype=np.intp)]

    def to_array(self) -> np.ndarray:
        return self._data[: self._size].copy()


class PackedBigArray(PackedArray):
    """Tuples stored in a list of blocks.

    Args:
        dof: Number of components in each tuple
        dtype: numpy data type of the components
        reserved: Number of tuples to reserve storage for initially
        block_size: Number of tuples a full block can hold
        growth: Strategy used to allocate new storage
    """

    def __init__(
        self,
        dof: int,
        dtype=np.float64,
        reserved: int = 10,
        block_size: int = 50_000,
        growth: BlockGrowth = BlockGrowth.GROW_FIRST,
    ):
        super().__init__(dof, dtype)
        if block_size <= 0:
            raise ValueError(f"Block size must be positive, got {block_size}")
        self.block_size = block_size
        self.growth = growth
        self.blocks: List[np.ndarray] = []
        self._size = 0
        self.reserve(reserved)

    def _capacity(self) -> int:
        return sum(block.shape[0] for block in self.blocks)

    def reset(self) -> None:
        self._size = 0

    def reserve(self, num_tuples: int) -> None:
        while self._capacity() < num_tuples:
            if self.growth is BlockGrowth.GROW_FIRST and len(self.blocks) <= 1:
                current = self.blocks[0].shape[0] if self.blocks else 0
                if current < self.block_size:
                    length = min(self.block_size, max(num_tuples, 2 * current, 1))
                    block = np.zeros((length, self.dof), dtype=self.dtype)
                    if current > 0:
                        block[:current] = self.blocks[0]
                    self.blocks = [block]
                    continue
            self.blocks.append(np.zeros((self.block_size, self.dof), dtype=self.dtype))

    def _locate(self, index: int) -> Tuple[np.ndarray, int]:
        block, offset = divmod(index, self.block_size)
        return self.blocks[block], offset

    def append(self, element: Sequence) -> None:
        self.reserve(self._size + 1)
        block, offset = self._locate(self._size)
        block[offset] = element
        self._size += 1

    def append_all(self, points) -> None:
        tuples = self._as_tuples(points)
        n = tuples.shape[0]
        if n == 0:
            return
        self.reserve(self._size + n)
        copied = 0
        while copied < n:
            block, offset = self._locate(self._size)
            length = min(n - copied, block.shape[0] - offset)
            block[offset : offset + length] = tuples[copied : copied + length]
            copied += length
            self._size += length

    def set(self, index: int, element: Sequence) -> None:
        block, offset = self._locate(index)
        block[offset] = element

    def _read(self, index: int, dst: np.ndarray) -> None:
        block, offset = self._locate(index)
        dst[:] = block[offset]

    def size(self) -> int:
        return self._size

    def for_idx(self, idx0: int, idx1: int, op: ProcessIndex) -> None:
        temp = self._temp
        index = idx0
        while index < idx1:
            block, offset = self._locate(index)
            end = min(block.shape[0], offset + idx1 - index)
            for i in range(offset, end):
                temp[:] = block[i]
                op(index, temp)
                block[i] = temp
                index += 1

    def take(self, indexes) -> np.ndarray:
        indexes = np.asarray(indexes, dtype=np.intp)
        output = np.empty((indexes.shape[0], self.dof), dtype=self.dtype)
        which, offsets = np.divmod(indexes, self.block_size)
        for b in np.unique(which):
            mask = which == b
            output[mask] = self.blocks[b][offsets[mask]]
        return output

    def to_array(self) -> np.ndarray:
        if self._size == 0:
            return np.zeros((0, self.dof), dtype=self.dtype)
        parts = []
        remaining = self._size
        for block in self.blocks:
            length = min(remaining, block.shape[0])
            parts.append(block[:length])
            remaining -= length
            if remaining == 0:
                break
        return np.concatenate(parts, axis=0)


class PackedArrayPoint2D(PackedLinearArray):
    """Packed array of 2D points."""

    def __init__(self, dtype=np.float64, reserved: int = 10):
        super().__init__(2, dtype, reserved)


class PackedArrayPoint3D(PackedLinearArray):
    """Packed array of 3D points."""

    def __init__(self, dtype=np.float64, reserved: int = 10):
        super().__init__(3, dtype, reserved)


class PackedArrayPoint4D(PackedLinearArray):
    """Packed array of 4D points, e.g. homogeneous coordinates."""

    def __init__(self, dtype=np.float64, reserved: int = 10):
        super().__init__(4, dtype, reserved)


class PackedBigArrayPoint2D(PackedBigArray):
    """Block array of 2D points.

    Args:
        dtype: Type of each coordinate
        reserved: Number of points to reserve storage for
        block_size: Number of points in a full block
        growth: How blocks are allocated as the array grows
    """

    def __init__(
        self,
        dtype=np.float64,
        reserved: int = 10,
        block_size: int = 50_000,
        growth: BlockGrowth = BlockGrowth.GROW_FIRST,
    ):
        super().__init__(2, dtype, reserved, block_size, growth)


class PackedBigArrayPoint3D(PackedBigArray):
    """Block array of 3D points. Used for mesh vertexes, which can number in the millions."""

    def __init__(
        self,
        dtype=np.float64,
        reserved: int = 10,
        block_size: int = 50_000,
        growth: BlockGrowth = BlockGrowth.GROW_FIRST,
    ):
        super().__init__(3, dtype, reserved, block_size, growth)


class PackedBigArrayPoint4D(PackedBigArray):
    """Block array of 4D points."""

    def __init__(
        self,
        dtype=np.float64,
        reserved: int = 10,
        block_size: int = 50_000,
        growth: BlockGrowth = BlockGrowth.GROW_FIRST,
    ):
        super().__init__(4, dtype, reserved, block_size, growth)


class PackedTupleArray(PackedLinearArray):
    """Byte tuples, such as binary feature descriptors, in a single buffer."""

    def __init__(self, dof: int, dtype=np.uint8, reserved: int = 10):
        super().__init__(dof, dtype, reserved)


class PackedTupleBigArray(PackedBigArray):
    """Byte tuples in a block array. Blocks hold 65536 tuples by default."""

    def __init__(
        self,
        dof: int,
        dtype=np.uint8,
        reserved: int = 10,
        block_size: int = 65_536,
        growth: BlockGrowth = BlockGrowth.GROW_FIRST,
    ):
        super().__init__(dof, dtype, reserved, block_size, growth)


class IndexArray:
    """Growable one dimensional integer array used for index lists and packed colors."""

    def __init__(self, dtype=np.int32, reserved: int = 10):
        self._data = np.zeros(max(reserved, 1), dtype=dtype)
        self._size = 0

    @property
    def data(self) -> np.ndarray:
        """View of the filled part of the internal buffer."""
        return self._data[: self._size]

    def reserve(self, length: int) -> None:
        """Grows the buffer so it can hold at least ``length`` values without reallocating."""
        if length <= self._data.shape[0]:
            return
        data = np.zeros(length, dtype=self._data.dtype)
        data[: self._size] = self._data[: self._size]
        self._data = data

    def append(self, value: int) -> None:
        """Adds a value to the end, doubling the buffer when it is full."""
        if self._size == self._data.shape[0]:
            self.reserve(2 * self._data.shape[0])
        self._data[self._size] = value
        self._size += 1

    def extend(self, values) -> None:
        """Adds every value in a sequence or array to the end.

        Args:
            values: Values to append. Multi dimensional input is flattened.
        """
        values = np.asarray(values, dtype=self._data.dtype).ravel()
        required = self._size + values.shape[0]
        if required > self._data.shape[0]:
            self.reserve(max(required, 2 * self._data.shape[0]))
        self._data[self._size : required] = values
        self._size = required

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self._size:
            raise IndexError(f"Index {index} out of range for size {self._size}")

    def get(self, index: int) -> int:
        """Value at ``index``.

        Raises:
            IndexError: If ``index`` is not inside ``[0, size())``
        """
        self._check_index(index)
        return int(self._data[index])

    def set(self, index: int, value: int) -> None:
        """Overwrites the value at an existing ``index``."""
        self._check_index(index)
        self._data[index] = value

    def size(self) -> int:
        """Number of values in the array."""
        return self._size

    def reset(self) -> "IndexArray":
        """Sets the size to zero without releasing the buffer."""
        self._size = 0
        return self

    def set_to(self, src: "IndexArray") -> "IndexArray":
        """Makes this array a copy of ``src``.

        Args:
            src: Array which is copied

        Returns:
            This array
        """
        self.reset()
        self.extend(src.data)
        return self

    def to_array(self) -> np.ndarray:
        """Copy of the values as a numpy array."""
        return self._data[: self._size].copy()

    def is_equals(self, other) -> bool:
        """True if the values match ``other``, an IndexArray or a sequence."""
        values = other.data if isinstance(other, IndexArray) else np.asarray(other)
        return bool(np.array_equal(self.data, values))

    def __len__(self) -> int:
        return self._size

    def __getitem__(self, item):
        return self.data[item]

    def __iter__(self) -> Iterator[int]:
        return (int(v) for v in self.data)

    def __repr__(self) -> str:
        return f"IndexArray({self.data.tolist()})"
