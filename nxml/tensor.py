"""
Tensor Value Type

This module implements the tensor that every kernel in nxml consumes and
produces: a flat row-major NumPy buffer paired with a shape of rank 1 to 4
and an element type tag.

Ownership Model:
    - A published Tensor is read-only. Its buffer has ``writeable = False``,
      so any attempt to write through it raises.
    - reshape() returns a new Tensor that aliases the same buffer (O(1)).
    - Every other operation allocates a fresh buffer through a TensorBuilder,
      writes into it while it is exclusively owned, and freezes it into a
      Tensor exactly once.

Since published buffers never change, any number of readers (including
worker threads) can share a weight tensor without copying or locking.

Classes:
    ScalarType: Element type tag (F32, F16, U32)
    Tensor: Immutable, shared-buffer tensor
    TensorBuilder: Exclusive writable buffer that freezes into a Tensor
"""

from enum import Enum
from typing import List, Optional, Sequence, Union

import numpy as np

from nxml.errors import (
    AllocationError,
    ImmutableTensorError,
    InvalidShapeError,
    ShapeMismatchError,
)
from nxml.shape import MAX_DIMS, Shape, num_elements, row_major_strides, validate_shape


class ScalarType(Enum):
    """
    Element type of a tensor buffer.

    F16 is IEEE half precision. Arithmetic on F16 data is always carried out
    in float32 and rounded back on store.
    """

    F32 = "f32"
    F16 = "f16"
    U32 = "u32"

    @property
    def numpy_dtype(self) -> np.dtype:
        return _NUMPY_DTYPES[self]

    @property
    def itemsize(self) -> int:
        """Size of one element in bytes."""
        return self.numpy_dtype.itemsize

    @property
    def is_float(self) -> bool:
        return self is not ScalarType.U32

    @classmethod
    def from_numpy(cls, dtype: np.dtype) -> "ScalarType":
        """
        Pick the storage type for a NumPy dtype.

        float16 maps to F16, any other floating type to F32, and unsigned or
        signed integers to U32.
        """
        dtype = np.dtype(dtype)
        if dtype == np.float16:
            return cls.F16
        if np.issubdtype(dtype, np.floating):
            return cls.F32
        if np.issubdtype(dtype, np.integer) or dtype == np.bool_:
            return cls.U32
        raise ShapeMismatchError(f"Unsupported element type {dtype}")


_NUMPY_DTYPES = {
    ScalarType.F32: np.dtype(np.float32),
    ScalarType.F16: np.dtype(np.float16),
    ScalarType.U32: np.dtype(np.uint32),
}


def _is_frozen(array: np.ndarray) -> bool:
    """True if no array or buffer in the view chain of ``array`` is writable."""
    current = array
    while isinstance(current, np.ndarray):
        if current.flags.writeable:
            return False
        current = current.base
    if current is None or isinstance(current, bytes):
        return True
    if isinstance(current, memoryview):
        return current.readonly
    return False


class Tensor:
    """
    Immutable N-dimensional tensor with a shared row-major buffer.

    Tensors are not built with the constructor directly; use Tensor.new,
    Tensor.zeros, Tensor.from_numpy, or a TensorBuilder.

    Attributes:
        shape: Tuple of per-dimension extents (rank 1 to 4)
        dtype: ScalarType of the elements
        rank: Number of dimensions
        size: Total number of elements

    Example:
        >>> t = Tensor.new([1, 2, 3, 4, 5, 6], (2, 3), ScalarType.F16)
        >>> t.reshape((3, 2)).shape
        (3, 2)
    """

    __slots__ = ("_buffer", "_dtype")

    def __init__(self, buffer: np.ndarray, dtype: ScalarType):
        if buffer.dtype != dtype.numpy_dtype:
            raise ShapeMismatchError(
                f"Buffer dtype {buffer.dtype} does not match element type {dtype.name}"
            )
        if not 1 <= buffer.ndim <= MAX_DIMS:
            raise InvalidShapeError(f"Rank must be between 1 and {MAX_DIMS}, got {buffer.ndim}")
        if buffer.flags.writeable:
            buffer.flags.writeable = False
        self._buffer = buffer
        self._dtype = dtype

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        data: Union[Sequence, np.ndarray],
        shape: Sequence[int],
        dtype: ScalarType = ScalarType.F32,
    ) -> "Tensor":
        """
        Build a tensor from flat (or nested) data and a shape.

        The data is copied into a fresh buffer of the requested element type.

        Args:
            data: Elements in row-major order. Nested sequences are flattened.
            shape: Target shape
            dtype: Storage element type

        Raises:
            InvalidShapeError: If the number of elements differs from
                product(shape)
        """
        shape = validate_shape(shape)
        values = np.asarray(data)
        expected = num_elements(shape)
        if values.size != expected:
            raise InvalidShapeError(
                f"Data has {values.size} elements but shape {shape} needs {expected}"
            )
        if dtype is ScalarType.U32 and values.size and np.any(values < 0):
            raise InvalidShapeError("U32 tensors cannot hold negative values")

        builder = TensorBuilder(shape, dtype)
        builder.data[...] = values.reshape(shape)
        return builder.freeze()

    @classmethod
    def zeros(cls, shape: Sequence[int], dtype: ScalarType = ScalarType.F32) -> "Tensor":
        """Create a tensor filled with the element type's zero."""
        return TensorBuilder(shape, dtype).freeze()

    @classmethod
    def from_numpy(cls, array: np.ndarray, dtype: Optional[ScalarType] = None) -> "Tensor":
        """
        Wrap a NumPy array as a tensor.

        A read-only, C-contiguous array of the right element type is adopted
        without copying, provided every array it views is read-only too.
        Anything else is copied so the caller cannot mutate the tensor
        through its own reference or through a writable base.

        Args:
            array: Source array (rank 1 to 4)
            dtype: Storage type. Inferred from array.dtype when omitted.
        """
        array = np.asarray(array)
        if dtype is None:
            dtype = ScalarType.from_numpy(array.dtype)

        target = dtype.numpy_dtype
        adoptable = (
            array.dtype == target
            and array.flags.c_contiguous
            and _is_frozen(array)
        )
        if adoptable:
            validate_shape(array.shape)
            return cls(array, dtype)

        return cls.new(array, array.shape, dtype)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Shape:
        return self._buffer.shape

    @property
    def dtype(self) -> ScalarType:
        return self._dtype

    @property
    def rank(self) -> int:
        return self._buffer.ndim

    @property
    def size(self) -> int:
        return self._buffer.size

    @property
    def strides(self) -> Shape:
        """Row-major strides in elements (derived from the shape)."""
        return row_major_strides(self.shape)

    def numpy(self) -> np.ndarray:
        """Return the read-only buffer as a NumPy array."""
        return self._buffer

    def tolist(self) -> List:
        return self._buffer.tolist()

    def shares_buffer(self, other: "Tensor") -> bool:
        """True if both tensors read from the same underlying storage."""
        return np.shares_memory(self._buffer, other._buffer)

    # ------------------------------------------------------------------
    # Shape operations
    # ------------------------------------------------------------------

    def reshape(self, shape: Sequence[int]) -> "Tensor":
        """
        Reinterpret the buffer with a new shape.

        The result aliases this tensor's buffer; no data is copied.

        Raises:
            ShapeMismatchError: If product(shape) differs from self.size
        """
        shape = validate_shape(shape)
        if num_elements(shape) != self.size:
            raise ShapeMismatchError(
                f"Cannot reshape {self.shape} ({self.size} elements) to {shape}"
            )
        return Tensor(self._buffer.reshape(shape), self._dtype)

    def repeat(self, shape: Sequence[int]) -> "Tensor":
        """
        Tile this tensor into a larger shape.

        A lower-rank tensor is first left-padded with size-1 dimensions. Each
        target extent must be an exact multiple of the source extent; the
        source block is copied into every tile position.

        Args:
            shape: Target shape, rank >= self.rank

        Raises:
            ShapeMismatchError: If the rank shrinks or an extent does not
                divide evenly

        Example:
            >>> weight = Tensor.new([1, 2, 3], (3,))
            >>> weight.repeat((2, 3)).tolist()
            [[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]]
        """
        shape = validate_shape(shape)
        if len(shape) < self.rank:
            raise ShapeMismatchError(f"Cannot repeat {self.shape} into lower rank shape {shape}")

        source_shape = (1,) * (len(shape) - self.rank) + self.shape
        factors = []
        for source_extent, target_extent in zip(source_shape, shape):
            if target_extent % source_extent != 0:
                raise ShapeMismatchError(
                    f"Cannot repeat {self.shape} to {shape}: "
                    f"{target_extent} is not a multiple of {source_extent}"
                )
            factors.append(target_extent // source_extent)

        # Output index i_d = tile_d * source_d + offset_d, so viewing the output
        # as (tile_0, source_0, tile_1, source_1, ...) lets one broadcast
        # assignment fill every tile.
        tiled_shape = []
        block_shape = []
        for factor, source_extent in zip(factors, source_shape):
            tiled_shape.extend((factor, source_extent))
            block_shape.extend((1, source_extent))

        builder = TensorBuilder(shape, self._dtype)
        builder.data.reshape(tiled_shape)[...] = self._buffer.reshape(block_shape)
        return builder.freeze()

    def astype(self, dtype: ScalarType) -> "Tensor":
        """Convert to another element type (rounding to nearest)."""
        if dtype is self._dtype:
            return self
        builder = TensorBuilder(self.shape, dtype)
        builder.data[...] = self._buffer
        return builder.freeze()

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape}, dtype={self._dtype.name})"


class TensorBuilder:
    """
    Exclusively owned, writable buffer under construction.

    Kernels allocate a builder, fill ``data``, then call freeze() to publish
    the result. After freezing, the builder no longer hands out its buffer,
    so no writer can outlive publication.

    Example:
        >>> builder = TensorBuilder((2, 2), ScalarType.F32)
        >>> builder.data[0, 0] = 1.0
        >>> tensor = builder.freeze()
    """

    def __init__(self, shape: Sequence[int], dtype: ScalarType = ScalarType.F32):
        self.shape = validate_shape(shape)
        self.dtype = dtype
        try:
            self._buffer = np.zeros(self.shape, dtype=dtype.numpy_dtype)
        except (MemoryError, ValueError) as exc:
            # numpy reports requests beyond the address space as ValueError
            raise AllocationError(
                f"Could not allocate {num_elements(self.shape)} x {dtype.name} "
                f"for shape {self.shape}"
            ) from exc

    @property
    def data(self) -> np.ndarray:
        """Writable buffer. Only valid until freeze() is called."""
        if self._buffer is None:
            raise ImmutableTensorError("TensorBuilder has already been frozen")
        return self._buffer

    @property
    def frozen(self) -> bool:
        return self._buffer is None

    def freeze(self) -> Tensor:
        """Publish the buffer as a read-only Tensor."""
        buffer = self.data
        self._buffer = None
        return Tensor(buffer, self.dtype)
