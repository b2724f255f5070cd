"""
Tensor Kernels: Contraction, Gather and Elementwise Operations

This module holds the kernels the layer stack is built from. Each kernel
validates its operands once on entry, allocates a TensorBuilder for its
output, writes into it, and returns the frozen result. Inputs are never
modified.

Precision:
    Half-precision operands are upcast to float32 before any arithmetic and
    every reduction accumulates in float32. Results are rounded to the
    output's storage type only when they are stored.

Functions:
    dot: Dot product of two equally sized tensors (any float types)
    dot_f16: Dot product of two F16 tensors
    dot_f16_f32: Dot product of an F16 tensor with an F32 tensor
    matmul: Batched C = A @ B^T with mixed precision and output tiling
    get_rows: Gather whole rows of a 2-D tensor (embedding lookup)
    repeat: Tile a tensor into a larger shape
    add: Elementwise sum of two same-shape tensors
    mul: Elementwise product of two same-shape tensors
    transpose: Permute dimensions into a fresh buffer
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence, Union

import numpy as np

from nxml.config import EngineConfig, get_config
from nxml.errors import IndexOutOfRangeError, ShapeMismatchError
from nxml.shape import canonical_shape
from nxml.tensor import ScalarType, Tensor, TensorBuilder

logger = logging.getLogger(__name__)


def _as_float32(tensor: Tensor) -> np.ndarray:
    return tensor.numpy().astype(np.float32, copy=False)


def _require_float(*tensors: Tensor) -> None:
    for tensor in tensors:
        if not tensor.dtype.is_float:
            raise ShapeMismatchError(f"Expected a floating-point tensor, got {tensor.dtype.name}")


def _promote(a: ScalarType, b: ScalarType) -> ScalarType:
    if ScalarType.F32 in (a, b):
        return ScalarType.F32
    return ScalarType.F16


# =============================================================================
# Dot products
# =============================================================================


def dot(a: Tensor, b: Tensor) -> float:
    """
    Sum of elementwise products over two runs of n elements.

    Both tensors are read as flat row-major runs, so any shapes with the same
    number of elements can be contracted. The sum is accumulated in float32
    regardless of the storage types.

    Args:
        a: Floating-point tensor with n elements
        b: Floating-point tensor with n elements

    Returns:
        The float32 dot product as a Python float

    Raises:
        ShapeMismatchError: If the element counts differ
    """
    _require_float(a, b)
    if a.size != b.size:
        raise ShapeMismatchError(f"Cannot dot {a.shape} with {b.shape}: sizes differ")

    x = _as_float32(a).reshape(-1)
    y = _as_float32(b).reshape(-1)
    return float(np.dot(x, y))


def dot_f16(a: Tensor, b: Tensor) -> float:
    """Dot product of two half-precision tensors, accumulated in float32."""
    if a.dtype is not ScalarType.F16 or b.dtype is not ScalarType.F16:
        raise ShapeMismatchError(f"dot_f16 needs F16 x F16, got {a.dtype.name} x {b.dtype.name}")
    return dot(a, b)


def dot_f16_f32(a: Tensor, b: Tensor) -> float:
    """Dot product of a half-precision tensor with a float32 tensor."""
    if a.dtype is not ScalarType.F16 or b.dtype is not ScalarType.F32:
        raise ShapeMismatchError(
            f"dot_f16_f32 needs F16 x F32, got {a.dtype.name} x {b.dtype.name}"
        )
    return dot(a, b)


# =============================================================================
# Matrix multiplication
# =============================================================================


def matmul(
    a: Tensor,
    b_transposed: Tensor,
    out_dtype: Optional[ScalarType] = None,
    config: Optional[EngineConfig] = None,
) -> Tensor:
    """
    Batched matrix multiplication against a transposed right operand.

    Both operands share the trailing contraction dimension n, which is the
    natural layout of weight matrices stored as (output_features,
    input_features):

        a:            [batch1, batch0, m, n]
        b_transposed: [batch1, batch0, p, n]
        result:       [batch1, batch0, m, p]
        C[..., i, j] = dot(A[..., i, :], B_t[..., j, :])

    Lower-rank operands are left-padded with size-1 dimensions; the result
    has the larger of the two ranks. Batch dimensions must match exactly
    (no broadcasting).

    Execution:
        The output of every batch entry is split into square tiles of
        ``config.block_rows`` rows and columns. Each tile widens only its own
        slices of the operands to float32, so F16 weights are never copied
        whole. With ``config.num_threads > 1`` the tiles run on a thread
        pool; each tile writes a disjoint slice of the output buffer, which
        is only frozen after every tile has finished.

    Args:
        a: Left operand (activations), F16 or F32
        b_transposed: Right operand stored transposed (weights), F16 or F32
        out_dtype: Storage type of the result. Defaults to F32 if either
            operand is F32, otherwise F16.
        config: Engine configuration (defaults to get_config())

    Returns:
        Tensor of shape [..., m, p]

    Raises:
        ShapeMismatchError: If batch dimensions or contraction dimensions
            differ, or out_dtype is not a float type

    Example:
        >>> x = Tensor.new([[1, 2, 3], [4, 5, 6]], (2, 3), ScalarType.F16)
        >>> ones = Tensor.new([1, 1, 1], (1, 3), ScalarType.F16)
        >>> matmul(x, ones).tolist()
        [[6.0], [15.0]]
    """
    _require_float(a, b_transposed)
    config = config or get_config()

    batch1, batch0, m, n = canonical_shape(a.shape)
    b_batch1, b_batch0, p, b_n = canonical_shape(b_transposed.shape)

    if (batch1, batch0) != (b_batch1, b_batch0):
        raise ShapeMismatchError(
            f"Batch dimensions differ: {a.shape} vs {b_transposed.shape}"
        )
    if n != b_n:
        raise ShapeMismatchError(
            f"Contraction dimensions differ: {a.shape} vs {b_transposed.shape}"
        )

    if out_dtype is None:
        out_dtype = _promote(a.dtype, b_transposed.dtype)
    elif not out_dtype.is_float:
        raise ShapeMismatchError(f"matmul output must be F16 or F32, got {out_dtype.name}")

    rank = max(a.rank, b_transposed.rank)
    out_shape = (batch1, batch0, m, p)[4 - rank:]

    num_batches = batch1 * batch0
    # Stored precision; tiles are widened to float32 inside compute_block
    lhs = a.numpy().reshape(num_batches, m, n)
    rhs = b_transposed.numpy().reshape(num_batches, p, n)

    builder = TensorBuilder(out_shape, out_dtype)
    out = builder.data.reshape(num_batches, m, p)

    block = config.block_rows
    work_items = [
        (batch, row, min(row + block, m), col, min(col + block, p))
        for batch in range(num_batches)
        for row in range(0, m, block)
        for col in range(0, p, block)
    ]

    def compute_block(item):
        batch, row_start, row_stop, col_start, col_stop = item
        rows = lhs[batch, row_start:row_stop].astype(np.float32, copy=False)
        cols = rhs[batch, col_start:col_stop].astype(np.float32, copy=False)
        out[batch, row_start:row_stop, col_start:col_stop] = np.matmul(rows, cols.T)

    if config.num_threads > 1 and len(work_items) > 1:
        workers = min(config.num_threads, len(work_items))
        logger.debug(
            "matmul %s x %s: %d blocks on %d threads",
            a.shape, b_transposed.shape, len(work_items), workers,
        )
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # list() re-raises the first worker exception, if any
            list(pool.map(compute_block, work_items))
    else:
        for item in work_items:
            compute_block(item)

    return builder.freeze()


# =============================================================================
# Gather and broadcast
# =============================================================================


def _index_array(indices: Union[Tensor, Sequence[int], np.ndarray]) -> np.ndarray:
    if isinstance(indices, Tensor):
        if indices.dtype is not ScalarType.U32:
            raise ShapeMismatchError(f"Index tensor must be U32, got {indices.dtype.name}")
        array = indices.numpy()
    else:
        array = np.asarray(indices)
        if array.size and not np.issubdtype(array.dtype, np.integer):
            raise ShapeMismatchError(f"Indices must be integers, got {array.dtype}")

    array = array.astype(np.int64).reshape(-1)
    if array.size == 0:
        raise ShapeMismatchError("get_rows needs at least one index")
    return array


def get_rows(source: Tensor, indices: Union[Tensor, Sequence[int], np.ndarray]) -> Tensor:
    """
    Gather whole rows of a 2-D tensor by index.

    This is the embedding lookup primitive: with an embedding table of shape
    (vocab_size, embedding_dim) and a sequence of token ids, it returns one
    embedding vector per token.

    Args:
        source: Tensor of shape (rows, cols)
        indices: U32 tensor or integer sequence of length k

    Returns:
        Tensor of shape (k, cols) in the source's storage type, where row i
        is an exact copy of source row indices[i]

    Raises:
        ShapeMismatchError: If source is not 2-D or indices are not integers
        IndexOutOfRangeError: If any index is negative or >= rows
    """
    if source.rank != 2:
        raise ShapeMismatchError(f"get_rows needs a 2-D source, got shape {source.shape}")

    rows, cols = source.shape
    index = _index_array(indices)

    out_of_range = index[(index < 0) | (index >= rows)]
    if out_of_range.size:
        raise IndexOutOfRangeError(
            f"Row index {int(out_of_range[0])} out of range for {rows} rows"
        )

    builder = TensorBuilder((index.size, cols), source.dtype)
    np.take(source.numpy(), index, axis=0, out=builder.data)
    return builder.freeze()


def repeat(tensor: Tensor, shape: Sequence[int]) -> Tensor:
    """
    Tile a tensor to a larger shape (see Tensor.repeat).

    Used to expand a per-channel normalization weight of shape (d,) to the
    (n, d) shape of a hidden state before an elementwise multiply.
    """
    return tensor.repeat(shape)


# =============================================================================
# Elementwise
# =============================================================================


def _elementwise(a: Tensor, b: Tensor, operation, name: str) -> Tensor:
    _require_float(a, b)
    if a.shape != b.shape:
        raise ShapeMismatchError(f"{name} needs equal shapes, got {a.shape} and {b.shape}")

    builder = TensorBuilder(a.shape, a.dtype)
    builder.data[...] = operation(_as_float32(a), _as_float32(b))
    return builder.freeze()


def add(a: Tensor, b: Tensor) -> Tensor:
    """Elementwise a + b in float32, stored in a's type. Shapes must match."""
    return _elementwise(a, b, np.add, "add")


def mul(a: Tensor, b: Tensor) -> Tensor:
    """Elementwise a * b in float32, stored in a's type. Shapes must match."""
    return _elementwise(a, b, np.multiply, "mul")


def transpose(tensor: Tensor, axes: Sequence[int]) -> Tensor:
    """
    Permute dimensions, copying into a fresh row-major buffer.

    Args:
        tensor: Source tensor
        axes: Permutation of range(tensor.rank)

    Raises:
        ShapeMismatchError: If axes is not a permutation of the dimensions
    """
    axes = tuple(axes)
    if sorted(axes) != list(range(tensor.rank)):
        raise ShapeMismatchError(f"{axes} is not a permutation for shape {tensor.shape}")

    shape = tuple(tensor.shape[axis] for axis in axes)
    builder = TensorBuilder(shape, tensor.dtype)
    builder.data[...] = np.transpose(tensor.numpy(), axes)
    return builder.freeze()


# =============================================================================
# DEMO
# Run with: python -m nxml.ops
# =============================================================================
if __name__ == "__main__":
    print("=" * 70)
    print("TENSOR KERNELS DEMO")
    print("=" * 70)
    print()

    x = Tensor.new([[1, 2, 3], [4, 5, 6]], (2, 3), ScalarType.F16)
    ones = Tensor.new([1, 1, 1], (1, 3), ScalarType.F16)
    print(f"x = {x.tolist()} ({x.dtype.name})")
    print(f"matmul(x, ones^T) = {matmul(x, ones).tolist()}  (row sums)")
    print()

    table = Tensor.new(np.arange(12), (4, 3), ScalarType.F16)
    print(f"Embedding table rows: {table.tolist()}")
    print(f"get_rows(table, [3, 0]) = {get_rows(table, [3, 0]).tolist()}")
    print()

    weight = Tensor.new([1, 2, 3], (3,))
    print(f"repeat({weight.tolist()}, (2, 3)) = {repeat(weight, (2, 3)).tolist()}")
