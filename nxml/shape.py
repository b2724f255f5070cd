"""
Shape and Stride Algebra

Pure helpers for row-major layouts. Every tensor in nxml has rank 1 to 4;
kernels canonicalize shapes to rank 4 by left-padding with size-1 dimensions
so that they can iterate uniformly over [batch1, batch0, rows, cols]
regardless of the logical rank of their operands.

Row-major means the last dimension is contiguous:
    stride[last] = 1
    stride[i]    = stride[i + 1] * shape[i + 1]

Functions:
    validate_shape: Normalize a shape to a tuple of positive ints
    num_elements: Product of the extents
    row_major_strides: Element strides for a shape
    canonical_shape: Left-pad a shape to MAX_DIMS
    flat_offset: Linear offset of a multi-index
"""

from typing import Sequence, Tuple

from nxml.errors import InvalidShapeError

MAX_DIMS = 4

Shape = Tuple[int, ...]


def validate_shape(shape: Sequence[int]) -> Shape:
    """
    Normalize a shape to a tuple of Python ints and check it.

    Args:
        shape: Sequence of per-dimension extents

    Returns:
        The shape as a tuple

    Raises:
        InvalidShapeError: If the shape is empty, has more than MAX_DIMS
            dimensions, or contains a non-positive extent
    """
    try:
        normalized = tuple(int(extent) for extent in shape)
    except TypeError as exc:
        raise InvalidShapeError(f"Shape must be a sequence of ints, got {shape!r}") from exc

    if not 1 <= len(normalized) <= MAX_DIMS:
        raise InvalidShapeError(
            f"Rank must be between 1 and {MAX_DIMS}, got shape {normalized}"
        )
    if any(extent <= 0 for extent in normalized):
        raise InvalidShapeError(f"All extents must be positive, got shape {normalized}")

    return normalized


def num_elements(shape: Sequence[int]) -> int:
    """Return the number of elements a buffer of this shape holds."""
    count = 1
    for extent in shape:
        count *= extent
    return count


def row_major_strides(shape: Sequence[int]) -> Shape:
    """
    Compute row-major strides, in elements, for a shape.

    Example:
        >>> row_major_strides((2, 3, 4))
        (12, 4, 1)
    """
    strides = [1] * len(shape)
    for i in range(len(shape) - 2, -1, -1):
        strides[i] = strides[i + 1] * shape[i + 1]
    return tuple(strides)


def canonical_shape(shape: Sequence[int]) -> Shape:
    """
    Left-pad a shape with size-1 dimensions up to MAX_DIMS.

    The number of elements and the row-major layout are unchanged, so a
    buffer can be reinterpreted with the canonical shape for free.

    Example:
        >>> canonical_shape((3, 5))
        (1, 1, 3, 5)
    """
    if len(shape) > MAX_DIMS:
        raise InvalidShapeError(f"Rank must be at most {MAX_DIMS}, got shape {tuple(shape)}")
    return (1,) * (MAX_DIMS - len(shape)) + tuple(shape)


def flat_offset(index: Sequence[int], shape: Sequence[int]) -> int:
    """
    Linear offset of a multi-index into a row-major buffer.

    Raises:
        InvalidShapeError: If the index rank differs from the shape rank
    """
    if len(index) != len(shape):
        raise InvalidShapeError(
            f"Index {tuple(index)} does not match rank of shape {tuple(shape)}"
        )
    return sum(i * stride for i, stride in zip(index, row_major_strides(shape)))
