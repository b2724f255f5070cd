"""
Neural Network Layers for LLaMA Inference

This module implements the per-token layers of a LLaMA-style transformer on
top of the nxml tensor kernels. Layers hold published (read-only) weight
tensors and only run forward passes.

Functions:
    rms_norm: Root-mean-square normalization over the innermost dimension
    rope: Rotary position embedding

Classes:
    RMSNorm: rms_norm followed by a learned per-channel scale
    Linear: Projection y = x @ W^T with a weight stored as (out, in)
    Embedding: Token ID to dense vector lookup table

Reference:
    - "Root Mean Square Layer Normalization" (Zhang & Sennrich, 2019)
    - "RoFormer: Enhanced Transformer with Rotary Position Embedding" (Su et al., 2021)
"""

import logging
from typing import Sequence, Union

import numpy as np

from nxml.errors import ShapeMismatchError
from nxml.ops import get_rows, matmul, mul
from nxml.tensor import ScalarType, Tensor, TensorBuilder

logger = logging.getLogger(__name__)


def rms_norm(x: Tensor, eps: float = 0.0) -> Tensor:
    """
    Normalize every innermost row by its root mean square.

    Mathematical Formula:
        rms(x) = sqrt(mean(x_i^2) + eps)
        y_i    = x_i / rms(x)

    Unlike LayerNorm there is no mean subtraction and no bias. The
    computation runs in float32 and is stored in the input's type.

    Zero Rows:
        With the default eps = 0.0 a row of all zeros divides by zero and
        produces non-finite values (NaN). They are not raised as an error;
        a warning is logged and the values propagate downstream. Pass a
        positive eps (LLaMA checkpoints use 1e-6) to guard against it.

    Args:
        x: Floating-point tensor of any rank; normalized along the last axis
        eps: Added to the mean square before the square root

    Returns:
        Tensor of the same shape and storage type.

    Example:
        >>> rms_norm(Tensor.new([1.0, 1.0, 1.0, 1.0], (4,))).tolist()
        [1.0, 1.0, 1.0, 1.0]
    """
    if not x.dtype.is_float:
        raise ShapeMismatchError(f"rms_norm needs a floating-point tensor, got {x.dtype.name}")

    values = x.numpy().astype(np.float32)

    mean_square = np.mean(values * values, axis=-1, keepdims=True)
    rms = np.sqrt(mean_square + np.float32(eps))

    degenerate_rows = int(np.count_nonzero(rms == 0))
    if degenerate_rows:
        logger.warning(
            "rms_norm: %d row(s) of shape %s have zero RMS; output is not finite",
            degenerate_rows, x.shape,
        )

    builder = TensorBuilder(x.shape, x.dtype)
    with np.errstate(divide="ignore", invalid="ignore"):
        builder.data[...] = values / rms
    return builder.freeze()


def rope(x: Tensor, position_offset: int = 0, theta: float = 10000.0) -> Tensor:
    """
    Apply rotary position embedding.

    Adjacent element pairs (x_2i, x_2i+1) of each vector are treated as a
    2-D point and rotated by an angle that depends on the token position:

        angle(pos, i) = pos * theta^(-2i / d)
        y_2i   = x_2i * cos(angle) - x_2i+1 * sin(angle)
        y_2i+1 = x_2i * sin(angle) + x_2i+1 * cos(angle)

    The dot product of two rotated vectors then depends only on their
    relative position, which is what attention needs.

    Args:
        x: Tensor of shape [..., n, d] (rank >= 2) with even d; the
           second-to-last axis is the sequence position
        position_offset: Position of the first row
        theta: Base of the frequency schedule

    Returns:
        Tensor of the same shape and storage type.
    """
    if x.rank < 2:
        raise ShapeMismatchError(f"rope needs shape [..., n, d], got {x.shape}")
    sequence_length, dimension = x.shape[-2:]
    if dimension % 2 != 0:
        raise ShapeMismatchError(f"rope needs an even last dimension, got {dimension}")

    values = x.numpy().astype(np.float32)

    positions = np.arange(
        position_offset, position_offset + sequence_length, dtype=np.float32
    )[:, np.newaxis]
    frequencies = np.power(
        np.float32(theta), -np.arange(0, dimension, 2, dtype=np.float32) / dimension
    )
    angles = positions * frequencies  # (n, d / 2)
    cos, sin = np.cos(angles), np.sin(angles)

    even = values[..., 0::2]
    odd = values[..., 1::2]

    builder = TensorBuilder(x.shape, x.dtype)
    builder.data[..., 0::2] = even * cos - odd * sin
    builder.data[..., 1::2] = even * sin + odd * cos
    return builder.freeze()


class RMSNorm:
    """
    RMS normalization with a learned per-channel scale.

    Computes rms_norm(x) * weight, where the weight vector of shape (d,) is
    tiled to the shape of x before the elementwise multiply.

    Attributes:
        weight: Scale vector of shape (d,)
        eps: Passed through to rms_norm
    """

    def __init__(self, weight: Tensor, eps: float = 0.0):
        if weight.rank != 1:
            raise ShapeMismatchError(f"RMSNorm weight must be 1-D, got shape {weight.shape}")
        self.weight = weight
        self.eps = eps

    @property
    def dimension(self) -> int:
        return self.weight.shape[0]

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Tensor of shape [..., d]

        Returns:
            Normalized and scaled tensor in x's storage type
        """
        if x.shape[-1] != self.dimension:
            raise ShapeMismatchError(
                f"RMSNorm over {self.dimension} channels got input shape {x.shape}"
            )
        normalized = rms_norm(x, eps=self.eps)
        return mul(normalized, self.weight.repeat(x.shape))


class Linear:
    """
    Bias-free projection layer.

    Computes y = x @ W^T. The weight is stored as (output_features,
    input_features), the layout ggml files use, so it is passed to matmul
    as the transposed operand without copying.

    Attributes:
        weight: Weight matrix of shape (output_features, input_features)
        out_dtype: Storage type of the output (F32 by default, so half
            precision weights produce float32 activations)
    """

    def __init__(self, weight: Tensor, out_dtype: ScalarType = ScalarType.F32):
        if weight.rank != 2:
            raise ShapeMismatchError(f"Linear weight must be 2-D, got shape {weight.shape}")
        self.weight = weight
        self.out_dtype = out_dtype

    @property
    def input_features(self) -> int:
        return self.weight.shape[1]

    @property
    def output_features(self) -> int:
        return self.weight.shape[0]

    def forward(self, x: Tensor) -> Tensor:
        """
        Forward pass: y = x @ W^T

        Args:
            x: Tensor of shape (n, input_features)

        Returns:
            Tensor of shape (n, output_features)
        """
        return matmul(x, self.weight, out_dtype=self.out_dtype)


class Embedding:
    """
    Token Embedding Layer.

    A lookup table mapping token IDs to dense vectors. Row i of the table is
    the embedding of token i; the lookup is a row gather.

    Attributes:
        weight: Embedding matrix of shape (vocabulary_size, embedding_dimension)
        out_dtype: Storage type of the returned embeddings
    """

    def __init__(self, weight: Tensor, out_dtype: ScalarType = ScalarType.F32):
        if weight.rank != 2:
            raise ShapeMismatchError(f"Embedding table must be 2-D, got shape {weight.shape}")
        self.weight = weight
        self.out_dtype = out_dtype

    @property
    def vocabulary_size(self) -> int:
        return self.weight.shape[0]

    @property
    def embedding_dimension(self) -> int:
        return self.weight.shape[1]

    def forward(self, token_ids: Union[Tensor, Sequence[int]]) -> Tensor:
        """
        Look up embeddings for token IDs.

        Args:
            token_ids: U32 tensor or sequence of token ids, length n

        Returns:
            Tensor of shape (n, embedding_dimension)

        Raises:
            IndexOutOfRangeError: If a token id is outside the vocabulary
        """
        return get_rows(self.weight, token_ids).astype(self.out_dtype)
