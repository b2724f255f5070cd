"""
Activation Functions for Transformer Inference

This module implements the activation functions the LLaMA layer stack needs.
All arithmetic is carried out in float32, even when the tensor is stored in
half precision; results are rounded back to the input's storage type.

Functions:
    silu: Sigmoid Linear Unit (used in the SwiGLU feed-forward network)
    softmax: Converts scores to a probability distribution
    softmax_array: The same computation on a raw float32 array (kernel helper)

Reference:
    - "Gaussian Error Linear Units" (Hendrycks & Gimpel, 2016) - SiLU, as x * sigmoid(x)
    - "GLU Variants Improve Transformer" (Shazeer, 2020) - SwiGLU
"""

import numpy as np

from nxml.errors import ShapeMismatchError
from nxml.tensor import ScalarType, Tensor, TensorBuilder


def silu(x: Tensor) -> Tensor:
    """
    Compute SiLU (Sigmoid Linear Unit) activation.

    Mathematical Formula:
        SiLU(x) = x * sigmoid(x) = x / (1 + exp(-x))

    Properties:
        - SiLU(0) = 0
        - SiLU(x) ≈ x for large positive x
        - SiLU(x) ≈ 0 for large negative x
        - Minimum of about -0.278 at x ≈ -1.278

    Args:
        x: Floating-point tensor of any shape.

    Returns:
        Tensor of the same shape and storage type with SiLU applied
        element-wise.

    Example:
        >>> x = Tensor.new([-1.0, 0.0, 1.0], (3,))
        >>> silu(x).tolist()
        [-0.2689..., 0.0, 0.7310...]
    """
    if not x.dtype.is_float:
        raise ShapeMismatchError(f"silu needs a floating-point tensor, got {x.dtype.name}")

    values = x.numpy().astype(np.float32)

    # exp(-x) overflows to inf for very negative x, which correctly gives 0
    with np.errstate(over="ignore"):
        sigmoid = 1.0 / (1.0 + np.exp(-values))

    builder = TensorBuilder(x.shape, x.dtype)
    builder.data[...] = values * sigmoid
    return builder.freeze()


def softmax_array(logits: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Numerically stable softmax on a float32 NumPy array.

    Numerical Stability:
        The maximum is subtracted before exponentiation. This doesn't change
        the result because:
        exp(x_i - max) / sum(exp(x_j - max)) = exp(x_i) / sum(exp(x_j))
        and after the shift at least one entry is exp(0) = 1, so the
        denominator is always >= 1 for finite input.

    Args:
        logits: Scores. Entries may be -inf (masked) as long as every row
                has at least one finite entry.
        axis: The axis along which to normalize.

    Returns:
        float32 array of the same shape; entries along ``axis`` sum to 1.
    """
    logits = np.asarray(logits, dtype=np.float32)

    # Step 1: Subtract maximum for numerical stability
    max_logit = np.max(logits, axis=axis, keepdims=True)
    stable_logits = logits - max_logit

    # Step 2: Exponentiate (exp(-inf) = 0 for masked entries)
    exponentials = np.exp(stable_logits)

    # Step 3: Normalize
    sum_of_exponentials = np.sum(exponentials, axis=axis, keepdims=True)
    return exponentials / sum_of_exponentials


def softmax(logits: Tensor, axis: int = -1) -> Tensor:
    """
    Compute softmax along an axis.

    Converts a vector of arbitrary real values (logits) into a probability
    distribution where all values are in [0, 1] and sum to 1.

    Mathematical Formula:
        softmax(x)_i = exp(x_i) / sum_j(exp(x_j))

    Args:
        logits: Floating-point tensor of any shape.
        axis: The axis along which to compute softmax. Default is -1.

    Returns:
        F32 tensor of the same shape.

    Example:
        >>> probs = softmax(Tensor.new([1.0, 2.0, 3.0], (3,)))
        >>> probs.tolist()  # [0.09, 0.24, 0.67]
    """
    if not logits.dtype.is_float:
        raise ShapeMismatchError(f"softmax needs a floating-point tensor, got {logits.dtype.name}")

    builder = TensorBuilder(logits.shape, ScalarType.F32)
    builder.data[...] = softmax_array(logits.numpy(), axis=axis)
    return builder.freeze()
