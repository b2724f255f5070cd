"""
Tests for activation functions module.

Tests cover:
- Softmax: numerical stability, probability distribution properties
- SiLU: known values, precision handling, shape preservation
"""

import numpy as np


class TestSoftmax:
    """
    Test suite for the softmax activation function.

    Softmax converts a vector of real numbers into a probability distribution.
    Formula: softmax(x)_i = exp(x_i) / sum(exp(x_j))
    """

    def test_softmax_output_sums_to_one(self):
        """Softmax output should be a valid probability distribution (sums to 1)."""
        from nxml.activations import softmax
        from nxml.tensor import Tensor

        logits = Tensor.new([1.0, 2.0, 3.0, 4.0, 5.0], (5,))
        probabilities = softmax(logits).numpy()

        assert np.isclose(np.sum(probabilities), 1.0, atol=1e-6), (
            "Softmax output must sum to 1.0"
        )

    def test_softmax_numerical_stability_large_values(self):
        """Softmax should not overflow with large input values."""
        from nxml.activations import softmax
        from nxml.tensor import Tensor

        logits = Tensor.new([1000.0, 1001.0, 1002.0], (3,))
        probabilities = softmax(logits).numpy()

        assert np.all(np.isfinite(probabilities)), "Softmax should handle large values"
        assert np.isclose(np.sum(probabilities), 1.0, atol=1e-6)

    def test_softmax_handles_masked_entries(self):
        """-inf entries get probability exactly 0."""
        from nxml.activations import softmax_array

        probabilities = softmax_array(np.array([0.0, -np.inf, 1.0], dtype=np.float32))

        assert probabilities[1] == 0.0
        assert np.isclose(np.sum(probabilities), 1.0, atol=1e-6)

    def test_softmax_2d_along_last_axis(self):
        """Each row of a 2-D input is normalized independently."""
        from nxml.activations import softmax
        from nxml.tensor import ScalarType, Tensor

        logits = Tensor.new([[1.0, 2.0, 3.0], [1.0, 1.0, 1.0]], (2, 3), ScalarType.F16)
        probabilities = softmax(logits)

        assert probabilities.dtype is ScalarType.F32
        assert np.allclose(np.sum(probabilities.numpy(), axis=-1), 1.0, atol=1e-6)
        assert np.allclose(probabilities.numpy()[1], 1.0 / 3.0)


class TestSiLU:
    """
    Test suite for SiLU activation.

    Formula: SiLU(x) = x * sigmoid(x) = x / (1 + exp(-x))
    """

    def test_silu_zero_input(self):
        from nxml.activations import silu
        from nxml.tensor import Tensor

        assert silu(Tensor.new([0.0], (1,))).tolist() == [0.0]

    def test_silu_known_values(self):
        from nxml.activations import silu
        from nxml.tensor import Tensor

        x = np.array([-2.0, -1.0, 1.0, 2.0])
        expected = x / (1.0 + np.exp(-x))
        result = silu(Tensor.new(x, (4,))).numpy()

        assert np.allclose(result, expected, atol=1e-6)

    def test_silu_extreme_values(self):
        """Large negative inputs give 0, large positive inputs pass through."""
        from nxml.activations import silu
        from nxml.tensor import Tensor

        result = silu(Tensor.new([-1000.0, 1000.0], (2,))).numpy()

        assert np.all(np.isfinite(result))
        assert np.isclose(result[0], 0.0)
        assert np.isclose(result[1], 1000.0)

    def test_silu_half_precision_keeps_storage_type(self):
        """F16 input is computed in float32 and rounded back to F16."""
        from nxml.activations import silu
        from nxml.tensor import ScalarType, Tensor

        x = np.random.randn(4, 8)
        tensor = Tensor.new(x, (4, 8), ScalarType.F16)
        result = silu(tensor)

        reference = tensor.numpy().astype(np.float32)
        reference = (reference * (1.0 / (1.0 + np.exp(-reference)))).astype(np.float16)

        assert result.dtype is ScalarType.F16
        assert result.shape == (4, 8)
        assert np.array_equal(result.numpy(), reference)
