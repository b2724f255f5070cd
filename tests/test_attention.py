"""
Tests for the attention module.

Tests cover:
- Scaled dot-product attention: shapes, row-stochastic weights, reference values
- Causal masking
- Streaming (online softmax) attention agrees with the full kernel
- Multi-head attention layer

Reference: "Attention Is All You Need" Section 3.2
"""

import numpy as np
import pytest


def _reference_attention(q, k, v, causal=False):
    d = q.shape[-1]
    scores = np.matmul(q, np.swapaxes(k, -1, -2)) / np.sqrt(d)
    if causal:
        n = q.shape[-2]
        scores = np.where(np.tril(np.ones((n, n), dtype=bool)), scores, -np.inf)
    scores = scores - scores.max(axis=-1, keepdims=True)
    weights = np.exp(scores)
    weights /= weights.sum(axis=-1, keepdims=True)
    return np.matmul(weights, v)


def _tensor(array):
    from nxml.tensor import ScalarType, Tensor

    return Tensor.new(array, array.shape, ScalarType.F32)


class TestScaledDotProductAttention:
    """Formula: Attention(Q, K, V) = softmax(Q @ K^T / sqrt(d)) @ V"""

    def test_output_and_weights_shapes(self):
        from nxml.attention import scaled_dot_product_attention

        q = _tensor(np.random.randn(2, 10, 16))
        k = _tensor(np.random.randn(2, 10, 16))
        v = _tensor(np.random.randn(2, 10, 16))

        output, weights = scaled_dot_product_attention(q, k, v)

        assert output.shape == (2, 10, 16)
        assert weights.shape == (2, 10, 10)

    def test_weights_are_row_stochastic(self):
        """Every softmax row sums to 1 within 1e-5 and lies in [0, 1]."""
        from nxml.attention import scaled_dot_product_attention

        q = _tensor(np.random.randn(3, 7, 8) * 10.0)
        k = _tensor(np.random.randn(3, 7, 8) * 10.0)

        _, weights = scaled_dot_product_attention(q, k, k)
        weights = weights.numpy()

        assert np.allclose(weights.sum(axis=-1), 1.0, atol=1e-5)
        assert np.all(weights >= 0.0) and np.all(weights <= 1.0)

    def test_matches_reference(self):
        from nxml.attention import scaled_dot_product_attention

        q, k, v = (np.random.randn(6, 8) for _ in range(3))
        output, _ = scaled_dot_product_attention(_tensor(q), _tensor(k), _tensor(v))

        assert np.allclose(output.numpy(), _reference_attention(q, k, v), atol=1e-5)

    def test_half_precision_inputs(self):
        from nxml.attention import scaled_dot_product_attention
        from nxml.tensor import ScalarType, Tensor

        q, k, v = (np.random.randn(5, 8) for _ in range(3))
        tensors = [Tensor.new(x, x.shape, ScalarType.F16) for x in (q, k, v)]

        output, weights = scaled_dot_product_attention(*tensors)
        halves = [t.numpy().astype(np.float64) for t in tensors]

        assert output.dtype is ScalarType.F16
        assert weights.dtype is ScalarType.F32
        assert np.allclose(
            output.numpy().astype(np.float32), _reference_attention(*halves), atol=1e-2
        )

    def test_identical_keys_give_uniform_weights(self):
        from nxml.attention import scaled_dot_product_attention

        q = _tensor(np.random.randn(4, 8))
        k = _tensor(np.tile(np.random.randn(1, 8), (4, 1)))
        v = _tensor(np.random.randn(4, 8))

        _, weights = scaled_dot_product_attention(q, k, v)

        assert np.allclose(weights.numpy(), 0.25, atol=1e-6)

    def test_causal_weights_lower_triangular(self):
        from nxml.attention import scaled_dot_product_attention

        q, k, v = (_tensor(np.random.randn(2, 6, 8)) for _ in range(3))
        _, weights = scaled_dot_product_attention(q, k, v, causal=True)
        weights = weights.numpy()

        assert np.all(np.triu(weights[0], k=1) == 0.0)
        assert np.allclose(weights.sum(axis=-1), 1.0, atol=1e-5)
        assert np.isclose(weights[0, 0, 0], 1.0), "first token can only attend to itself"

    def test_key_value_mismatch(self):
        from nxml.attention import scaled_dot_product_attention
        from nxml.errors import ShapeMismatchError

        with pytest.raises(ShapeMismatchError):
            scaled_dot_product_attention(
                _tensor(np.zeros((4, 8))), _tensor(np.zeros((4, 8))), _tensor(np.zeros((5, 8)))
            )

    def test_width_mismatch(self):
        from nxml.attention import scaled_dot_product_attention
        from nxml.errors import ShapeMismatchError

        with pytest.raises(ShapeMismatchError):
            scaled_dot_product_attention(
                _tensor(np.zeros((4, 6))), _tensor(np.zeros((4, 8))), _tensor(np.zeros((4, 8)))
            )


class TestFlashAttention:
    """The streaming kernel computes the same function block by block."""

    @pytest.mark.parametrize("block_size", [1, 3, 4, 64])
    @pytest.mark.parametrize("causal", [False, True])
    def test_matches_full_attention(self, block_size, causal):
        from nxml.attention import flash_attention, scaled_dot_product_attention

        q, k, v = (_tensor(np.random.randn(2, 10, 8)) for _ in range(3))

        expected, _ = scaled_dot_product_attention(q, k, v, causal=causal)
        result = flash_attention(q, k, v, causal=causal, block_size=block_size)

        assert result.shape == expected.shape
        assert np.allclose(result.numpy(), expected.numpy(), atol=1e-4)

    def test_block_size_from_config(self):
        from nxml.attention import flash_attention
        from nxml.config import EngineConfig

        q, k, v = (np.random.randn(7, 4) for _ in range(3))
        result = flash_attention(
            _tensor(q), _tensor(k), _tensor(v), config=EngineConfig(attention_block_size=2)
        )

        assert np.allclose(result.numpy(), _reference_attention(q, k, v), atol=1e-4)


class TestMultiHeadAttention:
    def _weights(self, dim, seed=0):
        rng = np.random.default_rng(seed)
        return [_tensor(rng.standard_normal((dim, dim)) * 0.3) for _ in range(4)]

    def test_output_shape(self):
        from nxml.attention import MultiHeadAttention

        attention = MultiHeadAttention(*self._weights(8), num_heads=2)
        result = attention.forward(_tensor(np.random.randn(5, 8)))

        assert attention.head_dimension == 4
        assert result.shape == (5, 8)

    def test_heads_must_divide_dimension(self):
        from nxml.attention import MultiHeadAttention
        from nxml.errors import ShapeMismatchError

        with pytest.raises(ShapeMismatchError):
            MultiHeadAttention(*self._weights(8), num_heads=3)

    def test_causal_prefix_is_unaffected_by_later_tokens(self):
        """Appending tokens must not change the outputs of earlier positions."""
        from nxml.attention import MultiHeadAttention

        attention = MultiHeadAttention(*self._weights(8), num_heads=2)
        x = np.random.randn(6, 8)

        full = attention.forward(_tensor(x)).numpy()
        prefix = attention.forward(_tensor(x[:3])).numpy()

        assert np.allclose(full[:3], prefix, atol=1e-5)

    def test_streaming_matches_full(self):
        from nxml.attention import MultiHeadAttention

        weights = self._weights(8)
        x = _tensor(np.random.randn(9, 8))

        full = MultiHeadAttention(*weights, num_heads=2).forward(x)
        streaming = MultiHeadAttention(*weights, num_heads=2, streaming=True).forward(x)

        assert np.allclose(full.numpy(), streaming.numpy(), atol=1e-4)
