"""
Scaled Dot-Product Attention

This module implements the attention kernels and the multi-head attention
layer of the LLaMA layer stack.

Two kernels compute the same function:
    - scaled_dot_product_attention materializes the full score matrix for
      each query row, applies a numerically stable softmax, and returns the
      attention weights alongside the output. This is the reference kernel.
    - flash_attention streams over blocks of keys/values with an online
      softmax (running maximum and running sum), so it never holds more than
      one (n_query x block) slice of scores. It agrees with the reference
      kernel up to float32 rounding.

Reference: "Attention Is All You Need" (Vaswani et al., 2017) Section 3.2
           "FlashAttention" (Dao et al., 2022) - online softmax

Functions:
    scaled_dot_product_attention: Full attention, returns (output, weights)
    flash_attention: Memory-bounded streaming attention

Classes:
    MultiHeadAttention: Projections, head split, rotary embedding, attention
"""

from typing import Optional, Tuple

import numpy as np

from nxml.activations import softmax_array
from nxml.config import EngineConfig, get_config
from nxml.errors import ShapeMismatchError
from nxml.layers import Linear, rope
from nxml.ops import transpose
from nxml.shape import canonical_shape
from nxml.tensor import ScalarType, Tensor, TensorBuilder


def _check_operands(query: Tensor, key: Tensor, value: Tensor) -> None:
    for name, tensor in (("query", query), ("key", key), ("value", value)):
        if not 2 <= tensor.rank <= 4:
            raise ShapeMismatchError(f"{name} must have shape [..., n, d], got {tensor.shape}")
        if not tensor.dtype.is_float:
            raise ShapeMismatchError(f"{name} must be floating point, got {tensor.dtype.name}")

    if key.shape != value.shape:
        raise ShapeMismatchError(f"key {key.shape} and value {value.shape} must match")
    if query.rank != key.rank or query.shape[:-2] != key.shape[:-2]:
        raise ShapeMismatchError(f"query {query.shape} and key {key.shape} batch dims differ")
    if query.shape[-1] != key.shape[-1]:
        raise ShapeMismatchError(f"query {query.shape} and key {key.shape} widths differ")


def _flatten_batches(tensor: Tensor) -> np.ndarray:
    batch1, batch0, n, d = canonical_shape(tensor.shape)
    return tensor.numpy().astype(np.float32).reshape(batch1 * batch0, n, d)


def _causal_mask(query_length: int, key_length: int) -> np.ndarray:
    """
    Boolean mask, True where query i may attend to key j.

    When the query block is the tail of a longer key sequence, query i sits
    at absolute position i + (key_length - query_length).
    """
    offset = key_length - query_length
    if offset < 0:
        raise ShapeMismatchError(
            f"Causal attention needs at least as many keys ({key_length}) "
            f"as queries ({query_length})"
        )
    query_positions = np.arange(query_length)[:, np.newaxis] + offset
    key_positions = np.arange(key_length)[np.newaxis, :]
    return key_positions <= query_positions


def scaled_dot_product_attention(
    query: Tensor,
    key: Tensor,
    value: Tensor,
    causal: bool = False,
) -> Tuple[Tensor, Tensor]:
    """
    Compute Scaled Dot-Product Attention.

    Mathematical Formula (from the paper):
        Attention(Q, K, V) = softmax(Q @ K^T / sqrt(d)) @ V

    Step-by-step, for every query position i:
        1. Raw scores s_j = dot(q_i, k_j) / sqrt(d) for every key position j
        2. Mask (if causal): s_j = -inf for j > i
        3. Softmax over the full row, subtracting the row max first
        4. Output o_i = sum_j softmax(s)_j * v_j

    The whole (n_query x n_key) score matrix is materialized. For long
    sequences use flash_attention instead.

    Args:
        query: Tensor of shape [..., n_query, d]
        key: Tensor of shape [..., n_key, d]
        value: Tensor of shape [..., n_key, d]
        causal: Mask out keys that come after the query position. The
                diagonal is never masked, so every row keeps a finite score.

    Returns:
        output: Tensor of shape [..., n_query, d] in query's storage type
        attention_weights: F32 tensor of shape [..., n_query, n_key]; every
                           row sums to 1

    Raises:
        ShapeMismatchError: If the operand shapes are incompatible

    Example:
        >>> q = k = v = Tensor.new(np.random.randn(10, 64), (10, 64), ScalarType.F16)
        >>> output, weights = scaled_dot_product_attention(q, k, v)
    """
    _check_operands(query, key, value)

    queries = _flatten_batches(query)
    keys = _flatten_batches(key)
    values = _flatten_batches(value)
    query_length, dimension = queries.shape[-2:]
    key_length = keys.shape[-2]

    # Step 1: Raw scores (batch, n_query, n_key), scaled by 1/sqrt(d)
    scale = np.float32(1.0 / np.sqrt(dimension))
    scores = np.matmul(queries, keys.transpose(0, 2, 1)) * scale

    # Step 2: Causal mask
    if causal:
        scores = np.where(_causal_mask(query_length, key_length), scores, -np.inf)

    # Step 3: Softmax over each full row
    weights = softmax_array(scores, axis=-1)

    # Step 4: Weighted sum of values
    output = TensorBuilder(query.shape, query.dtype)
    output.data[...] = np.matmul(weights, values).reshape(query.shape)

    weights_shape = query.shape[:-1] + (key_length,)
    attention_weights = TensorBuilder(weights_shape, ScalarType.F32)
    attention_weights.data[...] = weights.reshape(weights_shape)

    return output.freeze(), attention_weights.freeze()


def flash_attention(
    query: Tensor,
    key: Tensor,
    value: Tensor,
    causal: bool = False,
    block_size: Optional[int] = None,
    config: Optional[EngineConfig] = None,
) -> Tensor:
    """
    Streaming attention with an online softmax.

    Keys and values are visited in blocks. For each block the kernel keeps,
    per query row, the running maximum m, the running normalizer l, and the
    unnormalized output accumulator:

        m_new = max(m, max_j s_j)
        l_new = l * exp(m - m_new) + sum_j exp(s_j - m_new)
        acc   = acc * exp(m - m_new) + sum_j exp(s_j - m_new) * v_j

    and divides acc by l once all blocks are done. Only one block of scores
    is alive at a time.

    Args:
        query, key, value: As for scaled_dot_product_attention
        causal: Mask out keys that come after the query position
        block_size: Key positions per step (defaults to
                    config.attention_block_size)
        config: Engine configuration (defaults to get_config())

    Returns:
        Tensor of shape [..., n_query, d] in query's storage type
    """
    _check_operands(query, key, value)
    config = config or get_config()
    block_size = block_size or config.attention_block_size
    if block_size < 1:
        raise ValueError(f"block_size must be positive, got {block_size}")

    queries = _flatten_batches(query)
    keys = _flatten_batches(key)
    values = _flatten_batches(value)
    num_batches, query_length, dimension = queries.shape
    key_length = keys.shape[-2]

    scale = np.float32(1.0 / np.sqrt(dimension))
    mask = _causal_mask(query_length, key_length) if causal else None

    running_max = np.full((num_batches, query_length, 1), -np.inf, dtype=np.float32)
    running_sum = np.zeros((num_batches, query_length, 1), dtype=np.float32)
    accumulator = np.zeros((num_batches, query_length, dimension), dtype=np.float32)

    for start in range(0, key_length, block_size):
        stop = min(start + block_size, key_length)

        scores = np.matmul(queries, keys[:, start:stop].transpose(0, 2, 1)) * scale
        if mask is not None:
            scores = np.where(mask[:, start:stop], scores, -np.inf)

        new_max = np.maximum(running_max, np.max(scores, axis=-1, keepdims=True))
        # Rows with nothing visible yet keep max = -inf; shift them by 0 so
        # exp() sees -inf - 0 instead of -inf - (-inf)
        shift = np.where(np.isneginf(new_max), np.float32(0.0), new_max)

        correction = np.exp(running_max - shift)
        probabilities = np.exp(scores - shift)

        running_sum = running_sum * correction + np.sum(probabilities, axis=-1, keepdims=True)
        accumulator = accumulator * correction + np.matmul(probabilities, values[:, start:stop])
        running_max = new_max

    output = TensorBuilder(query.shape, query.dtype)
    output.data[...] = (accumulator / running_sum).reshape(query.shape)
    return output.freeze()


class MultiHeadAttention:
    """
    Multi-Head Self-Attention Layer with rotary position embedding.

    Mathematical Formula:
        MultiHead(X) = Concat(head_1, ..., head_h) @ W_o^T
        where head_i = Attention(rope(X W_q,i^T), rope(X W_k,i^T), X W_v,i^T)

    Architecture:
        1. Linear projections: Q, K, V each (n, d_model)
        2. Split into h heads: (h, n, d_head) with d_head = d_model / h
        3. Rotary embedding on Q and K
        4. Causal attention per head
        5. Merge heads back to (n, d_model) and project with W_o

    Attributes:
        num_heads: Number of attention heads (h)
        head_dimension: Dimension of each head (d_model / h)
        query_projection, key_projection, value_projection, output_projection:
            Linear layers holding W_q, W_k, W_v, W_o
        streaming: Use flash_attention instead of the full kernel

    Reference: "Attention Is All You Need" Section 3.2.2
    """

    def __init__(
        self,
        query_weight: Tensor,
        key_weight: Tensor,
        value_weight: Tensor,
        output_weight: Tensor,
        num_heads: int,
        rope_theta: float = 10000.0,
        streaming: bool = False,
    ):
        """
        Raises:
            ShapeMismatchError: If the weights are not all (d_model, d_model)
                or d_model is not divisible by num_heads
        """
        embedding_dimension = query_weight.shape[-1]
        for weight in (query_weight, key_weight, value_weight, output_weight):
            if weight.shape != (embedding_dimension, embedding_dimension):
                raise ShapeMismatchError(
                    f"Attention weights must be ({embedding_dimension}, {embedding_dimension}), "
                    f"got {weight.shape}"
                )
        if embedding_dimension % num_heads != 0:
            raise ShapeMismatchError(
                f"Embedding dimension ({embedding_dimension}) must be divisible by "
                f"number of heads ({num_heads})"
            )

        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads
        self.head_dimension = embedding_dimension // num_heads
        self.rope_theta = rope_theta
        self.streaming = streaming

        self.query_projection = Linear(query_weight)
        self.key_projection = Linear(key_weight)
        self.value_projection = Linear(value_weight)
        self.output_projection = Linear(output_weight)

    def _split_heads(self, x: Tensor) -> Tensor:
        """(n, d_model) -> (h, n, d_head)"""
        sequence_length = x.shape[0]
        heads = x.reshape((sequence_length, self.num_heads, self.head_dimension))
        return transpose(heads, (1, 0, 2))

    def _merge_heads(self, x: Tensor) -> Tensor:
        """(h, n, d_head) -> (n, d_model)"""
        sequence_length = x.shape[1]
        merged = transpose(x, (1, 0, 2))
        return merged.reshape((sequence_length, self.embedding_dimension))

    def forward(self, x: Tensor, position_offset: int = 0) -> Tensor:
        """
        Forward pass of causal multi-head self-attention.

        Args:
            x: Hidden states of shape (n, d_model)
            position_offset: Absolute position of the first row (for rope)

        Returns:
            Tensor of shape (n, d_model)
        """
        if x.rank != 2 or x.shape[1] != self.embedding_dimension:
            raise ShapeMismatchError(
                f"Expected input (n, {self.embedding_dimension}), got {x.shape}"
            )

        query = self._split_heads(self.query_projection.forward(x))
        key = self._split_heads(self.key_projection.forward(x))
        value = self._split_heads(self.value_projection.forward(x))

        query = rope(query, position_offset=position_offset, theta=self.rope_theta)
        key = rope(key, position_offset=position_offset, theta=self.rope_theta)

        if self.streaming:
            attended = flash_attention(query, key, value, causal=True)
        else:
            attended, _ = scaled_dot_product_attention(query, key, value, causal=True)

        return self.output_projection.forward(self._merge_heads(attended))
