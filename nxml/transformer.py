"""
Transformer Architecture Components

This module implements the LLaMA transformer block: pre-normalized causal
self-attention and a SwiGLU feed-forward network, each wrapped in a residual
connection.

    h   = x + Attention(RMSNorm(x))
    out = h + FFN(RMSNorm(h))

Reference: "LLaMA: Open and Efficient Foundation Language Models"
           (Touvron et al., 2023) Section 2.2
           "GLU Variants Improve Transformer" (Shazeer, 2020)

Classes:
    FeedForwardNetwork: SwiGLU position-wise feed-forward network
    TransformerBlock: Single transformer decoder block
"""

from nxml.activations import silu
from nxml.attention import MultiHeadAttention
from nxml.errors import ShapeMismatchError
from nxml.layers import Linear, RMSNorm
from nxml.ops import add, mul
from nxml.tensor import Tensor


class FeedForwardNetwork:
    """
    SwiGLU Feed-Forward Network.

    Mathematical Formula:
        FFN(x) = W_2 (SiLU(W_1 x) * W_3 x)

    W_1 (gate) and W_3 (up) expand from d_model to the hidden width, W_2
    (down) projects back. The elementwise product of the gated branch with
    the linear branch replaces the single activation of the classic
    transformer FFN.

    Attributes:
        gate_projection: Linear with W_1, shape (hidden, d_model)
        down_projection: Linear with W_2, shape (d_model, hidden)
        up_projection: Linear with W_3, shape (hidden, d_model)
    """

    def __init__(self, w1: Tensor, w2: Tensor, w3: Tensor):
        hidden_dimension, embedding_dimension = w1.shape
        if w3.shape != w1.shape or w2.shape != (embedding_dimension, hidden_dimension):
            raise ShapeMismatchError(
                f"Inconsistent feed-forward weights: w1 {w1.shape}, w2 {w2.shape}, w3 {w3.shape}"
            )

        self.embedding_dimension = embedding_dimension
        self.hidden_dimension = hidden_dimension

        self.gate_projection = Linear(w1)
        self.down_projection = Linear(w2)
        self.up_projection = Linear(w3)

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Tensor of shape (n, d_model)

        Returns:
            Tensor of shape (n, d_model)
        """
        gate = silu(self.gate_projection.forward(x))
        up = self.up_projection.forward(x)
        return self.down_projection.forward(mul(gate, up))


class TransformerBlock:
    """
    Single LLaMA decoder block (pre-norm).

    Attributes:
        attention_norm: RMSNorm before attention
        attention: Causal multi-head self-attention
        ffn_norm: RMSNorm before the feed-forward network
        feed_forward: SwiGLU feed-forward network
    """

    def __init__(
        self,
        attention_norm: RMSNorm,
        attention: MultiHeadAttention,
        ffn_norm: RMSNorm,
        feed_forward: FeedForwardNetwork,
    ):
        self.attention_norm = attention_norm
        self.attention = attention
        self.ffn_norm = ffn_norm
        self.feed_forward = feed_forward

    def forward(self, x: Tensor, position_offset: int = 0) -> Tensor:
        """
        Forward pass through the block.

        Args:
            x: Hidden states of shape (n, d_model), F32
            position_offset: Absolute position of the first row

        Returns:
            Hidden states of shape (n, d_model)
        """
        # Sub-layer 1: attention with residual
        attended = self.attention.forward(self.attention_norm.forward(x), position_offset)
        hidden = add(x, attended)

        # Sub-layer 2: feed-forward with residual
        return add(hidden, self.feed_forward.forward(self.ffn_norm.forward(hidden)))
