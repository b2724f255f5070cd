"""
LLaMA Language Model

This module assembles the tensor kernels and layers into a complete
decoder-only LLaMA model and resolves its weights from a ggml file.

Architecture Overview:
    Input Token IDs
           |
    [Token Embedding]  (row gather)
           |
    [Transformer Block] x N
       - RMSNorm -> causal Multi-Head Attention (with rope) -> residual
       - RMSNorm -> SwiGLU Feed-Forward -> residual
           |
    [RMSNorm]
           |
    [Linear Projection] -> Vocabulary Logits

Reference:
    "LLaMA: Open and Efficient Foundation Language Models" (Touvron et al., 2023)

Classes:
    LlamaConfig: Configuration dataclass for model hyperparameters
    LlamaModel: Complete LLaMA language model
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from nxml.attention import MultiHeadAttention
from nxml.errors import ShapeMismatchError
from nxml.ggml import GgmlFile, HParams
from nxml.layers import Embedding, Linear, RMSNorm
from nxml.tensor import ScalarType, Tensor
from nxml.tokenizer import EOS_TOKEN_ID
from nxml.transformer import FeedForwardNetwork, TransformerBlock

logger = logging.getLogger(__name__)


@dataclass
class LlamaConfig:
    """
    Configuration for the LLaMA model.

    Attributes:
        vocab_size: Size of the token vocabulary
        dim: Embedding dimension (d_model)
        multiple_of: The feed-forward width is rounded up to a multiple of this
        n_heads: Number of attention heads
        n_layers: Number of transformer blocks
        norm_eps: Epsilon passed to every RMSNorm (0.0 = no guard)
        rope_theta: Base of the rotary embedding frequencies
        streaming_attention: Use the streaming attention kernel

    Typical configurations:
        - LLaMA 7B: vocab=32000, dim=4096, heads=32, layers=32, multiple_of=256
    """

    vocab_size: int = 32000
    dim: int = 4096
    multiple_of: int = 256
    n_heads: int = 32
    n_layers: int = 32
    norm_eps: float = 0.0
    rope_theta: float = 10000.0
    streaming_attention: bool = False

    @property
    def head_dim(self) -> int:
        return self.dim // self.n_heads

    @property
    def ffn_hidden_dim(self) -> int:
        """2/3 of 4 * dim, rounded up to a multiple of multiple_of."""
        hidden = int(2 * (4 * self.dim) / 3)
        return self.multiple_of * ((hidden + self.multiple_of - 1) // self.multiple_of)

    @classmethod
    def from_hparams(cls, hparams: HParams, **overrides) -> "LlamaConfig":
        return cls(
            vocab_size=hparams.vocab_size,
            dim=hparams.dim,
            multiple_of=hparams.multiple_of,
            n_heads=hparams.n_heads,
            n_layers=hparams.n_layers,
            **overrides,
        )


def _take(
    weights: Dict[str, Tensor], name: str, shape: Sequence[int], alias: Optional[str] = None
) -> Tensor:
    if name not in weights and alias in weights:
        name = alias
    try:
        tensor = weights[name]
    except KeyError:
        raise KeyError(f"Missing weight {name!r}") from None
    if tensor.shape != tuple(shape):
        raise ShapeMismatchError(f"Weight {name!r} has shape {tensor.shape}, expected {tuple(shape)}")
    return tensor


class LlamaModel:
    """
    Complete LLaMA language model (forward inference only).

    Example usage:
        ggml_file = ggml.load("model.bin")
        model = LlamaModel.from_ggml(ggml_file)
        tokenizer = Tokenizer(ggml_file.vocab)
        ids = model.generate(tokenizer.encode("Hello"), max_new_tokens=10)

    Attributes:
        config: Model configuration
        token_embedding: Token ID -> vector embedding
        blocks: List of transformer blocks
        final_norm: RMSNorm before the output projection
        output_projection: Projects back to vocabulary size
    """

    def __init__(self, config: LlamaConfig, weights: Dict[str, Tensor]):
        """
        Build the model from named weights.

        Args:
            config: Model configuration
            weights: Mapping from ggml weight name to tensor

        Raises:
            KeyError: If a required weight is missing
            ShapeMismatchError: If a weight has the wrong shape
        """
        self.config = config
        dim, hidden, vocab = config.dim, config.ffn_hidden_dim, config.vocab_size

        self.token_embedding = Embedding(_take(weights, "tok_embeddings.weight", (vocab, dim)))

        self.blocks: List[TransformerBlock] = []
        for i in range(config.n_layers):
            prefix = f"layers.{i}"
            attention = MultiHeadAttention(
                _take(weights, f"{prefix}.attention.wq.weight", (dim, dim)),
                _take(weights, f"{prefix}.attention.wk.weight", (dim, dim)),
                _take(weights, f"{prefix}.attention.wv.weight", (dim, dim)),
                _take(weights, f"{prefix}.attention.wo.weight", (dim, dim)),
                num_heads=config.n_heads,
                rope_theta=config.rope_theta,
                streaming=config.streaming_attention,
            )
            feed_forward = FeedForwardNetwork(
                _take(weights, f"{prefix}.feed_forward.w1.weight", (hidden, dim)),
                _take(weights, f"{prefix}.feed_forward.w2.weight", (dim, hidden)),
                _take(weights, f"{prefix}.feed_forward.w3.weight", (hidden, dim)),
            )
            self.blocks.append(
                TransformerBlock(
                    attention_norm=RMSNorm(
                        _take(
                            weights,
                            f"{prefix}.attention_norm.weight",
                            (dim,),
                            alias=f"{prefix}.attention.norm.weight",
                        ),
                        config.norm_eps,
                    ),
                    attention=attention,
                    ffn_norm=RMSNorm(
                        _take(weights, f"{prefix}.ffn_norm.weight", (dim,)), config.norm_eps
                    ),
                    feed_forward=feed_forward,
                )
            )

        self.final_norm = RMSNorm(_take(weights, "norm.weight", (dim,)), config.norm_eps)
        self.output_projection = Linear(_take(weights, "output.weight", (vocab, dim)))

        logger.info(
            "built LLaMA model: %d layers, dim %d, %d heads, ffn %d, vocab %d",
            config.n_layers, dim, config.n_heads, hidden, vocab,
        )

    @classmethod
    def from_ggml(cls, ggml_file: GgmlFile, **config_overrides) -> "LlamaModel":
        """Build a model from a loaded ggml file."""
        config = LlamaConfig.from_hparams(ggml_file.hparams, **config_overrides)
        return cls(config, ggml_file.tensors)

    def forward(self, token_ids: Sequence[int]) -> Tensor:
        """
        Forward pass: token IDs -> vocabulary logits.

        Args:
            token_ids: Sequence of n token ids

        Returns:
            F32 logits of shape (n, vocab_size)

        Raises:
            IndexOutOfRangeError: If a token id is outside the vocabulary
        """
        hidden = self.token_embedding.forward(token_ids)
        for block in self.blocks:
            hidden = block.forward(hidden)

        hidden = self.final_norm.forward(hidden)
        return self.output_projection.forward(hidden).astype(ScalarType.F32)

    def generate(
        self,
        token_ids: Sequence[int],
        max_new_tokens: int,
        stop_token: int = EOS_TOKEN_ID,
    ) -> List[int]:
        """
        Greedy autoregressive generation.

        Every step reruns the forward pass over the whole sequence and
        appends the arg-max of the last row's logits.

        Args:
            token_ids: Prompt token ids (non-empty)
            max_new_tokens: Maximum number of tokens to append
            stop_token: Generation stops after this token is produced

        Returns:
            Prompt followed by the generated ids
        """
        tokens = [int(token_id) for token_id in token_ids]
        if not tokens:
            raise ValueError("generate needs at least one prompt token")

        for _ in range(max_new_tokens):
            logits = self.forward(tokens).numpy()
            next_token = int(np.argmax(logits[-1]))
            tokens.append(next_token)
            logger.debug("generated token %d", next_token)
            if next_token == stop_token:
                break

        return tokens
