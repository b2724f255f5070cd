"""
Shared fixtures: a tiny random LLaMA configuration and its weights.
"""

import numpy as np
import pytest

from nxml.model import LlamaConfig
from nxml.tensor import ScalarType, Tensor


def _random_weight(rng, shape, dtype):
    return Tensor.new(rng.standard_normal(shape) * 0.2, shape, dtype)


def build_llama_weights(config, dtype=ScalarType.F16, seed=0):
    """Random weights for every tensor a LlamaModel with ``config`` needs."""
    rng = np.random.default_rng(seed)
    dim, hidden, vocab = config.dim, config.ffn_hidden_dim, config.vocab_size

    weights = {
        "tok_embeddings.weight": _random_weight(rng, (vocab, dim), dtype),
        "norm.weight": Tensor.new(np.ones(dim), (dim,), dtype),
        "output.weight": _random_weight(rng, (vocab, dim), dtype),
    }
    for i in range(config.n_layers):
        prefix = f"layers.{i}"
        for name in ("wq", "wk", "wv", "wo"):
            weights[f"{prefix}.attention.{name}.weight"] = _random_weight(rng, (dim, dim), dtype)
        weights[f"{prefix}.attention_norm.weight"] = Tensor.new(np.ones(dim), (dim,), dtype)
        weights[f"{prefix}.ffn_norm.weight"] = Tensor.new(np.ones(dim), (dim,), dtype)
        weights[f"{prefix}.feed_forward.w1.weight"] = _random_weight(rng, (hidden, dim), dtype)
        weights[f"{prefix}.feed_forward.w2.weight"] = _random_weight(rng, (dim, hidden), dtype)
        weights[f"{prefix}.feed_forward.w3.weight"] = _random_weight(rng, (hidden, dim), dtype)
    return weights


@pytest.fixture
def tiny_config():
    """vocab 16, dim 8, 2 heads, 2 layers; ffn width 24."""
    return LlamaConfig(vocab_size=16, dim=8, multiple_of=4, n_heads=2, n_layers=2)


@pytest.fixture
def tiny_weights(tiny_config):
    return build_llama_weights(tiny_config)
