"""
Transformer Inference from Scratch

This package provides a forward-only inference runtime for LLaMA-style
transformer language models using only NumPy. Weights are loaded from a ggml
model file, text is split into token ids by a scored-bigram tokenizer, and a
small tensor engine runs the layer stack.

Modules:
    shape: Shape and stride algebra (row-major strides, rank padding)
    tensor: Immutable shared-buffer Tensor and its TensorBuilder
    config: Engine configuration (threads, block sizes)
    activations: SiLU and softmax
    layers: RMS normalization, rotary embeddings, Linear/Embedding/RMSNorm
    ops: Dot products, batched matmul, row gather, repeat, elementwise ops
    attention: Scaled dot-product attention (full and streaming variants)
    transformer: Feed-forward network and transformer block
    model: Complete LLaMA model with greedy generation
    ggml: ggml model file reader/writer
    tokenizer: Scored-bigram tokenizer
    errors: Exception hierarchy

Reference:
    "LLaMA: Open and Efficient Foundation Language Models" (Touvron et al., 2023)
    https://arxiv.org/abs/2302.13971
"""

from nxml.errors import (
    AllocationError,
    FormatError,
    ImmutableTensorError,
    IndexOutOfRangeError,
    InvalidShapeError,
    NxmlError,
    ShapeMismatchError,
)
from nxml.tensor import ScalarType, Tensor, TensorBuilder

__version__ = "0.1.0"

__all__ = [
    "AllocationError",
    "FormatError",
    "ImmutableTensorError",
    "IndexOutOfRangeError",
    "InvalidShapeError",
    "NxmlError",
    "ScalarType",
    "ShapeMismatchError",
    "Tensor",
    "TensorBuilder",
]
