"""
ggml Model File Reader and Writer

This module reads (and writes) the versioned "ggmf" checkpoint layout used by
LLaMA conversions. All integers are little-endian u32.

File Layout:
    Header (9 x u32):
        magic (0x67676d66 "ggmf"), version (1), vocab_size, dim,
        multiple_of, n_heads, n_layers, reserved, scalar_type
    Vocabulary (vocab_size entries):
        u32 length, token bytes, f32 score
    Weight records (until end of file):
        u32 n_dims, u32 name_length, u32 element_type,
        n_dims x u32 dims (innermost first), UTF-8 name,
        payload of product(dims) elements

Element types: 0 = float32, 1 = float16. Dims are stored innermost first,
so a record with dims [n_embd, n_vocab] becomes a (n_vocab, n_embd) tensor.

Classes:
    HParams: Model hyperparameters from the header
    GgmlFile: Hyperparameters, vocabulary and named weight tensors

Functions:
    load: Parse a model file
    write: Serialize a model file
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Tuple, Union

import numpy as np

from nxml.errors import FormatError
from nxml.shape import MAX_DIMS, num_elements
from nxml.tensor import ScalarType, Tensor
from nxml.tokenizer import Vocab

logger = logging.getLogger(__name__)

MAGIC = 0x67676D66
VERSION = 1
HEADER_WORDS = 9

# Element type tag <-> storage type
ELEMENT_TYPES = {0: ScalarType.F32, 1: ScalarType.F16}
ELEMENT_TAGS = {scalar_type: tag for tag, scalar_type in ELEMENT_TYPES.items()}

# Little-endian payload dtypes
_FILE_DTYPES = {ScalarType.F32: np.dtype("<f4"), ScalarType.F16: np.dtype("<f2")}

PathLike = Union[str, os.PathLike]


@dataclass
class HParams:
    """
    Model hyperparameters stored in the file header.

    Attributes:
        vocab_size: Number of vocabulary entries
        dim: Embedding dimension
        multiple_of: Rounding multiple for the feed-forward width
        n_heads: Number of attention heads
        n_layers: Number of transformer layers
        scalar_type: Storage type of the bulk of the weights
    """

    vocab_size: int
    dim: int
    multiple_of: int
    n_heads: int
    n_layers: int
    scalar_type: ScalarType = ScalarType.F16


@dataclass
class GgmlFile:
    """Everything read from a ggml model file."""

    hparams: HParams
    vocab: Vocab
    tensors: Dict[str, Tensor] = field(default_factory=dict)


class _Reader:
    """Little-endian reader that turns short reads into FormatError."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def read_exact(self, length: int, what: str) -> bytes:
        data = self.stream.read(length)
        if len(data) != length:
            raise FormatError(f"Unexpected end of file while reading {what}")
        return data

    def read_u32(self, what: str) -> int:
        return struct.unpack("<I", self.read_exact(4, what))[0]

    def read_f32(self, what: str) -> float:
        return struct.unpack("<f", self.read_exact(4, what))[0]


def _read_header(reader: _Reader) -> HParams:
    words = struct.unpack(f"<{HEADER_WORDS}I", reader.read_exact(4 * HEADER_WORDS, "header"))
    magic, version, vocab_size, dim, multiple_of, n_heads, n_layers, _reserved, tag = words

    if magic != MAGIC:
        raise FormatError(f"Invalid magic 0x{magic:08x}, expected 0x{MAGIC:08x}")
    if version != VERSION:
        raise FormatError(f"Unsupported version {version}, expected {VERSION}")
    if tag not in ELEMENT_TYPES:
        raise FormatError(f"Invalid scalar type {tag} in header")

    return HParams(
        vocab_size=vocab_size,
        dim=dim,
        multiple_of=multiple_of,
        n_heads=n_heads,
        n_layers=n_layers,
        scalar_type=ELEMENT_TYPES[tag],
    )


def _read_vocab(reader: _Reader, vocab_size: int) -> Vocab:
    vocab = Vocab()
    for token_id in range(vocab_size):
        length = reader.read_u32(f"length of token {token_id}")
        text = reader.read_exact(length, f"token {token_id}")
        score = reader.read_f32(f"score of token {token_id}")
        vocab.add(text, score)
    return vocab


def _read_record(reader: _Reader, record_header: bytes) -> Tuple[str, Tensor]:
    n_dims, name_length, tag = struct.unpack("<3I", record_header)

    if not 1 <= n_dims <= MAX_DIMS:
        raise FormatError(f"Invalid number of dimensions {n_dims}")
    if tag not in ELEMENT_TYPES:
        raise FormatError(f"Invalid element type {tag}")
    scalar_type = ELEMENT_TYPES[tag]

    dims = struct.unpack(f"<{n_dims}I", reader.read_exact(4 * n_dims, "dimensions"))
    try:
        name = reader.read_exact(name_length, "name").decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("Weight name is not valid UTF-8") from exc
    if any(extent == 0 for extent in dims):
        raise FormatError(f"Weight {name!r} has a zero dimension: {list(dims)}")

    logger.debug("loading parameters: %r %s %s", name, list(dims), scalar_type.name)

    shape = tuple(reversed(dims))
    file_dtype = _FILE_DTYPES[scalar_type]
    payload = reader.read_exact(num_elements(shape) * file_dtype.itemsize, f"data of {name!r}")
    array = np.frombuffer(payload, dtype=file_dtype).astype(scalar_type.numpy_dtype)
    # Fresh private copy: hand it over read-only so from_numpy adopts it
    array.flags.writeable = False
    array = array.reshape(shape)
    return name, Tensor.from_numpy(array, scalar_type)


def load(path: PathLike) -> GgmlFile:
    """
    Load a ggml model file.

    Args:
        path: Path to the model file

    Returns:
        GgmlFile with hyperparameters, vocabulary and weights keyed by name

    Raises:
        FormatError: On a bad magic, version, element type, duplicate
            weight name, invalid name, or truncated file
        OSError: If the file cannot be opened
    """
    with open(path, "rb") as stream:
        reader = _Reader(stream)
        hparams = _read_header(reader)
        logger.info("hyperparameters: %s", hparams)

        vocab = _read_vocab(reader, hparams.vocab_size)

        tensors: Dict[str, Tensor] = {}
        while True:
            record_header = stream.read(12)
            if not record_header:
                break
            if len(record_header) != 12:
                raise FormatError("Unexpected end of file while reading record header")

            name, tensor = _read_record(reader, record_header)
            if name in tensors:
                raise FormatError(f"Duplicate weight name {name!r}")
            tensors[name] = tensor

    logger.info("loaded %d weight tensors from %s", len(tensors), path)
    return GgmlFile(hparams=hparams, vocab=vocab, tensors=tensors)


def write(path: PathLike, ggml_file: GgmlFile) -> None:
    """
    Write a ggml model file.

    Weights are written in the order of ``ggml_file.tensors``.

    Raises:
        FormatError: If a tensor has an element type the format cannot hold
    """
    hparams = ggml_file.hparams
    if hparams.vocab_size != len(ggml_file.vocab):
        raise FormatError(
            f"Header vocab_size {hparams.vocab_size} does not match "
            f"{len(ggml_file.vocab)} vocabulary entries"
        )

    with open(path, "wb") as stream:
        stream.write(
            struct.pack(
                f"<{HEADER_WORDS}I",
                MAGIC,
                VERSION,
                hparams.vocab_size,
                hparams.dim,
                hparams.multiple_of,
                hparams.n_heads,
                hparams.n_layers,
                0,
                ELEMENT_TAGS[hparams.scalar_type],
            )
        )

        for token in ggml_file.vocab.tokens:
            stream.write(struct.pack("<I", len(token.text)))
            stream.write(token.text)
            stream.write(struct.pack("<f", token.score))

        for name, tensor in ggml_file.tensors.items():
            if tensor.dtype not in ELEMENT_TAGS:
                raise FormatError(f"Cannot store {tensor.dtype.name} weight {name!r}")
            encoded_name = name.encode("utf-8")
            dims = tuple(reversed(tensor.shape))
            stream.write(
                struct.pack("<3I", len(dims), len(encoded_name), ELEMENT_TAGS[tensor.dtype])
            )
            stream.write(struct.pack(f"<{len(dims)}I", *dims))
            stream.write(encoded_name)
            stream.write(tensor.numpy().astype(_FILE_DTYPES[tensor.dtype]).tobytes())

    logger.info("wrote %d weight tensors to %s", len(ggml_file.tensors), path)
