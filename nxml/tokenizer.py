"""
Scored-Bigram Tokenizer

This module implements the SentencePiece-style tokenizer used by LLaMA
checkpoints in ggml format. Unlike a trained BPE tokenizer with an ordered
merge list, every vocabulary entry carries a score, and encoding greedily
merges the adjacent pair whose concatenation is in the vocabulary with the
highest score:

1. Start with one symbol per character
2. Queue every adjacent pair whose concatenation is a vocabulary token
3. Pop the best-scoring pair (ties: rightmost), merge it, and queue the new
   pairs it forms with its neighbours. Queue entries made stale by earlier
   merges are skipped.
4. Emit the id of each remaining symbol; symbols that are not in the
   vocabulary fall back to one id per UTF-8 byte (byte + 3).

Reference:
    "SentencePiece: A simple and language independent subword tokenizer"
    (Kudo & Richardson, 2018) https://arxiv.org/abs/1808.06226

Classes:
    Token: One vocabulary entry (bytes and score)
    Vocab: Ordered vocabulary with reverse lookup
    Tokenizer: encode / decode
"""

import heapq
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from nxml.errors import IndexOutOfRangeError

UNK_TOKEN_ID = 0
BOS_TOKEN_ID = 1
EOS_TOKEN_ID = 2

# Byte-fallback ids: byte value b is encoded as b + BYTE_TOKEN_OFFSET
BYTE_TOKEN_OFFSET = 3

# SentencePiece spelling of byte pieces, e.g. b"<0x0A>"
_BYTE_PIECE = re.compile(rb"<0x([0-9A-Fa-f]{2})>")


@dataclass
class Token:
    """A vocabulary entry: raw token bytes and its merge score."""

    text: bytes
    score: float


class Vocab:
    """
    Ordered vocabulary. The position of a token is its id.

    Attributes:
        tokens: List of Token, indexed by id
        token_to_id: Reverse mapping from token bytes to id
    """

    def __init__(self, tokens: Optional[Iterable[Token]] = None):
        self.tokens: List[Token] = []
        self.token_to_id: Dict[bytes, int] = {}
        for token in tokens or ():
            self.add(token.text, token.score)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[bytes, float]]) -> "Vocab":
        return cls(Token(text, score) for text, score in pairs)

    def add(self, text: bytes, score: float) -> int:
        """Append a token and return its id. A repeated text keeps its first id."""
        token_id = len(self.tokens)
        self.tokens.append(Token(bytes(text), float(score)))
        self.token_to_id.setdefault(bytes(text), token_id)
        return token_id

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, token_id: int) -> Token:
        return self.tokens[token_id]


@dataclass
class _Symbol:
    start: int
    end: int
    prev: Optional[int]
    next: Optional[int]

    @property
    def size(self) -> int:
        return self.end - self.start


class Tokenizer:
    """
    Scored-bigram tokenizer over a Vocab.

    Example:
        >>> vocab = Vocab.from_pairs([(b"<unk>", 0), (b"<s>", 0), (b"</s>", 0),
        ...                           (b"h", -1), (b"i", -1), (b"hi", -0.5)])
        >>> Tokenizer(vocab).encode("hi")
        [1, 5]
    """

    def __init__(self, vocab: Vocab):
        self.vocab = vocab

    @property
    def vocabulary_size(self) -> int:
        return len(self.vocab)

    def _lookup(self, text: str, left: _Symbol, right: _Symbol) -> Optional[int]:
        return self.vocab.token_to_id.get(text[left.start:right.end].encode("utf-8"))

    def _push_bigram(
        self,
        queue: List[Tuple[float, int, int, int]],
        text: str,
        symbols: List[_Symbol],
        left: Optional[int],
        right: Optional[int],
    ) -> None:
        if left is None or right is None:
            return
        token_id = self._lookup(text, symbols[left], symbols[right])
        if token_id is None:
            return
        score = self.vocab[token_id].score
        size = symbols[left].size + symbols[right].size
        # heapq is a min-heap: negate the score so the best pair pops first;
        # on equal scores the larger (rightmost) left index wins
        heapq.heappush(queue, (-score, -left, right, size))

    def encode(self, text: str, bos: bool = True) -> List[int]:
        """
        Encode text to token IDs.

        Args:
            text: Input text
            bos: Prepend the beginning-of-sequence id

        Returns:
            List of token ids
        """
        output = [BOS_TOKEN_ID] if bos else []
        if not text:
            return output

        symbols = [
            _Symbol(
                start=i,
                end=i + 1,
                prev=i - 1 if i > 0 else None,
                next=i + 1 if i + 1 < len(text) else None,
            )
            for i in range(len(text))
        ]

        queue: List[Tuple[float, int, int, int]] = []
        for i in range(1, len(symbols)):
            self._push_bigram(queue, text, symbols, i - 1, i)

        while queue:
            _, negated_left, right, size = heapq.heappop(queue)
            left = -negated_left
            left_symbol, right_symbol = symbols[left], symbols[right]

            # Skip entries invalidated by an earlier merge
            if (
                left_symbol.size == 0
                or right_symbol.size == 0
                or left_symbol.next != right
                or left_symbol.size + right_symbol.size != size
            ):
                continue

            # Merge the right symbol into the left one and unlink it
            left_symbol.end = right_symbol.end
            right_symbol.end = right_symbol.start
            left_symbol.next = right_symbol.next
            if left_symbol.next is not None:
                symbols[left_symbol.next].prev = left

            self._push_bigram(queue, text, symbols, left_symbol.prev, left)
            self._push_bigram(queue, text, symbols, left, left_symbol.next)

        index: Optional[int] = 0
        while index is not None:
            symbol = symbols[index]
            piece = text[symbol.start:symbol.end].encode("utf-8")
            token_id = self.vocab.token_to_id.get(piece)
            if token_id is not None:
                output.append(token_id)
            else:
                output.extend(byte + BYTE_TOKEN_OFFSET for byte in piece)
            index = symbol.next

        return output

    def _token_bytes(self, token_id: int) -> bytes:
        if 0 <= token_id < len(self.vocab):
            text = self.vocab[token_id].text
            match = _BYTE_PIECE.fullmatch(text)
            return bytes([int(match.group(1), 16)]) if match else text
        if BYTE_TOKEN_OFFSET <= token_id < BYTE_TOKEN_OFFSET + 256:
            return bytes([token_id - BYTE_TOKEN_OFFSET])
        raise IndexOutOfRangeError(
            f"Token id {token_id} out of range for vocabulary of {len(self.vocab)}"
        )

    def decode(self, token_ids: Iterable[int]) -> str:
        """
        Decode token IDs back to text.

        BOS and EOS ids are dropped. Token bytes are concatenated before
        UTF-8 decoding, so characters split across byte tokens come back
        whole; invalid sequences are replaced with U+FFFD.

        Byte-fallback ids (byte + 3) that lie beyond the vocabulary, and
        vocabulary entries spelled ``<0xNN>``, decode to the raw byte.

        Raises:
            IndexOutOfRangeError: If an id is neither in the vocabulary nor
                a byte-fallback id
        """
        pieces = []
        for token_id in token_ids:
            token_id = int(token_id)
            if token_id in (BOS_TOKEN_ID, EOS_TOKEN_ID):
                continue
            pieces.append(self._token_bytes(token_id))
        return b"".join(pieces).decode("utf-8", errors="replace")
