"""Default chunking service with token and recursive modes.

Two strategies are available:

- **token**: fixed windows of ``chunk_size`` tokens, each one starting ``chunk_overlap``
  tokens before the end of the previous one. Dropping the overlap from every chunk but
  the first and concatenating gives back the input exactly.
- **recursive**: the text is split on paragraph boundaries, then sentence boundaries,
  then whitespace, and finally into fixed token windows, descending to a finer level only
  for pieces that exceed ``chunk_size``. Pieces are merged back greedily up to
  ``chunk_size`` tokens. Separators stay attached to the preceding piece, so the chunks
  concatenate back to the input.

Token counting is delegated to a pluggable tokenizer, and the same tokenizer fills
``TChunk.token_count`` so that downstream budgets agree with the chunker.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import tiktoken

from souvenir._exceptions import ValidationError
from souvenir._types import TChunk, TId
from souvenir._utils import logger, make_id

from ._base import BaseChunkingService

TChunkingMode = Literal["token", "recursive"]

# Separator hierarchy of the recursive mode, from the coarsest to the finest.
# Every match is kept at the end of the piece that precedes it.
RECURSIVE_SEPARATORS = [
    re.compile(r"(?:\r?\n[ \t]*){2,}"),  # Paragraph breaks
    re.compile(r"[.!?。！？．]+[\"'”’)\]]*\s+"),  # Sentence endings
    re.compile(r"\s+"),  # Whitespace
]

# Suggested chunk sizes per kind of content
CHUNK_SIZES: Dict[str, int] = {
    "code": 500,
    "documentation": 1000,
    "conversation": 800,
    "article": 1200,
    "default": 1000,
}


def calculate_chunk_size(content_type: str) -> int:
    """Suggested chunk size for a kind of content ("code", "conversation", ...)."""
    return CHUNK_SIZES.get(content_type, CHUNK_SIZES["default"])


####################################################################################################
# TOKENIZERS
####################################################################################################


class BaseTokenizer:
    """Splits text into tokens whose concatenation is exactly the input."""

    def split(self, text: str) -> List[str]:
        raise NotImplementedError

    def count(self, text: str) -> int:
        return len(self.split(text))


class CharacterTokenizer(BaseTokenizer):
    """Every character is a token."""

    def split(self, text: str) -> List[str]:
        return list(text)

    def count(self, text: str) -> int:
        return len(text)


class WordTokenizer(BaseTokenizer):
    """Every word, together with the whitespace that follows it, is a token.

    Leading whitespace forms a token of its own.
    """

    _TOKEN_RE = re.compile(r"^\s+|\S+\s*")

    def split(self, text: str) -> List[str]:
        return self._TOKEN_RE.findall(text)


class TiktokenTokenizer(BaseTokenizer):
    """Tokens of a tiktoken encoding, mapped back to the text through their character offsets."""

    def __init__(self, encoding: tiktoken.Encoding):
        self.encoding = encoding

    def split(self, text: str) -> List[str]:
        tokens = self.encoding.encode(text, disallowed_special=())
        if not tokens:
            return []
        _, offsets = self.encoding.decode_with_offsets(tokens)
        # A character spread over several tokens yields empty pieces for all but one of them
        bounds = offsets + [len(text)]
        return [text[bounds[i] : max(bounds[i], bounds[i + 1])] for i in range(len(tokens))]

    def count(self, text: str) -> int:
        return len(self.encoding.encode(text, disallowed_special=()))


def get_tokenizer(name: Optional[str]) -> BaseTokenizer:
    """Resolve a tokenizer by name.

    Args:
        name: "character" (or None), "word", or a tiktoken encoding or model name
            (e.g. "cl100k_base", "gpt-4o-mini").

    Raises:
        ValidationError: If the name is not known.
    """
    if name is None or name == "character":
        return CharacterTokenizer()
    if name == "word":
        return WordTokenizer()
    try:
        return TiktokenTokenizer(tiktoken.get_encoding(name))
    except ValueError:
        pass
    try:
        return TiktokenTokenizer(tiktoken.encoding_for_model(name))
    except KeyError as e:
        raise ValidationError(f"Unknown tokenizer '{name}'.") from e


####################################################################################################
# CHUNKING
####################################################################################################


@dataclass
class DefaultChunkingServiceConfig:
    """Configuration for the default chunking strategy.

    Attributes:
        chunk_size: Maximum number of tokens per chunk.
        chunk_overlap: Tokens shared by consecutive chunks (token mode only).
        mode: "token" or "recursive".
        tokenizer: Tokenizer name, see get_tokenizer. None counts characters.
        min_characters_per_chunk: In recursive mode, chunks shorter than this are merged
            into a neighbour when the result still fits in ``chunk_size``.
    """

    chunk_size: int = field(default=1000)
    chunk_overlap: int = field(default=200)
    mode: TChunkingMode = field(default="token")
    tokenizer: Optional[str] = field(default=None)
    min_characters_per_chunk: Optional[int] = field(default=None)

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {self.chunk_size}.")
        if self.mode not in ("token", "recursive"):
            raise ValidationError(f"Unknown chunking mode '{self.mode}'.")
        if self.mode == "token" and not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValidationError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap} with chunk_size {self.chunk_size}."
            )
        if self.min_characters_per_chunk is not None and self.min_characters_per_chunk < 0:
            raise ValidationError("min_characters_per_chunk cannot be negative.")


@dataclass
class DefaultChunkingService(BaseChunkingService):
    """Chunking service implementing the token and recursive modes.

    Attributes:
        config: Chunk size, overlap, mode and tokenizer.
    """

    config: DefaultChunkingServiceConfig = field(default_factory=DefaultChunkingServiceConfig)

    def __post_init__(self):
        self.tokenizer = get_tokenizer(self.config.tokenizer)

    def chunk(
        self, text: str, session_id: TId, source_id: Optional[TId] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> List[TChunk]:
        """Split a text into chunks.

        Args:
            text: The text to split. Empty or whitespace-only text yields no chunks.
            session_id: Session the chunks belong to.
            source_id: Identifier of the text; derived from the session and the content
                when omitted.
            metadata: Metadata copied into every chunk.

        Returns:
            The chunks in text order, with stable ids.
        """
        # Replace invalid code points (e.g. lone surrogates)
        text = text.encode(errors="replace").decode()
        if not text.strip():
            return []

        if source_id is None:
            source_id = make_id(session_id, text)

        if self.config.mode == "token":
            pieces = self._split_tokens(text)
        else:
            pieces = self._split_recursive(text)
            if self.config.min_characters_per_chunk:
                pieces = self._merge_small_chunks(pieces)

        logger.debug(f"Split source {source_id} into {len(pieces)} chunks ({self.config.mode} mode).")
        return [
            TChunk(
                id=make_id(session_id, source_id, index, content),
                content=content,
                session_id=session_id,
                source_id=source_id,
                chunk_index=index,
                token_count=self.tokenizer.count(content),
                metadata=dict(metadata or {}),
            )
            for index, content in enumerate(pieces)
        ]

    def _split_tokens(self, text: str) -> List[str]:
        tokens = self.tokenizer.split(text)
        size = self.config.chunk_size
        step = size - self.config.chunk_overlap

        chunks: List[str] = []
        for start in range(0, len(tokens), step):
            chunks.append("".join(tokens[start : start + size]))
            if start + size >= len(tokens):
                break
        return chunks

    def _split_recursive(self, text: str, level: int = 0) -> List[str]:
        if self.tokenizer.count(text) <= self.config.chunk_size:
            return [text]

        if level >= len(RECURSIVE_SEPARATORS):
            # Last resort: fixed windows. A window of a single token is never split further.
            tokens = self.tokenizer.split(text)
            size = self.config.chunk_size
            return ["".join(tokens[i : i + size]) for i in range(0, len(tokens), size)]

        pieces = _split_keep_separators(text, RECURSIVE_SEPARATORS[level])
        if len(pieces) <= 1:
            return self._split_recursive(text, level + 1)

        splits: List[str] = []
        for piece in pieces:
            if self.tokenizer.count(piece) > self.config.chunk_size:
                splits.extend(self._split_recursive(piece, level + 1))
            else:
                splits.append(piece)
        return self._merge_splits(splits)

    def _merge_splits(self, splits: List[str]) -> List[str]:
        """Greedily concatenate adjacent pieces while the result fits in chunk_size."""
        merged: List[str] = []
        current = ""
        for split in splits:
            if current and self.tokenizer.count(current + split) > self.config.chunk_size:
                merged.append(current)
                current = split
            else:
                current += split
        if current:
            merged.append(current)
        return merged

    def _merge_small_chunks(self, chunks: List[str]) -> List[str]:
        """Merge chunks shorter than min_characters_per_chunk into the previous or next neighbour."""
        min_chars = self.config.min_characters_per_chunk or 0
        result = list(chunks)
        i = 0
        while i < len(result):
            if len(result[i]) >= min_chars or len(result) == 1:
                i += 1
                continue
            if i > 0 and self.tokenizer.count(result[i - 1] + result[i]) <= self.config.chunk_size:
                result[i - 1] += result.pop(i)
                continue
            if i + 1 < len(result) and self.tokenizer.count(result[i] + result[i + 1]) <= self.config.chunk_size:
                result[i] += result.pop(i + 1)
                continue
            # No neighbour can absorb it
            i += 1
        return result


def _split_keep_separators(text: str, pattern: "re.Pattern[str]") -> List[str]:
    """Split ``text`` after every match of ``pattern``, keeping the match with the left piece."""
    pieces: List[str] = []
    start = 0
    for match in pattern.finditer(text):
        if match.end() > start:
            pieces.append(text[start : match.end()])
            start = match.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces
