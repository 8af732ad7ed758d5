"""
Plotline Chunk Manager

Token-aware text chunking with overlap for feeding long documents to a
language model. Chunks follow paragraph boundaries and fall back to sentence
boundaries for paragraphs that are too large on their own.
"""

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

import tiktoken

from plotline.core.constants import (
    DEFAULT_ENCODING,
    DEFAULT_MAX_TOKENS,
    DEFAULT_OVERLAP_TOKENS,
    MIN_CHUNK_CHARS,
    SENTENCE_SPLIT_PATTERN,
)
from plotline.core.exceptions import ChunkingError
from plotline.core.logging_config import get_logger

logger = get_logger("utils.chunk_manager")

_PARAGRAPH_BREAK = re.compile(r'\n[ \t]*\n\s*')
_SENTENCE_BREAK = re.compile(SENTENCE_SPLIT_PATTERN + r'\s*')


@dataclass(frozen=True)
class TextChunk:
    """A contiguous slice of the normalized source text."""
    index: int
    content: str
    token_count: int
    start_offset: int
    end_offset: int

    @property
    def length(self) -> int:
        """Get the length of the chunk content."""
        return len(self.content)

    def contains_position(self, position: int) -> bool:
        """Check if a position falls within this chunk."""
        return self.start_offset <= position < self.end_offset


class Tokenizer(Protocol):
    """Anything that can turn text into token ids and back."""

    def encode(self, text: str) -> List[int]:
        ...

    def decode(self, tokens: List[int]) -> str:
        ...


class TiktokenTokenizer:
    """Tokenizer backed by a tiktoken encoding (cl100k_base by default)."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def encode(self, text: str) -> List[int]:
        # Novels can legitimately contain strings like "<|endoftext|>"
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: List[int]) -> str:
        return self._encoding.decode(tokens)


def normalize_line_endings(text: str) -> str:
    """Convert CRLF and lone CR to LF."""
    return text.replace('\r\n', '\n').replace('\r', '\n')


class TokenChunker:
    """
    Splits a document into overlapping chunks bounded by a token budget.

    Paragraph units are accumulated until the next one would overflow
    max_tokens. The emitted chunk's last overlap_tokens tokens then seed the
    next chunk. Paragraphs above the budget are split into sentences, and a
    sentence that is still above the budget is kept whole.

    Every chunk satisfies ``normalized[start_offset:end_offset] == content``
    where ``normalized`` is the input with line endings normalized.
    """

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
        tokenizer: Optional[Tokenizer] = None
    ):
        """
        Initialize the chunker.

        Args:
            max_tokens: Token budget per chunk
            overlap_tokens: Tokens carried from the end of one chunk into the next
            min_chunk_chars: Trailing text shorter than this joins the last chunk
            tokenizer: Injected tokenizer; defaults to tiktoken cl100k_base

        Raises:
            ChunkingError: If the sizes are inconsistent
        """
        if max_tokens <= 0:
            raise ChunkingError("max_tokens must be positive", {"max_tokens": max_tokens})
        if overlap_tokens < 0 or overlap_tokens >= max_tokens:
            raise ChunkingError(
                "overlap_tokens must be in [0, max_tokens)",
                {"max_tokens": max_tokens, "overlap_tokens": overlap_tokens}
            )
        if min_chunk_chars < 0:
            raise ChunkingError("min_chunk_chars must not be negative")

        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.min_chunk_chars = min_chunk_chars
        self.tokenizer = tokenizer or TiktokenTokenizer()

    @classmethod
    def from_config(cls, config, tokenizer: Optional[Tokenizer] = None) -> 'TokenChunker':
        """Build a chunker from a ChunkingConfig."""
        return cls(
            max_tokens=config.max_tokens,
            overlap_tokens=config.overlap_tokens,
            min_chunk_chars=config.min_chunk_chars,
            tokenizer=tokenizer or TiktokenTokenizer(config.encoding)
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens in text."""
        if not text:
            return 0
        return len(self.tokenizer.encode(text))

    def get_stats(self, text: str) -> Dict[str, int]:
        """Rough size figures for a document, without chunking it."""
        if not isinstance(text, str):
            raise ChunkingError("Text to chunk must be a string")
        total_tokens = self.count_tokens(normalize_line_endings(text))
        step = self.max_tokens - self.overlap_tokens
        return {
            "total_chars": len(text),
            "total_tokens": total_tokens,
            "estimated_chunks": math.ceil(total_tokens / step) if total_tokens else 0,
        }

    def chunk(self, text: str) -> List[TextChunk]:
        """
        Split text into overlapping token-bounded chunks.

        Args:
            text: Document text

        Returns:
            Chunks with contiguous indices starting at 0 (empty for blank input)
        """
        if not isinstance(text, str):
            raise ChunkingError(
                "Text to chunk must be a string", {"type": type(text).__name__}
            )

        normalized = normalize_line_endings(text)
        if not normalized.strip():
            return []

        units = self._split_units(normalized)
        chunks: List[TextChunk] = []

        buf_start: Optional[int] = None
        buf_end = 0
        buf_tokens = 0

        for start, end, tokens in units:
            if buf_start is None:
                buf_start, buf_end, buf_tokens = start, end, tokens
                continue

            if buf_tokens + tokens <= self.max_tokens:
                buf_end = end
                buf_tokens += tokens
                continue

            # Flush, then reseed with an overlap sized so that only the unit
            # itself can push the new buffer over the budget
            emitted = self._make_chunk(normalized, len(chunks), buf_start, buf_end)
            chunks.append(emitted)

            budget = min(self.overlap_tokens, max(0, self.max_tokens - tokens))
            overlap_start = self._overlap_start(emitted, budget)
            if overlap_start is None:
                buf_start, buf_tokens = start, tokens
            else:
                buf_start = overlap_start
                buf_tokens = self.count_tokens(normalized[overlap_start:start]) + tokens
            buf_end = end

        if buf_start is not None:
            self._flush_tail(normalized, chunks, buf_start, buf_end)

        logger.debug(
            f"Chunked {len(normalized)} chars into {len(chunks)} chunks "
            f"(max_tokens={self.max_tokens}, overlap={self.overlap_tokens})"
        )
        return chunks

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _split_units(self, text: str) -> List[Tuple[int, int, int]]:
        """
        Paragraph spans, with oversized paragraphs broken into sentence spans.

        Each span keeps its trailing separator so spans tile the text and
        their token counts add up.
        """
        units = []
        for start, end in self._spans(text, _PARAGRAPH_BREAK, 0, len(text)):
            if not text[start:end].strip():
                continue
            tokens = self.count_tokens(text[start:end])
            if tokens <= self.max_tokens:
                units.append((start, end, tokens))
                continue

            for s_start, s_end in self._spans(text, _SENTENCE_BREAK, start, end):
                if text[s_start:s_end].strip():
                    units.append((s_start, s_end, self.count_tokens(text[s_start:s_end])))
        return units

    @staticmethod
    def _spans(text: str, pattern, start: int, end: int) -> List[Tuple[int, int]]:
        """Cut text[start:end] after every match of pattern."""
        spans = []
        cursor = start
        for match in pattern.finditer(text, start, end):
            if match.end() > cursor:
                spans.append((cursor, match.end()))
                cursor = match.end()
        if cursor < end:
            spans.append((cursor, end))
        return spans

    def _make_chunk(self, text: str, index: int, start: int, end: int) -> TextChunk:
        segment = text[start:end]
        content = segment.strip()
        start += len(segment) - len(segment.lstrip())
        return TextChunk(
            index=index,
            content=content,
            token_count=self.count_tokens(content),
            start_offset=start,
            end_offset=start + len(content)
        )

    def _overlap_start(self, chunk: TextChunk, budget: int) -> Optional[int]:
        """Offset where the last `budget` tokens of a chunk begin."""
        if budget <= 0:
            return None

        tokens = self.tokenizer.encode(chunk.content)
        tail = self.tokenizer.decode(tokens[-budget:])
        # A cut through a multi-byte character decodes to replacement chars
        tail = tail.lstrip('\ufffd').lstrip()
        if not tail:
            return None

        if chunk.content.endswith(tail):
            length = len(tail)
        else:
            length = min(len(tail), len(chunk.content))
            logger.debug(f"Overlap for chunk {chunk.index} does not round-trip; using char suffix")

        overlap_start = chunk.end_offset - length
        # Keep the chunk stripped at the front
        content = chunk.content[len(chunk.content) - length:]
        return overlap_start + (len(content) - len(content.lstrip()))

    def _flush_tail(self, text: str, chunks: List[TextChunk], start: int, end: int) -> None:
        if not chunks:
            chunks.append(self._make_chunk(text, 0, start, end))
            return

        last = chunks[-1]
        fresh = text[last.end_offset:end].strip()
        if not fresh:
            return
        if len(fresh) < self.min_chunk_chars:
            chunks[-1] = self._make_chunk(text, last.index, last.start_offset, end)
            return
        chunks.append(self._make_chunk(text, len(chunks), start, end))
