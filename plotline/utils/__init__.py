"""
Plotline Utilities Module

Text chunking helpers used by the pipeline.
"""

from .chunk_manager import (
    TextChunk,
    TiktokenTokenizer,
    TokenChunker,
    Tokenizer,
    normalize_line_endings,
)

__all__ = [
    'TextChunk',
    'TiktokenTokenizer',
    'TokenChunker',
    'Tokenizer',
    'normalize_line_endings',
]
