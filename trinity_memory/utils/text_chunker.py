"""
Sentence-boundary chunking for embedding.
"""

import math
import re
from typing import List

# A sentence ends at ., ! or ? followed by whitespace, or at a line break
_SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+|\n+')


def split_sentences(content: str) -> List[str]:
    """Split text into sentences, keeping terminal punctuation and dropping blanks."""
    return [sentence.strip() for sentence in _SENTENCE_BOUNDARY.split(content) if sentence and sentence.strip()]


def chunk_content(content: str, max_chunk_size: int = 1000) -> List[str]:
    """
    Pack whole sentences into chunks of at most max_chunk_size characters.

    A sentence is never split. A sentence longer than max_chunk_size becomes a
    chunk of its own, so no text is dropped.

    Args:
        content: Text to chunk
        max_chunk_size: Maximum chunk length in characters

    Returns:
        List of chunks in document order (empty for blank content)
    """
    if max_chunk_size <= 0:
        raise ValueError('max_chunk_size must be positive')

    chunks = []
    current = ''
    for sentence in split_sentences(content):
        if current and len(current) + 1 + len(sentence) > max_chunk_size:
            chunks.append(current)
            current = sentence
        else:
            current = f'{current} {sentence}' if current else sentence

    if current:
        chunks.append(current)

    return chunks


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return math.ceil(len(text) / 4)
