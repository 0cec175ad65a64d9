"""Split streamed model tokens into speakable chunks.

Chunks end at a sentence boundary (``.``, ``!`` or ``?`` followed by
whitespace) when one is available. Whatever is left after the sentence split is
flushed as a single chunk once it reaches ``min_length`` characters, which
bounds synthesis latency for long clauses without punctuation.
"""

from __future__ import annotations

import re

DEFAULT_MIN_LENGTH = 30

_SENTENCE_END = re.compile(r"[.!?]\s+")


def chunk_text(accumulated: str, min_length: int = DEFAULT_MIN_LENGTH) -> tuple[list[str], str]:
    """Return ``(chunks, remainder)`` for the accumulated token buffer.

    >>> chunk_text("Hello there. How are you?", 10)
    (['Hello there.', 'How are you?'], '')
    """

    chunks: list[str] = []
    start = 0
    for match in _SENTENCE_END.finditer(accumulated):
        sentence = accumulated[start : match.start() + 1].strip()
        if sentence:
            chunks.append(sentence)
        start = match.end()

    remainder = accumulated[start:]
    if len(remainder.strip()) >= min_length:
        chunks.append(remainder.strip())
        remainder = ""

    return chunks, remainder


def flush_remainder(remainder: str) -> list[str]:
    """Final chunk for whatever is left once the token stream has ended."""

    text = remainder.strip()
    return [text] if text else []
