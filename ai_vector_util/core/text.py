"""
Text preprocessing for embedding models.

Token estimation is a character-count heuristic, not a tokenizer; treat
its results as approximate.
"""

from typing import List, Optional

from .exceptions import InvalidArgument

CHARS_PER_WORD = 6          # average word length ~5 chars + 1 space
TOKENS_PER_WORD = 1.3       # English text
CHARS_PER_TOKEN = 4         # used to size chunk windows

DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 50


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate the token count of ``text``.

    Returns:
        round((characters / 6) * 1.3), or 0 for empty input
    """
    if not text:
        return 0
    return round((len(text) / CHARS_PER_WORD) * TOKENS_PER_WORD)


def validate_text_length(text: Optional[str], max_tokens: int) -> bool:
    """True if the estimated token count fits within ``max_tokens``."""
    return estimate_tokens(text) <= max_tokens


def chunk_text(
    text: Optional[str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP
) -> List[str]:
    """Split text into overlapping fixed-width windows.

    Token targets are converted to characters at 4 chars/token. Each window
    is ``chunk_size * 4`` characters and the next one starts
    ``(chunk_size - overlap) * 4`` characters later. The final chunk may be
    shorter than the window.

    Args:
        text: Text to split
        chunk_size: Window size in tokens
        overlap: Tokens shared by consecutive windows

    Returns:
        Ordered list of chunks (empty for empty text)

    Raises:
        InvalidArgument: If the window would not advance or sizes are negative
    """
    if chunk_size <= 0:
        raise InvalidArgument("chunk_size must be > 0")
    if overlap < 0:
        raise InvalidArgument("overlap cannot be negative")
    if overlap >= chunk_size:
        raise InvalidArgument(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )
    if not text:
        return []

    window = chunk_size * CHARS_PER_TOKEN
    step = (chunk_size - overlap) * CHARS_PER_TOKEN

    chunks = []
    start = 0
    while start < len(text):
        chunks.append(text[start:start + window])
        start += step
    return chunks
