"""Incremental transcript diffing.

Speech transcripts grow left to right, so the new content between two
snapshots is whatever follows their longest common prefix of words. Words are
compared after normalisation (lower case, only ``[a-z0-9'-]`` kept) while the
returned text keeps the original casing and punctuation of ``current``.

Every function here is pure and total over string input.
"""
from __future__ import annotations

import hashlib
import re

_NON_WORD_CHARS = re.compile(r"[^a-z0-9'-]")


def normalize_token(token: str) -> str:
    """Lower-case ``token`` and drop characters outside ``[a-z0-9'-]``."""
    return _NON_WORD_CHARS.sub("", token.lower())


def tokenize(text: str) -> list[str]:
    return text.split() if text else []


def normalize_transcript(text: str) -> str:
    """Normalised words of ``text`` joined by single spaces."""
    normalized = (normalize_token(token) for token in tokenize(text))
    return " ".join(token for token in normalized if token)


def common_prefix_length(current_tokens: list[str], previous_tokens: list[str]) -> int:
    """Number of leading tokens that are equal after normalisation."""
    length = 0
    for current_token, previous_token in zip(current_tokens, previous_tokens):
        if normalize_token(current_token) != normalize_token(previous_token):
            break
        length += 1
    return length


def extract_new_content(current: str, previous: str) -> str:
    """Return the text in ``current`` that was not already in ``previous``.

    Args:
        current: latest transcript snapshot.
        previous: snapshot (or cumulative content) already handled.

    Returns:
        ``current`` unchanged when ``previous`` is blank, otherwise the words
        of ``current`` after the common prefix. A tail that differs from
        ``previous`` is a correction and is returned as well; nothing is done
        to retract what was already synthesized. A transcript that is only a
        prefix of ``previous`` yields an empty string.
    """
    if not previous or not previous.strip():
        return current

    current_tokens = tokenize(current)
    previous_tokens = tokenize(previous)
    prefix = common_prefix_length(current_tokens, previous_tokens)

    if len(current_tokens) > prefix:
        return " ".join(current_tokens[prefix:])
    return ""


def transcript_fingerprint(text: str) -> str:
    """Stable 64-bit identifier (16 hex chars) of a normalised transcript.

    Collisions are possible but irrelevant for a small dedup window.
    """
    digest = hashlib.sha256(normalize_transcript(text).encode("utf-8")).hexdigest()
    return digest[:16]
