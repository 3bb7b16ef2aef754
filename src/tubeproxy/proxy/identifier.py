"""Extraction of media identifiers from raw request targets."""

from __future__ import annotations

import re
from typing import Optional

IDENTIFIER_LENGTH = 11
RETRIEVAL_METHOD = "GET"

_IDENTIFIER_PATTERN = re.compile(r"(?:/|\?v=)?([A-Za-z0-9_-]{11})\Z")


def extract_identifier(method: str, target: str) -> Optional[str]:
    """Return the 11-character identifier trailing ``target``, or None.

    ``target`` is the raw request target (path plus query string) exactly as
    received; no decoding or case folding is applied.
    """
    if method != RETRIEVAL_METHOD:
        return None
    match = _IDENTIFIER_PATTERN.search(target)
    if match is None:
        return None
    return match.group(1)


def is_identifier(value: str) -> bool:
    return len(value) == IDENTIFIER_LENGTH and _IDENTIFIER_PATTERN.fullmatch(value) is not None
