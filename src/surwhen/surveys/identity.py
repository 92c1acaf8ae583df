from __future__ import annotations

import hashlib


HASH_LENGTH = 16


def hash_of(title: str) -> str:
    """Public identifier of a survey: the first 16 hex chars of SHA-256(title).

    The hash is derived from the title on every call and never stored, so
    renaming a survey changes its hash and breaks links handed out earlier.
    """
    return hashlib.sha256(title.encode("utf-8")).hexdigest()[:HASH_LENGTH]
