"""
Note content normalization, hashing and at-rest encoding.

Hashes are computed over normalized markdown so whitespace-only edits from a
source (line endings, trailing spaces) do not count as changes.

Content is Fernet-encrypted when BRAINBITS_ENCRYPTION_KEY is set; otherwise
it is stored base64-encoded with alg "none".
"""

from __future__ import annotations

import base64
import os
import re
from dataclasses import dataclass
from hashlib import sha256

from cryptography.fernet import Fernet, InvalidToken

from brainbits.observability.logging import get_logger

logger = get_logger(__name__)

ALG_NONE = "none"
ALG_FERNET = "fernet"

_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")


class ContentEncodingError(Exception):
    """Raised when stored content cannot be encoded or decoded."""

    pass


@dataclass(frozen=True)
class EncodedContent:
    ciphertext: str
    alg: str
    key_version: int
    size_bytes: int


def normalize_content(text: str) -> str:
    """Unify line endings, strip trailing spaces/tabs per line, collapse 3+ newlines to 2."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _TRAILING_WS.sub("", normalized)
    return _BLANK_RUNS.sub("\n\n", normalized)


def hash_content(text: str | None) -> str:
    """sha256 hex digest of normalized content."""
    return sha256(normalize_content(text or "").encode("utf-8")).hexdigest()


EMPTY_CONTENT_HASH = hash_content("")


def _get_cipher() -> tuple[Fernet, int] | None:
    key = os.getenv("BRAINBITS_ENCRYPTION_KEY")
    if not key:
        return None
    try:
        cipher = Fernet(key.encode())
    except Exception as e:
        raise ContentEncodingError(f"Invalid encryption key format: {e}") from e
    return cipher, int(os.getenv("BRAINBITS_ENCRYPTION_KEY_VERSION", "1"))


def encode_content(text: str | None) -> EncodedContent:
    """
    Encode note content for storage.

    Raises:
        ContentEncodingError: If BRAINBITS_ENCRYPTION_KEY is set but invalid
    """
    raw = (text or "").encode("utf-8")
    cipher = _get_cipher()
    if cipher is None:
        return EncodedContent(
            ciphertext=base64.b64encode(raw).decode("ascii"),
            alg=ALG_NONE,
            key_version=0,
            size_bytes=len(raw),
        )

    fernet, key_version = cipher
    return EncodedContent(
        ciphertext=fernet.encrypt(raw).decode("ascii"),
        alg=ALG_FERNET,
        key_version=key_version,
        size_bytes=len(raw),
    )


def decode_content(ciphertext: str | None, alg: str | None) -> str:
    """
    Decode stored content back to markdown.

    Raises:
        ContentEncodingError: For encrypted content without a usable key
    """
    if not ciphertext:
        return ""
    if alg in (None, ALG_NONE):
        return base64.b64decode(ciphertext).decode("utf-8")
    if alg != ALG_FERNET:
        raise ContentEncodingError(f"Unknown content alg: {alg}")

    cipher = _get_cipher()
    if cipher is None:
        raise ContentEncodingError("Encrypted content found but BRAINBITS_ENCRYPTION_KEY is not set")
    try:
        return cipher[0].decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ContentEncodingError("Failed to decrypt document content") from e
