from __future__ import annotations

from hashlib import sha256

import pytest
from cryptography.fernet import Fernet

from brainbits.ingestion.content import (
    ALG_FERNET,
    ALG_NONE,
    EMPTY_CONTENT_HASH,
    ContentEncodingError,
    decode_content,
    encode_content,
    hash_content,
    normalize_content,
)


def test_normalize_content_unifies_whitespace():
    assert normalize_content("a  \r\nb\t\n\n\n\nc\r") == "a\nb\n\nc\n"


def test_hash_ignores_whitespace_only_edits():
    assert hash_content("line one   \r\nline two") == hash_content("line one\nline two")
    assert hash_content("line one") != hash_content("line 1")


def test_empty_hash_is_sha256_of_nothing():
    assert hash_content(None) == EMPTY_CONTENT_HASH == sha256(b"").hexdigest()


def test_encode_without_key_is_base64(monkeypatch):
    monkeypatch.delenv("BRAINBITS_ENCRYPTION_KEY", raising=False)

    encoded = encode_content("héllo")

    assert encoded.alg == ALG_NONE
    assert encoded.key_version == 0
    assert encoded.size_bytes == 6
    assert decode_content(encoded.ciphertext, encoded.alg) == "héllo"


def test_encode_with_key_encrypts(monkeypatch):
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY_VERSION", "3")

    encoded = encode_content("secret note")

    assert encoded.alg == ALG_FERNET
    assert encoded.key_version == 3
    assert "secret" not in encoded.ciphertext
    assert decode_content(encoded.ciphertext, encoded.alg) == "secret note"


def test_encrypted_content_without_key_raises(monkeypatch):
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", Fernet.generate_key().decode())
    encoded = encode_content("secret note")
    monkeypatch.delenv("BRAINBITS_ENCRYPTION_KEY")

    with pytest.raises(ContentEncodingError):
        decode_content(encoded.ciphertext, encoded.alg)


def test_wrong_key_raises(monkeypatch):
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", Fernet.generate_key().decode())
    encoded = encode_content("secret note")
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", Fernet.generate_key().decode())

    with pytest.raises(ContentEncodingError):
        decode_content(encoded.ciphertext, encoded.alg)


def test_invalid_key_raises_on_encode(monkeypatch):
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", "not-a-fernet-key")

    with pytest.raises(ContentEncodingError):
        encode_content("text")


def test_decode_edge_cases():
    assert decode_content(None, ALG_FERNET) == ""
    with pytest.raises(ContentEncodingError):
        decode_content("abc", "rot13")
