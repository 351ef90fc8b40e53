"""Tests for age passphrase encryption and the digest envelope."""

from __future__ import annotations

import pytest

from secrets_manager.cipher import (
    AGE_INTRO,
    CHUNK_SIZE,
    AgeCipher,
    Passphrase,
    decrypt,
    encrypt,
    open_envelope,
    seal_envelope,
)
from secrets_manager.digest import digest
from secrets_manager.errors import CipherError, IntegrityError

from conftest import FAST_WORK_FACTOR, PASSPHRASE


class TestPassphrase:
    """Tests for the passphrase holder."""

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            Passphrase("")

    def test_repr_hides_secret(self) -> None:
        assert PASSPHRASE not in repr(Passphrase(PASSPHRASE))


class TestEncryptDecrypt:
    """Tests for the age file format."""

    def test_roundtrip(self) -> None:
        p = Passphrase(PASSPHRASE)
        blob = encrypt(b"hello", p, FAST_WORK_FACTOR)
        assert decrypt(blob, p) == b"hello"

    def test_header_shape(self) -> None:
        """Output is a standard age file with one scrypt stanza."""
        blob = encrypt(b"hello", Passphrase(PASSPHRASE), FAST_WORK_FACTOR)
        assert blob.startswith(AGE_INTRO)
        assert b"\n-> scrypt " in blob
        assert f" {FAST_WORK_FACTOR}\n".encode() in blob
        assert b"\n--- " in blob
        assert b"hello" not in blob

    def test_fresh_salt_each_time(self) -> None:
        p = Passphrase(PASSPHRASE)
        assert encrypt(b"same", p, FAST_WORK_FACTOR) != encrypt(b"same", p, FAST_WORK_FACTOR)

    def test_empty_plaintext(self) -> None:
        p = Passphrase(PASSPHRASE)
        assert decrypt(encrypt(b"", p, FAST_WORK_FACTOR), p) == b""

    def test_multi_chunk(self) -> None:
        """Payloads over one STREAM chunk, including an exact multiple, survive."""
        p = Passphrase(PASSPHRASE)
        for size in (CHUNK_SIZE + 1, CHUNK_SIZE * 2):
            data = bytes(i % 251 for i in range(size))
            assert decrypt(encrypt(data, p, FAST_WORK_FACTOR), p) == data

    def test_wrong_passphrase(self) -> None:
        blob = encrypt(b"hello", Passphrase(PASSPHRASE), FAST_WORK_FACTOR)
        with pytest.raises(CipherError, match="Incorrect passphrase"):
            decrypt(blob, Passphrase("wrong"))

    def test_corrupted_payload(self) -> None:
        """A flipped bit in the body fails authentication."""
        p = Passphrase(PASSPHRASE)
        blob = bytearray(encrypt(b"hello world", p, FAST_WORK_FACTOR))
        blob[-1] ^= 0x01
        with pytest.raises(CipherError):
            decrypt(bytes(blob), p)

    def test_truncated(self) -> None:
        p = Passphrase(PASSPHRASE)
        blob = encrypt(b"hello world", p, FAST_WORK_FACTOR)
        with pytest.raises(CipherError):
            decrypt(blob[:-5], p)

    def test_not_age(self) -> None:
        with pytest.raises(CipherError, match="Not an age"):
            decrypt(b"plain text", Passphrase(PASSPHRASE))

    @pytest.mark.parametrize("work_factor", [0, 23])
    def test_work_factor_range(self, work_factor: int) -> None:
        with pytest.raises(CipherError):
            encrypt(b"x", Passphrase(PASSPHRASE), work_factor)


class TestEnvelope:
    """Tests for the digest-carrying payload."""

    def test_open_returns_plaintext_and_digest(self) -> None:
        value = digest(b"data")
        assert open_envelope(seal_envelope(b"data", value)) == (b"data", value)

    def test_plaintext_may_contain_newlines(self) -> None:
        body = b"line one\nline two\n"
        assert open_envelope(seal_envelope(body, digest(body)))[0] == body

    def test_missing_record(self) -> None:
        with pytest.raises(IntegrityError):
            open_envelope(b"just some bytes")

    def test_age_cipher_seal_unseal(self, cipher: AgeCipher) -> None:
        value = digest(b"payload")
        plaintext, embedded = cipher.unseal(cipher.seal(b"payload", value))
        assert plaintext == b"payload"
        assert embedded == value

    def test_unseal_foreign_age_file(self, cipher: AgeCipher) -> None:
        """An age file without the digest record is an integrity failure, not a cipher one."""
        with pytest.raises(IntegrityError):
            cipher.unseal(cipher.encrypt(b"no envelope here"))
