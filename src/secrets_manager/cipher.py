"""
Passphrase encryption in the age v1 file format.

Exported secrets are written as age files with a single scrypt
recipient, so ``age -d`` can open them without this tool. The
decrypted payload is an envelope that carries the SHA-256 of the
plaintext in front of the plaintext itself:

    secrets-manager-sha256 <64 hex digits>\\n
    <plaintext bytes>

File layout (https://age-encryption.org/v1):

    age-encryption.org/v1
    -> scrypt <salt, base64> <log2 N>
    <wrapped file key, base64>
    --- <header MAC, base64>
    <16-byte payload nonce><STREAM-encrypted payload>

Primitives come from ``cryptography``: scrypt wraps a random file key
with ChaCha20-Poly1305, HKDF-SHA256 derives the header MAC key and the
payload key, and the payload is sealed in 64 KiB ChaCha20-Poly1305
chunks.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .digest import DIGEST_HEX_LEN
from .errors import CipherError, IntegrityError
from .models import DEFAULT_WORK_FACTOR

logger = logging.getLogger("secrets_manager.cipher")

AGE_INTRO = b"age-encryption.org/v1\n"
SCRYPT_LABEL = b"age-encryption.org/v1/scrypt"
MAX_WORK_FACTOR = 22

FILE_KEY_SIZE = 16
SALT_SIZE = 16
NONCE_SIZE = 16
TAG_SIZE = 16
CHUNK_SIZE = 64 * 1024
COLUMNS = 64

ENVELOPE_MAGIC = b"secrets-manager-sha256 "
_ENVELOPE_RE = re.compile(rb"^secrets-manager-sha256 ([0-9a-f]{%d})\n" % DIGEST_HEX_LEN)


class Passphrase:
    """A passphrase held for the duration of one run.

    Wrapping the secret keeps it out of reprs, tracebacks, and logs.
    """

    __slots__ = ("_secret",)

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Passphrase must not be empty")
        self._secret = secret

    def reveal(self) -> bytes:
        """Return the UTF-8 bytes of the passphrase."""
        return self._secret.encode("utf-8")

    def __repr__(self) -> str:
        return "Passphrase('********')"


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def _b64encode(data: bytes) -> bytes:
    """Standard base64 without padding, as age writes it."""
    return base64.b64encode(data).rstrip(b"=")


def _b64decode(text: bytes) -> bytes:
    """Strict inverse of :func:`_b64encode`."""
    if b"=" in text:
        raise CipherError("Malformed age header: padded base64")
    try:
        data = base64.b64decode(text + b"=" * (-len(text) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CipherError(f"Malformed age header: {exc}") from exc
    if _b64encode(data) != text:
        raise CipherError("Malformed age header: non-canonical base64")
    return data


def _wrap_lines(encoded: bytes) -> bytes:
    lines = [encoded[i:i + COLUMNS] for i in range(0, len(encoded), COLUMNS)]
    if len(encoded) % COLUMNS == 0:
        lines.append(b"")
    return b"".join(line + b"\n" for line in lines)


def _hkdf(ikm: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt or None,
        info=info,
    ).derive(ikm)


def _scrypt_key(passphrase: Passphrase, salt: bytes, work_factor: int) -> bytes:
    return Scrypt(
        salt=SCRYPT_LABEL + salt,
        length=32,
        n=2 ** work_factor,
        r=8,
        p=1,
    ).derive(passphrase.reveal())


def _header_mac(file_key: bytes, header: bytes) -> bytes:
    return hmac.new(_hkdf(file_key, b"", b"header"), header, hashlib.sha256).digest()


def _chunk_nonce(counter: int, last: bool) -> bytes:
    return counter.to_bytes(11, "big") + (b"\x01" if last else b"\x00")


# ---------------------------------------------------------------------------
# STREAM payload
# ---------------------------------------------------------------------------


def _seal_stream(key: bytes, plaintext: bytes) -> bytes:
    aead = ChaCha20Poly1305(key)
    chunks = [plaintext[i:i + CHUNK_SIZE] for i in range(0, len(plaintext), CHUNK_SIZE)] or [b""]
    sealed = bytearray()
    for counter, chunk in enumerate(chunks):
        sealed += aead.encrypt(_chunk_nonce(counter, counter == len(chunks) - 1), chunk, None)
    return bytes(sealed)


def _open_stream(key: bytes, payload: bytes) -> bytes:
    aead = ChaCha20Poly1305(key)
    sealed_size = CHUNK_SIZE + TAG_SIZE
    plaintext = bytearray()
    counter = 0
    offset = 0
    while True:
        chunk = payload[offset:offset + sealed_size]
        offset += len(chunk)
        last = offset >= len(payload)
        if len(chunk) < TAG_SIZE:
            raise CipherError("Truncated age payload")
        try:
            opened = aead.decrypt(_chunk_nonce(counter, last), chunk, None)
        except InvalidTag as exc:
            raise CipherError(f"Corrupt age payload (chunk {counter})") from exc
        if last and counter > 0 and not opened:
            raise CipherError("Malformed age payload: empty final chunk")
        plaintext += opened
        if last:
            return bytes(plaintext)
        counter += 1


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------


def _parse_header(ciphertext: bytes) -> tuple[list[tuple[list[bytes], bytes]], bytes, bytes, bytes]:
    """Split an age file into (stanzas, MAC'd header bytes, MAC, payload)."""
    if not ciphertext.startswith(AGE_INTRO):
        raise CipherError("Not an age v1 file")

    end = ciphertext.find(b"\n--- ")
    if end < 0:
        raise CipherError("Malformed age header: missing MAC line")
    header = ciphertext[:end + 4]
    mac_end = ciphertext.find(b"\n", end + 5)
    if mac_end < 0:
        raise CipherError("Malformed age header: unterminated MAC line")
    mac = _b64decode(ciphertext[end + 5:mac_end])
    payload = ciphertext[mac_end + 1:]

    lines = ciphertext[len(AGE_INTRO):end + 1].split(b"\n")[:-1]
    stanzas: list[tuple[list[bytes], bytes]] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if not line.startswith(b"-> "):
            raise CipherError("Malformed age header: expected a stanza")
        args = line[3:].split(b" ")
        i += 1
        body_lines = []
        while True:
            if i >= len(lines):
                raise CipherError("Malformed age header: unterminated stanza body")
            body_line = lines[i]
            i += 1
            if len(body_line) > COLUMNS:
                raise CipherError("Malformed age header: overlong stanza line")
            body_lines.append(body_line)
            if len(body_line) < COLUMNS:
                break
        stanzas.append((args, _b64decode(b"".join(body_lines))))

    return stanzas, header, mac, payload


def _unwrap_file_key(stanzas: list[tuple[list[bytes], bytes]], passphrase: Passphrase) -> bytes:
    if len(stanzas) != 1 or stanzas[0][0][:1] != [b"scrypt"]:
        raise CipherError("Not a passphrase-encrypted age file")

    args, body = stanzas[0]
    if len(args) != 3:
        raise CipherError("Malformed scrypt stanza")
    salt = _b64decode(args[1])
    if len(salt) != SALT_SIZE:
        raise CipherError("Malformed scrypt stanza: bad salt size")
    if not re.fullmatch(rb"[1-9][0-9]*", args[2]):
        raise CipherError("Malformed scrypt stanza: bad work factor")
    work_factor = int(args[2])
    if work_factor > MAX_WORK_FACTOR:
        raise CipherError(f"scrypt work factor {work_factor} exceeds limit {MAX_WORK_FACTOR}")
    if len(body) != FILE_KEY_SIZE + TAG_SIZE:
        raise CipherError("Malformed scrypt stanza: bad body size")

    wrap_key = _scrypt_key(passphrase, salt, work_factor)
    try:
        return ChaCha20Poly1305(wrap_key).decrypt(bytes(12), body, None)
    except InvalidTag as exc:
        raise CipherError("Incorrect passphrase") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def encrypt(
    plaintext: bytes,
    passphrase: Passphrase,
    work_factor: int = DEFAULT_WORK_FACTOR,
) -> bytes:
    """Encrypt bytes to an age file under a passphrase.

    Args:
        plaintext: Bytes to encrypt.
        passphrase: Passphrase to derive the wrapping key from.
        work_factor: log2 of the scrypt N parameter.

    Returns:
        The complete age file as bytes.

    Raises:
        CipherError: If the work factor is out of range.
    """
    if not 1 <= work_factor <= MAX_WORK_FACTOR:
        raise CipherError(f"scrypt work factor must be within 1..{MAX_WORK_FACTOR}")

    file_key = os.urandom(FILE_KEY_SIZE)
    salt = os.urandom(SALT_SIZE)
    wrapped = ChaCha20Poly1305(_scrypt_key(passphrase, salt, work_factor)).encrypt(
        bytes(12), file_key, None,
    )

    header = (
        AGE_INTRO
        + b"-> scrypt " + _b64encode(salt) + b" " + str(work_factor).encode("ascii") + b"\n"
        + _wrap_lines(_b64encode(wrapped))
        + b"---"
    )
    nonce = os.urandom(NONCE_SIZE)
    payload_key = _hkdf(file_key, nonce, b"payload")

    return (
        header + b" " + _b64encode(_header_mac(file_key, header)) + b"\n"
        + nonce + _seal_stream(payload_key, plaintext)
    )


def decrypt(ciphertext: bytes, passphrase: Passphrase) -> bytes:
    """Decrypt an age file encrypted under a passphrase.

    Args:
        ciphertext: The complete age file.
        passphrase: Passphrase it was encrypted with.

    Returns:
        The plaintext bytes.

    Raises:
        CipherError: On a wrong passphrase, a malformed file, or any
            authentication failure.
    """
    stanzas, header, mac, payload = _parse_header(ciphertext)
    file_key = _unwrap_file_key(stanzas, passphrase)

    if not hmac.compare_digest(_header_mac(file_key, header), mac):
        raise CipherError("age header MAC mismatch")
    if len(payload) < NONCE_SIZE:
        raise CipherError("Truncated age payload")

    nonce, sealed = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
    return _open_stream(_hkdf(file_key, nonce, b"payload"), sealed)


def seal_envelope(plaintext: bytes, plaintext_digest: str) -> bytes:
    """Prefix plaintext with the record carrying its digest."""
    return ENVELOPE_MAGIC + plaintext_digest.lower().encode("ascii") + b"\n" + plaintext


def open_envelope(payload: bytes) -> tuple[bytes, str]:
    """Split a decrypted payload into (plaintext, embedded digest).

    Raises:
        IntegrityError: If the digest record is missing or malformed.
    """
    match = _ENVELOPE_RE.match(payload)
    if match is None:
        raise IntegrityError("Decrypted payload carries no plaintext checksum")
    return payload[match.end():], match.group(1).decode("ascii")


class AgeCipher:
    """Cipher capability bound to one run's passphrase.

    Args:
        passphrase: Passphrase acquired for this run.
        work_factor: scrypt work factor used when encrypting.
    """

    def __init__(self, passphrase: Passphrase, work_factor: int = DEFAULT_WORK_FACTOR) -> None:
        self._passphrase = passphrase
        self.work_factor = work_factor

    def encrypt(self, plaintext: bytes) -> bytes:
        return encrypt(plaintext, self._passphrase, self.work_factor)

    def decrypt(self, ciphertext: bytes) -> bytes:
        return decrypt(ciphertext, self._passphrase)

    def seal(self, plaintext: bytes, plaintext_digest: str) -> bytes:
        """Encrypt plaintext together with its digest."""
        return self.encrypt(seal_envelope(plaintext, plaintext_digest))

    def unseal(self, ciphertext: bytes) -> tuple[bytes, str]:
        """Decrypt an envelope, returning (plaintext, embedded digest)."""
        return open_envelope(self.decrypt(ciphertext))
