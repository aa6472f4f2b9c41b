"""
Encryption utilities for backup artifacts.

Artifacts are encrypted with AES-256-GCM in independently authenticated
frames so arbitrarily large dumps can be encrypted and decrypted as streams.
The key is derived from a passphrase with PBKDF2; the passphrase itself is
never stored, only a reference to where it can be found.

Artifact layout:
    header:  magic 'DBKE' | version (1) | PBKDF2 iterations (4) | salt (16) | nonce prefix (8)
    frames:  final flag (1) | ciphertext length (4) | ciphertext + tag

The header and the final flag are authenticated with every frame, so a
modified header, reordered or dropped frames and truncation are all detected.
"""

import os
import struct
from pathlib import Path
from typing import Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dbkeep.backup.errors import AuthenticationFailure, ConfigurationError


MAGIC = b'DBKE'
FORMAT_VERSION = 1
FRAME_SIZE = 64 * 1024
TAG_SIZE = 16
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+
MAX_ITERATIONS = 5000000

_HEADER = struct.Struct('>4sBI16s8s')
_FRAME = struct.Struct('>BI')
_COUNTER = struct.Struct('>I')


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """
    Derive a 32-byte AES key from a passphrase using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Secret passphrase
        salt: Per-artifact random salt
        iterations: PBKDF2 iteration count

    Returns:
        Raw 32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def resolve_key_reference(key_ref: str) -> str:
    """
    Resolve an encryption key reference to the passphrase it points at.

    Supported forms:
        env:NAME      read environment variable NAME
        file:/path    read the file (surrounding whitespace stripped)
        pass:secret   literal passphrase

    Raises:
        ConfigurationError: If the reference is malformed or the key is missing
    """
    scheme, sep, value = (key_ref or '').partition(':')
    if not sep or not value:
        raise ConfigurationError(f"Invalid encryption key reference: {key_ref!r}")

    if scheme == 'env':
        passphrase = os.environ.get(value)
        if not passphrase:
            raise ConfigurationError(f"Encryption key variable is not set: {value}")
        return passphrase

    if scheme == 'file':
        try:
            passphrase = Path(value).expanduser().read_text().strip()
        except OSError as e:
            raise ConfigurationError(f"Cannot read encryption key file {value}: {e}")
        if not passphrase:
            raise ConfigurationError(f"Encryption key file is empty: {value}")
        return passphrase

    if scheme == 'pass':
        return value

    raise ConfigurationError(
        f"Unknown key reference scheme {scheme!r}. Valid options: ['env', 'file', 'pass']"
    )


class StreamCipher:
    """Encrypts and decrypts byte streams with a passphrase-derived key."""

    def __init__(self, passphrase: str, iterations: int = DEFAULT_ITERATIONS):
        if not passphrase:
            raise ConfigurationError("Encryption passphrase must not be empty")
        self._passphrase = passphrase
        self.iterations = iterations

    def encrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Encrypt a stream of plaintext chunks.

        Plaintext is re-framed into FRAME_SIZE frames. One frame is always
        held back so the last one can be marked final, even for an empty
        input stream.
        """
        salt = os.urandom(16)
        prefix = os.urandom(8)
        aesgcm = AESGCM(derive_key(self._passphrase, salt, self.iterations))
        header = _HEADER.pack(MAGIC, FORMAT_VERSION, self.iterations, salt, prefix)
        yield header

        buffer = bytearray()
        counter = 0
        for chunk in chunks:
            buffer += chunk
            while len(buffer) > FRAME_SIZE:
                yield self._seal(aesgcm, header, prefix, counter, bytes(buffer[:FRAME_SIZE]), False)
                del buffer[:FRAME_SIZE]
                counter += 1

        yield self._seal(aesgcm, header, prefix, counter, bytes(buffer), True)

    def decrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Decrypt a stream produced by encrypt_stream.

        Each frame is authenticated before any of its plaintext is yielded.

        Raises:
            AuthenticationFailure: On a wrong key, tampering, truncation or
                any data that is not a dbkeep encrypted stream
        """
        source = iter(chunks)
        buffer = bytearray()

        def fill(size: int) -> bool:
            while len(buffer) < size:
                try:
                    buffer.extend(next(source))
                except StopIteration:
                    return False
            return True

        if not fill(_HEADER.size):
            raise AuthenticationFailure("Artifact is too short to be an encrypted stream")

        header = bytes(buffer[:_HEADER.size])
        del buffer[:_HEADER.size]
        magic, version, iterations, salt, prefix = _HEADER.unpack(header)

        if magic != MAGIC:
            raise AuthenticationFailure("Artifact is not a dbkeep encrypted stream")
        if version != FORMAT_VERSION:
            raise AuthenticationFailure(f"Unsupported encryption format version: {version}")
        if not 1 <= iterations <= MAX_ITERATIONS:
            raise AuthenticationFailure(f"Implausible key derivation iterations: {iterations}")

        aesgcm = AESGCM(derive_key(self._passphrase, salt, iterations))
        counter = 0

        while True:
            if not fill(_FRAME.size):
                raise AuthenticationFailure("Encrypted stream is truncated")
            final, length = _FRAME.unpack(bytes(buffer[:_FRAME.size]))
            if final not in (0, 1) or not TAG_SIZE <= length <= FRAME_SIZE + TAG_SIZE:
                raise AuthenticationFailure(f"Malformed encrypted frame {counter}")
            if not fill(_FRAME.size + length):
                raise AuthenticationFailure("Encrypted stream is truncated")

            ciphertext = bytes(buffer[_FRAME.size:_FRAME.size + length])
            del buffer[:_FRAME.size + length]

            nonce = prefix + _COUNTER.pack(counter)
            try:
                plaintext = aesgcm.decrypt(nonce, ciphertext, header + bytes([final]))
            except InvalidTag:
                raise AuthenticationFailure(f"Authentication failed on frame {counter}")

            if plaintext:
                yield plaintext
            if final:
                break
            counter += 1

        if buffer or fill(1):
            raise AuthenticationFailure("Unexpected data after the final encrypted frame")

    @staticmethod
    def _seal(aesgcm: AESGCM, header: bytes, prefix: bytes, counter: int, plaintext: bytes, final: bool) -> bytes:
        if counter > 0xFFFFFFFF:
            raise AuthenticationFailure("Stream too large for a single encryption nonce space")
        flag = 1 if final else 0
        nonce = prefix + _COUNTER.pack(counter)
        ciphertext = aesgcm.encrypt(nonce, plaintext, header + bytes([flag]))
        return _FRAME.pack(flag, len(ciphertext)) + ciphertext
