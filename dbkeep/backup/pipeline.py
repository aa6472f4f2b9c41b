"""
Composable streaming pipeline applied between the engine and storage.

Backup:   raw dump -> compress -> encrypt -> checksum -> storage
Restore:  storage -> checksum verify -> decrypt -> decompress -> engine

Stages are chained generators; nothing holds more than a frame or two of
the stream at a time.
"""

import hashlib
import hmac
from typing import Callable, Iterable, Iterator, List, Optional

from dbkeep.utils.crypto import DEFAULT_ITERATIONS, StreamCipher, resolve_key_reference
from .compression import CompressionStage
from .errors import ChecksumMismatch, ConfigurationError
from .job import COMPRESSION, ENCRYPTION, PipelineConfig


class ChecksumStage:
    """Hashes the bytes that pass through without changing them."""

    kind = 'checksum'
    algorithm = 'sha256'

    def __init__(self):
        self._hash = hashlib.sha256()
        self.bytes_seen = 0
        self.hexdigest: Optional[str] = None

    def apply(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            self._hash.update(chunk)
            self.bytes_seen += len(chunk)
            yield chunk
        self.hexdigest = self._hash.hexdigest()

    @classmethod
    def verify(cls, chunks: Iterable[bytes], expected: str) -> str:
        """
        Consume a stream and compare its hash with an expected digest.

        Returns:
            The computed hex digest

        Raises:
            ChecksumMismatch: If the digests differ
        """
        stage = cls()
        for _ in stage.apply(chunks):
            pass
        if not hmac.compare_digest(stage.hexdigest, (expected or '').lower()):
            raise ChecksumMismatch(
                "Artifact checksum does not match the catalog",
                details={'expected': expected, 'actual': stage.hexdigest},
            )
        return stage.hexdigest


class EncryptionStage:
    """Authenticated encryption stage (AES-256-GCM frames)."""

    kind = 'encryption'
    algorithm = 'aes-256-gcm'

    def __init__(self, passphrase: str, iterations: int = DEFAULT_ITERATIONS):
        self._cipher = StreamCipher(passphrase, iterations)

    def apply(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        return self._cipher.encrypt_stream(chunks)

    def reverse(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        return self._cipher.decrypt_stream(chunks)

    def __repr__(self):
        return f'<EncryptionStage {self.algorithm}>'


class Pipeline:
    """
    Ordered transform stages plus a trailing checksum.

    A Pipeline instance is single-use in the backup direction because the
    checksum stage accumulates state; build a new one per job.
    """

    def __init__(self, stages: List):
        self.stages = list(stages)
        self.checksum = ChecksumStage()

    @classmethod
    def build(
        cls,
        config: PipelineConfig,
        key_resolver: Callable[[str], str] = resolve_key_reference,
        iterations: int = DEFAULT_ITERATIONS
    ) -> 'Pipeline':
        """
        Build the stages described by a PipelineConfig.

        Args:
            config: Validated pipeline configuration
            key_resolver: Turns an encryption key reference into a passphrase
            iterations: PBKDF2 iterations for newly encrypted artifacts

        Raises:
            ConfigurationError: On unknown algorithms or unresolved keys
        """
        stages = []
        for descriptor in config.stages:
            if descriptor.kind == COMPRESSION:
                stages.append(CompressionStage(descriptor.algorithm, descriptor.level))
            elif descriptor.kind == ENCRYPTION:
                if descriptor.algorithm != EncryptionStage.algorithm:
                    raise ConfigurationError(
                        f"Invalid encryption algorithm: {descriptor.algorithm}. "
                        f"Valid options: ['{EncryptionStage.algorithm}']"
                    )
                stages.append(EncryptionStage(key_resolver(descriptor.key_ref), iterations))
        return cls(stages)

    def apply(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Backup direction. The checksum is available once the stream is exhausted."""
        stream = chunks
        for stage in self.stages:
            stream = stage.apply(stream)
        return self.checksum.apply(stream)

    def reverse(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Restore direction. The caller verifies the checksum before calling this."""
        stream = chunks
        for stage in reversed(self.stages):
            stream = stage.reverse(stream)
        return iter(stream)

    def __repr__(self):
        return f'<Pipeline {self.stages}>'
