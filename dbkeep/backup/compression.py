"""
Streaming compression for backup artifacts.

Supports:
- gzip: zlib with gzip framing
- bz2: bzip2
- xz: LZMA (xz container)
- zstd: Zstandard
- none: pass-through
"""

import bz2
import lzma
import zlib
from typing import Iterable, Iterator, Optional

import zstandard as zstd

from .errors import ConfigurationError, IntegrityError


# algorithm -> (min level, max level, default level)
LEVELS = {
    'gzip': (0, 9, 6),
    'bz2': (1, 9, 9),
    'xz': (0, 9, 6),
    'zstd': (1, 22, 3),
    'none': (0, 0, 0),
}

_DECOMPRESSION_ERRORS = (zlib.error, OSError, EOFError, lzma.LZMAError, zstd.ZstdError)


class CompressionStage:
    """
    Stateful stream compressor. reverse() is the exact inverse of apply().
    """

    kind = 'compression'

    def __init__(self, algorithm: str = 'gzip', level: Optional[int] = None):
        if algorithm not in LEVELS:
            raise ConfigurationError(
                f"Invalid compression algorithm: {algorithm}. "
                f"Valid options: {list(LEVELS.keys())}"
            )

        low, high, default = LEVELS[algorithm]
        if level is None:
            level = default
        if not low <= level <= high:
            raise ConfigurationError(
                f"Invalid {algorithm} compression level {level}: expected {low}-{high}"
            )

        self.algorithm = algorithm
        self.level = level

    def apply(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        if self.algorithm == 'none':
            yield from chunks
            return

        compressor = self._compressor()
        for chunk in chunks:
            output = compressor.compress(chunk)
            if output:
                yield output

        tail = compressor.flush()
        if tail:
            yield tail

    def reverse(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        if self.algorithm == 'none':
            yield from chunks
            return

        decompressor = self._decompressor()
        try:
            for chunk in chunks:
                output = decompressor.decompress(chunk)
                if output:
                    yield output

            if self.algorithm == 'gzip':
                tail = decompressor.flush()
                if tail:
                    yield tail
        except _DECOMPRESSION_ERRORS as e:
            raise IntegrityError(f"Compressed {self.algorithm} stream is corrupt: {e}")

        # zstd decompressobj exposes no reliable eof flag across releases;
        # for encrypted artifacts truncation is already caught by the cipher.
        if self.algorithm != 'zstd':
            if not decompressor.eof:
                raise IntegrityError(f"Compressed {self.algorithm} stream is truncated")
            if decompressor.unused_data:
                raise IntegrityError(f"Unexpected data after the {self.algorithm} stream")

    def _compressor(self):
        if self.algorithm == 'gzip':
            return zlib.compressobj(self.level, zlib.DEFLATED, 31)
        if self.algorithm == 'bz2':
            return bz2.BZ2Compressor(self.level)
        if self.algorithm == 'xz':
            return lzma.LZMACompressor(format=lzma.FORMAT_XZ, preset=self.level)
        return zstd.ZstdCompressor(level=self.level).compressobj()

    def _decompressor(self):
        if self.algorithm == 'gzip':
            return zlib.decompressobj(31)
        if self.algorithm == 'bz2':
            return bz2.BZ2Decompressor()
        if self.algorithm == 'xz':
            return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
        return zstd.ZstdDecompressor().decompressobj()

    def __repr__(self):
        return f'<CompressionStage {self.algorithm} level={self.level}>'
