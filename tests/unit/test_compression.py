"""
Unit tests for streaming compression (dbkeep/backup/compression.py).

Tests CompressionStage for every supported algorithm.
"""

import os

import pytest

from dbkeep.backup.compression import LEVELS, CompressionStage
from dbkeep.backup.errors import ConfigurationError, IntegrityError


SQL = b"INSERT INTO accounts (id, name) VALUES (1, 'alice'), (2, 'bob');\n" * 2000


def chunked(data: bytes, size: int = 4096):
    return [data[i:i + size] for i in range(0, len(data), size)]


def compress(stage: CompressionStage, data: bytes) -> bytes:
    return b''.join(stage.apply(chunked(data)))


class TestCompressionStage:
    """Test compressing and decompressing streams."""

    @pytest.mark.parametrize('algorithm', ['gzip', 'bz2', 'xz', 'zstd'])
    def test_round_trip_shrinks_repetitive_dump(self, algorithm):
        stage = CompressionStage(algorithm)
        compressed = compress(stage, SQL)

        assert len(compressed) < len(SQL) // 10
        assert b''.join(stage.reverse(chunked(compressed, 1000))) == SQL

    def test_none_is_pass_through(self):
        stage = CompressionStage('none')
        assert compress(stage, SQL) == SQL
        assert b''.join(stage.reverse([SQL])) == SQL

    def test_gzip_output_is_standard_gzip(self):
        import gzip

        compressed = compress(CompressionStage('gzip'), SQL)
        assert gzip.decompress(compressed) == SQL

    def test_empty_stream(self):
        stage = CompressionStage('zstd')
        compressed = compress(stage, b'')
        assert b''.join(stage.reverse([compressed])) == b''

    def test_random_data_round_trip(self):
        data = os.urandom(100000)
        stage = CompressionStage('xz', 1)
        assert b''.join(stage.reverse(chunked(compress(stage, data)))) == data

    def test_default_levels(self):
        for algorithm, (_, _, default) in LEVELS.items():
            assert CompressionStage(algorithm).level == default


class TestCompressionErrors:
    """Test invalid configuration and corrupt input."""

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigurationError, match='Invalid compression algorithm'):
            CompressionStage('lz4')

    @pytest.mark.parametrize('algorithm,level', [('gzip', 10), ('bz2', 0), ('zstd', 23), ('xz', -1)])
    def test_level_out_of_range(self, algorithm, level):
        with pytest.raises(ConfigurationError, match='level'):
            CompressionStage(algorithm, level)

    def test_corrupt_gzip(self):
        with pytest.raises(IntegrityError, match='corrupt'):
            b''.join(CompressionStage('gzip').reverse([b'definitely not gzip data']))

    def test_corrupt_bz2(self):
        with pytest.raises(IntegrityError):
            b''.join(CompressionStage('bz2').reverse([b'BZh9 but not really']))

    def test_truncated_gzip(self):
        compressed = compress(CompressionStage('gzip'), os.urandom(50000))
        with pytest.raises(IntegrityError, match='truncated'):
            b''.join(CompressionStage('gzip').reverse([compressed[:len(compressed) // 2]]))

    def test_trailing_garbage_after_xz(self):
        compressed = compress(CompressionStage('xz'), SQL)
        with pytest.raises(IntegrityError):
            b''.join(CompressionStage('xz').reverse([compressed + b'garbage']))
