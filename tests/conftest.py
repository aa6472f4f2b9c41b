"""
Shared pytest fixtures for dbkeep tests.

This module provides fixtures for:
- Flask app, CLI runner and test client
- Catalog database with in-memory SQLite
- Storage settings and local storage in a temporary directory
- A fake S3 client with failure injection for multipart scenarios
- An in-memory engine adapter
- Backup job fixtures
"""

import hashlib
import io
import os
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
import boto3
from botocore.exceptions import ClientError
from moto import mock_aws

from dbkeep import create_app, db as _db
from dbkeep.backup.catalog import Catalog
from dbkeep.backup.engines import EngineAdapter
from dbkeep.backup.errors import DumpError
from dbkeep.backup.job import (
    BackupJob,
    DatabaseConfig,
    EngineKind,
    PipelineConfig,
    RetentionPolicy,
    StageDescriptor,
    StorageLocation,
    StorageSettings,
)
from dbkeep.backup.storage import LocalStorage


PASSPHRASE = 'correct horse battery staple'


def client_error(code: str, status: int = 400, operation: str = 'UploadPart') -> ClientError:
    """Build a botocore ClientError the way the S3 client raises it."""
    return ClientError(
        {
            'Error': {'Code': code, 'Message': f'{code} (injected)'},
            'ResponseMetadata': {'HTTPStatusCode': status},
        },
        operation,
    )


class FakeS3Client:
    """
    In-memory stand-in for the boto3 S3 client.

    Moto enforces the 5 MiB minimum part size, so multipart scenarios with
    many small parts run against this fake instead. Failures are injected per
    (operation, part number) and raised in order, one per call.
    """

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, List[Exception]] = {}
        self.fail_after_complete: Optional[Exception] = None
        self.short_reads = 0
        self._next_upload = 0

    def fail(self, operation: str, *errors: Exception, part: Optional[int] = None):
        self.failures.setdefault((operation, part), []).extend(errors)

    def _call(self, operation: str, part: Optional[int] = None):
        self.calls.append((operation, part))
        pending = self.failures.get((operation, part))
        if pending:
            raise pending.pop(0)

    def create_multipart_upload(self, Bucket, Key):
        self._call('create_multipart_upload')
        self._next_upload += 1
        upload_id = f'upload-{self._next_upload}'
        self.uploads[upload_id] = {'Key': Key, 'parts': {}}
        return {'UploadId': upload_id}

    def upload_part(self, Bucket, Key, PartNumber, UploadId, Body, ContentMD5):
        self._call('upload_part', PartNumber)
        if UploadId not in self.uploads:
            raise client_error('NoSuchUpload', 404)
        etag = '"%s"' % hashlib.md5(Body).hexdigest()
        self.uploads[UploadId]['parts'][PartNumber] = (etag, Body)
        return {'ETag': etag}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._call('complete_multipart_upload')
        upload = self.uploads.pop(UploadId)
        stored = upload['parts']
        data = b''.join(stored[part['PartNumber']][1] for part in MultipartUpload['Parts'])
        self.objects[Key] = data
        if self.fail_after_complete is not None:
            raise self.fail_after_complete
        return {'Key': Key}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._call('abort_multipart_upload')
        if UploadId not in self.uploads:
            raise client_error('NoSuchUpload', 404, 'AbortMultipartUpload')
        del self.uploads[UploadId]
        return {}

    def head_object(self, Bucket, Key):
        self._call('head_object')
        if Key not in self.objects:
            raise client_error('404', 404, 'HeadObject')
        return {'ContentLength': len(self.objects[Key])}

    def get_object(self, Bucket, Key, Range):
        self._call('get_object')
        start, end = (int(value) for value in Range.replace('bytes=', '').split('-'))
        data = self.objects[Key][start:end + 1]
        if self.short_reads:
            self.short_reads -= 1
            data = data[:len(data) // 2]
        return {'Body': io.BytesIO(data)}

    def delete_object(self, Bucket, Key):
        self._call('delete_object')
        self.objects.pop(Key, None)
        return {}

    def get_paginator(self, name):
        client = self

        class Paginator:
            def paginate(self, Bucket, Prefix=''):
                if name == 'list_objects_v2':
                    yield {'Contents': [
                        {'Key': key, 'LastModified': None, 'Size': len(data)}
                        for key, data in sorted(client.objects.items()) if key.startswith(Prefix)
                    ]}
                else:
                    yield {'Uploads': [
                        {'Key': upload['Key'], 'UploadId': upload_id}
                        for upload_id, upload in client.uploads.items() if upload['Key'].startswith(Prefix)
                    ]}

        return Paginator()

    def count(self, operation: str, part: Optional[int] = None) -> int:
        return sum(1 for call in self.calls if call == (operation, part))


class MemoryAdapter(EngineAdapter):
    """Engine adapter that dumps a fixed list of chunks and records restores."""

    kind = EngineKind.POSTGRES

    def __init__(self, chunks=None, fail_after: Optional[int] = None, on_chunk=None):
        self.chunks = list(chunks or [])
        self.fail_after = fail_after
        self.on_chunk = on_chunk
        self.restored = bytearray()
        self.restore_calls = 0
        self.restore_options = None
        self.closed_early = False

    @property
    def dump(self) -> bytes:
        return b''.join(self.chunks)

    def check_connection(self, db):
        return 'PostgreSQL 16.0 (memory)'

    def produce_dump_stream(self, db):
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise DumpError("pg_dump failed with exit code 1: connection lost")
                if self.on_chunk:
                    self.on_chunk(index)
                yield chunk
        except GeneratorExit:
            self.closed_early = True
            raise

    def consume_restore_stream(self, db, chunks, options=None):
        self.restore_calls += 1
        self.restore_options = options
        for chunk in chunks:
            self.restored += chunk


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    app.config.update({
        'LOCAL_STORAGE_DIR': str(tmp_path / 'backups'),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'DBKEEP_PART_SIZE_MB': '1',
        'POSTGRES_HOST': 'db.internal',
        'POSTGRES_USERNAME': 'backup',
        'POSTGRES_PASSWORD': 'secret',
        'POSTGRES_DATABASE': 'app',
    })
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Catalog database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def catalog(db):
    return Catalog()


@pytest.fixture
def storage_settings(tmp_path):
    """Local storage settings with small parts so tests exercise multipart paths."""
    return StorageSettings(
        location=StorageLocation(bucket='local'),
        backend='local',
        local_root=str(tmp_path / 'store'),
        part_size=4096,
        download_window=2048,
    )


@pytest.fixture
def local_storage(storage_settings):
    return LocalStorage(storage_settings)


@pytest.fixture
def s3_settings():
    """S3 settings with tiny parts and no backoff delay."""
    return StorageSettings(
        location=StorageLocation(bucket='test-bucket', prefix='backups'),
        backend='s3',
        access_key='testing',
        secret_key='testing',
        part_size=10,
        download_window=256,
        max_attempts=3,
        backoff_initial=0.01,
        backoff_max=0.02,
    )


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def database_config():
    return DatabaseConfig(
        engine=EngineKind.POSTGRES,
        host='db.internal',
        port=5432,
        username='backup',
        password='secret',
        database='app',
    )


@pytest.fixture
def dump_chunks():
    """About 300 KB of compressible, non-trivial dump data in uneven chunks."""
    chunks = []
    for index in range(60):
        row = f"INSERT INTO events VALUES ({index}, 'payload-{index * 7919 % 1000}');\n".encode()
        chunks.append(row * (40 + index % 13) + os.urandom(64))
    return chunks


@pytest.fixture
def memory_adapter(dump_chunks):
    return MemoryAdapter(dump_chunks)


@pytest.fixture
def encrypted_pipeline():
    return PipelineConfig((
        StageDescriptor(kind='compression', algorithm='gzip', level=6),
        StageDescriptor(kind='encryption', algorithm='aes-256-gcm', key_ref='env:DBKEEP_TEST_KEY'),
    ))


@pytest.fixture
def backup_job(database_config, storage_settings, encrypted_pipeline):
    return BackupJob(
        database=database_config,
        storage=storage_settings,
        pipeline=encrypted_pipeline,
    )


@pytest.fixture
def retention_job(database_config, storage_settings):
    return BackupJob(
        database=database_config,
        storage=storage_settings,
        pipeline=PipelineConfig((StageDescriptor(kind='compression', algorithm='gzip'),)),
        retention=RetentionPolicy(min_keep=1, max_age=timedelta(days=1)),
    )


@pytest.fixture
def key_resolver():
    return lambda key_ref: PASSPHRASE
