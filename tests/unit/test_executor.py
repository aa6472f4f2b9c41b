"""
Unit tests for backup and restore executors (dbkeep/backup/executor.py).

Tests complete workflows end to end against local storage or the fake S3
client, with an in-memory engine adapter.
"""

import hashlib
import re
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from dbkeep.backup.errors import (
    AuthenticationFailure,
    CatalogError,
    ChecksumMismatch,
    ConfigurationError,
    DatabaseConnectionError,
    DumpError,
    IntegrityError,
    JobCancelled,
    RestoreError,
    TransferError,
    TransferErrorKind,
)
from dbkeep.backup.executor import (
    BackupExecutor,
    BackupState,
    RestoreExecutor,
    RestoreState,
    repair,
    verify_backup,
)
from dbkeep.backup.engines import RestoreOptions
from dbkeep.backup.job import PipelineConfig
from dbkeep.backup.storage import S3Storage
from dbkeep.models import BackupRecord, utcnow

from conftest import MemoryAdapter, client_error


class UnreachableAdapter(MemoryAdapter):
    def check_connection(self, db):
        raise DatabaseConnectionError("Cannot connect to postgres at db.internal:5432: connection refused")


class RejectingAdapter(MemoryAdapter):
    def consume_restore_stream(self, db, chunks, options=None):
        self.restore_calls += 1
        next(iter(chunks))
        raise RestoreError("psql rejected the restore stream (exit code 3): ERROR:  relation exists")


class FlakyDownloads:
    """Storage wrapper whose first download breaks after one window."""

    def __init__(self, storage):
        self.storage = storage
        self.offsets = []
        self.failed = False

    def __getattr__(self, name):
        return getattr(self.storage, name)

    def download(self, key, offset=0):
        self.offsets.append(offset)
        for chunk in self.storage.download(key, offset):
            yield chunk
            if not self.failed:
                self.failed = True
                raise TransferError('S3 get_object failed: connection reset', TransferErrorKind.TRANSIENT)


def run_backup(job, catalog, storage, adapter, key_resolver):
    return BackupExecutor(job, catalog, storage, adapter, key_resolver=key_resolver).execute()


class TestBackupExecutor:
    """Test the backup workflow."""

    def test_successful_backup(self, backup_job, catalog, local_storage, memory_adapter, key_resolver):
        result = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver)

        assert result.succeeded, result.error
        assert result.transitions == [
            BackupState.CONNECTING,
            BackupState.DUMPING,
            BackupState.TRANSFERRING,
            BackupState.VERIFYING,
            BackupState.CATALOGED,
            BackupState.DONE,
        ]

        record = result.record
        assert re.match(r'^postgres-db\.internal-5432-app/\d{8}T\d{6}Z-[0-9a-f]{8}\.sql\.gz\.enc$', record.storage_key)
        assert record.job_id == backup_job.job_id
        assert record.pipeline == backup_job.pipeline.to_json()

        stored = b''.join(local_storage.download(record.storage_key))
        assert record.size_bytes == len(stored)
        assert record.checksum == hashlib.sha256(stored).hexdigest()
        assert memory_adapter.dump not in stored
        assert catalog.markers() == []
        assert local_storage.list_pending_uploads() == []

    def test_round_trip_restores_identical_dump(
        self, backup_job, catalog, local_storage, memory_adapter, database_config, key_resolver
    ):
        record = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver).record
        target = MemoryAdapter()

        result = RestoreExecutor(
            record.id, catalog, local_storage,
            adapter=target, database=database_config, key_resolver=key_resolver,
        ).execute()

        assert result.succeeded, result.error
        assert result.transitions == [
            RestoreState.FETCHING, RestoreState.VERIFYING, RestoreState.RESTORING, RestoreState.DONE,
        ]
        assert bytes(target.restored) == memory_adapter.dump
        assert result.checksum == record.checksum
        assert result.size_bytes == record.size_bytes

    def test_uncompressed_unencrypted_round_trip(
        self, backup_job, catalog, local_storage, memory_adapter, database_config, key_resolver
    ):
        job = replace(backup_job, pipeline=PipelineConfig())
        record = run_backup(job, catalog, local_storage, memory_adapter, key_resolver).record

        assert record.storage_key.endswith('.sql')
        assert b''.join(local_storage.download(record.storage_key)) == memory_adapter.dump

        target = MemoryAdapter()
        RestoreExecutor(record.id, catalog, local_storage, adapter=target, database=database_config).execute()
        assert bytes(target.restored) == memory_adapter.dump

    def test_connection_failure(self, backup_job, catalog, local_storage, dump_chunks, key_resolver):
        result = run_backup(backup_job, catalog, local_storage, UnreachableAdapter(dump_chunks), key_resolver)

        assert result.state == BackupState.FAILED
        assert result.transitions == [BackupState.CONNECTING, BackupState.FAILED]
        assert isinstance(result.error, DatabaseConnectionError)
        assert result.error.exit_code == 3
        assert result.error.stage == 'connecting'
        assert result.error.job_id == backup_job.job_id
        assert local_storage.list_pending_uploads() == []

    def test_dump_failure_aborts_upload(self, backup_job, catalog, local_storage, dump_chunks, key_resolver):
        adapter = MemoryAdapter(dump_chunks, fail_after=10)

        result = run_backup(backup_job, catalog, local_storage, adapter, key_resolver)

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, DumpError)
        assert result.error.exit_code == 6
        assert result.error.stage == 'dumping'
        assert catalog.count() == 0
        assert catalog.markers() == []
        assert local_storage.list_pending_uploads() == []
        assert local_storage.list('') == []

    def test_transfer_failure_aborts_upload(
        self, backup_job, catalog, s3_settings, fake_s3, memory_adapter, key_resolver
    ):
        storage = S3Storage(replace(s3_settings, part_size=1024), client=fake_s3, sleep=lambda s: None)
        job = replace(backup_job, storage=storage.settings)
        fake_s3.fail('upload_part', client_error('AccessDenied', 403), part=3)

        result = run_backup(job, catalog, storage, memory_adapter, key_resolver)

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, TransferError)
        assert result.error.kind == TransferErrorKind.PERMANENT
        assert result.error.exit_code == 4
        assert result.error.stage == 'transferring'
        assert catalog.count() == 0
        assert catalog.markers() == []
        assert fake_s3.uploads == {}
        assert fake_s3.objects == {}
        assert fake_s3.count('abort_multipart_upload') == 1

    def test_transient_part_failures_are_retried(
        self, backup_job, catalog, s3_settings, fake_s3, memory_adapter, key_resolver
    ):
        storage = S3Storage(replace(s3_settings, part_size=1024), client=fake_s3, sleep=lambda s: None)
        job = replace(backup_job, storage=storage.settings)
        fake_s3.fail('upload_part', client_error('SlowDown', 503), client_error('SlowDown', 503), part=3)

        result = run_backup(job, catalog, storage, memory_adapter, key_resolver)

        assert result.succeeded, result.error
        assert fake_s3.count('upload_part', 3) == 3
        assert fake_s3.count('upload_part', 2) == 1
        assert result.record.storage_key.startswith('backups/')
        assert hashlib.sha256(fake_s3.objects[result.record.storage_key]).hexdigest() == result.record.checksum

    @pytest.mark.parametrize('finalize_error', [None, client_error('InternalError', 500, 'CompleteMultipartUpload')])
    def test_failed_size_check_after_finalize_deletes_object(
        self, backup_job, catalog, s3_settings, fake_s3, memory_adapter, key_resolver, finalize_error
    ):
        storage = S3Storage(replace(s3_settings, part_size=1024), client=fake_s3, sleep=lambda s: None)
        job = replace(backup_job, storage=storage.settings)
        fake_s3.fail_after_complete = finalize_error
        fake_s3.fail('head_object', client_error('AccessDenied', 403, 'HeadObject'))

        result = run_backup(job, catalog, storage, memory_adapter, key_resolver)

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, TransferError)
        assert result.error.stage == 'transferring'
        assert catalog.count() == 0
        assert catalog.markers() == []
        assert fake_s3.uploads == {}
        assert fake_s3.objects == {}
        assert fake_s3.count('delete_object') == 1

    def test_catalog_failure_after_commit_deletes_object(
        self, backup_job, catalog, local_storage, memory_adapter, key_resolver, monkeypatch
    ):
        def refuse(entry, upload_id=None):
            raise CatalogError(f"Storage key already catalogued: {entry.storage_key}")

        monkeypatch.setattr(catalog, 'record', refuse)

        result = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver)

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, CatalogError)
        assert result.error.stage == 'verifying'
        assert catalog.count() == 0
        assert catalog.markers() == []
        assert local_storage.list('') == []
        assert local_storage.list_pending_uploads() == []

    def test_size_mismatch_after_commit_deletes_object(
        self, backup_job, catalog, local_storage, memory_adapter, key_resolver
    ):
        storage = MagicMock(wraps=local_storage)
        storage.complete_upload.side_effect = lambda session: local_storage.complete_upload(session) + 1

        result = run_backup(backup_job, catalog, storage, memory_adapter, key_resolver)

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, IntegrityError)
        assert result.error.exit_code == 5
        assert result.error.stage == 'verifying'
        assert catalog.count() == 0
        assert local_storage.list('') == []
        storage.delete.assert_called_once()

    def test_cancellation(self, backup_job, catalog, local_storage, dump_chunks, key_resolver):
        adapter = MemoryAdapter(dump_chunks)
        executor = BackupExecutor(backup_job, catalog, local_storage, adapter, key_resolver=key_resolver)
        adapter.on_chunk = lambda index: executor.cancel() if index == 5 else None

        result = executor.execute()

        assert result.state == BackupState.FAILED
        assert isinstance(result.error, JobCancelled)
        assert result.error.exit_code == 130
        assert adapter.closed_early
        assert catalog.count() == 0
        assert local_storage.list_pending_uploads() == []

    def test_retention_sweep_after_backup(
        self, retention_job, catalog, local_storage, memory_adapter, key_resolver
    ):
        session = local_storage.begin_upload('old/backup.sql.gz')
        local_storage.upload_part(session, 1, b'old dump')
        local_storage.complete_upload(session)
        old = catalog.record(BackupRecord(
            target=retention_job.target,
            engine='postgres',
            bucket='local',
            storage_key='old/backup.sql.gz',
            size_bytes=8,
            checksum=session.sha256,
            pipeline='[]',
            created_at=utcnow() - timedelta(days=3),
        ))

        result = run_backup(retention_job, catalog, local_storage, memory_adapter, key_resolver)

        assert result.succeeded, result.error
        assert result.transitions[-2:] == [BackupState.RETENTION_SWEEP, BackupState.DONE]
        assert result.retention['deleted'] == [old.id]
        assert [r.id for r in catalog.list()] == [result.record.id]
        assert not local_storage.exists('old/backup.sql.gz')

    def test_missing_encryption_key_fails_before_upload(self, backup_job, catalog, local_storage, memory_adapter):
        def resolver(key_ref):
            raise ConfigurationError(f"Encryption key environment variable not set: {key_ref}")

        result = run_backup(backup_job, catalog, local_storage, memory_adapter, resolver)

        assert result.state == BackupState.FAILED
        assert result.error.exit_code == 2
        assert local_storage.list_pending_uploads() == []


class TestRestoreExecutor:
    """Test the restore workflow."""

    @pytest.fixture
    def record(self, backup_job, catalog, local_storage, memory_adapter, key_resolver):
        return run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver).record

    def restore(self, record_id, catalog, storage, database_config, key_resolver, adapter=None):
        adapter = adapter or MemoryAdapter()
        result = RestoreExecutor(
            record_id, catalog, storage,
            adapter=adapter, database=database_config, key_resolver=key_resolver,
        ).execute()
        return result, adapter

    def test_flipped_byte_never_reaches_engine(self, record, catalog, local_storage, database_config, key_resolver):
        path = local_storage.base_path / record.storage_key
        data = bytearray(path.read_bytes())
        data[len(data) // 2] ^= 0xFF
        path.write_bytes(bytes(data))

        result, adapter = self.restore(record.id, catalog, local_storage, database_config, key_resolver)

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, ChecksumMismatch)
        assert result.error.exit_code == 5
        assert result.error.stage == 'verifying'
        assert result.error.details['expected'] == record.checksum
        assert result.error.details['actual'] != record.checksum
        assert adapter.restore_calls == 0

    def test_wrong_key_never_reaches_engine(self, record, catalog, local_storage, database_config):
        result, adapter = self.restore(record.id, catalog, local_storage, database_config, lambda ref: 'wrong')

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, AuthenticationFailure)
        assert result.error.exit_code == 5
        assert adapter.restore_calls == 0

    def test_truncated_artifact(self, record, catalog, local_storage, database_config, key_resolver):
        path = local_storage.base_path / record.storage_key
        path.write_bytes(path.read_bytes()[:-10])

        result, adapter = self.restore(record.id, catalog, local_storage, database_config, key_resolver)

        assert result.state == RestoreState.FAILED
        assert result.error.exit_code == 5
        assert adapter.restore_calls == 0

    def test_missing_record(self, catalog, local_storage, database_config, key_resolver):
        result, _ = self.restore(999, catalog, local_storage, database_config, key_resolver)

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, CatalogError)
        assert result.transitions == [RestoreState.FAILED]

    def test_aborted_record_is_not_restored(self, record, catalog, local_storage, database_config, key_resolver):
        catalog.mark_aborted(record.id)
        result, adapter = self.restore(record.id, catalog, local_storage, database_config, key_resolver)

        assert isinstance(result.error, CatalogError)
        assert adapter.restore_calls == 0

    def test_engine_rejects_stream(self, record, catalog, local_storage, database_config, key_resolver):
        result, adapter = self.restore(
            record.id, catalog, local_storage, database_config, key_resolver, adapter=RejectingAdapter()
        )

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, RestoreError)
        assert result.error.stage == 'restoring'
        assert result.error.exit_code == 6

    def test_download_resumes_from_last_byte(
        self, record, catalog, local_storage, database_config, key_resolver, memory_adapter
    ):
        storage = FlakyDownloads(local_storage)

        result, adapter = self.restore(record.id, catalog, storage, database_config, key_resolver)

        assert result.succeeded, result.error
        assert storage.offsets == [0, local_storage.settings.download_window]
        assert bytes(adapter.restored) == memory_adapter.dump
        assert any('resuming' in line for line in result.logs)

    def test_no_drop_option_is_passed_to_engine(self, record, catalog, local_storage, database_config, key_resolver):
        adapter = MemoryAdapter()
        RestoreExecutor(
            record.id, catalog, local_storage, adapter=adapter, database=database_config,
            options=RestoreOptions(drop_database_first=False), key_resolver=key_resolver,
        ).execute()

        assert adapter.restore_options == RestoreOptions(drop_database_first=False)


class TestVerifyBackup:
    """Test verification without restoring."""

    def test_intact_backup(self, backup_job, catalog, local_storage, memory_adapter, key_resolver):
        record = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver).record

        result = verify_backup(record.id, catalog, local_storage, key_resolver=key_resolver)

        assert result.succeeded, result.error
        assert RestoreState.RESTORING not in result.transitions
        assert result.checksum == record.checksum
        assert catalog.get(record.id).status == 'completed'

    def test_corrupt_backup_stays_catalogued(self, backup_job, catalog, local_storage, memory_adapter, key_resolver):
        record = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver).record
        path = local_storage.base_path / record.storage_key
        data = bytearray(path.read_bytes())
        data[-1] ^= 0x01
        path.write_bytes(bytes(data))

        result = verify_backup(record.id, catalog, local_storage, key_resolver=key_resolver)

        assert isinstance(result.error, ChecksumMismatch)
        assert catalog.count() == 1


class TestRepair:
    """Test cleaning up uploads left by crashed jobs."""

    def test_aborts_stale_tracked_uploads(self, catalog, local_storage):
        stale = local_storage.begin_upload('a/crashed.sql')
        local_storage.upload_part(stale, 1, b'partial')
        with freeze_time('2024-01-01 00:00:00'):
            catalog.add_marker(stale, 'a', job_id='j1')

        running = local_storage.begin_upload('a/running.sql')
        catalog.add_marker(running, 'a', job_id='j2')
        untracked = local_storage.begin_upload('a/unknown.sql')

        summary = repair(catalog, local_storage)

        assert summary['aborted'] == [stale.upload_id]
        assert summary['failed'] == []
        assert [u['UploadId'] for u in summary['untracked']] == [untracked.upload_id]
        assert [m.upload_id for m in catalog.markers()] == [running.upload_id]
        pending = {u['UploadId'] for u in local_storage.list_pending_uploads()}
        assert pending == {running.upload_id, untracked.upload_id}

    def test_marks_records_without_objects_aborted(
        self, backup_job, catalog, local_storage, memory_adapter, key_resolver
    ):
        kept = run_backup(backup_job, catalog, local_storage, memory_adapter, key_resolver).record
        second_job = replace(backup_job, job_id='f' * 32)
        lost = run_backup(second_job, catalog, local_storage, MemoryAdapter(memory_adapter.chunks), key_resolver).record
        local_storage.delete(lost.storage_key)

        summary = repair(catalog, local_storage)

        assert summary['missing'] == [lost.id]
        assert catalog.get(lost.id).status == 'aborted'
        assert catalog.get(kept.id).status == 'completed'
        assert [r.id for r in catalog.list()] == [kept.id]
