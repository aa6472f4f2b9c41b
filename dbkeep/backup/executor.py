"""
Backup and restore executors - orchestrate the complete workflows.

Backup workflow:
1. CONNECTING: check the engine is reachable
2. DUMPING: start the dump and the transform pipeline in their own threads
3. TRANSFERRING: upload the transformed stream part by part
4. VERIFYING: compare the pipeline checksum with the bytes storage accepted
5. CATALOGED: write the record and drop the upload marker in one commit
6. RETENTION_SWEEP: prune expired backups of the same target
7. DONE

Restore workflow:
1. FETCHING: spool the artifact to a temporary file
2. VERIFYING: check size, checksum and that every layer decodes
3. RESTORING: decrypt, decompress and replay into the engine
4. DONE

Any failure moves the job to FAILED. A failed backup never leaves a catalog
record behind and its upload is aborted.
"""

import hmac
import logging
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional

from dbkeep.models import BackupRecord, utcnow
from dbkeep.utils.crypto import resolve_key_reference
from .catalog import STATUS_COMPLETED, Catalog
from .channel import DEFAULT_CAPACITY, Channel, StageThread
from .engines import EngineAdapter, RestoreOptions
from .errors import (
    BackupError,
    CatalogError,
    ChecksumMismatch,
    IntegrityError,
    JobCancelled,
    TransferError,
)
from .job import BackupJob, DatabaseConfig, PipelineConfig
from .pipeline import ChecksumStage, Pipeline
from .retention import RetentionManager
from .storage import UploadSession


logger = logging.getLogger(__name__)

SPOOL_READ_SIZE = 1024 * 1024
MAX_DOWNLOAD_RESUMES = 3
THREAD_JOIN_TIMEOUT = 10


class BackupState(str, Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    DUMPING = 'dumping'
    TRANSFERRING = 'transferring'
    VERIFYING = 'verifying'
    CATALOGED = 'cataloged'
    RETENTION_SWEEP = 'retention_sweep'
    DONE = 'done'
    FAILED = 'failed'


class RestoreState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    VERIFYING = 'verifying'
    RESTORING = 'restoring'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    job_id: str
    state: BackupState = BackupState.IDLE
    record: Optional[BackupRecord] = None
    error: Optional[BackupError] = None
    retention: Optional[Dict[str, Any]] = None
    transitions: List[BackupState] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == BackupState.DONE


@dataclass
class RestoreResult:
    job_id: str
    record_id: int
    state: RestoreState = RestoreState.IDLE
    checksum: Optional[str] = None
    size_bytes: int = 0
    error: Optional[BackupError] = None
    transitions: List[RestoreState] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RestoreState.DONE


def _read_file(spool: BinaryIO) -> Iterator[bytes]:
    spool.seek(0)
    while True:
        data = spool.read(SPOOL_READ_SIZE)
        if not data:
            break
        yield data


class _JobRunner:
    """State tracking, logging and cancellation shared by both executors."""

    def __init__(self, job_id: str, result):
        self.job_id = job_id
        self.result = result
        self.logs = result.logs
        self._cancel = threading.Event()
        self._threads: List[StageThread] = []

    @property
    def state(self):
        return self.result.state

    def cancel(self):
        """Request cancellation; every stage stops at its next channel operation."""
        if not self._cancel.is_set():
            self._log("Cancellation requested")
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _transition(self, state):
        self._log(f"State: {self.result.state.value} -> {state.value}")
        self.result.state = state
        self.result.transitions.append(state)

    def _check_cancelled(self):
        if self._cancel.is_set():
            raise JobCancelled("Job cancelled")

    def _start_stage(self, name: str, factory: Callable, output: Channel, state):
        thread = StageThread(f'{name}-{self.job_id[:8]}', factory, output, stage=state.value)
        self._threads.append(thread)
        thread.start()
        return thread

    def _stop_stages(self):
        self._cancel.set()
        self._join_stages()

    def _join_stages(self):
        for thread in self._threads:
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"Stage thread {thread.name} did not stop in time")
        self._threads = []

    def _as_backup_error(self, error: Exception) -> BackupError:
        if isinstance(error, BackupError):
            return error
        logger.exception("Unexpected error in job %s", self.job_id)
        return BackupError(f"Unexpected error: {error}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.job_id[:8]}] {message}")


class BackupExecutor(_JobRunner):
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(
        self,
        job: BackupJob,
        catalog: Catalog,
        storage,
        adapter: EngineAdapter,
        key_resolver: Callable[[str], str] = resolve_key_reference,
        channel_capacity: int = DEFAULT_CAPACITY
    ):
        """
        Initialize backup executor.

        Args:
            job: Immutable description of the backup
            catalog: Catalog to record the backup in
            storage: Storage handler to upload to
            adapter: Engine adapter producing the dump
            key_resolver: Resolves encryption key references
            channel_capacity: Chunks buffered between pipeline stages
        """
        super().__init__(job.job_id, BackupResult(job_id=job.job_id))
        self.job = job
        self.catalog = catalog
        self.storage = storage
        self.adapter = adapter
        self.key_resolver = key_resolver
        self.channel_capacity = channel_capacity
        self.session: Optional[UploadSession] = None
        self._finalizing = False
        self._committed = False

    def execute(self) -> BackupResult:
        """
        Execute the backup job.

        Returns:
            BackupResult; on failure result.error carries the job id and the
            stage the job failed in
        """
        started_at = utcnow()
        self._log(f"Starting backup of {self.job.target}")

        try:
            record = self._run(started_at)
        except Exception as e:
            self._fail(self._as_backup_error(e))
            return self.result

        self.result.record = record
        self._sweep()
        self._transition(BackupState.DONE)
        self._log(f"Backup completed: {record.storage_key} ({record.size_bytes} bytes)")
        return self.result

    def _run(self, started_at: datetime) -> BackupRecord:
        self._transition(BackupState.CONNECTING)
        version = self.adapter.check_connection(self.job.database)
        self._log(f"Connected: {version}")
        pipeline = Pipeline.build(self.job.pipeline, self.key_resolver)
        self._check_cancelled()

        key = self._storage_key(started_at)
        self._transition(BackupState.DUMPING)
        self.session = self.storage.begin_upload(key)
        self.catalog.add_marker(self.session, self.job.target, self.job_id)

        raw = Channel(self._cancel, self.channel_capacity, 'dump')
        transformed = Channel(self._cancel, self.channel_capacity, 'pipeline')
        self._start_stage('dump', lambda: self.adapter.produce_dump_stream(self.job.database), raw, BackupState.DUMPING)
        self._start_stage('transform', lambda: pipeline.apply(raw), transformed, BackupState.DUMPING)

        self._transition(BackupState.TRANSFERRING)
        self.storage.upload_stream(self.session, transformed, self._cancel)
        self._join_stages()
        self._check_cancelled()

        # The object may exist even if finalizing raises
        self._finalizing = True
        size = self.storage.complete_upload(self.session)
        self._committed = True
        self._log(f"Uploaded {key}: {size} bytes in {len(self.session.parts)} parts")

        self._transition(BackupState.VERIFYING)
        self._verify(pipeline.checksum, size)

        record = BackupRecord(
            target=self.job.target,
            engine=self.job.database.engine.value,
            created_at=started_at,
            bucket=self.session.bucket,
            storage_key=key,
            size_bytes=size,
            checksum=pipeline.checksum.hexdigest,
            checksum_algorithm=ChecksumStage.algorithm,
            pipeline=self.job.pipeline.to_json(),
            status=STATUS_COMPLETED,
            job_id=self.job_id,
        )
        record = self.catalog.record(record, upload_id=self.session.upload_id)
        self._transition(BackupState.CATALOGED)
        return record

    def _verify(self, checksum: ChecksumStage, size: int):
        if checksum.hexdigest is None:
            raise IntegrityError("Pipeline ended without producing a checksum")
        if not hmac.compare_digest(checksum.hexdigest, self.session.sha256):
            raise ChecksumMismatch(
                "Bytes accepted by storage differ from the pipeline output",
                details={'expected': checksum.hexdigest, 'actual': self.session.sha256},
            )
        if not size == self.session.bytes_sent == checksum.bytes_seen:
            raise IntegrityError(
                f"Stored object size {size} does not match {checksum.bytes_seen} bytes produced",
                details={'key': self.session.key},
            )
        self._log(f"Verified sha256 {checksum.hexdigest}")

    def _sweep(self):
        if self.job.retention is None:
            return

        self._transition(BackupState.RETENTION_SWEEP)
        manager = RetentionManager(self.catalog, self.storage)
        try:
            self.result.retention = manager.enforce(self.job.target, self.job.retention)
        except BackupError as e:
            self.result.retention = {'target': self.job.target, 'deleted': [], 'errors': [str(e)]}
            self._log(f"Retention sweep failed: {e}")
        finally:
            self.logs.extend(manager.logs)

    def _fail(self, error: BackupError):
        error.with_context(job_id=self.job_id, stage=self.state.value)
        self._log(f"Backup failed in {self.state.value}: {error}")
        self._stop_stages()

        if self.session is not None:
            released = self._release_upload()
            if released:
                try:
                    self.catalog.drop_marker(self.session.upload_id)
                except CatalogError as e:
                    self._log(f"Warning: could not drop upload marker: {e}")

        self.result.error = error
        self._transition(BackupState.FAILED)

    def _release_upload(self) -> bool:
        released = True
        if not self._committed:
            released = self.storage.abort_upload(self.session)
            self._log(f"Aborted upload {self.session.upload_id}" if released
                      else f"Warning: upload {self.session.upload_id} left for repair")
            if not self._finalizing:
                return released

        try:
            self.storage.delete(self.session.key)
            self._log(f"Deleted unverified object {self.session.key}")
        except TransferError as e:
            self._log(f"Warning: failed to delete unverified object {self.session.key}: {e}")
            return False
        return released

    def _storage_key(self, started_at: datetime) -> str:
        """Key for this backup, e.g. backups/postgres-db-5432-app/20240101T000000Z-1a2b3c4d.sql.gz.enc"""
        name = f"{started_at:%Y%m%dT%H%M%SZ}-{self.job_id[:8]}.{self.job.pipeline.extension}"
        return self.job.storage.location.key_for(f"{self.job.target}/{name}")


class RestoreExecutor(_JobRunner):
    """
    Orchestrates restoring a catalogued backup into a database.

    The artifact is spooled to a temporary file so it can be fully verified
    before the first byte reaches the engine.
    """

    def __init__(
        self,
        record_id: int,
        catalog: Catalog,
        storage,
        adapter: Optional[EngineAdapter] = None,
        database: Optional[DatabaseConfig] = None,
        options: Optional[RestoreOptions] = None,
        key_resolver: Callable[[str], str] = resolve_key_reference,
        temp_dir: Optional[str] = None,
        channel_capacity: int = DEFAULT_CAPACITY,
        job_id: Optional[str] = None
    ):
        """
        Initialize restore executor.

        Args:
            record_id: Catalog id of the backup to restore
            catalog: Catalog holding the record
            storage: Storage handler holding the artifact
            adapter: Engine adapter to replay into (not needed for verify())
            database: Database to restore into (not needed for verify())
            options: Restore options
            key_resolver: Resolves encryption key references
            temp_dir: Directory for the spooled artifact
            channel_capacity: Chunks buffered between pipeline stages
        """
        job_id = job_id or uuid.uuid4().hex
        super().__init__(job_id, RestoreResult(job_id=job_id, record_id=record_id))
        self.record_id = record_id
        self.catalog = catalog
        self.storage = storage
        self.adapter = adapter
        self.database = database
        self.options = options or RestoreOptions()
        self.key_resolver = key_resolver
        self.temp_dir = temp_dir
        self.channel_capacity = channel_capacity

    def execute(self) -> RestoreResult:
        """
        Fetch, verify and restore the backup.

        Returns:
            RestoreResult with the final state
        """
        return self._execute(restore=True)

    def verify(self) -> RestoreResult:
        """Fetch and verify the backup without touching the engine or the catalog."""
        return self._execute(restore=False)

    def _execute(self, restore: bool) -> RestoreResult:
        action = 'restore' if restore else 'verification'
        self._log(f"Starting {action} of backup {self.record_id}")

        try:
            record = self._load_record()
            pipeline = Pipeline.build(PipelineConfig.from_json(record.pipeline), self.key_resolver)

            with tempfile.TemporaryFile(prefix='dbkeep_restore_', dir=self.temp_dir) as spool:
                self._transition(RestoreState.FETCHING)
                self._fetch(record, spool)

                self._transition(RestoreState.VERIFYING)
                self._verify(record, spool, pipeline)

                if restore:
                    self._transition(RestoreState.RESTORING)
                    self._restore(spool, pipeline)
        except Exception as e:
            error = self._as_backup_error(e)
            error.with_context(job_id=self.job_id, stage=self.state.value, record_id=self.record_id)
            self._log(f"{action.capitalize()} failed in {self.state.value}: {error}")
            self._stop_stages()
            self.result.error = error
            self._transition(RestoreState.FAILED)
            return self.result

        self._transition(RestoreState.DONE)
        self._log(f"{action.capitalize()} of backup {self.record_id} completed")
        return self.result

    def _load_record(self) -> BackupRecord:
        record = self.catalog.get(self.record_id)
        if record is None:
            raise CatalogError(f"Backup not found: {self.record_id}")
        if record.status != STATUS_COMPLETED:
            raise CatalogError(f"Backup {self.record_id} is {record.status} and cannot be restored")
        return record

    def _fetch(self, record: BackupRecord, spool: BinaryIO):
        """Download into the spool, resuming from the last byte after transient failures."""
        resumes = 0

        while True:
            try:
                for chunk in self.storage.download(record.storage_key, offset=spool.tell()):
                    self._check_cancelled()
                    spool.write(chunk)
                break
            except TransferError as e:
                if not e.is_transient or resumes >= MAX_DOWNLOAD_RESUMES:
                    raise
                resumes += 1
                self._log(f"Download interrupted at byte {spool.tell()}: {e}; resuming")

        self.result.size_bytes = spool.tell()
        self._log(f"Fetched {record.storage_key}: {spool.tell()} bytes")

    def _verify(self, record: BackupRecord, spool: BinaryIO, pipeline: Pipeline):
        if spool.tell() != record.size_bytes:
            raise IntegrityError(
                f"Fetched {spool.tell()} bytes, catalog says {record.size_bytes}",
                details={'key': record.storage_key},
            )
        actual = ChecksumStage.verify(_read_file(spool), record.checksum)
        self.result.checksum = actual

        # Decode every layer once so a wrong key never reaches the engine
        for _ in pipeline.reverse(_read_file(spool)):
            self._check_cancelled()
        self._log(f"Verified sha256 {actual}")

    def _restore(self, spool: BinaryIO, pipeline: Pipeline):
        raw = Channel(self._cancel, self.channel_capacity, 'spool')
        plain = Channel(self._cancel, self.channel_capacity, 'pipeline')
        self._start_stage('reader', lambda: _read_file(spool), raw, RestoreState.RESTORING)
        self._start_stage('reverse', lambda: pipeline.reverse(raw), plain, RestoreState.RESTORING)

        self.adapter.consume_restore_stream(self.database, plain, self.options)
        self._join_stages()


def verify_backup(record_id: int, catalog: Catalog, storage, **kwargs) -> RestoreResult:
    """
    Check that a catalogued backup can be fetched and decoded.

    Never mutates the catalog.
    """
    return RestoreExecutor(record_id, catalog, storage, **kwargs).verify()


def repair(catalog: Catalog, storage, older_than: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
    """
    Abort uploads left behind by crashed jobs and flag vanished backups.

    Uploads tracked by a marker older than older_than are aborted and their
    marker dropped. Pending uploads in storage without any marker are only
    reported, since another process may own them. Completed records whose
    object no longer exists are marked aborted so they are never restored
    or counted towards min_keep.

    Returns:
        Dict with 'aborted' and 'failed' (upload ids), 'untracked' uploads
        and 'missing' (record ids marked aborted)
    """
    summary = {'aborted': [], 'failed': [], 'untracked': [], 'missing': []}

    for marker in catalog.stale_markers(older_than):
        session = UploadSession(upload_id=marker.upload_id, bucket=marker.bucket, key=marker.storage_key)
        if storage.abort_upload(session):
            catalog.drop_marker(marker.upload_id)
            summary['aborted'].append(marker.upload_id)
            logger.info(f"Repaired upload {marker.upload_id} for {marker.storage_key}")
        else:
            summary['failed'].append(marker.upload_id)

    tracked = {marker.upload_id for marker in catalog.markers()}
    for upload in storage.list_pending_uploads(storage.location.prefix):
        if upload['UploadId'] not in tracked and upload['UploadId'] not in summary['aborted']:
            summary['untracked'].append(upload)

    for record in catalog.list(status=STATUS_COMPLETED):
        if not storage.exists(record.storage_key):
            catalog.mark_aborted(record.id)
            summary['missing'].append(record.id)
            logger.warning(f"Backup {record.id} has no object at {record.storage_key}")

    return summary
