"""
Durable catalog of backup records and in-flight uploads.

A record is written only after its artifact is durable in storage and has
been verified, in the same transaction that drops the upload's marker.
Every mutation is serialized through one writer lock and committed on its
own, so a crash leaves the catalog either before or after a mutation.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dbkeep import db
from dbkeep.models import BackupRecord, UploadMarker, utcnow
from .errors import CatalogError


logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'completed'
STATUS_ABORTED = 'aborted'


class Catalog:
    """Catalog operations on top of the Flask-SQLAlchemy session."""

    def __init__(self):
        self._writer_lock = threading.RLock()
        self._retention_locks: Dict[str, threading.Lock] = {}
        self._retention_guard = threading.Lock()

    def record(self, entry: BackupRecord, upload_id: Optional[str] = None) -> BackupRecord:
        """
        Insert a backup record, dropping the upload marker in the same commit.

        Args:
            entry: Record describing a verified artifact
            upload_id: Upload whose marker the record supersedes

        Returns:
            The persisted record (with its id assigned)

        Raises:
            CatalogError: If the storage key is already catalogued or the
                commit fails
        """
        with self._writer_lock:
            existing = BackupRecord.query.filter_by(storage_key=entry.storage_key).first()
            if existing:
                raise CatalogError(
                    f"Storage key already catalogued: {entry.storage_key}",
                    details={'record_id': existing.id},
                )

            try:
                db.session.add(entry)
                if upload_id:
                    UploadMarker.query.filter_by(upload_id=upload_id).delete()
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise CatalogError(f"Failed to record backup {entry.storage_key}: {e}")

        logger.info(f"Catalogued backup {entry.id}: {entry.storage_key} ({entry.size_bytes} bytes)")
        return entry

    def get(self, record_id: int) -> Optional[BackupRecord]:
        return db.session.get(BackupRecord, record_id)

    def list(
        self,
        target: Optional[str] = None,
        status: Optional[str] = STATUS_COMPLETED,
        engine: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[BackupRecord]:
        """
        List records, newest first.

        Args:
            target: Only records of this target
            status: Only records with this status (None for all)
            engine: Only records of this engine
            since: Only records created at or after this time
            limit: Maximum number of records
            offset: Number of records to skip
        """
        query = self._query(target, status, engine, since)
        query = query.order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def count(
        self,
        target: Optional[str] = None,
        status: Optional[str] = STATUS_COMPLETED,
        engine: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> int:
        return self._query(target, status, engine, since).count()

    def _query(self, target, status, engine, since):
        query = BackupRecord.query
        if target:
            query = query.filter_by(target=target)
        if status:
            query = query.filter_by(status=status)
        if engine:
            query = query.filter_by(engine=engine)
        if since:
            query = query.filter(BackupRecord.created_at >= since)
        return query

    def targets(self) -> List[str]:
        rows = db.session.query(BackupRecord.target).distinct().order_by(BackupRecord.target).all()
        return [row[0] for row in rows]

    def mark_aborted(self, record_id: int) -> BackupRecord:
        """Flag a record whose artifact turned out to be unusable."""
        with self._writer_lock:
            record = self._require(record_id)
            record.status = STATUS_ABORTED
            self._commit(f"mark backup {record_id} aborted")
        logger.warning(f"Marked backup {record_id} as aborted")
        return record

    def remove(self, record_id: int, storage) -> None:
        """
        Delete a record whose artifact has already been deleted.

        Raises:
            CatalogError: If the record is missing or its object still exists
        """
        with self._writer_lock:
            record = self._require(record_id)
            if storage.exists(record.storage_key):
                raise CatalogError(
                    f"Refusing to remove backup {record_id}: object {record.storage_key} still exists",
                    details={'record_id': record_id},
                )
            db.session.delete(record)
            self._commit(f"remove backup {record_id}")
        logger.info(f"Removed backup {record_id} from the catalog")

    def add_marker(self, session, target: str, job_id: Optional[str] = None) -> UploadMarker:
        """Remember an upload that has begun so a crash cannot orphan its parts."""
        with self._writer_lock:
            marker = UploadMarker(
                upload_id=session.upload_id,
                bucket=session.bucket,
                storage_key=session.key,
                target=target,
                job_id=job_id,
            )
            db.session.add(marker)
            self._commit(f"add upload marker {session.upload_id}")
        return marker

    def drop_marker(self, upload_id: str) -> None:
        with self._writer_lock:
            UploadMarker.query.filter_by(upload_id=upload_id).delete()
            self._commit(f"drop upload marker {upload_id}")

    def markers(self) -> List[UploadMarker]:
        return UploadMarker.query.order_by(UploadMarker.created_at).all()

    def stale_markers(self, older_than: timedelta) -> List[UploadMarker]:
        cutoff = utcnow() - older_than
        return UploadMarker.query.filter(UploadMarker.created_at < cutoff).order_by(UploadMarker.created_at).all()

    @contextmanager
    def retention_lock(self, target: str):
        """Hold the per-target lock for a whole retention decide-and-delete."""
        with self._retention_guard:
            lock = self._retention_locks.setdefault(target, threading.Lock())
        with lock:
            yield

    def _require(self, record_id: int) -> BackupRecord:
        record = self.get(record_id)
        if record is None:
            raise CatalogError(f"Backup not found: {record_id}", details={'record_id': record_id})
        return record

    def _commit(self, action: str):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise CatalogError(f"Failed to {action}: {e}")
