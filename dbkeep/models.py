import json
from datetime import datetime, timezone
from typing import Any, Dict

from dbkeep import db


SCHEMA_VERSION = 2


def utcnow() -> datetime:
    """Naive UTC timestamp; the catalog stores every time in UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupRecord(db.Model):
    """A completed, verified backup artifact in object storage"""
    __tablename__ = 'backup_records'

    id = db.Column(db.Integer, primary_key=True)
    target = db.Column(db.String(255), nullable=False, index=True)
    engine = db.Column(db.String(20), nullable=False)  # postgres, mysql, mariadb
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    bucket = db.Column(db.String(255), nullable=False)
    storage_key = db.Column(db.String(1024), unique=True, nullable=False)
    size_bytes = db.Column(db.BigInteger, nullable=False)
    checksum = db.Column(db.String(64), nullable=False)  # hex SHA-256 of the stored bytes
    checksum_algorithm = db.Column(db.String(20), default='sha256', nullable=False)
    pipeline = db.Column(db.Text, nullable=False, default='[]')  # JSON list of stage descriptors
    status = db.Column(db.String(20), default='completed', nullable=False)  # completed, aborted
    job_id = db.Column(db.String(32))
    schema_version = db.Column(db.Integer, default=SCHEMA_VERSION, nullable=False)

    FIELDS = (
        'id', 'target', 'engine', 'created_at', 'bucket', 'storage_key', 'size_bytes',
        'checksum', 'checksum_algorithm', 'pipeline', 'status', 'job_id', 'schema_version',
    )

    def to_dict(self) -> Dict[str, Any]:
        """Stable, versioned document describing this record."""
        return {
            'id': self.id,
            'target': self.target,
            'engine': self.engine,
            'created_at': self.created_at.isoformat() + 'Z' if self.created_at else None,
            'bucket': self.bucket,
            'storage_key': self.storage_key,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'checksum_algorithm': self.checksum_algorithm,
            'pipeline': json.loads(self.pipeline or '[]'),
            'status': self.status,
            'job_id': self.job_id,
            'schema_version': self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        """Build a record from a document; unknown fields are ignored."""
        values = {key: data[key] for key in cls.FIELDS if key in data}

        created_at = values.get('created_at')
        if isinstance(created_at, str):
            values['created_at'] = datetime.fromisoformat(created_at.rstrip('Z'))
        if isinstance(values.get('pipeline'), list):
            values['pipeline'] = json.dumps(values['pipeline'], sort_keys=True)

        return cls(**values)

    def __repr__(self):
        return f'<BackupRecord {self.id} target={self.target} status={self.status}>'


class UploadMarker(db.Model):
    """A multipart upload that was started and not yet completed or aborted"""
    __tablename__ = 'upload_markers'

    id = db.Column(db.Integer, primary_key=True)
    upload_id = db.Column(db.String(1024), unique=True, nullable=False)
    bucket = db.Column(db.String(255), nullable=False)
    storage_key = db.Column(db.String(1024), nullable=False)
    target = db.Column(db.String(255), nullable=False)
    job_id = db.Column(db.String(32))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<UploadMarker {self.storage_key} upload_id={self.upload_id}>'
