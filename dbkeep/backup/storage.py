"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: S3-compatible object storage through the multipart upload protocol
- LocalStorage: Local directory with the same multipart semantics

Both stream artifacts in fixed-size parts and can resume downloads from an
offset. S3 operations are retried individually with exponential backoff and
jitter on transient errors; permanent errors surface immediately.
"""

import base64
import hashlib
import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    IncompleteReadError,
)
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from .errors import ConfigurationError, JobCancelled, TransferError, TransferErrorKind
from .job import StorageSettings


logger = logging.getLogger(__name__)

MAX_PARTS = 10000

PERMANENT_ERROR_CODES = {
    'AccessDenied', 'AllAccessDisabled', 'InvalidAccessKeyId', 'SignatureDoesNotMatch',
    'ExpiredToken', 'InvalidToken', 'NoSuchBucket', 'NoSuchKey', 'NoSuchUpload',
    'NotFound', 'InvalidPart', 'InvalidPartOrder', 'EntityTooSmall', 'EntityTooLarge',
    'InvalidRequest', 'InvalidArgument', 'InvalidDigest', 'BadDigest', 'MalformedXML',
    '400', '401', '403', '404', '405',
}
TRANSIENT_ERROR_CODES = {
    'RequestTimeout', 'RequestTimeoutException', 'SlowDown', 'Throttling',
    'ThrottlingException', 'RequestThrottled', 'InternalError', 'ServiceUnavailable',
    '500', '502', '503', '504',
}
NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}

TRANSIENT_EXCEPTIONS = (
    BotoConnectionError,
    HTTPClientError,
    IncompleteReadError,
    ConnectionError,
    TimeoutError,
)


def error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, ClientError):
        return str(error.response.get('Error', {}).get('Code', 'Unknown'))
    return None


def is_transient_error(error: BaseException) -> bool:
    """Decide whether retrying the same request unchanged could succeed."""
    if isinstance(error, ClientError):
        code = error_code(error)
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0
        if code in PERMANENT_ERROR_CODES:
            return False
        return code in TRANSIENT_ERROR_CODES or status >= 500 or status == 429
    return isinstance(error, TRANSIENT_EXCEPTIONS)


@dataclass
class UploadSession:
    """Transient state of one multipart upload."""

    upload_id: str
    bucket: str
    key: str
    parts: List[Tuple[int, str]] = field(default_factory=list)
    bytes_sent: int = 0
    _hash: Any = field(default_factory=hashlib.sha256, repr=False)

    def record_part(self, part_number: int, etag: Optional[str], data: bytes) -> None:
        self.parts.append((part_number, etag))
        self.bytes_sent += len(data)
        self._hash.update(data)

    @property
    def sha256(self) -> str:
        """Hash of every byte acknowledged by storage, in part order."""
        return self._hash.hexdigest()


class StorageBackend:
    """Behaviour shared by all storage handlers."""

    def __init__(self, settings: StorageSettings):
        self.settings = settings
        self.location = settings.location

    def upload_stream(
        self,
        session: UploadSession,
        chunks: Iterable[bytes],
        cancel_event: Optional[threading.Event] = None
    ) -> int:
        """
        Split a byte stream into fixed-size parts and upload them in order.

        Parts are uploaded one at a time, so the upload rate throttles
        whatever produces the chunks.

        Args:
            session: Open upload session
            chunks: Stream of bytes to upload
            cancel_event: Checked before each part

        Returns:
            Number of bytes acknowledged by storage

        Raises:
            TransferError: If a part cannot be uploaded
            JobCancelled: If cancel_event is set
        """
        part_size = self.settings.part_size
        buffer = bytearray()
        part_number = 1

        for chunk in chunks:
            buffer += chunk
            while len(buffer) >= part_size:
                self._check_cancelled(cancel_event)
                self.upload_part(session, part_number, bytes(buffer[:part_size]))
                del buffer[:part_size]
                part_number += 1

        # An empty stream still needs one (empty) part to form an object
        if buffer or part_number == 1:
            self._check_cancelled(cancel_event)
            self.upload_part(session, part_number, bytes(buffer))

        return session.bytes_sent

    def _check_cancelled(self, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelled("Job cancelled during upload")

    def _validate_parts(self, session: UploadSession):
        numbers = [number for number, _ in session.parts]
        if not numbers or numbers != list(range(1, len(numbers) + 1)):
            raise TransferError(
                f"Cannot finalize {session.key}: parts missing or out of order",
                TransferErrorKind.PERMANENT,
                details={'key': session.key, 'parts': numbers},
            )
        missing = [number for number, etag in session.parts if not etag]
        if missing:
            raise TransferError(
                f"Cannot finalize {session.key}: no ETag for parts {missing}",
                TransferErrorKind.PERMANENT,
                details={'key': session.key},
            )

    def _check_part_number(self, session: UploadSession, part_number: int):
        if not 1 <= part_number <= MAX_PARTS:
            raise TransferError(
                f"Part number {part_number} out of range; increase the part size",
                TransferErrorKind.PERMANENT,
                details={'key': session.key, 'part_size': self.settings.part_size},
            )


class S3Storage(StorageBackend):
    """
    Handler for S3-compatible object storage.

    One client is created per process and shared by concurrent jobs;
    boto3 clients are thread-safe.
    """

    def __init__(self, settings: StorageSettings, client=None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize S3 storage handler.

        Args:
            settings: Storage settings (credentials, location, part size, retry policy)
            client: Optional pre-built boto3 S3 client
            sleep: Sleep function used between retries
        """
        super().__init__(settings)
        self.bucket_name = self.location.bucket
        self._sleep = sleep

        if client is None:
            try:
                client = boto3.client(
                    's3',
                    aws_access_key_id=settings.access_key,
                    aws_secret_access_key=settings.secret_key,
                    region_name=self.location.region,
                    endpoint_url=self.location.endpoint,
                    config=BotoConfig(
                        connect_timeout=settings.connect_timeout,
                        read_timeout=settings.read_timeout,
                        # Retries are handled here so attempt counts are exact
                        retries={'total_max_attempts': 1, 'mode': 'standard'},
                    ),
                )
            except (BotoCoreError, ValueError) as e:
                raise ConfigurationError(f"Failed to initialize S3 client: {e}")

        self.s3_client = client

    def begin_upload(self, key: str) -> UploadSession:
        response = self._call(
            'create_multipart_upload', key,
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
        )
        session = UploadSession(upload_id=response['UploadId'], bucket=self.bucket_name, key=key)
        logger.info(f"Started multipart upload {session.upload_id} for s3://{self.bucket_name}/{key}")
        return session

    def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> str:
        """
        Upload one part, retrying it alone on transient failure.

        Returns:
            ETag reported by storage
        """
        self._check_part_number(session, part_number)
        digest = hashlib.md5(data, usedforsecurity=False).digest()

        response = self._call(
            'upload_part', session.key,
            self.s3_client.upload_part,
            Bucket=session.bucket,
            Key=session.key,
            PartNumber=part_number,
            UploadId=session.upload_id,
            Body=data,
            ContentMD5=base64.b64encode(digest).decode(),
        )

        etag = response.get('ETag')
        session.record_part(part_number, etag, data)
        logger.debug(f"Uploaded part {part_number} of {session.key} ({len(data)} bytes)")
        return etag

    def complete_upload(self, session: UploadSession) -> int:
        """
        Finalize a multipart upload.

        The finalize request is never retried: if it fails ambiguously the
        object may already exist, so existence and size are checked instead.

        Returns:
            Size of the stored object in bytes

        Raises:
            TransferError: PERMANENT if parts are missing or the object could
                not be confirmed
        """
        self._validate_parts(session)
        parts = [{'PartNumber': number, 'ETag': etag} for number, etag in session.parts]

        try:
            self.s3_client.complete_multipart_upload(
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.upload_id,
                MultipartUpload={'Parts': parts},
            )
        except (ClientError, BotoCoreError, OSError) as e:
            if not is_transient_error(e):
                raise self._translate(e, 'complete_multipart_upload', session.key, 1)

            logger.warning(
                f"Finalizing {session.key} failed ambiguously ({e}); checking whether the object exists"
            )
            if self.exists(session.key) and self.size(session.key) == session.bytes_sent:
                logger.info(f"Object {session.key} was committed despite the failed finalize")
                return session.bytes_sent
            raise TransferError(
                f"Finalizing upload of {session.key} failed and the object is not present: {e}",
                TransferErrorKind.PERMANENT,
                details={'key': session.key, 'operation': 'complete_multipart_upload'},
            )

        size = self.size(session.key)
        logger.info(f"Completed upload of s3://{session.bucket}/{session.key} ({size} bytes, {len(parts)} parts)")
        return size

    def abort_upload(self, session: UploadSession) -> bool:
        """
        Release all uploaded parts of an unfinished upload.

        Returns:
            True if the upload is gone, False if storage refused to abort it
            (the catalog keeps a marker so a repair pass can retry)
        """
        try:
            self._call(
                'abort_multipart_upload', session.key,
                self.s3_client.abort_multipart_upload,
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.upload_id,
            )
        except TransferError as e:
            if e.details.get('code') == 'NoSuchUpload':
                return True
            logger.error(f"Failed to abort upload {session.upload_id} for {session.key}: {e}")
            return False

        logger.info(f"Aborted multipart upload {session.upload_id} for {session.key}")
        return True

    def download(self, key: str, offset: int = 0) -> Iterator[bytes]:
        """
        Stream an object as a sequence of ranged reads.

        Each window is retried on its own, so a transient failure resumes from
        the last delivered byte rather than from the start.

        Args:
            key: Object key
            offset: Byte offset to start from (resume point)
        """
        total = self.size(key)
        position = offset
        window = self.settings.download_window

        while position < total:
            end = min(position + window, total) - 1
            data = self._call('get_object', key, self._read_range, key, position, end)
            position += len(data)
            yield data

    def _read_range(self, key: str, start: int, end: int) -> bytes:
        response = self.s3_client.get_object(
            Bucket=self.bucket_name,
            Key=key,
            Range=f'bytes={start}-{end}',
        )
        data = response['Body'].read()
        expected = end - start + 1
        if len(data) != expected:
            raise IncompleteReadError(actual_bytes=len(data), expected_bytes=expected)
        return data

    def size(self, key: str) -> int:
        response = self._call(
            'head_object', key,
            self.s3_client.head_object,
            Bucket=self.bucket_name,
            Key=key,
        )
        return response['ContentLength']

    def exists(self, key: str) -> bool:
        try:
            self.size(key)
            return True
        except TransferError as e:
            if e.details.get('code') in NOT_FOUND_CODES:
                return False
            raise

    def delete(self, key: str):
        """
        Delete an object. Deleting an absent object succeeds.

        Raises:
            TransferError: If deletion fails
        """
        self._call(
            'delete_object', key,
            self.s3_client.delete_object,
            Bucket=self.bucket_name,
            Key=key,
        )
        logger.info(f"Deleted s3://{self.bucket_name}/{key}")

    def list(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects with given prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys
        """
        def list_all():
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })
            return objects

        return self._call('list_objects_v2', prefix, list_all)

    def list_pending_uploads(self, prefix: str = '') -> List[Dict[str, Any]]:
        """List multipart uploads that were started but never completed or aborted."""
        def list_all():
            uploads = []
            paginator = self.s3_client.get_paginator('list_multipart_uploads')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for upload in page.get('Uploads', []):
                    uploads.append({
                        'Key': upload['Key'],
                        'UploadId': upload['UploadId'],
                        'Initiated': upload.get('Initiated'),
                    })
            return uploads

        return self._call('list_multipart_uploads', prefix, list_all)

    def _call(self, operation: str, key: Optional[str], func: Callable, *args, **kwargs):
        """Run one storage request under the retry policy, translating failures."""
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            return func(*args, **kwargs)

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.backoff_initial,
                max=self.settings.backoff_max,
            ) + wait_random(0, self.settings.backoff_initial),
            retry=retry_if_exception(is_transient_error),
            before_sleep=lambda state: logger.warning(
                f"{operation} on {key} failed (attempt {state.attempt_number}): "
                f"{state.outcome.exception()}; retrying"
            ),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            return retrying(attempt)
        except (ClientError, BotoCoreError, OSError) as e:
            raise self._translate(e, operation, key, attempts)

    def _translate(self, error: BaseException, operation: str, key: Optional[str], attempts: int) -> TransferError:
        kind = TransferErrorKind.TRANSIENT if is_transient_error(error) else TransferErrorKind.PERMANENT
        details = {'operation': operation, 'key': key}
        code = error_code(error)
        if code:
            details['code'] = code
        return TransferError(
            f"S3 {operation} failed: {error}",
            kind,
            attempts=attempts,
            details=details,
        )


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in a local directory.

    Uploaded parts are staged under {base_path}/.uploads/{upload_id}/ and
    concatenated into place on completion, so readers never observe a
    partially written artifact.
    """

    UPLOADS_DIR = '.uploads'

    def __init__(self, settings: StorageSettings):
        super().__init__(settings)
        if not settings.local_root:
            raise ConfigurationError("Local storage requires a root directory")

        self.base_path = Path(settings.local_root).expanduser().resolve()
        self.bucket_name = self.location.bucket or 'local'

        try:
            (self.base_path / self.UPLOADS_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Failed to create local storage directory: {e}")

    def begin_upload(self, key: str) -> UploadSession:
        self._path(key)
        session = UploadSession(upload_id=uuid.uuid4().hex, bucket=self.bucket_name, key=key)
        staging = self._staging(session.upload_id)
        try:
            staging.mkdir(parents=True)
            (staging / 'key').write_text(key)
        except OSError as e:
            raise self._error(e, 'begin_upload', key)
        return session

    def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> str:
        self._check_part_number(session, part_number)
        part_path = self._staging(session.upload_id) / f'{part_number:05d}.part'
        try:
            part_path.write_bytes(data)
        except OSError as e:
            raise self._error(e, 'upload_part', session.key)

        etag = hashlib.md5(data, usedforsecurity=False).hexdigest()
        session.record_part(part_number, etag, data)
        return etag

    def complete_upload(self, session: UploadSession) -> int:
        self._validate_parts(session)
        staging = self._staging(session.upload_id)
        dest_path = self._path(session.key)
        temp_path = dest_path.with_name(dest_path.name + '.tmp')

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'wb') as out:
                for number, _ in session.parts:
                    with open(staging / f'{number:05d}.part', 'rb') as part:
                        shutil.copyfileobj(part, out)
            os.replace(temp_path, dest_path)
            shutil.rmtree(staging, ignore_errors=True)
            return dest_path.stat().st_size
        except OSError as e:
            raise self._error(e, 'complete_upload', session.key)

    def abort_upload(self, session: UploadSession) -> bool:
        shutil.rmtree(self._staging(session.upload_id), ignore_errors=True)
        return True

    def download(self, key: str, offset: int = 0) -> Iterator[bytes]:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                f.seek(offset)
                while True:
                    data = f.read(self.settings.download_window)
                    if not data:
                        break
                    yield data
        except OSError as e:
            raise self._error(e, 'download', key)

    def size(self, key: str) -> int:
        try:
            return self._path(key).stat().st_size
        except OSError as e:
            raise self._error(e, 'size', key)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str):
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise self._error(e, 'delete', key)

    def list(self, prefix: str) -> List[Dict[str, Any]]:
        files = []
        for file_path in self.base_path.rglob('*'):
            relative = file_path.relative_to(self.base_path).as_posix()
            if relative.startswith(self.UPLOADS_DIR) or not file_path.is_file():
                continue
            if relative.startswith(prefix):
                stat = file_path.stat()
                files.append({
                    'Key': relative,
                    'LastModified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    'Size': stat.st_size
                })
        return files

    def list_pending_uploads(self, prefix: str = '') -> List[Dict[str, Any]]:
        uploads = []
        for staging in (self.base_path / self.UPLOADS_DIR).iterdir():
            key_file = staging / 'key'
            if key_file.is_file():
                key = key_file.read_text()
                if key.startswith(prefix):
                    uploads.append({'Key': key, 'UploadId': staging.name, 'Initiated': None})
        return uploads

    def _staging(self, upload_id: str) -> Path:
        return self.base_path / self.UPLOADS_DIR / upload_id

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise TransferError(
                f"Key escapes the storage root: {key}",
                TransferErrorKind.PERMANENT,
                details={'key': key},
            )
        return path

    def _error(self, error: OSError, operation: str, key: str) -> TransferError:
        details = {'operation': operation, 'key': key}
        if isinstance(error, FileNotFoundError):
            details['code'] = 'NoSuchKey'
        return TransferError(f"Local {operation} failed: {error}", TransferErrorKind.PERMANENT, details=details)


def create_storage(settings: StorageSettings, **kwargs) -> StorageBackend:
    """
    Factory function to create appropriate storage handler.

    Args:
        settings: Storage settings; settings.backend is 's3' or 'local'

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ConfigurationError: If backend is invalid
    """
    if settings.backend == 's3':
        return S3Storage(settings, **kwargs)
    elif settings.backend == 'local':
        return LocalStorage(settings)
    else:
        raise ConfigurationError(f"Invalid storage type: {settings.backend}")
