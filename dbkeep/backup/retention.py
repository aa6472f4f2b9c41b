"""
Retention policy enforcement for backups.

Deciding what to prune is a pure function of the records, the policy and the
current time; applying the decision deletes the artifact from storage first
and the catalog entry second, so the catalog never points at nothing.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .catalog import STATUS_COMPLETED, Catalog
from .errors import CatalogError, RetentionPolicyViolation, TransferError
from .job import RetentionPolicy


logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def select_expired(records: Iterable, policy: RetentionPolicy, now: datetime) -> Set[int]:
    """
    Select the ids of records that should be pruned.

    The newest policy.min_keep completed records are always kept, regardless
    of age. Of the rest, those older than policy.max_age are expired. Records
    with equal timestamps are ordered by id, the lower id being older.

    Args:
        records: Catalog records (anything with id, created_at and status)
        policy: Retention policy
        now: Current time

    Returns:
        Set of record ids to prune
    """
    now = _naive_utc(now)
    completed = [r for r in records if r.status == STATUS_COMPLETED]
    completed.sort(key=lambda r: (_naive_utc(r.created_at), r.id), reverse=True)

    return {
        record.id
        for record in completed[policy.min_keep:]
        if now - _naive_utc(record.created_at) > policy.max_age
    }


class RetentionManager:
    """
    Applies a retention policy to the catalogued backups of a target.
    """

    def __init__(self, catalog: Catalog, storage):
        """
        Initialize retention manager.

        Args:
            catalog: Catalog holding the records
            storage: Storage handler holding the artifacts
        """
        self.catalog = catalog
        self.storage = storage
        self.logs = []

    def enforce(
        self,
        target: str,
        policy: RetentionPolicy,
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Enforce a retention policy for one target.

        Artifacts whose deletion fails keep their catalog entry and are
        retried by the next sweep.

        Args:
            target: Target whose backups are swept
            policy: Retention policy to apply
            now: Reference time (default: current UTC time)
            dry_run: Report what would be pruned without deleting anything

        Returns:
            Dict with 'deleted' (record ids, or the ids that would be deleted
            on a dry run), 'freed_bytes', 'kept' (count) and 'errors'
        """
        now = now or datetime.now(timezone.utc)
        result = {'target': target, 'deleted': [], 'freed_bytes': 0, 'kept': 0, 'errors': [], 'dry_run': dry_run}

        with self.catalog.retention_lock(target):
            records = self.catalog.list(target=target, status=STATUS_COMPLETED)
            expired = select_expired(records, policy, now)
            result['kept'] = len(records) - len(expired)

            try:
                self._check_floor(records, expired, policy)
            except RetentionPolicyViolation as e:
                self._log(f"Retention sweep for {target} skipped: {e}")
                result['kept'] = len(records)
                return result

            self._log(
                f"Retention for {target}: {len(records)} backups, "
                f"{len(expired)} expired (min_keep={policy.min_keep}, max_age={policy.max_age})"
            )

            for record in sorted(records, key=lambda r: (r.created_at, r.id)):
                if record.id not in expired:
                    continue
                if dry_run:
                    result['deleted'].append(record.id)
                    result['freed_bytes'] += record.size_bytes
                    self._log(f"Would prune backup {record.id}: {record.storage_key} ({record.size_bytes} bytes)")
                    continue
                try:
                    self.storage.delete(record.storage_key)
                    result['freed_bytes'] += record.size_bytes
                    self.catalog.remove(record.id, self.storage)
                    result['deleted'].append(record.id)
                    self._log(f"Pruned backup {record.id}: {record.storage_key}")
                except (TransferError, CatalogError) as e:
                    error_msg = f"Failed to prune backup {record.id}: {e}"
                    self._log(error_msg)
                    result['errors'].append(error_msg)

        return result

    def enforce_all(
        self,
        policy: RetentionPolicy,
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Enforce a retention policy for every catalogued target.

        Returns:
            Dict with 'targets' (per-target results), 'deleted' (count),
            'freed_bytes' and 'errors'
        """
        summary = {'targets': [], 'deleted': 0, 'freed_bytes': 0, 'errors': []}
        for target in self.catalog.targets():
            result = self.enforce(target, policy, now, dry_run=dry_run)
            summary['targets'].append(result)
            summary['deleted'] += len(result['deleted'])
            summary['freed_bytes'] += result['freed_bytes']
            summary['errors'].extend(result['errors'])

        summary['logs'] = self.logs
        return summary

    def _check_floor(self, records: List, expired: Set[int], policy: RetentionPolicy):
        remaining = len(records) - len(expired)
        if expired and remaining < policy.min_keep:
            raise RetentionPolicyViolation(
                f"Pruning {len(expired)} backups would leave {remaining}, below min_keep={policy.min_keep}"
            )

    def _log(self, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
