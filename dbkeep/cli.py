"""
Command-line interface for dbkeep.

Exit codes:
    0   success
    1   unexpected error
    2   configuration error
    3   database connection error
    4   storage transfer error
    5   integrity error (checksum or authentication)
    6   dump or restore rejected by the engine
    130 cancelled
"""

import json
import signal
import sys
import threading
from contextlib import contextmanager
from datetime import timedelta

import click
from flask import current_app
from flask.cli import FlaskGroup

from dbkeep import create_app, get_catalog
from dbkeep.backup.catalog import STATUS_ABORTED, STATUS_COMPLETED
from dbkeep.backup.engines import RestoreOptions, create_adapter
from dbkeep.backup.errors import BackupError, ConfigurationError
from dbkeep.backup.executor import BackupExecutor, RestoreExecutor, repair
from dbkeep.backup.job import BackupJob, EngineKind
from dbkeep.backup.retention import RetentionManager
from dbkeep.backup.storage import create_storage
from dbkeep.config import load_settings


def _create_app():
    return create_app()


@click.group(cls=FlaskGroup, create_app=_create_app, add_default_commands=False)
def main():
    """dbkeep - database backups to object storage."""


def _fail(error: BackupError):
    click.echo(f"Error: {error}", err=True)
    sys.exit(error.exit_code)


def _settings():
    try:
        return load_settings(current_app.config)
    except ConfigurationError as e:
        _fail(e)


def _storage(settings):
    try:
        return create_storage(settings.storage)
    except ConfigurationError as e:
        _fail(e)


@contextmanager
def _cancel_on_signals(executor):
    """Turn SIGINT/SIGTERM into a cooperative cancel of the running job."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        click.echo(f"Received {signal.Signals(signum).name}, cancelling...", err=True)
        executor.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@main.command('backup')
@click.option('--engine', required=True, help='Engine to back up: postgres, mysql or mariadb.')
def backup_command(engine):
    """Back up the configured database of an engine."""
    settings = _settings()
    try:
        kind = EngineKind.parse(engine)
        database = settings.database(kind)
    except ConfigurationError as e:
        _fail(e)

    job = BackupJob(
        database=database,
        storage=settings.storage,
        pipeline=settings.pipeline,
        retention=settings.retention,
    )
    executor = BackupExecutor(job, get_catalog(current_app), _storage(settings), create_adapter(kind))

    with _cancel_on_signals(executor):
        result = executor.execute()

    if not result.succeeded:
        _fail(result.error)

    record = result.record
    click.echo(f"Backup {record.id} completed: {record.storage_key} ({record.size_bytes} bytes)")
    if result.retention:
        pruned = result.retention['deleted']
        click.echo(f"Retention: pruned {len(pruned)} backup(s)")
        for error in result.retention['errors']:
            click.echo(f"Warning: {error}", err=True)


@main.command('restore')
@click.argument('record_id', type=int)
@click.option('--no-drop', is_flag=True, help='Restore into the existing database without recreating it.')
def restore_command(record_id, no_drop):
    """Restore a catalogued backup into its engine's configured database."""
    settings = _settings()
    catalog = get_catalog(current_app)

    record = catalog.get(record_id)
    if record is None:
        _fail(BackupError(f"Backup not found: {record_id}"))

    try:
        database = settings.database(record.engine)
    except ConfigurationError as e:
        _fail(e)

    executor = RestoreExecutor(
        record_id,
        catalog,
        _storage(settings),
        adapter=create_adapter(record.engine),
        database=database,
        options=RestoreOptions(drop_database_first=not no_drop),
        temp_dir=settings.temp_dir,
    )

    with _cancel_on_signals(executor):
        result = executor.execute()

    if not result.succeeded:
        _fail(result.error)
    click.echo(f"Restored backup {record_id} into {database.database} ({result.size_bytes} bytes)")


@main.command('verify')
@click.argument('record_id', type=int)
def verify_command(record_id):
    """Fetch a backup and check it can be decoded, without restoring it."""
    settings = _settings()
    executor = RestoreExecutor(record_id, get_catalog(current_app), _storage(settings), temp_dir=settings.temp_dir)

    with _cancel_on_signals(executor):
        result = executor.verify()

    if not result.succeeded:
        _fail(result.error)
    click.echo(f"Backup {record_id} is intact (sha256 {result.checksum})")


@main.command('list')
@click.option('--target', help='Only backups of this target.')
@click.option('--engine', help='Only backups of this engine.')
@click.option('--status', type=click.Choice([STATUS_COMPLETED, STATUS_ABORTED]), default=STATUS_COMPLETED)
@click.option('--json', 'as_json', is_flag=True, help='Print records as JSON.')
def list_command(target, engine, status, as_json):
    """List catalogued backups, newest first."""
    records = get_catalog(current_app).list(target=target, status=status, engine=engine)

    if as_json:
        click.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return

    if not records:
        click.echo("No backups found")
        return

    for record in records:
        click.echo(
            f"{record.id:>6}  {record.created_at:%Y-%m-%d %H:%M:%S}  {record.target:<40}  "
            f"{record.size_bytes:>12}  {record.storage_key}"
        )


@main.command('prune')
@click.option('--target', help='Only prune this target (default: every target).')
@click.option('--dry-run', is_flag=True, help='Report what would be pruned without deleting anything.')
def prune_command(target, dry_run):
    """Apply the retention policy."""
    settings = _settings()
    if settings.retention is None:
        _fail(ConfigurationError(
            "Retention is not configured: set DBKEEP_RETENTION_MIN_KEEP and/or DBKEEP_RETENTION_MAX_AGE_DAYS"
        ))

    manager = RetentionManager(get_catalog(current_app), _storage(settings))
    if target:
        results = [manager.enforce(target, settings.retention, dry_run=dry_run)]
    else:
        results = manager.enforce_all(settings.retention, dry_run=dry_run)['targets']

    for result in results:
        if dry_run:
            click.echo(
                f"{result['target']}: would prune {len(result['deleted'])} "
                f"({result['freed_bytes']} bytes), would keep {result['kept']}"
            )
            for record_id in result['deleted']:
                click.echo(f"  {record_id}")
            continue
        click.echo(f"{result['target']}: pruned {len(result['deleted'])}, kept {result['kept']}")
        for error in result['errors']:
            click.echo(f"Warning: {error}", err=True)


@main.command('repair')
@click.option('--older-than-hours', type=int, default=24, show_default=True,
              help='Only abort uploads started at least this long ago.')
def repair_command(older_than_hours):
    """Abort multipart uploads left behind by crashed backups."""
    settings = _settings()
    try:
        summary = repair(get_catalog(current_app), _storage(settings), timedelta(hours=older_than_hours))
    except BackupError as e:
        _fail(e)

    click.echo(f"Aborted {len(summary['aborted'])} stale upload(s)")
    for upload_id in summary['failed']:
        click.echo(f"Warning: could not abort upload {upload_id}", err=True)
    for upload in summary['untracked']:
        click.echo(f"Untracked pending upload: {upload['Key']} ({upload['UploadId']})")
    for record_id in summary['missing']:
        click.echo(f"Backup {record_id} is missing from storage; marked aborted")


if __name__ == '__main__':
    main()
