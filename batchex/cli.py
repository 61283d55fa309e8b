"""
BatchEx CLI commands

This module provides command-line interface for BatchEx operations.
"""

import asyncio
import json

import click

from batchex.config.batchex_config import BatchExConfig, setup_logging
from batchex.db.connection import Database
from batchex.exceptions import BatchExError
from batchex.jobs.reaper import StaleBatchReaper
from batchex.jobs.worker import WorkerConfig, run_worker
from batchex.services.batch_service import BatchService
from batchex.services.queue_service import QueueService
from batchex.services.quota_service import QuotaLedger
from batchex.storage.filesystem_storage import FileSystemStorage


def _open_database() -> Database:
    return Database(BatchExConfig())


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _service() -> QueueService:
    db = _open_database()
    return QueueService(db, FileSystemStorage(db.config.get('storage', {})))


@click.group()
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
              help='Override the configured logging level')
def cli(log_level):
    """BatchEx command-line interface"""
    setup_logging(level=log_level)


@cli.command()
@click.option('--db-type', type=click.Choice(['sqlite', 'postgresql']), help='Database type')
@click.option('--db-path', type=click.Path(), help='SQLite database path')
@click.option('--db-host', help='PostgreSQL host')
@click.option('--db-port', type=int, help='PostgreSQL port')
@click.option('--db-name', help='PostgreSQL database name')
@click.option('--db-user', help='PostgreSQL user')
@click.option('--db-password', help='PostgreSQL password')
@click.option('--storage-path', type=click.Path(), help='Storage path for images')
def init(db_type, db_path, db_host, db_port, db_name, db_user, db_password, storage_path):
    """Write configuration and create database tables"""
    database = {}
    postgres = {}
    if db_type:
        database['type'] = db_type
    if db_path:
        database['path'] = db_path
    for key, value in (('host', db_host), ('port', db_port), ('database', db_name),
                       ('user', db_user), ('password', db_password)):
        if value is not None:
            postgres[key] = value
    if postgres:
        database['postgres'] = postgres

    sections = {}
    if database:
        sections['database'] = database
    if storage_path:
        sections['storage'] = {'path': storage_path}

    try:
        if sections:
            BatchExConfig.setup(**sections)
        db = _open_database()
        db.create_tables()
        FileSystemStorage(db.config.get('storage', {}))
        synced = QuotaLedger(db).sync_predefined_endpoints()
    except Exception as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()

    click.echo('BatchEx initialized')
    click.echo(f"  Database: {db.config.get('database.type')}")
    click.echo(f"  Storage:  {db.config.get('storage.path')}")
    click.echo(f'  Predefined endpoints synced: {synced}')


@cli.command()
@click.option('--no-reaper', is_flag=True, help='Do not run the stale batch reaper in this process')
@click.option('--poll-interval', type=float, help='Seconds between queue polls')
def worker(no_reaper, poll_interval):
    """Run the job worker until interrupted"""
    db = _open_database()
    config = WorkerConfig.from_config(db.config)
    if poll_interval:
        config.poll_interval = poll_interval
    asyncio.run(run_worker(db, config, with_reaper=not no_reaper))


@cli.command()
@click.option('--timeout-minutes', type=float, help='Processing age after which a batch is failed')
def reap(timeout_minutes):
    """Fail stale processing batches once"""
    db = _open_database()
    reaper = StaleBatchReaper(db, QueueService(db).queue, timeout_minutes=timeout_minutes)
    click.echo(f'Reaped {reaper.reap_once()} batches')


@cli.command()
@click.option('--project-id', required=True, help='Project the batches belong to')
@click.option('--batch-id', 'batch_ids', multiple=True, required=True, help='Batch to enqueue (repeatable)')
@click.option('--priority', type=int, default=10, help='Lower runs first')
def enqueue(project_id, batch_ids, priority):
    """Queue batches for extraction"""
    try:
        _echo_json(_service().enqueue(project_id, batch_ids=list(batch_ids), priority=priority))
    except BatchExError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@cli.command()
@click.option('--project-id', required=True, help='Project whose jobs are canceled')
@click.option('--batch-id', 'batch_ids', multiple=True, help='Limit to these batches (repeatable)')
def cancel(project_id, batch_ids):
    """Cancel live jobs of a project"""
    try:
        _echo_json(_service().cancel(project_id, list(batch_ids) or None))
    except BatchExError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@cli.command()
@click.option('--project-id', required=True, help='Project of the failed jobs')
@click.option('--job-id', help='Job to retry')
@click.option('--all', 'retry_all', is_flag=True, help='Retry every failed job of the project')
def retry(project_id, job_id, retry_all):
    """Reset failed jobs to queued"""
    try:
        _echo_json(_service().retry(project_id, job_id=job_id, retry_all=retry_all))
    except BatchExError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@cli.command()
@click.option('--project-id', help='Limit to one project')
def stats(project_id):
    """Show queue depth by status"""
    try:
        _echo_json(_service().stats(project_id))
    except BatchExError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@cli.command()
@click.option('--project-id', help='Limit to one project')
@click.option('--time-range', default='24h',
              type=click.Choice(['1h', '6h', '12h', '24h', '7d', '30d', 'all']), help='Window to summarize')
def metrics(project_id, time_range):
    """Show processing metrics"""
    try:
        _echo_json(_service().metrics(project_id, time_range))
    except BatchExError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@cli.command('migrate-legacy')
def migrate_legacy():
    """Convert legacy inline batch results into row records"""
    db = _open_database()
    click.echo(f'Migrated {BatchService(db).migrate_legacy_processed_data()} batches')


@cli.command('sync-endpoints')
def sync_endpoints():
    """Sync predefined endpoints from configuration into the database"""
    db = _open_database()
    click.echo(f'Synced {QuotaLedger(db).sync_predefined_endpoints()} endpoints')


if __name__ == '__main__':
    cli()
