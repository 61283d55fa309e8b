"""
Tests for the batchex command line
"""

import json

import pytest
from click.testing import CliRunner

from batchex.cli import cli
from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.services.batch_service import BatchService
from batchex.storage.filesystem_storage import FileSystemStorage

# Keeps log lines out of the JSON output
QUIET = ['--log-level', 'ERROR']


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv('HOME', str(tmp_path))
    monkeypatch.setenv('BATCHEX_DB_PATH', str(tmp_path / 'batchex.db'))
    monkeypatch.setenv('BATCHEX_STORAGE_PATH', str(tmp_path / 'storage'))
    BatchExConfig.reset()
    yield CliRunner()
    BatchExConfig.reset()


@pytest.fixture
def initialized(runner):
    result = runner.invoke(cli, QUIET + ['init'])
    assert result.exit_code == 0, result.output

    db = Database(BatchExConfig())
    batches = BatchService(db, FileSystemStorage(db.config.get('storage', {})))
    project = batches.create_project('user_1', 'Invoices', {'columns': [{'id': 'a', 'name': 'A'}]})
    batch = batches.create_batch(project['id'], [{'content': b'img', 'filename': 'a.png'}])
    yield {'project_id': project['id'], 'batch_id': batch['id']}
    db.close()


def test_init_creates_database(runner, tmp_path):
    result = runner.invoke(cli, QUIET + ['init'])

    assert result.exit_code == 0
    assert 'BatchEx initialized' in result.output
    assert (tmp_path / 'batchex.db').exists()


def test_enqueue_and_stats(runner, initialized):
    result = runner.invoke(cli, QUIET + [
        'enqueue', '--project-id', initialized['project_id'], '--batch-id', initialized['batch_id']
    ])
    assert result.exit_code == 0, result.output
    assert len(json.loads(result.output)['job_ids']) == 1

    result = runner.invoke(cli, QUIET + ['stats', '--project-id', initialized['project_id']])
    stats = json.loads(result.output)
    assert stats['queued'] == 1
    assert stats['worker'] == {'running': False}


def test_cancel(runner, initialized):
    runner.invoke(cli, QUIET + ['enqueue', '--project-id', initialized['project_id'], '--batch-id', initialized['batch_id']])

    result = runner.invoke(cli, QUIET + ['cancel', '--project-id', initialized['project_id']])

    assert json.loads(result.output) == {'canceled_count': 1, 'batches_reset': 1}


def test_enqueue_unknown_project_aborts(runner, initialized):
    result = runner.invoke(cli, QUIET + ['enqueue', '--project-id', 'prj_missing', '--batch-id', 'bat_1'])

    assert result.exit_code != 0
    assert 'not found' in result.output


def test_metrics_and_reap(runner, initialized):
    result = runner.invoke(cli, QUIET + ['metrics', '--time-range', '7d'])
    assert json.loads(result.output)['stats']['total'] == 0

    result = runner.invoke(cli, QUIET + ['reap'])
    assert result.output.strip() == 'Reaped 0 batches'
