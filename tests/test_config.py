"""
Tests for BatchExConfig
"""

import pytest
import yaml

from batchex.config.batchex_config import BatchExConfig


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv('HOME', str(tmp_path))
    BatchExConfig.reset()
    yield tmp_path
    BatchExConfig.reset()


def test_defaults_loaded(home):
    config = BatchExConfig()

    assert config.get('instance.max_concurrent_projects') == 1
    assert config.get('queue.redo_priority') == 5
    assert config.get('reaper.timeout_minutes') == 20
    assert config.get('missing.key', 'fallback') == 'fallback'


def test_singleton(home):
    assert BatchExConfig() is BatchExConfig()


def test_from_dict_is_detached_and_deep_merged(home):
    config = BatchExConfig.from_dict({'instance': {'max_parallel_requests': 3}})

    assert config is not BatchExConfig()
    assert config.get('instance.max_parallel_requests') == 3
    assert config.get('instance.max_requests_per_minute') == 60


def test_env_overrides_instance_limits(home, monkeypatch):
    monkeypatch.setenv('INSTANCE_MAX_PARALLEL_REQUESTS', '4')
    monkeypatch.setenv('INSTANCE_MAX_REQUESTS_PER_MINUTE', 'lots')

    config = BatchExConfig()

    assert config.get('instance.max_parallel_requests') == 4
    assert config.get('instance.max_requests_per_minute') == 60


def test_user_config_file_is_loaded(home):
    config_dir = home / '.batchex'
    config_dir.mkdir()
    (config_dir / 'config.yaml').write_text(yaml.dump({'instance': {'max_concurrent_projects': 3}}))

    assert BatchExConfig().get('instance.max_concurrent_projects') == 3


def test_invalid_user_config_rejected(home):
    config_dir = home / '.batchex'
    config_dir.mkdir()
    (config_dir / 'config.yaml').write_text(yaml.dump({'instance': {'max_concurrent_projects': 0}}))

    with pytest.raises(RuntimeError):
        BatchExConfig()


def test_setup_persists_config(home):
    BatchExConfig.setup(database={'type': 'sqlite', 'path': str(home / 'jobs.db')})

    saved = yaml.safe_load((home / '.batchex' / 'config.yaml').read_text())
    assert saved['database']['path'] == str(home / 'jobs.db')
    assert saved['queue']['max_attempts'] == 3


def test_set_and_validate(home):
    config = BatchExConfig.from_dict({})
    config.set('instance.max_parallel_requests', 0)

    assert config.validate() is False
