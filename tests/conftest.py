"""
Shared fixtures: an in-memory database, a temporary image store and a fake
vision model whose responses each test scripts.
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.jobs.queue import JobQueue
from batchex.jobs.worker import Worker, WorkerConfig
from batchex.processors.llm.openai_service import ModelResponse
from batchex.services.batch_service import BatchService
from batchex.services.quota_service import QuotaLedger
from batchex.storage.filesystem_storage import FileSystemStorage

COLUMNS = [
    {'id': 'invoice_number', 'name': 'Invoice Number', 'type': 'text', 'description': 'Invoice id'},
    {'id': 'total_amount', 'name': 'Total Amount', 'type': 'currency', 'description': 'Grand total'},
]

CUSTOM_ENDPOINT = {
    'endpoint_mode': 'custom',
    'endpoint': 'http://model.local/v1/chat/completions',
    'api_key': 'sk-test',
    'model_name': 'vision-test',
}


def make_response(payload, input_tokens=100, output_tokens=20, model='vision-test') -> ModelResponse:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return ModelResponse(
        content=content,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        duration_ms=12.0
    )


@pytest.fixture
def config():
    return BatchExConfig.from_dict({
        'database': {'type': 'memory'},
        'queue': {'retry_delay_base': 0.0, 'retry_delay_max': 0.0, 'poll_interval': 0.01},
        'instance': {'max_concurrent_projects': 5, 'max_parallel_requests': 10, 'max_requests_per_minute': 600},
    })


@pytest.fixture
def db(config):
    database = Database(config)
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def storage(tmp_path):
    return FileSystemStorage({'path': str(tmp_path / 'storage')})


@pytest.fixture
def queue(db):
    return JobQueue(db)


@pytest.fixture
def batches(db, storage, queue):
    return BatchService(db, storage, queue)


@pytest.fixture
def quota(db):
    return QuotaLedger(db)


@pytest.fixture
def project(batches):
    settings = {'columns': COLUMNS, **CUSTOM_ENDPOINT}
    return batches.create_project('user_1', 'Invoices', settings)


@pytest.fixture
def make_batch(batches, project):
    def _make(image_count=1, project_id=None):
        images = [
            {'content': f'image-{i}'.encode(), 'filename': f'page{i}.png', 'mime_type': 'image/png'}
            for i in range(image_count)
        ]
        return batches.create_batch(project_id or project['id'], images)
    return _make


@pytest.fixture
def model_client():
    client = Mock()
    client.complete = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def client_factory(model_client):
    return Mock(return_value=model_client)


@pytest.fixture
def worker(db, queue, batches, quota, storage, client_factory):
    return Worker(
        db,
        WorkerConfig(poll_interval=0.01, max_parallel_requests=10, job_timeout=5.0, shutdown_timeout=1.0),
        queue=queue,
        batches=batches,
        quota=quota,
        storage=storage,
        client_factory=client_factory
    )
