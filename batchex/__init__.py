"""
BatchEx - Batch Extraction Job Core

Queues image batches for extraction by a vision model, runs them under
instance, project and endpoint limits, and tracks the results as reviewable
rows.

Basic usage:
    from batchex import BatchExConfig, Database, QueueService

    db = Database(BatchExConfig())
    db.create_tables()

    service = QueueService(db)
    result = service.enqueue('prj_123', batch_id='bat_456')
    print(service.get_status(result['job_id']))

Run the worker with ``batchex worker``.
"""

from batchex.config.batchex_config import BatchExConfig
from batchex.context import UserContext
from batchex.db.connection import Database
from batchex.services.queue_service import QueueService

__all__ = ['BatchExConfig', 'Database', 'QueueService', 'UserContext']

__version__ = '0.1.0'
