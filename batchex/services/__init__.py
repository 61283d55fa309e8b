from batchex.services.batch_service import BatchService, BatchStatus, RowStatus
from batchex.services.quota_service import QuotaLedger, LimitCheck
from batchex.services.queue_service import QueueService

__all__ = ['BatchService', 'BatchStatus', 'RowStatus', 'QuotaLedger', 'LimitCheck', 'QueueService']
