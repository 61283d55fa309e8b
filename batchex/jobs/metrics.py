"""
Metrics Recorder

One ``processing_metrics`` row per processed job plus the aggregate views
built from them.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, func

from batchex.db.connection import Database
from batchex.db.models import ProcessingMetric, new_id, utcnow

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'

TIME_RANGES = {
    '1h': timedelta(hours=1),
    '6h': timedelta(hours=6),
    '12h': timedelta(hours=12),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    'all': None,
}


def _since(time_range: str) -> Optional[datetime]:
    if time_range not in TIME_RANGES:
        raise ValueError(f"Unknown time range: {time_range}")
    window = TIME_RANGES[time_range]
    return utcnow() - window if window else None


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


class MetricsRecorder:
    """Writes and aggregates processing metrics"""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        job_id: Optional[str],
        job_type: str,
        project_id: str,
        batch_id: Optional[str],
        started_at: datetime,
        status: str,
        image_count: int = 0,
        extraction_count: int = 0,
        model_used: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        request_details: Optional[List[Dict[str, Any]]] = None,
        error_message: Optional[str] = None
    ) -> Optional[str]:
        """
        Append a metric record

        Failures are logged and swallowed so metrics never fail a job.

        Returns:
            Metric id, or None when recording failed
        """
        completed_at = utcnow()
        try:
            with self.db.transaction() as session:
                metric = ProcessingMetric(
                    id=new_id('met'),
                    job_id=job_id,
                    job_type=job_type,
                    batch_id=batch_id,
                    project_id=project_id,
                    started_at=started_at,
                    completed_at=completed_at,
                    duration_ms=max(0.0, (completed_at - started_at).total_seconds() * 1000),
                    status=status,
                    image_count=image_count,
                    extraction_count=extraction_count,
                    model_used=model_used,
                    tokens_used=int(input_tokens or 0) + int(output_tokens or 0),
                    input_tokens=int(input_tokens or 0),
                    output_tokens=int(output_tokens or 0),
                    request_details=request_details or None,
                    error_message=error_message,
                    created_at=completed_at
                )
                session.add(metric)
                return metric.id
        except Exception as e:
            logger.error(f"Failed to record metrics for job {job_id}: {e}")
            return None

    def _query(self, project_ids: Optional[Sequence[str]], time_range: str):
        query = select(ProcessingMetric)
        since = _since(time_range)
        if since is not None:
            query = query.where(ProcessingMetric.created_at >= since)
        if project_ids is not None:
            query = query.where(ProcessingMetric.project_id.in_(list(project_ids)))
        return query

    def summarize(self, project_ids: Optional[Sequence[str]] = None, time_range: str = '24h') -> Dict[str, Any]:
        """
        Aggregate statistics over a time range

        Args:
            project_ids: Projects to include; None means every project
            time_range: One of 1h, 6h, 12h, 24h, 7d, 30d or all

        Returns:
            Summary dict; durations are in seconds
        """
        if project_ids is not None and not project_ids:
            metrics = []
        else:
            with self.db.session() as session:
                query = self._query(project_ids, time_range).order_by(
                    ProcessingMetric.created_at.desc(), ProcessingMetric.id.desc()
                )
                metrics = list(session.execute(query).scalars().all())

        total = len(metrics)
        successful = sum(1 for m in metrics if m.status == STATUS_SUCCESS)
        failed = sum(1 for m in metrics if m.status == STATUS_FAILED)
        durations = [m.duration_ms or 0 for m in metrics]
        tokens = [m.tokens_used or 0 for m in metrics]
        input_tokens = [m.input_tokens or 0 for m in metrics]
        output_tokens = [m.output_tokens or 0 for m in metrics]
        extractions = [m.extraction_count or 0 for m in metrics]

        model_usage: Dict[str, int] = {}
        for m in metrics:
            if m.model_used:
                model_usage[m.model_used] = model_usage.get(m.model_used, 0) + 1

        return {
            'total': total,
            'successful': successful,
            'failed': failed,
            'success_rate': round(successful / total * 100, 1) if total else 0,
            'average_duration': round(_average(durations) / 1000, 2),
            'min_duration': round(min(durations) / 1000, 2) if durations else 0,
            'max_duration': round(max(durations) / 1000, 2) if durations else 0,
            'total_images': sum(m.image_count or 0 for m in metrics),
            'total_extractions': sum(extractions),
            'average_extractions_per_batch': round(_average(extractions), 1),
            'total_tokens': sum(tokens),
            'total_input_tokens': sum(input_tokens),
            'total_output_tokens': sum(output_tokens),
            # Records without usage do not drag the averages down
            'average_tokens_per_batch': round(_average([t for t in tokens if t])),
            'average_input_tokens_per_batch': round(_average([t for t in input_tokens if t])),
            'average_output_tokens_per_batch': round(_average([t for t in output_tokens if t])),
            'batch_processing': sum(1 for m in metrics if m.job_type == 'process_batch'),
            'redo_processing': sum(1 for m in metrics if m.job_type == 'process_redo'),
            'model_usage': model_usage,
            'hourly_breakdown': self._hourly_breakdown(metrics) if time_range == '24h' else None,
            'recent_metrics': [self._recent(m) for m in metrics[:10]]
        }

    @staticmethod
    def _hourly_breakdown(metrics: List[ProcessingMetric]) -> List[Dict[str, Any]]:
        current_hour = utcnow().replace(minute=0, second=0, microsecond=0)
        starts = [current_hour - timedelta(hours=offset) for offset in range(23, -1, -1)]
        buckets = {start: {'hour': f"{start.hour}:00", 'successful': 0, 'failed': 0, 'count': 0}
                   for start in starts}

        for m in metrics:
            if not m.created_at:
                continue
            bucket = buckets.get(m.created_at.replace(minute=0, second=0, microsecond=0))
            if bucket is None:
                continue
            bucket['count'] += 1
            if m.status == STATUS_SUCCESS:
                bucket['successful'] += 1
            else:
                bucket['failed'] += 1

        return [buckets[start] for start in starts]

    @staticmethod
    def _recent(metric: ProcessingMetric) -> Dict[str, Any]:
        return {
            'id': metric.id,
            'batch_id': metric.batch_id,
            'job_type': metric.job_type,
            'status': metric.status,
            'duration_ms': metric.duration_ms,
            'image_count': metric.image_count,
            'extraction_count': metric.extraction_count,
            'model_used': metric.model_used,
            'created_at': metric.created_at.isoformat() if metric.created_at else None,
            'error_message': metric.error_message
        }

    def batch_metrics(
        self,
        project_ids: Optional[Sequence[str]] = None,
        time_range: str = '24h',
        page: int = 1,
        per_page: int = 50
    ) -> Dict[str, Any]:
        """Paginated per-job listing, newest first, with request details"""
        page = max(1, int(page))
        per_page = max(1, int(per_page))

        if project_ids is not None and not project_ids:
            items, total_items = [], 0
        else:
            with self.db.session() as session:
                query = self._query(project_ids, time_range)
                total_items = session.execute(
                    select(func.count()).select_from(query.subquery())
                ).scalar() or 0
                records = session.execute(
                    query.order_by(ProcessingMetric.created_at.desc(), ProcessingMetric.id.desc())
                    .offset((page - 1) * per_page)
                    .limit(per_page)
                ).scalars().all()
                items = []
                for m in records:
                    item = m.to_dict()
                    item['request_details'] = m.request_details or []
                    item['request_count'] = len(item['request_details']) or 1
                    items.append(item)

        return {
            'batches': items,
            'summary': {
                'total_batches': total_items,
                'total_input_tokens': sum(i['input_tokens'] or 0 for i in items),
                'total_output_tokens': sum(i['output_tokens'] or 0 for i in items),
                'total_requests': sum(i['request_count'] for i in items),
                'success_count': sum(1 for i in items if i['status'] == STATUS_SUCCESS),
                'failed_count': sum(1 for i in items if i['status'] == STATUS_FAILED)
            },
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total_pages': math.ceil(total_items / per_page) if total_items else 0,
                'total_items': total_items
            },
            'time_range': time_range
        }
