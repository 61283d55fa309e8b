"""
Tests for MetricsRecorder
"""

from datetime import timedelta

import pytest

from batchex.db.models import ProcessingMetric, utcnow
from batchex.jobs.metrics import MetricsRecorder


@pytest.fixture
def recorder(db):
    return MetricsRecorder(db)


def _record(recorder, project_id='prj_1', status='success', seconds=2.0, **kwargs):
    return recorder.record(
        job_id=kwargs.pop('job_id', 'job_1'),
        job_type=kwargs.pop('job_type', 'process_batch'),
        project_id=project_id,
        batch_id=kwargs.pop('batch_id', 'bat_1'),
        started_at=utcnow() - timedelta(seconds=seconds),
        status=status,
        **kwargs
    )


def _age(db, metric_id, hours):
    with db.transaction() as session:
        session.get(ProcessingMetric, metric_id).created_at = utcnow() - timedelta(hours=hours)


def test_summary_counts(recorder):
    _record(recorder, input_tokens=100, output_tokens=10, extraction_count=4, model_used='vision-test')
    _record(recorder, input_tokens=300, output_tokens=30, extraction_count=2, model_used='vision-test')
    _record(recorder, status='failed', job_type='process_redo', error_message="boom")

    summary = recorder.summarize()

    assert summary['total'] == 3
    assert summary['successful'] == 2
    assert summary['failed'] == 1
    assert summary['success_rate'] == 66.7
    assert summary['total_input_tokens'] == 400
    # The failed record has no tokens and is left out of the average
    assert summary['average_input_tokens_per_batch'] == 200
    assert summary['batch_processing'] == 2
    assert summary['redo_processing'] == 1
    assert summary['model_usage'] == {'vision-test': 2}
    assert summary['min_duration'] >= 2.0
    assert len(summary['recent_metrics']) == 3


def test_summary_filters_by_project_and_range(db, recorder):
    _record(recorder, project_id='prj_1')
    old = _record(recorder, project_id='prj_1')
    _record(recorder, project_id='prj_2')
    _age(db, old, hours=30)

    assert recorder.summarize(['prj_1'])['total'] == 1
    assert recorder.summarize(['prj_1'], time_range='7d')['total'] == 2
    assert recorder.summarize(time_range='all')['total'] == 3
    assert recorder.summarize([])['total'] == 0


def test_empty_summary(recorder):
    summary = recorder.summarize()

    assert summary['total'] == 0
    assert summary['success_rate'] == 0
    assert summary['average_duration'] == 0


def test_hourly_breakdown_has_24_buckets(db, recorder):
    _record(recorder)
    earlier = _record(recorder, status='failed')
    _age(db, earlier, hours=3)

    breakdown = recorder.summarize(time_range='24h')['hourly_breakdown']

    assert len(breakdown) == 24
    assert breakdown[-1]['hour'] == f"{utcnow().hour}:00"
    assert breakdown[-1]['successful'] == 1
    assert breakdown[-4]['failed'] == 1
    assert sum(bucket['count'] for bucket in breakdown) == 2
    assert recorder.summarize(time_range='7d')['hourly_breakdown'] is None


def test_unknown_time_range(recorder):
    with pytest.raises(ValueError):
        recorder.summarize(time_range='2w')


def test_batch_metrics_pagination(recorder):
    for index in range(5):
        _record(recorder, job_id=f'job_{index}', batch_id=f'bat_{index}', input_tokens=10)
    _record(recorder, job_id='job_multi', batch_id='bat_multi', request_details=[
        {'request_index': 0, 'image_count': 1, 'input_tokens': 5, 'output_tokens': 1},
        {'request_index': 1, 'image_count': 1, 'input_tokens': 5, 'output_tokens': 1},
    ])

    first = recorder.batch_metrics(page=1, per_page=4)
    second = recorder.batch_metrics(page=2, per_page=4)

    assert first['pagination'] == {'page': 1, 'per_page': 4, 'total_pages': 2, 'total_items': 6}
    assert len(first['batches']) == 4
    assert len(second['batches']) == 2
    # Newest first
    assert first['batches'][0]['batch_id'] == 'bat_multi'
    assert first['batches'][0]['request_count'] == 2
    assert first['batches'][1]['request_count'] == 1
    assert first['summary']['total_batches'] == 6
    assert first['summary']['total_requests'] == 5


def test_record_failure_is_swallowed(recorder):
    assert recorder.record(
        job_id='job_1', job_type='process_batch', project_id=None, batch_id=None,
        started_at=utcnow(), status='success'
    ) is None
