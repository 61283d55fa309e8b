"""
Tests for the async Worker

Each test enqueues jobs, runs one dispatch pass and waits for the started
tasks, with the vision model replaced by a scripted mock.
"""

import asyncio
from unittest.mock import patch

import pytest

from batchex.exceptions import TransientJobError
from batchex.jobs.queue import JobStatus
from batchex.jobs.worker import Worker, WorkerConfig

from conftest import CUSTOM_ENDPOINT, make_response

EXTRACTIONS = [
    {'column_id': 'invoice_number', 'column_name': 'Invoice Number', 'value': 'INV-1', 'image_index': 0},
    {'column_id': 'total_amount', 'column_name': 'Total Amount', 'value': '10.00', 'image_index': 0},
]


async def run_pass(worker):
    started = await worker.dispatch()
    await worker._wait_for_active_jobs()
    return started


def managed_endpoint(quota, **limits):
    quota.sync_predefined_endpoints([{
        'alias': 'shared-vision',
        'endpoint_url': 'http://managed.local/v1/chat/completions',
        'api_key': 'sk-managed',
        'model_name': 'managed-vision',
        **limits
    }])
    return quota.get_usage_report()[0]['endpoint']['id']


class TestProcessBatch:
    """Tests for process_batch execution"""

    @pytest.mark.asyncio
    async def test_successful_extraction(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        assert await run_pass(worker) == 1

        stored = batches.get_batch(batch['id'])
        rows = batches.get_rows(batch['id'])
        assert stored['status'] == 'review'
        assert len(rows) == 1
        assert [e['value'] for e in rows[0]['row_data']] == ['INV-1', '10.00']
        assert queue.get_job(job_id)['status'] == JobStatus.COMPLETED.value
        model_client.close.assert_awaited_once()

        summary = worker.metrics.summarize()
        assert summary['successful'] == 1
        assert summary['total_input_tokens'] == 100
        assert summary['total_extractions'] == 2

    @pytest.mark.asyncio
    async def test_empty_rows_are_dropped(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.return_value = make_response({'rows': [[], EXTRACTIONS]})
        batch = make_batch()
        queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        assert batches.get_batch(batch['id'])['row_count'] == 1

    @pytest.mark.asyncio
    async def test_cropped_images_are_not_sent(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        batch = make_batch(image_count=2)
        batches.add_image(batch['id'], content=b'crop', filename='crop.png')
        queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        prompt, images = model_client.complete.await_args.args
        assert len(images) == 2
        assert 'Invoice Number' in prompt

    @pytest.mark.asyncio
    async def test_per_image_mode_offsets_rows(self, worker, queue, batches, model_client, make_batch, project):
        batches.update_project_settings(project['id'], {
            'request_mode': 'per_image',
            'feature_flags': {'multi_row_extraction': True}
        })

        def rows(*values):
            return [
                {'row_index': index, 'column_id': 'invoice_number', 'column_name': 'Invoice Number',
                 'value': value, 'image_index': 0}
                for index, value in enumerate(values)
            ]

        model_client.complete.side_effect = [
            make_response(rows('A', 'B')),
            make_response(rows('C')),
        ]
        batch = make_batch(image_count=2)
        queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        stored = batches.get_rows(batch['id'])
        assert model_client.complete.await_count == 2
        assert [row['row_data'][0]['value'] for row in stored] == ['A', 'B', 'C']
        assert [row['row_data'][0]['row_index'] for row in stored] == [0, 1, 2]
        assert [row['row_data'][0]['image_index'] for row in stored] == [0, 0, 1]

        details = worker.metrics.batch_metrics()['batches'][0]
        assert details['request_count'] == 2


class TestFailures:
    """Tests for failure handling"""

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.side_effect = TransientJobError("upstream 502")
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        job = queue.get_job(job_id)
        assert job['status'] == JobStatus.RETRYING.value
        assert job['attempts'] == 1
        assert job['last_error'] == "upstream 502"
        assert batches.get_batch(batch['id'])['status'] == 'processing'
        assert worker.metrics.summarize()['failed'] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self, worker, queue, model_client, make_batch):
        model_client.complete.side_effect = RuntimeError("connection reset")
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        assert queue.get_job(job_id)['status'] == JobStatus.RETRYING.value

    @pytest.mark.asyncio
    async def test_last_attempt_fails_batch(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.side_effect = TransientJobError("upstream 502")
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        for _ in range(3):
            await run_pass(worker)

        assert queue.get_job(job_id)['status'] == JobStatus.FAILED.value
        stored = batches.get_batch(batch['id'])
        assert stored['status'] == 'failed'
        assert stored['error_message'] == "upstream 502"

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_immediately(self, worker, queue, batches, model_client):
        project = batches.create_project('user_1', 'No columns', dict(CUSTOM_ENDPOINT))
        batch = batches.create_batch(project['id'], [{'content': b'img', 'filename': 'a.png'}])
        job_id, _ = queue.enqueue_batch(batch['id'], project['id'])

        await run_pass(worker)

        job = queue.get_job(job_id)
        assert job['status'] == JobStatus.FAILED.value
        assert job['attempts'] == 0
        stored = batches.get_batch(batch['id'])
        assert stored['status'] == 'failed'
        assert 'no columns' in stored['error_message']
        model_client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_call_discards_result(self, worker, queue, batches, model_client, make_batch):
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        async def cancel_then_answer(prompt, images):
            queue.cancel(batch['project_id'])
            return make_response(EXTRACTIONS)

        model_client.complete.side_effect = cancel_then_answer

        await run_pass(worker)

        stored = batches.get_batch(batch['id'])
        assert queue.get_job(job_id)['status'] == JobStatus.CANCELED.value
        assert stored['status'] == 'failed'
        assert stored['error_message'] == "Processing canceled by user"
        assert batches.get_rows(batch['id']) == []

    @pytest.mark.asyncio
    async def test_job_timeout_is_retryable(self, db, queue, batches, quota, storage,
                                            client_factory, model_client, make_batch):
        worker = Worker(
            db, WorkerConfig(job_timeout=0.05), queue=queue, batches=batches,
            quota=quota, storage=storage, client_factory=client_factory
        )

        async def hang(prompt, images):
            await asyncio.sleep(1)

        model_client.complete.side_effect = hang
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        await run_pass(worker)

        job = queue.get_job(job_id)
        assert job['status'] == JobStatus.RETRYING.value
        assert 'timeout' in job['last_error']


class TestAdmission:
    """Tests for which candidates a dispatch pass starts"""

    @pytest.mark.asyncio
    async def test_priority_order_under_instance_cap(self, db, queue, batches, quota, storage,
                                                     client_factory, model_client, make_batch):
        worker = Worker(
            db, WorkerConfig(max_parallel_requests=1), queue=queue, batches=batches,
            quota=quota, storage=storage, client_factory=client_factory
        )
        model_client.complete.return_value = make_response(EXTRACTIONS)
        first = make_batch()
        second = make_batch()
        low, _ = queue.enqueue_batch(first['id'], first['project_id'], priority=10)
        high, _ = queue.enqueue_batch(second['id'], second['project_id'], priority=5)

        assert await worker.dispatch() == 1
        assert queue.get_job(high)['status'] == JobStatus.PROCESSING.value
        assert queue.get_job(low)['status'] == JobStatus.QUEUED.value
        assert batches.get_batch(first['id'])['status'] == 'pending'

        await worker._wait_for_active_jobs()
        assert await run_pass(worker) == 1
        assert queue.get_job(low)['status'] == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_project_parallel_limit(self, worker, queue, batches, project, model_client, make_batch):
        batches.update_project_settings(project['id'], {'max_parallel_requests': 1})
        model_client.complete.return_value = make_response(EXTRACTIONS)
        first = make_batch()
        second = make_batch()
        queue.enqueue_batch(first['id'], project['id'])
        second_job, _ = queue.enqueue_batch(second['id'], project['id'])

        assert await worker.dispatch() == 1
        assert queue.get_job(second_job)['status'] == JobStatus.QUEUED.value

        await worker._wait_for_active_jobs()

    @pytest.mark.asyncio
    async def test_concurrent_project_cap(self, db, queue, batches, quota, storage, client_factory,
                                          model_client, make_batch):
        quota.set_user_limits('user_1', max_concurrent_projects=1)
        worker = Worker(db, WorkerConfig(), queue=queue, batches=batches, quota=quota,
                        storage=storage, client_factory=client_factory)
        model_client.complete.return_value = make_response(EXTRACTIONS)

        other_project = batches.create_project('user_1', 'Other', dict(CUSTOM_ENDPOINT, columns=[
            {'id': 'invoice_number', 'name': 'Invoice Number'}
        ]))
        first = make_batch()
        second = make_batch(project_id=other_project['id'])
        queue.enqueue_batch(first['id'], first['project_id'])
        held, _ = queue.enqueue_batch(second['id'], other_project['id'])

        assert await worker.dispatch() == 1
        assert queue.get_job(held)['status'] == JobStatus.QUEUED.value

        await worker._wait_for_active_jobs()

    @pytest.mark.asyncio
    async def test_managed_endpoint_usage_recorded(self, worker, queue, batches, quota, project,
                                                   client_factory, model_client, make_batch):
        endpoint_id = managed_endpoint(quota, max_input_tokens_per_day=10000)
        batches.update_project_settings(project['id'], {'endpoint_mode': 'managed', 'llm_endpoint_id': endpoint_id})
        model_client.complete.return_value = make_response(EXTRACTIONS, input_tokens=300, output_tokens=40)
        batch = make_batch()
        queue.enqueue_batch(batch['id'], project['id'])

        await run_pass(worker)

        assert client_factory.call_args.kwargs['endpoint_url'] == 'http://managed.local/v1/chat/completions'
        assert client_factory.call_args.kwargs['model'] == 'managed-vision'
        assert quota.get_usage_today(endpoint_id) == {
            'input_tokens_used': 300, 'output_tokens_used': 40, 'request_count': 1
        }

    @pytest.mark.asyncio
    async def test_exhausted_endpoint_holds_job(self, worker, queue, batches, quota, project,
                                                model_client, make_batch):
        endpoint_id = managed_endpoint(quota, max_input_tokens_per_day=1000)
        batches.update_project_settings(project['id'], {'endpoint_mode': 'managed', 'llm_endpoint_id': endpoint_id})
        quota.record_usage(endpoint_id, 1000, 0)
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], project['id'])

        assert await run_pass(worker) == 0

        assert queue.get_job(job_id)['status'] == JobStatus.QUEUED.value
        assert batches.get_batch(batch['id'])['status'] == 'pending'
        model_client.complete.assert_not_awaited()


class TestLifecycle:
    """Tests for recovery and the run loop"""

    def test_recover_requeues_orphans(self, db, worker, queue, batches, make_batch):
        with_job = make_batch()
        without_job = make_batch()
        job_id, _ = queue.enqueue_batch(with_job['id'], with_job['project_id'])
        queue.claim(job_id)
        with db.transaction() as session:
            batches.mark_processing(session, with_job['id'])
            batches.mark_processing(session, without_job['id'])

        assert worker.recover() == {'requeued_jobs': 1, 'reset_batches': 1}
        assert queue.get_job(job_id)['status'] == JobStatus.QUEUED.value
        assert batches.get_batch(without_job['id'])['status'] == 'pending'

    @pytest.mark.asyncio
    async def test_run_processes_enqueued_batch_and_stops(self, worker, queue, batches,
                                                          model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        queue.on_enqueue = worker.notify
        batch = make_batch()
        task = asyncio.create_task(worker.run())

        queue.enqueue_batch(batch['id'], batch['project_id'])

        async def wait_for_review():
            while batches.get_batch(batch['id'])['status'] != 'review':
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait_for_review(), timeout=5)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        stats = worker.get_stats()
        assert stats['running'] is False
        assert stats['processed_count'] == 1
        assert set(stats['handlers_registered']) == {'process_batch', 'reprocess_batch', 'process_redo'}

    @pytest.mark.asyncio
    async def test_reprocess_job_requeues_batches(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        batch = make_batch()
        queue.enqueue_batch(batch['id'], batch['project_id'])
        await run_pass(worker)
        assert batches.get_batch(batch['id'])['status'] == 'review'

        job_id = queue.enqueue('reprocess_batch', {'project_id': batch['project_id'], 'batch_ids': [batch['id']]})
        await run_pass(worker)

        assert queue.get_job(job_id)['status'] == JobStatus.COMPLETED.value
        assert batches.get_batch(batch['id'])['status'] == 'pending'
        assert queue.get_stats(batch['project_id'])['queued'] == 1

    @pytest.mark.asyncio
    async def test_reprocess_skips_missing_batch(self, worker, queue, batches, model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        batch = make_batch()
        queue.enqueue_batch(batch['id'], batch['project_id'])
        await run_pass(worker)

        job_id = queue.enqueue('reprocess_batch', {
            'project_id': batch['project_id'], 'batch_ids': [batch['id'], 'bat_missing']
        })
        await run_pass(worker)

        assert queue.get_job(job_id)['status'] == JobStatus.COMPLETED.value
        assert batches.get_batch(batch['id'])['status'] == 'pending'
        live = queue.get_jobs_by_project(batch['project_id'], status=JobStatus.QUEUED.value)
        assert [(job['type'], job['batch_id']) for job in live] == [('process_batch', batch['id'])]

    @pytest.mark.asyncio
    async def test_reprocess_without_valid_batches_fails_permanently(self, worker, queue, project):
        job_id = queue.enqueue('reprocess_batch', {'project_id': project['id'], 'batch_ids': ['bat_missing']})

        await run_pass(worker)

        job = queue.get_job(job_id)
        assert job['status'] == JobStatus.FAILED.value
        assert job['attempts'] == 0


class TestOneJobPerBatch:
    """Tests that a batch never has two jobs running at once"""

    @pytest.mark.asyncio
    async def test_replacement_job_waits_for_superseded_job(self, worker, queue, batches,
                                                             model_client, make_batch):
        batch = make_batch()
        old_job, _ = queue.enqueue_batch(batch['id'], batch['project_id'])
        seen = {}

        async def reenqueue_during_call(prompt, images):
            seen['new_job'], seen['canceled'] = queue.enqueue_batch(batch['id'], batch['project_id'])
            seen['started'] = await worker.dispatch()
            seen['new_status'] = queue.get_job(seen['new_job'])['status']
            return make_response(EXTRACTIONS)

        model_client.complete.side_effect = reenqueue_during_call

        await run_pass(worker)

        assert seen['canceled'] == 1
        assert seen['started'] == 0
        assert seen['new_status'] == JobStatus.QUEUED.value
        assert queue.get_job(old_job)['status'] == JobStatus.CANCELED.value
        # The superseded job neither writes rows nor fails the batch
        stored = batches.get_batch(batch['id'])
        assert stored['status'] == 'processing'
        assert stored['error_message'] is None
        assert batches.get_rows(batch['id']) == []

        model_client.complete.side_effect = None
        model_client.complete.return_value = make_response(EXTRACTIONS)
        assert await run_pass(worker) == 1
        assert queue.get_job(seen['new_job'])['status'] == JobStatus.COMPLETED.value
        assert batches.get_batch(batch['id'])['status'] == 'review'

    @pytest.mark.asyncio
    async def test_redo_and_extraction_not_dispatched_together(self, worker, queue, batches,
                                                               model_client, make_batch):
        model_client.complete.return_value = make_response(EXTRACTIONS)
        batch = make_batch()
        queue.enqueue_batch(batch['id'], batch['project_id'])
        await run_pass(worker)
        crop_id = batches.add_image(batch['id'], content=b'crop', filename='crop.png')

        extraction_job, _ = queue.enqueue_batch(batch['id'], batch['project_id'])
        redo_job = worker.redo.enqueue_redo(
            batch['id'], batch['project_id'], 0, ['total_amount'], {'total_amount': crop_id}
        )

        assert await worker.dispatch() == 1
        assert queue.get_job(redo_job)['status'] == JobStatus.PROCESSING.value
        assert queue.get_job(extraction_job)['status'] == JobStatus.QUEUED.value

        await worker._wait_for_active_jobs()
        assert await run_pass(worker) == 1
        assert queue.get_job(extraction_job)['status'] == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_start_failure_releases_claimed_job(self, worker, queue, batches, make_batch):
        batch = make_batch()
        job_id, _ = queue.enqueue_batch(batch['id'], batch['project_id'])

        with patch.object(batches, 'mark_processing', side_effect=RuntimeError("database is locked")):
            assert await worker.dispatch() == 0

        job = queue.get_job(job_id)
        assert job['status'] == JobStatus.RETRYING.value
        assert job['last_error'] == "database is locked"
        assert worker._tasks == {}
