"""
Tests for QuotaLedger
"""

import pytest

from batchex.db.models import LlmEndpoint
from batchex.exceptions import ValidationError, NotFoundError
from batchex.services.quota_service import managed_endpoint_id


@pytest.fixture
def endpoint_id(quota):
    quota.sync_predefined_endpoints([{
        'alias': 'shared-vision',
        'endpoint': 'http://managed.local/v1/chat/completions',
        'model': 'managed-vision',
        'max_input_tokens_per_day': 1000,
        'max_output_tokens_per_day': 200,
    }])
    return quota.get_usage_report()[0]['endpoint']['id']


class TestLimits:
    """Tests for limit resolution"""

    def test_instance_limits_from_config(self, quota):
        assert quota.get_instance_limits() == {
            'max_concurrent_projects': 5,
            'max_parallel_requests': 10,
            'max_requests_per_minute': 600,
        }

    def test_user_override_replaces_set_values_only(self, quota):
        quota.set_user_limits('user_1', max_parallel_requests=3)

        limits = quota.get_effective_limits('user_1')

        assert limits['max_parallel_requests'] == 3
        assert limits['max_concurrent_projects'] == 5
        assert quota.get_effective_limits('user_2')['max_parallel_requests'] == 10

    def test_project_settings_only_lower_limits(self, quota, batches, project):
        quota.set_user_limits('user_1', max_parallel_requests=4)
        batches.update_project_settings(project['id'], {'max_parallel_requests': 8, 'requests_per_minute': 30})

        limits = quota.get_project_limits(project['id'])

        assert limits['max_parallel_requests'] == 4
        assert limits['max_requests_per_minute'] == 30

    def test_project_limits_for_missing_project(self, quota):
        with pytest.raises(NotFoundError):
            quota.get_project_limits('prj_missing')

    def test_invalid_user_limits_rejected(self, quota):
        with pytest.raises(ValidationError):
            quota.set_user_limits('user_1', max_parallel_requests=0)
        with pytest.raises(ValidationError):
            quota.set_user_limits('user_1', max_tokens=5)

    def test_delete_user_limits(self, quota):
        quota.set_user_limits('user_1', max_parallel_requests=3)

        assert quota.delete_user_limits('user_1') is True
        assert quota.get_effective_limits('user_1')['max_parallel_requests'] == 10


class TestEndpoints:
    """Tests for managed endpoint quotas"""

    def test_sync_preserves_enabled_flag(self, db, quota, endpoint_id):
        with db.transaction() as session:
            session.get(LlmEndpoint, endpoint_id).is_enabled = False

        assert quota.sync_predefined_endpoints([{
            'alias': 'shared-vision', 'endpoint_url': 'http://new.local/v1', 'model_name': 'managed-vision-2'
        }]) == 1

        endpoint = quota.get_endpoint(endpoint_id)
        assert endpoint['is_enabled'] is False
        assert endpoint['model_name'] == 'managed-vision-2'
        assert 'api_key' not in endpoint

    def test_sync_skips_incomplete_entries(self, quota):
        assert quota.sync_predefined_endpoints([{'alias': 'broken'}, {'endpoint_url': 'http://x'}]) == 0

    def test_usage_accumulates_per_day(self, quota, endpoint_id):
        quota.record_usage(endpoint_id, 100, 10)
        quota.record_usage(endpoint_id, 50, 5)

        assert quota.get_usage_today(endpoint_id) == {
            'input_tokens_used': 150, 'output_tokens_used': 15, 'request_count': 2
        }

    def test_check_allows_until_ceiling(self, quota, endpoint_id):
        quota.record_usage(endpoint_id, 999, 0)
        assert quota.check_endpoint_limits(endpoint_id).allowed is True

        quota.record_usage(endpoint_id, 1, 0)
        check = quota.check_endpoint_limits(endpoint_id)

        assert check.allowed is False
        assert check.reason == "Daily input token limit exceeded (1000/1000)"

    def test_output_ceiling(self, quota, endpoint_id):
        quota.record_usage(endpoint_id, 0, 200)

        assert quota.check_endpoint_limits(endpoint_id).reason == "Daily output token limit exceeded (200/200)"

    def test_user_endpoint_override(self, quota, endpoint_id):
        quota.record_usage(endpoint_id, 1000, 0)
        quota.set_user_endpoint_limit('user_1', endpoint_id, max_input_tokens_per_day=5000)

        assert quota.check_endpoint_limits(endpoint_id, 'user_1').allowed is True
        assert quota.check_endpoint_limits(endpoint_id, 'user_2').allowed is False

    def test_unknown_and_disabled_endpoint(self, db, quota, endpoint_id):
        assert quota.check_endpoint_limits('end_missing').reason == "Endpoint not found"

        with db.transaction() as session:
            session.get(LlmEndpoint, endpoint_id).is_enabled = False

        assert quota.check_endpoint_limits(endpoint_id).reason == "Endpoint is disabled"

    def test_usage_report(self, quota, endpoint_id):
        quota.record_usage(endpoint_id, 500, 50)

        report = quota.get_usage_report(endpoint_id)[0]

        assert report['today']['input_percent'] == 50
        assert report['today']['output_percent'] == 25
        assert report['total_input_tokens'] == 500
        assert len(report['history']) == 1

    def test_managed_endpoint_id(self):
        assert managed_endpoint_id({'endpoint_mode': 'managed', 'llm_endpoint_id': 'end_1'}) == 'end_1'
        assert managed_endpoint_id({'endpoint_mode': 'custom', 'llm_endpoint_id': 'end_1'}) is None
        assert managed_endpoint_id({}) is None


class TestProjectAdmission:
    """Tests for the pre-enqueue project check"""

    def test_allows_idle_instance(self, quota, project):
        assert quota.check_project_processing_limits(project['id']).allowed is True

    def test_refuses_new_project_at_capacity(self, quota, queue, batches, project):
        quota.set_user_limits('user_1', max_concurrent_projects=1)
        busy = batches.create_project('user_9', 'Busy', {})
        job_id, _ = queue.enqueue_batch('bat_1', busy['id'])
        queue.claim(job_id)

        check = quota.check_project_processing_limits(project['id'])

        assert check.allowed is False
        assert check.reason == (
            "Instance is at maximum concurrent projects (1/1). Wait for current project to finish."
        )
        assert quota.check_project_processing_limits(busy['id']).allowed is True
        assert quota.count_active_projects() == 1

    def test_refuses_exhausted_managed_endpoint(self, quota, batches, project, endpoint_id):
        batches.update_project_settings(project['id'], {'endpoint_mode': 'managed', 'llm_endpoint_id': endpoint_id})
        quota.record_usage(endpoint_id, 1000, 0)

        assert quota.check_project_processing_limits(project['id']).allowed is False
