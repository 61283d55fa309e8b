"""
Quota Ledger

Instance limits come from configuration and may be overridden per user.
Managed endpoints carry daily token ceilings which may also be overridden per
user; usage is counted in one bucket per endpoint per UTC calendar day.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update, delete, and_, func
from sqlalchemy.exc import IntegrityError

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.db.models import (
    Project, QueueJob, LlmEndpoint, EndpointUsage, UserLimits, UserEndpointLimit, new_id, utcnow
)
from batchex.exceptions import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

INSTANCE_LIMIT_KEYS = ('max_concurrent_projects', 'max_parallel_requests', 'max_requests_per_minute')


def today_key() -> str:
    """Current UTC day as YYYY-MM-DD"""
    return utcnow().strftime('%Y-%m-%d')


@dataclass
class LimitCheck:
    """Outcome of an admission check"""
    allowed: bool
    reason: Optional[str] = None


class QuotaLedger:
    """Limits lookup, admission checks and daily token accounting"""

    def __init__(self, db: Database, config: Optional[BatchExConfig] = None):
        self.db = db
        self.config = config or db.config

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def get_instance_limits(self) -> Dict[str, int]:
        """Instance-wide defaults set by the deployer"""
        return {
            'max_concurrent_projects': int(self.config.get('instance.max_concurrent_projects', 1)),
            'max_parallel_requests': int(self.config.get('instance.max_parallel_requests', 10)),
            'max_requests_per_minute': int(self.config.get('instance.max_requests_per_minute', 60))
        }

    def get_effective_limits(self, user_id: Optional[str]) -> Dict[str, int]:
        """Instance limits with the user's overrides applied where set"""
        limits = self.get_instance_limits()
        if not user_id:
            return limits

        with self.db.session() as session:
            overrides = session.get(UserLimits, user_id)
            if overrides:
                for key in INSTANCE_LIMIT_KEYS:
                    value = getattr(overrides, key)
                    if value is not None:
                        limits[key] = value
        return limits

    def get_project_limits(self, project_id: str) -> Dict[str, int]:
        """
        Effective limits for one project

        Project settings may lower the owner's parallelism and rate but never
        raise them.
        """
        with self.db.session() as session:
            project = session.get(Project, project_id)
            if not project:
                raise NotFoundError(f"Project {project_id} not found")
            owner_id = project.owner_id
            settings = project.settings or {}

        limits = self.get_effective_limits(owner_id)
        for setting_key, limit_key in (('max_parallel_requests', 'max_parallel_requests'),
                                       ('requests_per_minute', 'max_requests_per_minute')):
            value = settings.get(setting_key)
            if isinstance(value, int) and value > 0:
                limits[limit_key] = min(limits[limit_key], value)
        return limits

    def get_endpoint_limits(self, endpoint_id: str, user_id: Optional[str] = None) -> Dict[str, Optional[int]]:
        """Daily token ceilings of an endpoint for a user; None means unlimited"""
        with self.db.session() as session:
            endpoint = session.get(LlmEndpoint, endpoint_id)
            if not endpoint:
                raise NotFoundError(f"Endpoint {endpoint_id} not found")
            limits = {
                'max_input_tokens_per_day': endpoint.max_input_tokens_per_day,
                'max_output_tokens_per_day': endpoint.max_output_tokens_per_day
            }
            if user_id:
                override = session.execute(
                    select(UserEndpointLimit).where(and_(
                        UserEndpointLimit.user_id == user_id,
                        UserEndpointLimit.endpoint_id == endpoint_id
                    ))
                ).scalars().first()
                if override:
                    for key in limits:
                        value = getattr(override, key)
                        if value is not None:
                            limits[key] = value
        return limits

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_endpoint_limits(self, endpoint_id: str, user_id: Optional[str] = None) -> LimitCheck:
        """Check a managed endpoint is enabled and still has daily budget"""
        with self.db.session() as session:
            endpoint = session.get(LlmEndpoint, endpoint_id)
            if not endpoint:
                return LimitCheck(False, "Endpoint not found")
            if not endpoint.is_enabled:
                return LimitCheck(False, "Endpoint is disabled")

        limits = self.get_endpoint_limits(endpoint_id, user_id)
        usage = self.get_usage_today(endpoint_id)

        max_input = limits['max_input_tokens_per_day']
        if max_input is not None and usage['input_tokens_used'] >= max_input:
            return LimitCheck(
                False, f"Daily input token limit exceeded ({usage['input_tokens_used']}/{max_input})"
            )
        max_output = limits['max_output_tokens_per_day']
        if max_output is not None and usage['output_tokens_used'] >= max_output:
            return LimitCheck(
                False, f"Daily output token limit exceeded ({usage['output_tokens_used']}/{max_output})"
            )
        return LimitCheck(True)

    def check_project_processing_limits(self, project_id: str) -> LimitCheck:
        """
        Pre-enqueue admission check for a project

        Refuses when the instance already runs its maximum number of distinct
        projects (unless this project is one of them) or when the project's
        managed endpoint is missing, disabled or out of daily tokens.
        """
        with self.db.session() as session:
            active = set(session.execute(
                select(QueueJob.project_id).where(QueueJob.status == 'processing').distinct()
            ).scalars().all())
            project = session.get(Project, project_id)
            if not project:
                return LimitCheck(False, f"Project {project_id} not found")
            owner_id = project.owner_id
            settings = project.settings or {}

        max_projects = self.get_effective_limits(owner_id)['max_concurrent_projects']
        if project_id not in active and len(active) >= max_projects:
            return LimitCheck(
                False,
                f"Instance is at maximum concurrent projects ({len(active)}/{max_projects}). "
                f"Wait for current project to finish."
            )

        endpoint_id = managed_endpoint_id(settings)
        if endpoint_id:
            return self.check_endpoint_limits(endpoint_id, owner_id)
        return LimitCheck(True)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def record_usage(self, endpoint_id: str, input_tokens: int, output_tokens: int) -> None:
        """Add one request's tokens to today's bucket"""
        day = today_key()
        values = dict(
            input_tokens_used=EndpointUsage.input_tokens_used + int(input_tokens or 0),
            output_tokens_used=EndpointUsage.output_tokens_used + int(output_tokens or 0),
            request_count=EndpointUsage.request_count + 1
        )
        condition = and_(EndpointUsage.endpoint_id == endpoint_id, EndpointUsage.date == day)

        with self.db.transaction() as session:
            result = session.execute(
                update(EndpointUsage).where(condition).values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return

        try:
            with self.db.transaction() as session:
                session.add(EndpointUsage(
                    endpoint_id=endpoint_id,
                    date=day,
                    input_tokens_used=int(input_tokens or 0),
                    output_tokens_used=int(output_tokens or 0),
                    request_count=1
                ))
        except IntegrityError:
            # Another writer created today's bucket first
            with self.db.transaction() as session:
                session.execute(
                    update(EndpointUsage).where(condition).values(**values)
                    .execution_options(synchronize_session=False)
                )

    def get_usage_today(self, endpoint_id: str) -> Dict[str, int]:
        with self.db.session() as session:
            usage = session.execute(
                select(EndpointUsage).where(and_(
                    EndpointUsage.endpoint_id == endpoint_id,
                    EndpointUsage.date == today_key()
                ))
            ).scalars().first()
            if not usage:
                return {'input_tokens_used': 0, 'output_tokens_used': 0, 'request_count': 0}
            return {
                'input_tokens_used': usage.input_tokens_used,
                'output_tokens_used': usage.output_tokens_used,
                'request_count': usage.request_count
            }

    def get_usage_report(self, endpoint_id: Optional[str] = None, days: int = 7) -> List[Dict[str, Any]]:
        """
        Usage per endpoint over the last ``days`` days

        Each entry carries the endpoint, its ceilings, today's usage with the
        percentage of each ceiling consumed, and the per-day history.
        """
        since = (utcnow() - timedelta(days=days - 1)).strftime('%Y-%m-%d')
        today = today_key()
        report = []

        with self.db.session() as session:
            query = select(LlmEndpoint).order_by(LlmEndpoint.alias)
            if endpoint_id:
                query = query.where(LlmEndpoint.id == endpoint_id)

            for endpoint in session.execute(query).scalars().all():
                history = session.execute(
                    select(EndpointUsage)
                    .where(and_(EndpointUsage.endpoint_id == endpoint.id, EndpointUsage.date >= since))
                    .order_by(EndpointUsage.date.asc())
                ).scalars().all()

                current = next((u for u in history if u.date == today), None)
                input_used = current.input_tokens_used if current else 0
                output_used = current.output_tokens_used if current else 0

                report.append({
                    'endpoint': endpoint.to_dict(),
                    'today': {
                        'input_tokens_used': input_used,
                        'output_tokens_used': output_used,
                        'request_count': current.request_count if current else 0,
                        'input_percent': _percent(input_used, endpoint.max_input_tokens_per_day),
                        'output_percent': _percent(output_used, endpoint.max_output_tokens_per_day)
                    },
                    'history': [u.to_dict() for u in history],
                    'total_input_tokens': sum(u.input_tokens_used for u in history),
                    'total_output_tokens': sum(u.output_tokens_used for u in history)
                })
        return report

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_user_limits(self, user_id: str, **limits) -> Dict[str, Any]:
        """Create or update a user's overrides; pass None to fall back to the default"""
        unknown = set(limits) - set(INSTANCE_LIMIT_KEYS)
        if unknown:
            raise ValidationError(f"Unknown limit keys: {', '.join(sorted(unknown))}")
        for key, value in limits.items():
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ValidationError(f"{key} must be a positive integer")

        with self.db.transaction() as session:
            record = session.get(UserLimits, user_id)
            if record is None:
                record = UserLimits(user_id=user_id)
                session.add(record)
            for key, value in limits.items():
                setattr(record, key, value)
            session.flush()
            return record.to_dict()

    def delete_user_limits(self, user_id: str) -> bool:
        with self.db.transaction() as session:
            result = session.execute(delete(UserLimits).where(UserLimits.user_id == user_id))
            return bool(result.rowcount)

    def set_user_endpoint_limit(
        self,
        user_id: str,
        endpoint_id: str,
        max_input_tokens_per_day: Optional[int] = None,
        max_output_tokens_per_day: Optional[int] = None
    ) -> Dict[str, Any]:
        with self.db.transaction() as session:
            if not session.get(LlmEndpoint, endpoint_id):
                raise NotFoundError(f"Endpoint {endpoint_id} not found")
            record = session.execute(
                select(UserEndpointLimit).where(and_(
                    UserEndpointLimit.user_id == user_id,
                    UserEndpointLimit.endpoint_id == endpoint_id
                ))
            ).scalars().first()
            if record is None:
                record = UserEndpointLimit(user_id=user_id, endpoint_id=endpoint_id)
                session.add(record)
            record.max_input_tokens_per_day = max_input_tokens_per_day
            record.max_output_tokens_per_day = max_output_tokens_per_day
            session.flush()
            return record.to_dict()

    def delete_user_endpoint_limit(self, user_id: str, endpoint_id: str) -> bool:
        with self.db.transaction() as session:
            result = session.execute(
                delete(UserEndpointLimit).where(and_(
                    UserEndpointLimit.user_id == user_id,
                    UserEndpointLimit.endpoint_id == endpoint_id
                ))
            )
            return bool(result.rowcount)

    def get_endpoint(self, endpoint_id: str, include_secret: bool = False) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            endpoint = session.get(LlmEndpoint, endpoint_id)
            if not endpoint:
                return None
            data = endpoint.to_dict()
            if include_secret:
                data['api_key'] = endpoint.api_key
            return data

    def sync_predefined_endpoints(self, endpoints: Optional[List[Dict[str, Any]]] = None) -> int:
        """
        Upsert endpoints declared in configuration, matched by alias

        Existing endpoints keep their ``is_enabled`` flag.

        Returns:
            Number of endpoints synced
        """
        if endpoints is None:
            endpoints = self.config.get('endpoints') or []

        synced = 0
        for entry in endpoints:
            alias = entry.get('alias')
            try:
                if not alias:
                    raise ValidationError("Predefined endpoint needs an alias")
                fields = {
                    'endpoint_url': entry.get('endpoint_url') or entry.get('endpoint'),
                    'api_key': entry.get('api_key'),
                    'model_name': entry.get('model_name') or entry.get('model'),
                    'max_input_tokens_per_day': entry.get('max_input_tokens_per_day'),
                    'max_output_tokens_per_day': entry.get('max_output_tokens_per_day'),
                    'description': entry.get('description'),
                    'is_predefined': True
                }
                if not fields['endpoint_url'] or not fields['model_name']:
                    raise ValidationError(f"Endpoint {alias} needs endpoint_url and model_name")

                with self.db.transaction() as session:
                    existing = session.execute(
                        select(LlmEndpoint).where(LlmEndpoint.alias == alias)
                    ).scalars().first()
                    if existing:
                        for key, value in fields.items():
                            setattr(existing, key, value)
                        logger.info(f"Updated predefined endpoint: {alias}")
                    else:
                        session.add(LlmEndpoint(id=new_id('end'), alias=alias, is_enabled=True, **fields))
                        logger.info(f"Created predefined endpoint: {alias}")
                synced += 1
            except Exception as e:
                logger.error(f"Failed to sync endpoint {alias}: {e}")

        return synced

    def count_active_projects(self) -> int:
        with self.db.session() as session:
            return session.execute(
                select(func.count(func.distinct(QueueJob.project_id)))
                .where(QueueJob.status == 'processing')
            ).scalar() or 0


def managed_endpoint_id(settings: Dict[str, Any]) -> Optional[str]:
    """Endpoint id a project uses when it is in managed mode"""
    if (settings or {}).get('endpoint_mode') == 'managed':
        return settings.get('llm_endpoint_id')
    return None


def _percent(used: int, limit: Optional[int]) -> Optional[int]:
    if not limit:
        return None
    return round(used / limit * 100)
