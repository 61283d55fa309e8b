"""
Job handlers

Handlers are async callables ``handler(job, context)`` registered on the
worker per job type. They run the model calls, then write their results and
complete the job in a single transaction so a canceled job never commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.db.models import QueueJob, utcnow
from batchex.exceptions import BatchExError, PermanentJobError, JobCanceledError
from batchex.jobs.queue import JobQueue
from batchex.jobs.rate_limiter import ProjectRateLimiter
from batchex.processors.llm.openai_service import VisionModelClient, ImageInput, ModelResponse, to_data_url
from batchex.processors.llm.prompt_manager import PromptManager, get_prompt_manager
from batchex.processors.llm.response_parser import FeatureFlags, parse_rows
from batchex.services.batch_service import BatchService
from batchex.services.quota_service import QuotaLedger, managed_endpoint_id
from batchex.storage.filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)

T = TypeVar('T')

REQUEST_MODE_BATCH = 'batch'
REQUEST_MODE_PER_IMAGE = 'per_image'


@dataclass
class JobContext:
    """Bookkeeping for one job execution, turned into a metrics record"""
    job_id: str
    job_type: str
    project_id: str
    batch_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    image_count: int = 0
    extraction_count: int = 0
    model_used: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    request_details: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def for_job(cls, job: QueueJob) -> 'JobContext':
        return cls(
            job_id=job.id,
            job_type=job.type,
            project_id=job.project_id,
            batch_id=job.batch_id
        )

    def add_response(self, response: ModelResponse, image_count: int) -> None:
        self.model_used = response.model
        self.input_tokens += response.input_tokens
        self.output_tokens += response.output_tokens
        self.request_details.append({
            'request_index': len(self.request_details),
            'image_count': image_count,
            'input_tokens': response.input_tokens,
            'output_tokens': response.output_tokens,
            'duration_ms': round(response.duration_ms, 1),
            'model': response.model
        })


@dataclass
class ModelTarget:
    """Where a project's model requests go"""
    endpoint_url: str
    api_key: Optional[str]
    model: str
    timeout: float
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    # Set for managed endpoints; usage is recorded against it
    endpoint_id: Optional[str] = None


def commit_job_result(db: Database, queue: JobQueue, job_id: str, apply: Callable[[Session], T]) -> T:
    """
    Complete a job and apply its writes in one transaction

    Raises:
        JobCanceledError: the job is no longer processing; nothing is written
    """
    with db.transaction() as session:
        if not queue.complete_in(session, job_id):
            raise JobCanceledError(job_id)
        return apply(session)


class ModelCaller:
    """Resolves a project's endpoint and performs rate-limited, quota-counted calls"""

    def __init__(
        self,
        quota: QuotaLedger,
        rate_limiter: ProjectRateLimiter,
        config: Optional[BatchExConfig] = None,
        client_factory: Optional[Callable[..., Any]] = None
    ):
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.config = config or quota.config
        self.client_factory = client_factory or VisionModelClient

    def resolve_target(self, settings: Dict[str, Any]) -> ModelTarget:
        """Build the endpoint target from project settings"""
        timeout = float(settings.get('request_timeout') or self.config.get('model.request_timeout', 60.0))
        temperature = settings.get('temperature', self.config.get('model.temperature'))
        max_tokens = settings.get('max_tokens', self.config.get('model.max_tokens'))

        endpoint_id = managed_endpoint_id(settings)
        if settings.get('endpoint_mode') == 'managed':
            if not endpoint_id:
                raise PermanentJobError("Project uses a managed endpoint but none is selected")
            endpoint = self.quota.get_endpoint(endpoint_id, include_secret=True)
            if not endpoint:
                raise PermanentJobError(f"Endpoint {endpoint_id} not found")
            if not endpoint['is_enabled']:
                raise PermanentJobError(f"Endpoint {endpoint['alias']} is disabled")
            return ModelTarget(
                endpoint_url=endpoint['endpoint_url'],
                api_key=endpoint['api_key'],
                model=endpoint['model_name'],
                timeout=timeout,
                temperature=temperature,
                max_tokens=max_tokens,
                endpoint_id=endpoint_id
            )

        if not settings.get('endpoint') or not settings.get('model_name'):
            raise PermanentJobError("Project has no model endpoint configured")
        return ModelTarget(
            endpoint_url=settings['endpoint'],
            api_key=settings.get('api_key'),
            model=settings['model_name'],
            timeout=timeout,
            temperature=temperature,
            max_tokens=max_tokens
        )

    def open_client(self, target: ModelTarget):
        return self.client_factory(
            endpoint_url=target.endpoint_url,
            api_key=target.api_key,
            model=target.model,
            timeout=target.timeout,
            temperature=target.temperature,
            max_tokens=target.max_tokens
        )

    async def call(
        self,
        client,
        target: ModelTarget,
        context: JobContext,
        prompt: str,
        images: List[ImageInput],
        requests_per_minute: int
    ) -> ModelResponse:
        """One model request, counted against the project's rate and the endpoint's quota"""
        await self.rate_limiter.acquire(context.project_id, requests_per_minute)
        response = await client.complete(prompt, images)
        context.add_response(response, len(images))
        if target.endpoint_id:
            try:
                self.quota.record_usage(target.endpoint_id, response.input_tokens, response.output_tokens)
            except Exception as e:
                logger.error(f"Failed to record usage for endpoint {target.endpoint_id}: {e}")
        return response


def load_image_inputs(storage: FileSystemStorage, images: Sequence[Dict[str, Any]]) -> List[ImageInput]:
    """Read image files and encode them as data URLs"""
    inputs = []
    for image in images:
        data = storage.load(image['file_path'])
        if data is None:
            raise PermanentJobError(f"Image file not found: {image['file_path']}")
        inputs.append(ImageInput(
            data_url=to_data_url(data, image.get('mime_type') or 'image/png'),
            extracted_text=image.get('extracted_text')
        ))
    return inputs


def _stamp_rows(rows: List[List[Dict[str, Any]]], start: int, image_index: Optional[int] = None) -> None:
    for offset, row in enumerate(rows):
        for extraction in row:
            if 'row_index' in extraction:
                extraction['row_index'] = start + offset
            if image_index is not None:
                extraction['image_index'] = image_index


class BatchHandlers:
    """Handlers for ``process_batch`` and ``reprocess_batch`` jobs"""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        batches: BatchService,
        storage: FileSystemStorage,
        caller: ModelCaller,
        prompts: Optional[PromptManager] = None
    ):
        self.db = db
        self.queue = queue
        self.batches = batches
        self.storage = storage
        self.caller = caller
        self.prompts = prompts or get_prompt_manager()

    async def process_batch(self, job: QueueJob, context: JobContext) -> None:
        """
        Extract rows from every image of a batch

        The project's ``request_mode`` decides between one request for all
        images and one request per image; per-image rows are appended in
        image order.
        """
        batch_id = (job.payload or {}).get('batch_id') or job.batch_id
        if not batch_id:
            raise PermanentJobError("process_batch job has no batch_id")

        project = self.batches.get_project(job.project_id)
        if not project:
            raise PermanentJobError(f"Project {job.project_id} not found")
        settings = project['settings']
        columns = settings.get('columns') or []
        if not columns:
            raise PermanentJobError(f"Project {job.project_id} has no columns defined")

        images = self.batches.get_images(batch_id, include_cropped=False)
        if not images:
            raise PermanentJobError(f"Batch {batch_id} has no images")
        context.image_count = len(images)

        flags = FeatureFlags.from_settings(settings)
        coordinate_format = settings.get('coordinate_format')
        limits = self.caller.quota.get_project_limits(job.project_id)
        rpm = limits['max_requests_per_minute']
        target = self.caller.resolve_target(settings)
        inputs = load_image_inputs(self.storage, images)

        client = self.caller.open_client(target)
        rows: List[List[Dict[str, Any]]] = []
        try:
            if settings.get('request_mode') == REQUEST_MODE_PER_IMAGE and len(inputs) > 1:
                for index, image_input in enumerate(inputs):
                    prompt = self.prompts.build_extraction_prompt(
                        columns, flags, coordinate_format,
                        page={'current': index + 1, 'total': len(inputs)}
                    )
                    response = await self.caller.call(client, target, context, prompt, [image_input], rpm)
                    page_rows = [r for r in parse_rows(response.content, columns, flags) if r]
                    _stamp_rows(page_rows, len(rows), image_index=index)
                    rows.extend(page_rows)
            else:
                prompt = self.prompts.build_extraction_prompt(columns, flags, coordinate_format)
                response = await self.caller.call(client, target, context, prompt, inputs, rpm)
                rows = [r for r in parse_rows(response.content, columns, flags) if r]
                _stamp_rows(rows, 0)
        finally:
            await client.close()

        context.extraction_count = sum(len(row) for row in rows)
        commit_job_result(
            self.db, self.queue, job.id,
            lambda session: self.batches.complete_extraction(session, batch_id, rows)
        )
        logger.info(f"Batch {batch_id} extracted {len(rows)} rows ({context.extraction_count} values)")

    async def reprocess_batch(self, job: QueueJob, context: JobContext) -> None:
        """Revert each batch to pending and queue a fresh extraction for it"""
        payload = job.payload or {}
        batch_ids = payload.get('batch_ids') or ([payload['batch_id']] if payload.get('batch_id') else [])
        if not batch_ids:
            raise PermanentJobError("reprocess_batch job has no batch ids")

        reverted = []
        for batch_id in batch_ids:
            try:
                self.batches.revert_to_pending(batch_id, job.project_id)
                reverted.append(batch_id)
            except BatchExError as e:
                logger.warning(f"Skipping reprocess of batch {batch_id}: {e}")

        if not reverted:
            raise PermanentJobError(f"None of the batches could be reverted: {', '.join(batch_ids)}")
        if not self.queue.mark_completed(job.id):
            raise JobCanceledError(job.id)
        self.queue.enqueue_batches(reverted, job.project_id, payload.get('priority'))
        logger.info(f"Reprocess job {job.id} requeued {len(reverted)} of {len(batch_ids)} batches")
