"""
Redo Sub-scheduler

Re-extracts selected columns of one row from cropped sub-images and merges
the new values into the row, leaving every other row and column untouched.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, and_

from batchex.db.connection import Database
from batchex.db.models import Batch, Image, ExtractionRow, QueueJob
from batchex.exceptions import ValidationError, NotFoundError, PermanentJobError
from batchex.jobs.handlers import JobContext, ModelCaller, commit_job_result
from batchex.jobs.queue import JobQueue, JobType
from batchex.processors.llm.openai_service import ImageInput, to_data_url
from batchex.processors.llm.prompt_manager import PromptManager, get_prompt_manager
from batchex.processors.llm.response_parser import FeatureFlags, parse_extractions
from batchex.services.batch_service import BatchService
from batchex.storage.filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)


class RedoScheduler:
    """Validates, enqueues and executes ``process_redo`` jobs"""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        batches: BatchService,
        storage: Optional[FileSystemStorage] = None,
        caller: Optional[ModelCaller] = None,
        prompts: Optional[PromptManager] = None
    ):
        self.db = db
        self.queue = queue
        self.batches = batches
        self.storage = storage
        self.caller = caller
        self.prompts = prompts or get_prompt_manager()

    def enqueue_redo(
        self,
        batch_id: str,
        project_id: str,
        row_index: int,
        redo_column_ids: Sequence[str],
        cropped_image_ids: Dict[str, str],
        source_image_ids: Optional[Dict[str, str]] = None,
        priority: Optional[int] = None
    ) -> str:
        """
        Queue a redo of some columns of one row

        Args:
            batch_id: Batch holding the row
            project_id: Owning project
            row_index: Row to correct
            redo_column_ids: Columns to extract again
            cropped_image_ids: Column id to cropped sub-image id
            source_image_ids: Column id to the full source image, used when
                the crop is missing from storage
            priority: Defaults to the redo priority, ahead of batch jobs

        Returns:
            Job ID
        """
        if not isinstance(row_index, int) or isinstance(row_index, bool) or row_index < 0:
            raise ValidationError("row_index must be a non-negative integer")
        redo_ids = [str(c) for c in (redo_column_ids or [])]
        if not redo_ids:
            raise ValidationError("redo_column_ids must not be empty")
        cropped = {str(k): v for k, v in (cropped_image_ids or {}).items()}
        sources = {str(k): v for k, v in (source_image_ids or {}).items()}

        for column_id in redo_ids:
            if not cropped.get(column_id):
                raise ValidationError(f"No cropped image found for column {column_id}")

        with self.db.session() as session:
            batch = session.get(Batch, batch_id)
            if not batch or batch.project_id != project_id:
                raise NotFoundError(f"Batch {batch_id} not found in project {project_id}")

            row = session.execute(
                select(ExtractionRow.id).where(and_(
                    ExtractionRow.batch_id == batch_id,
                    ExtractionRow.row_index == row_index
                ))
            ).first()
            if not row:
                raise NotFoundError(f"Row {row_index} of batch {batch_id} not found")

            referenced = set(cropped[c] for c in redo_ids) | set(sources.values())
            found = set(session.execute(
                select(Image.id).where(and_(Image.batch_id == batch_id, Image.id.in_(list(referenced))))
            ).scalars().all())
            missing = referenced - found
            if missing:
                raise ValidationError(f"Images not found in batch {batch_id}: {', '.join(sorted(missing))}")

        payload = {
            'batch_id': batch_id,
            'project_id': project_id,
            'row_index': row_index,
            'redo_column_ids': redo_ids,
            'cropped_image_ids': cropped,
            'source_image_ids': sources
        }
        job_id = self.queue.enqueue(
            JobType.PROCESS_REDO.value,
            payload,
            priority if priority is not None else self.queue.redo_priority
        )
        logger.info(f"Queued redo of row {row_index} in batch {batch_id} for columns {redo_ids}")
        return job_id

    def _load_crop(self, image: Image, fallback: Optional[Image]) -> bytes:
        data = self.storage.load(image.file_path)
        if data is None and fallback is not None:
            logger.warning(f"Cropped image {image.id} missing from storage, using source image {fallback.id}")
            data = self.storage.load(fallback.file_path)
        if data is None:
            raise PermanentJobError(f"Image file not found: {image.file_path}")
        return data

    async def execute(self, job: QueueJob, context: JobContext) -> None:
        """Run a ``process_redo`` job"""
        payload = job.payload or {}
        batch_id = payload.get('batch_id')
        row_index = payload.get('row_index')
        redo_ids = [str(c) for c in payload.get('redo_column_ids') or []]
        cropped = payload.get('cropped_image_ids') or {}
        sources = payload.get('source_image_ids') or {}
        if not batch_id or row_index is None or not redo_ids:
            raise PermanentJobError("Redo job payload is incomplete")

        project = self.batches.get_project(job.project_id)
        if not project:
            raise PermanentJobError(f"Project {job.project_id} not found")
        settings = project['settings']
        columns = settings.get('columns') or []
        flags = FeatureFlags.from_settings(settings)

        redo_columns = [c for c in columns if str(c.get('id')) in redo_ids]
        if len(redo_columns) != len(set(redo_ids)):
            unknown = set(redo_ids) - {str(c.get('id')) for c in redo_columns}
            raise PermanentJobError(f"Unknown redo columns: {', '.join(sorted(unknown))}")

        with self.db.session() as session:
            row = self.batches.get_row_for_update(session, batch_id, row_index)
            kept = [e for e in (row.row_data or []) if str(e.get('column_id')) not in redo_ids]

            all_images = session.execute(
                select(Image).where(Image.batch_id == batch_id).order_by(Image.order.asc(), Image.created_at.asc())
            ).scalars().all()
            by_id = {img.id: img for img in all_images}
            position = {img.id: index for index, img in enumerate(all_images)}

            sent_ids: List[str] = []
            inputs: List[ImageInput] = []
            for column in redo_columns:
                column_id = str(column['id'])
                crop_id = cropped.get(column_id)
                if not crop_id or crop_id not in by_id:
                    raise PermanentJobError(f"No cropped image found for column {column.get('name', column_id)}")
                if crop_id in sent_ids:
                    continue
                image = by_id[crop_id]
                data = self._load_crop(image, by_id.get(sources.get(column_id)))
                sent_ids.append(crop_id)
                inputs.append(ImageInput(data_url=to_data_url(data, image.mime_type or 'image/png')))

        context.image_count = len(inputs)
        prompt = self.prompts.build_redo_prompt(
            kept, redo_columns,
            coordinate_format=settings.get('coordinate_format'),
            template=settings.get('redo_prompt_template')
        )

        limits = self.caller.quota.get_project_limits(job.project_id)
        target = self.caller.resolve_target(settings)
        client = self.caller.open_client(target)
        try:
            response = await self.caller.call(
                client, target, context, prompt, inputs, limits['max_requests_per_minute']
            )
        finally:
            await client.close()

        redone = []
        for extraction in parse_extractions(response.content, redo_columns, flags):
            if str(extraction.get('column_id')) not in redo_ids:
                continue
            sent_index = extraction.get('image_index') or 0
            if 0 <= sent_index < len(sent_ids):
                extraction['image_index'] = position[sent_ids[sent_index]]
            else:
                extraction['image_index'] = position[sent_ids[0]]
            if 'row_index' in extraction:
                extraction['row_index'] = row_index
            extraction['redone'] = True
            redone.append(extraction)

        merged = kept + redone
        context.extraction_count = len(redone)
        commit_job_result(
            self.db, self.queue, job.id,
            lambda session: self.batches.apply_redo(session, batch_id, row_index, merged)
        )
        logger.info(f"Redo of row {row_index} in batch {batch_id} replaced {len(redone)} values")
