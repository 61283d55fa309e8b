"""
Batch state machine

Owns every batch status change and its row-level side effects so batch and
row statuses never drift apart. Worker-facing transitions take the caller's
session and compose into the worker's transaction; user-facing operations
run one transaction per batch and report partial success.
"""

import logging
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional, List, Dict, Any, Sequence, Tuple

from sqlalchemy import select, delete, update, and_, exists
from sqlalchemy.orm import Session

from batchex.db.connection import Database
from batchex.db.models import Batch, Image, ExtractionRow, Project, QueueJob, new_id, utcnow
from batchex.exceptions import (
    ValidationError, NotFoundError, InvalidTransitionError, PermanentJobError
)
from batchex.storage.filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REVIEW = "review"
    APPROVED = "approved"
    FAILED = "failed"


class RowStatus(str, Enum):
    PENDING = "pending"
    REVIEW = "review"
    APPROVED = "approved"
    DELETED = "deleted"


BATCH_STATUSES = {s.value for s in BatchStatus}
ROW_STATUSES = {s.value for s in RowStatus}
CANCELED_MESSAGE = "Processing canceled by user"
_LIVE_JOB_STATUSES = ('queued', 'retrying', 'processing')


class BatchService:
    """Service for batches, their images and their extraction rows"""

    def __init__(self, db: Database, storage: Optional[FileSystemStorage] = None, queue=None):
        self.db = db
        self.storage = storage
        # JobQueue, used to cancel live jobs before a batch is deleted
        self.queue = queue

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_project(
        self,
        owner_id: str,
        name: str,
        settings: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Create a project owned by ``owner_id``"""
        with self.db.transaction() as session:
            project = Project(id=new_id('prj'), owner_id=owner_id, name=name, settings=settings or {})
            session.add(project)
            session.flush()
            return project.to_dict()

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            project = session.get(Project, project_id)
            return project.to_dict() if project else None

    def list_project_ids(self, owner_id: str) -> List[str]:
        with self.db.session() as session:
            return list(session.execute(
                select(Project.id).where(Project.owner_id == owner_id)
            ).scalars().all())

    def update_project_settings(self, project_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``settings`` into the project's settings"""
        with self.db.transaction() as session:
            project = session.get(Project, project_id)
            if not project:
                raise NotFoundError(f"Project {project_id} not found")
            project.settings = {**(project.settings or {}), **settings}
            return project.to_dict()

    def create_batch(self, project_id: str, images: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create a pending batch with its images

        Args:
            project_id: Owning project
            images: Dicts with ``file_path`` (an existing storage key) or
                ``content`` (bytes to store), plus optional ``mime_type``,
                ``extracted_text`` and ``filename``

        Returns:
            Batch record with its image ids
        """
        if not images:
            raise ValidationError("A batch needs at least one image")

        batch_id = new_id('bat')
        stored_keys = []
        try:
            with self.db.transaction() as session:
                if not session.get(Project, project_id):
                    raise NotFoundError(f"Project {project_id} not found")

                batch = Batch(id=batch_id, project_id=project_id, status=BatchStatus.PENDING.value, row_count=0)
                session.add(batch)

                image_ids = []
                for order, image_info in enumerate(images):
                    image = self._build_image(batch_id, project_id, image_info, order, stored_keys)
                    session.add(image)
                    image_ids.append(image.id)

                session.flush()
                result = batch.to_dict()
                result['image_ids'] = image_ids
        except Exception:
            self._remove_files(stored_keys)
            raise

        logger.info(f"Created batch {batch_id} with {len(images)} images in project {project_id}")
        return result

    def add_image(
        self,
        batch_id: str,
        file_path: Optional[str] = None,
        content: Optional[bytes] = None,
        mime_type: str = 'image/png',
        is_cropped: bool = True,
        filename: Optional[str] = None
    ) -> str:
        """Attach an image, typically a cropped region for a redo, after the existing ones"""
        stored_keys = []
        try:
            with self.db.transaction() as session:
                batch = session.get(Batch, batch_id)
                if not batch:
                    raise NotFoundError(f"Batch {batch_id} not found")
                order = max((img.order for img in batch.images), default=-1) + 1
                image = self._build_image(
                    batch_id, batch.project_id,
                    {'file_path': file_path, 'content': content, 'mime_type': mime_type, 'filename': filename},
                    order, stored_keys, is_cropped=is_cropped
                )
                session.add(image)
                return image.id
        except Exception:
            self._remove_files(stored_keys)
            raise

    def _build_image(
        self,
        batch_id: str,
        project_id: str,
        image_info: Dict[str, Any],
        order: int,
        stored_keys: List[str],
        is_cropped: bool = False
    ) -> Image:
        image_id = new_id('img')
        file_path = image_info.get('file_path')
        content = image_info.get('content')

        if content is not None:
            if self.storage is None:
                raise ValidationError("Image content given but no storage is configured")
            suffix = PurePosixPath(image_info.get('filename') or '').suffix or '.bin'
            file_path = f"{project_id}/{batch_id}/{image_id}{suffix}"
            self.storage.save(file_path, content)
            stored_keys.append(file_path)

        if not file_path:
            raise ValidationError("Each image needs a file_path or content")

        return Image(
            id=image_id,
            batch_id=batch_id,
            project_id=project_id,
            file_path=file_path,
            order=image_info.get('order', order),
            mime_type=image_info.get('mime_type') or 'image/png',
            extracted_text=image_info.get('extracted_text'),
            is_cropped=image_info.get('is_cropped', is_cropped)
        )

    def get_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            batch = session.get(Batch, batch_id)
            return batch.to_dict() if batch else None

    def get_images(self, batch_id: str, include_cropped: bool = True) -> List[Dict[str, Any]]:
        """Images of a batch ordered by position"""
        with self.db.session() as session:
            query = select(Image).where(Image.batch_id == batch_id)
            if not include_cropped:
                query = query.where(Image.is_cropped.is_(False))
            query = query.order_by(Image.order.asc(), Image.created_at.asc())
            return [img.to_dict() | {'extracted_text': img.extracted_text}
                    for img in session.execute(query).scalars().all()]

    def get_rows(self, batch_id: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """
        Rows of a batch ordered by row index

        Batches processed before rows existed only carry ``processed_data``;
        those are returned as a single unsaved row (``id`` is None).
        """
        with self.db.session() as session:
            batch = session.get(Batch, batch_id)
            if not batch:
                raise NotFoundError(f"Batch {batch_id} not found")

            query = select(ExtractionRow).where(ExtractionRow.batch_id == batch_id)
            if not include_deleted:
                query = query.where(ExtractionRow.status != RowStatus.DELETED.value)
            rows = session.execute(query.order_by(ExtractionRow.row_index.asc())).scalars().all()
            if rows:
                return [row.to_dict() for row in rows]

            has_any_rows = session.execute(
                select(exists().where(ExtractionRow.batch_id == batch_id))
            ).scalar()
            legacy = self._legacy_extractions(batch)
            if has_any_rows or legacy is None:
                return []

            status = batch.status if batch.status in (RowStatus.REVIEW.value, RowStatus.APPROVED.value) else RowStatus.REVIEW.value
            return [{
                'id': None,
                'batch_id': batch.id,
                'project_id': batch.project_id,
                'row_index': 0,
                'row_data': legacy,
                'status': status,
                'approved_at': None,
                'deleted_at': None
            }]

    @staticmethod
    def _legacy_extractions(batch: Batch) -> Optional[List[Dict[str, Any]]]:
        data = batch.processed_data
        if isinstance(data, dict) and isinstance(data.get('extractions'), list):
            return data['extractions']
        return None

    # ------------------------------------------------------------------
    # User-facing transitions
    # ------------------------------------------------------------------

    def set_status(
        self,
        batch_ids: Sequence[str],
        target_status: str,
        project_id: str,
        error_message: Optional[str] = None
    ) -> Tuple[int, int]:
        """
        Move batches to ``target_status``, one transaction per batch

        Returns:
            (success_count, failure_count)
        """
        if target_status not in BATCH_STATUSES:
            raise ValidationError(f"Invalid batch status: {target_status}")
        if target_status == BatchStatus.PROCESSING.value:
            raise ValidationError("Batches enter processing only through the queue")
        if not batch_ids:
            raise ValidationError("batch_ids must not be empty")

        success_count = 0
        failure_count = 0
        for batch_id in batch_ids:
            try:
                removed_files: List[str] = []
                with self.db.transaction() as session:
                    batch = self._load_owned(session, batch_id, project_id)
                    removed_files = self._apply_status(session, batch, target_status, error_message)
                self._remove_files(removed_files)
                success_count += 1
            except Exception as e:
                logger.error(f"Failed to set batch {batch_id} to {target_status}: {e}")
                failure_count += 1

        logger.info(
            f"Status change to {target_status}: {success_count} succeeded, {failure_count} failed"
        )
        return success_count, failure_count

    def _load_owned(self, session: Session, batch_id: str, project_id: str) -> Batch:
        batch = session.get(Batch, batch_id)
        if not batch or batch.project_id != project_id:
            raise NotFoundError(f"Batch {batch_id} not found in project {project_id}")
        return batch

    def _apply_status(
        self,
        session: Session,
        batch: Batch,
        target: str,
        error_message: Optional[str] = None
    ) -> List[str]:
        """Apply one explicit transition; returns storage keys to delete after commit"""
        now = utcnow()

        if target in (BatchStatus.PENDING.value, BatchStatus.FAILED.value):
            if batch.status == BatchStatus.PROCESSING.value:
                raise InvalidTransitionError(batch.id, batch.status, target)
            removed = self._clear_results(session, batch)
            batch.status = target
            batch.error_message = (error_message or "Marked as failed by user") if target == BatchStatus.FAILED.value else None
            return removed

        row_values: Dict[str, Any] = {'status': target, 'updated_at': now}
        row_values['approved_at'] = now if target == BatchStatus.APPROVED.value else None
        session.execute(
            update(ExtractionRow)
            .where(and_(
                ExtractionRow.batch_id == batch.id,
                ExtractionRow.status != RowStatus.DELETED.value
            ))
            .values(**row_values)
            .execution_options(synchronize_session=False)
        )
        batch.status = target
        batch.updated_at = now
        return []

    def _clear_results(self, session: Session, batch: Batch) -> List[str]:
        """Delete rows and cropped sub-images; clear counters and legacy data"""
        session.execute(
            delete(ExtractionRow)
            .where(ExtractionRow.batch_id == batch.id)
            .execution_options(synchronize_session=False)
        )
        cropped = session.execute(
            select(Image).where(and_(Image.batch_id == batch.id, Image.is_cropped.is_(True)))
        ).scalars().all()
        removed = [img.file_path for img in cropped]
        for img in cropped:
            session.delete(img)

        batch.row_count = 0
        batch.processed_data = None
        batch.processing_completed = None
        batch.redo_processed_at = None
        batch.updated_at = utcnow()
        session.expire(batch, ['rows', 'images'])
        return removed

    def revert_to_pending(self, batch_id: str, project_id: str) -> None:
        """Revert one batch to pending; raises instead of counting failures"""
        removed: List[str] = []
        with self.db.transaction() as session:
            batch = self._load_owned(session, batch_id, project_id)
            removed = self._apply_status(session, batch, BatchStatus.PENDING.value)
        self._remove_files(removed)

    def delete_batches(self, batch_ids: Sequence[str], project_id: str) -> Tuple[int, int]:
        """
        Delete batches with their rows, images and stored files

        Live jobs for each batch are canceled first.

        Returns:
            (success_count, failure_count)
        """
        success_count = 0
        failure_count = 0
        for batch_id in batch_ids:
            try:
                if self.queue is not None:
                    self.queue.cancel(project_id, [batch_id])

                with self.db.transaction() as session:
                    batch = self._load_owned(session, batch_id, project_id)
                    files = [img.file_path for img in batch.images]
                    session.execute(
                        delete(ExtractionRow)
                        .where(ExtractionRow.batch_id == batch_id)
                        .execution_options(synchronize_session=False)
                    )
                    session.execute(
                        delete(Image)
                        .where(Image.batch_id == batch_id)
                        .execution_options(synchronize_session=False)
                    )
                    session.expire(batch, ['rows', 'images'])
                    session.delete(batch)

                self._remove_files(files)
                success_count += 1
                logger.info(f"Deleted batch {batch_id}")
            except Exception as e:
                logger.error(f"Failed to delete batch {batch_id}: {e}")
                failure_count += 1

        return success_count, failure_count

    def fail_for_cancel(self, project_id: str, batch_ids: Optional[Sequence[str]] = None) -> int:
        """Move pending and processing batches to failed after a cancel"""
        condition = and_(
            Batch.project_id == project_id,
            Batch.status.in_((BatchStatus.PENDING.value, BatchStatus.PROCESSING.value))
        )
        if batch_ids:
            condition = and_(condition, Batch.id.in_(list(batch_ids)))

        with self.db.transaction() as session:
            result = session.execute(
                update(Batch)
                .where(condition)
                .values(status=BatchStatus.FAILED.value, error_message=CANCELED_MESSAGE, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Row review actions
    # ------------------------------------------------------------------

    def set_row_status(self, row_id: str, status: str) -> Dict[str, Any]:
        """Set one row's status; ``deleted`` is a soft delete"""
        if status not in ROW_STATUSES:
            raise ValidationError(f"Invalid row status: {status}")

        now = utcnow()
        with self.db.transaction() as session:
            row = session.get(ExtractionRow, row_id)
            if not row:
                raise NotFoundError(f"Row {row_id} not found")

            row.status = status
            if status == RowStatus.APPROVED.value:
                row.approved_at = now
                row.deleted_at = None
            elif status == RowStatus.DELETED.value:
                row.deleted_at = now
            else:
                row.approved_at = None
                row.deleted_at = None
            return row.to_dict()

    # ------------------------------------------------------------------
    # Worker-facing transitions (caller owns the transaction)
    # ------------------------------------------------------------------

    def mark_processing(self, session: Session, batch_id: str) -> Batch:
        batch = session.get(Batch, batch_id)
        if not batch:
            raise PermanentJobError(f"Batch {batch_id} not found")
        batch.status = BatchStatus.PROCESSING.value
        batch.processing_started = utcnow()
        batch.error_message = None
        return batch

    def complete_extraction(self, session: Session, batch_id: str, rows: List[List[Dict[str, Any]]]) -> int:
        """Replace the batch's rows with fresh extraction output and move it to review"""
        batch = session.get(Batch, batch_id)
        if not batch:
            raise PermanentJobError(f"Batch {batch_id} not found")

        session.execute(
            delete(ExtractionRow)
            .where(ExtractionRow.batch_id == batch_id)
            .execution_options(synchronize_session=False)
        )
        for index, row_data in enumerate(rows):
            session.add(ExtractionRow(
                id=new_id('row'),
                batch_id=batch_id,
                project_id=batch.project_id,
                row_index=index,
                row_data=list(row_data),
                status=RowStatus.REVIEW.value
            ))

        now = utcnow()
        batch.status = BatchStatus.REVIEW.value
        batch.row_count = len(rows)
        batch.processing_completed = now
        batch.error_message = None
        batch.updated_at = now
        session.expire(batch, ['rows'])
        return len(rows)

    def get_row_for_update(self, session: Session, batch_id: str, row_index: int) -> ExtractionRow:
        row = session.execute(
            select(ExtractionRow).where(and_(
                ExtractionRow.batch_id == batch_id,
                ExtractionRow.row_index == row_index
            ))
        ).scalars().first()
        if not row:
            raise PermanentJobError(f"Row {row_index} of batch {batch_id} not found")
        return row

    def apply_redo(self, session: Session, batch_id: str, row_index: int, row_data: List[Dict[str, Any]]) -> None:
        """Store a merged redo row and move the batch back to review"""
        row = self.get_row_for_update(session, batch_id, row_index)
        row.row_data = list(row_data)
        row.status = RowStatus.REVIEW.value
        row.approved_at = None

        batch = session.get(Batch, batch_id)
        now = utcnow()
        batch.status = BatchStatus.REVIEW.value
        batch.redo_processed_at = now
        batch.updated_at = now

    def mark_failed(self, batch_id: str, error: str, session: Optional[Session] = None) -> bool:
        """
        Fail a processing batch with ``error``

        Returns:
            True if the batch was processing and is now failed
        """
        statement = (
            update(Batch)
            .where(and_(Batch.id == batch_id, Batch.status == BatchStatus.PROCESSING.value))
            .values(status=BatchStatus.FAILED.value, error_message=error, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if session is not None:
            return (session.execute(statement).rowcount or 0) == 1
        with self.db.transaction() as own_session:
            return (own_session.execute(statement).rowcount or 0) == 1

    def reset_orphaned_processing(self) -> int:
        """Return processing batches that have no live job to pending"""
        live_job = exists().where(and_(
            QueueJob.batch_id == Batch.id,
            QueueJob.status.in_(_LIVE_JOB_STATUSES)
        ))
        with self.db.transaction() as session:
            result = session.execute(
                update(Batch)
                .where(and_(Batch.status == BatchStatus.PROCESSING.value, ~live_job))
                .values(status=BatchStatus.PENDING.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        if count:
            logger.info(f"Reset {count} orphaned processing batches to pending")
        return count

    # ------------------------------------------------------------------
    # Legacy data
    # ------------------------------------------------------------------

    def migrate_legacy_processed_data(self) -> int:
        """
        Convert inline ``processed_data`` into row records

        Batches that already have rows only get the legacy field cleared.

        Returns:
            Number of batches migrated
        """
        migrated = 0
        with self.db.session() as session:
            batch_ids = session.execute(
                select(Batch.id).where(Batch.processed_data.isnot(None))
            ).scalars().all()

        for batch_id in batch_ids:
            try:
                with self.db.transaction() as session:
                    batch = session.get(Batch, batch_id)
                    extractions = self._legacy_extractions(batch)
                    has_rows = session.execute(
                        select(exists().where(ExtractionRow.batch_id == batch_id))
                    ).scalar()
                    if extractions is not None and not has_rows:
                        status = batch.status if batch.status in (RowStatus.REVIEW.value, RowStatus.APPROVED.value) else RowStatus.REVIEW.value
                        session.add(ExtractionRow(
                            id=new_id('row'),
                            batch_id=batch.id,
                            project_id=batch.project_id,
                            row_index=0,
                            row_data=extractions,
                            status=status,
                            approved_at=utcnow() if status == RowStatus.APPROVED.value else None
                        ))
                        batch.row_count = 1
                    batch.processed_data = None
                migrated += 1
            except Exception as e:
                logger.error(f"Failed to migrate legacy data of batch {batch_id}: {e}")

        logger.info(f"Migrated legacy processed_data of {migrated} batches")
        return migrated

    def _remove_files(self, keys: Sequence[str]) -> None:
        if self.storage is None:
            return
        for key in keys:
            try:
                self.storage.delete(key)
            except Exception as e:
                logger.warning(f"Failed to remove stored file {key}: {e}")
