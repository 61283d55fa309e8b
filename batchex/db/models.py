from datetime import datetime, timezone
from typing import Dict, Any, Optional
from uuid import uuid4

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Text, Boolean, Float, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from batchex.db.connection import get_base

# Get base class
Base = get_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so all stored times are naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Project(Base):
    """Database model for extraction projects"""
    __tablename__ = 'projects'

    id = Column(String(36), primary_key=True, default=lambda: new_id('prj'))
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    # columns, endpoint mode, limits, feature flags, prompt overrides
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    batches = relationship("Batch", back_populates="project", cascade="all, delete-orphan")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'name': self.name,
            'settings': self.settings or {},
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class Batch(Base):
    """Database model for an uploaded group of images processed together"""
    __tablename__ = 'image_batches'

    id = Column(String(36), primary_key=True, default=lambda: new_id('bat'))
    project_id = Column(String(36), ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(String(20), nullable=False, default='pending', index=True)
    row_count = Column(Integer, nullable=False, default=0)
    # Deprecated inline extraction output, read only for compatibility
    processed_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_started = Column(DateTime, nullable=True)
    processing_completed = Column(DateTime, nullable=True)
    redo_processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="batches")
    images = relationship("Image", back_populates="batch", cascade="all, delete-orphan",
                          order_by="Image.order")
    rows = relationship("ExtractionRow", back_populates="batch", cascade="all, delete-orphan",
                        order_by="ExtractionRow.row_index")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'status': self.status,
            'row_count': self.row_count,
            'error_message': self.error_message,
            'processing_started': _iso(self.processing_started),
            'processing_completed': _iso(self.processing_completed),
            'redo_processed_at': _iso(self.redo_processed_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class Image(Base):
    """Database model for a stored image belonging to a batch"""
    __tablename__ = 'images'

    id = Column(String(36), primary_key=True, default=lambda: new_id('img'))
    batch_id = Column(String(36), ForeignKey('image_batches.id', ondelete='CASCADE'), nullable=False, index=True)
    project_id = Column(String(36), nullable=False)
    file_path = Column(String(1024), nullable=False)
    order = Column(Integer, nullable=False, default=0)
    mime_type = Column(String(100), nullable=False, default='image/png')
    extracted_text = Column(Text, nullable=True)
    # Sub-images cut from a source image for redo requests
    is_cropped = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    batch = relationship("Batch", back_populates="images")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'batch_id': self.batch_id,
            'project_id': self.project_id,
            'file_path': self.file_path,
            'order': self.order,
            'mime_type': self.mime_type,
            'is_cropped': self.is_cropped
        }


class ExtractionRow(Base):
    """Database model for one extracted data row of a batch"""
    __tablename__ = 'extraction_rows'

    id = Column(String(36), primary_key=True, default=lambda: new_id('row'))
    batch_id = Column(String(36), ForeignKey('image_batches.id', ondelete='CASCADE'), nullable=False, index=True)
    project_id = Column(String(36), nullable=False, index=True)
    row_index = Column(Integer, nullable=False, default=0)
    # List of extractions; always reassigned, never mutated in place
    row_data = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default='review')
    approved_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    batch = relationship("Batch", back_populates="rows")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'batch_id': self.batch_id,
            'project_id': self.project_id,
            'row_index': self.row_index,
            'row_data': self.row_data or [],
            'status': self.status,
            'approved_at': _iso(self.approved_at),
            'deleted_at': _iso(self.deleted_at)
        }


class QueueJob(Base):
    """Database model for a durable unit of queued work"""
    __tablename__ = 'queue_jobs'
    __table_args__ = (
        Index('ix_queue_jobs_claim', 'status', 'priority', 'created_at'),
    )

    id = Column(String(36), primary_key=True, default=lambda: new_id('job'))
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default='queued')
    priority = Column(Integer, nullable=False, default=10)
    payload = Column(JSON, nullable=False, default=dict)
    batch_id = Column(String(36), nullable=True, index=True)
    project_id = Column(String(36), nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    retry_after = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'status': self.status,
            'priority': self.priority,
            'payload': self.payload or {},
            'batch_id': self.batch_id,
            'project_id': self.project_id,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_error': self.last_error,
            'retry_after': _iso(self.retry_after),
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'updated_at': _iso(self.updated_at)
        }


class LlmEndpoint(Base):
    """Database model for an administrator-managed model endpoint"""
    __tablename__ = 'llm_endpoints'

    id = Column(String(36), primary_key=True, default=lambda: new_id('end'))
    alias = Column(String(255), unique=True, nullable=False)
    endpoint_url = Column(String(1024), nullable=False)
    api_key = Column(String(1024), nullable=True)
    model_name = Column(String(255), nullable=False)
    max_input_tokens_per_day = Column(Integer, nullable=True)
    max_output_tokens_per_day = Column(Integer, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    is_predefined = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    usage = relationship("EndpointUsage", back_populates="endpoint", cascade="all, delete-orphan")

    def to_dict(self) -> Dict[str, Any]:
        # api_key is never exposed
        return {
            'id': self.id,
            'alias': self.alias,
            'endpoint_url': self.endpoint_url,
            'model_name': self.model_name,
            'max_input_tokens_per_day': self.max_input_tokens_per_day,
            'max_output_tokens_per_day': self.max_output_tokens_per_day,
            'is_enabled': self.is_enabled,
            'is_predefined': self.is_predefined,
            'description': self.description
        }


class EndpointUsage(Base):
    """Per endpoint, per UTC day token counters"""
    __tablename__ = 'endpoint_usage'
    __table_args__ = (
        UniqueConstraint('endpoint_id', 'date', name='uq_endpoint_usage_day'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(String(36), ForeignKey('llm_endpoints.id', ondelete='CASCADE'), nullable=False)
    # YYYY-MM-DD in UTC
    date = Column(String(10), nullable=False)
    input_tokens_used = Column(Integer, nullable=False, default=0)
    output_tokens_used = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=0)

    endpoint = relationship("LlmEndpoint", back_populates="usage")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint_id': self.endpoint_id,
            'date': self.date,
            'input_tokens_used': self.input_tokens_used,
            'output_tokens_used': self.output_tokens_used,
            'request_count': self.request_count
        }


class UserLimits(Base):
    """Per-user overrides of the instance limits; null means instance default"""
    __tablename__ = 'user_limits'

    user_id = Column(String(255), primary_key=True)
    max_concurrent_projects = Column(Integer, nullable=True)
    max_parallel_requests = Column(Integer, nullable=True)
    max_requests_per_minute = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'max_concurrent_projects': self.max_concurrent_projects,
            'max_parallel_requests': self.max_parallel_requests,
            'max_requests_per_minute': self.max_requests_per_minute
        }


class UserEndpointLimit(Base):
    """Per-user overrides of an endpoint's daily token ceilings"""
    __tablename__ = 'user_endpoint_limits'
    __table_args__ = (
        UniqueConstraint('user_id', 'endpoint_id', name='uq_user_endpoint_limit'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    endpoint_id = Column(String(36), ForeignKey('llm_endpoints.id', ondelete='CASCADE'), nullable=False)
    max_input_tokens_per_day = Column(Integer, nullable=True)
    max_output_tokens_per_day = Column(Integer, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'endpoint_id': self.endpoint_id,
            'max_input_tokens_per_day': self.max_input_tokens_per_day,
            'max_output_tokens_per_day': self.max_output_tokens_per_day
        }


class ProcessingMetric(Base):
    """One record per processed job, success or failure"""
    __tablename__ = 'processing_metrics'

    id = Column(String(36), primary_key=True, default=lambda: new_id('met'))
    job_id = Column(String(36), nullable=True, index=True)
    job_type = Column(String(50), nullable=False)
    batch_id = Column(String(36), nullable=True)
    project_id = Column(String(36), nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    image_count = Column(Integer, nullable=False, default=0)
    extraction_count = Column(Integer, nullable=False, default=0)
    model_used = Column(String(255), nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    request_details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'job_type': self.job_type,
            'batch_id': self.batch_id,
            'project_id': self.project_id,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'duration_ms': self.duration_ms,
            'status': self.status,
            'image_count': self.image_count,
            'extraction_count': self.extraction_count,
            'model_used': self.model_used,
            'tokens_used': self.tokens_used,
            'input_tokens': self.input_tokens,
            'output_tokens': self.output_tokens,
            'request_details': self.request_details,
            'error_message': self.error_message,
            'created_at': _iso(self.created_at)
        }
