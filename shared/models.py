"""Database models that capture the try-on request lifecycle."""
from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()

UNLIMITED = -1


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubjectKind(str, enum.Enum):
    SHOPPER_PHOTO = "shopper_photo"
    PRESET = "preset"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED})


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(UTC)


class GenerationRequest(Base):
    __tablename__ = "generation_requests"

    id = Column(Uuid, primary_key=True)
    store = Column(String(255), nullable=False, index=True)
    product_id = Column(String(255), nullable=False)
    product_title = Column(String(512), nullable=False)
    product_image = Column(Text, nullable=False)
    subject_kind = Column(Enum(SubjectKind), nullable=False)
    preset_image_id = Column(String(64), ForeignKey("preset_images.id"), nullable=True)
    # Preset URL only; shopper photos never land in the database.
    subject_reference = Column(Text, nullable=True)
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False)
    result_reference = Column(Text, nullable=True)
    cached = Column(Boolean, default=False, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    error_code = Column(String(32), nullable=True)
    error_reason = Column(Text, nullable=True)
    diagnostics = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    preset_image = relationship("PresetImage")
    logs = relationship("RequestLog", back_populates="request", cascade="all, delete-orphan")


class RequestLog(Base):
    __tablename__ = "request_logs"

    id = Column(Uuid, primary_key=True)
    request_id = Column(Uuid, ForeignKey("generation_requests.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    level = Column(String(16), default="info", nullable=False)
    message = Column(Text, nullable=False)
    data = Column("metadata", JSON, default=dict, nullable=False)

    request = relationship("GenerationRequest", back_populates="logs")


class PresetImage(Base):
    __tablename__ = "preset_images"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    image_url = Column(Text, nullable=False)
    gender = Column(String(16), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CachedResult(Base):
    __tablename__ = "cached_results"
    __table_args__ = (
        UniqueConstraint("store", "preset_image_id", "product_id", name="uq_cached_result_key"),
    )

    id = Column(Uuid, primary_key=True)
    store = Column(String(255), nullable=False, index=True)
    preset_image_id = Column(String(64), ForeignKey("preset_images.id"), nullable=False)
    product_id = Column(String(255), nullable=False)
    product_title = Column(String(512), nullable=False)
    product_image = Column(Text, nullable=False)
    result_reference = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class UsageLedger(Base):
    __tablename__ = "usage_ledgers"

    id = Column(Uuid, primary_key=True)
    store = Column(String(255), nullable=False, unique=True)
    credits_used = Column(Integer, default=0, nullable=False)
    credits_limit = Column(Integer, nullable=False)
    product_limit = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    has_custom_limits = Column(Boolean, default=False, nullable=False)
    plan = Column(String(32), nullable=True)
    last_reset_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ProductSetting(Base):
    __tablename__ = "product_settings"
    __table_args__ = (
        UniqueConstraint("store", "product_id", name="uq_product_setting"),
    )

    id = Column(Uuid, primary_key=True)
    store = Column(String(255), nullable=False, index=True)
    product_id = Column(String(255), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to timestamps read back from backends that drop tzinfo."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
