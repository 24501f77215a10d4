"""Database models"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class QueueStatus(str, enum.Enum):
    """Queue item lifecycle status"""
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    UPLOADING = "uploading"
    TRANSFERRING = "transferring"
    ENCODING = "encoding"
    ENCODED = "encoded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that hold the single download/upload slot.
ACTIVE_TRANSFER_STATUSES = (QueueStatus.DOWNLOADING, QueueStatus.UPLOADING)
# Uploaded to Filemoon, waiting for remote encoding to finish.
AWAITING_ENCODING_STATUSES = (QueueStatus.TRANSFERRING, QueueStatus.ENCODING)
# Statuses a manual upload may start from.
UPLOADABLE_STATUSES = (QueueStatus.COMPLETED, QueueStatus.ENCODED)


class QueueRecord(Base):
    """Queue item model"""
    __tablename__ = "queue"

    id = Column(String(64), primary_key=True, default=_new_id)
    url = Column(String, nullable=False, unique=True, index=True)
    # Store the lowercase values ("queued"), not the member names
    status = Column(
        SQLEnum(
            QueueStatus,
            values_callable=lambda e: [m.value for m in e],
            native_enum=False,
            length=20,
        ),
        default=QueueStatus.QUEUED,
        nullable=False,
        index=True,
    )
    message = Column(Text, nullable=True)
    title = Column(String, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    local_path = Column(Text, nullable=True)
    filemoon_url = Column(String, nullable=True)  # Filemoon filecode
    files_vc_url = Column(Text, nullable=True)
    encoding_progress = Column(Integer, nullable=True)  # 0-100
    added_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now_utc, onupdate=_now_utc, nullable=False)


class SettingRecord(Base):
    """Key/value settings row. AppSettings live in the `user_settings` JSON row."""
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
