"""Queue and settings persistence.

Every method runs in its own short session and commits before returning, so
each per-item update is atomic on its own. Callers never share a session, which
lets the scheduler, the readiness checks and the request handlers use one
repository concurrently without any extra locking.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permavid.models.database import (
    AWAITING_ENCODING_STATUSES,
    QueueRecord,
    QueueStatus,
    SettingRecord,
    _new_id,
)
from permavid.models.schemas import AppSettings, QueueItem

logger = logging.getLogger(__name__)

SETTINGS_KEY = "user_settings"


class RepositoryError(Exception):
    """Underlying storage failure."""


class ItemNotFoundError(RepositoryError):
    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} not found.")
        self.item_id = item_id


class DuplicateUrlError(Exception):
    """URL already present in the queue (active) or already archived."""

    def __init__(self, url: str, status: QueueStatus):
        self.url = url
        self.status = QueueStatus(status)
        self.archived = self.status == QueueStatus.ENCODED
        if self.archived:
            message = f"URL '{url}' has already been archived."
        else:
            message = f"URL '{url}' already exists in the active queue (status: {self.status.value})."
        super().__init__(message)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _status_values(statuses: Iterable) -> List[QueueStatus]:
    return [QueueStatus(s) for s in statuses]


def _status_matches(current: QueueStatus, when_status) -> bool:
    """`when_status` is None (always), one status, or a collection of statuses."""
    if when_status is None:
        return True
    if isinstance(when_status, str):
        return current == QueueStatus(when_status)
    return current in _status_values(when_status)


class QueueRepository:
    """SQLAlchemy-backed store for queue items and app settings"""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise RepositoryError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_record(self, db: Session, item_id: str) -> QueueRecord:
        record = db.query(QueueRecord).filter(QueueRecord.id == item_id).first()
        if record is None:
            raise ItemNotFoundError(item_id)
        return record

    # --- Queue items ---

    def add(self, item: QueueItem) -> str:
        """Insert a new item; raises DuplicateUrlError when the URL is already known."""
        with self._session() as db:
            existing = db.query(QueueRecord.status).filter(QueueRecord.url == item.url).first()
            if existing is not None:
                raise DuplicateUrlError(item.url, existing[0])

            now = _now_utc()
            record = QueueRecord(
                id=item.id or _new_id(),
                url=item.url,
                status=item.status,
                message=item.message,
                title=item.title,
                thumbnail_url=item.thumbnail_url,
                local_path=item.local_path,
                filemoon_url=item.filemoon_url,
                files_vc_url=item.files_vc_url,
                encoding_progress=item.encoding_progress,
                added_at=item.added_at or now,
                updated_at=now,
            )
            db.add(record)
            db.flush()
            logger.info(f"Added to queue: {item.url} (ID: {record.id})")
            return record.id

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._session() as db:
            record = db.query(QueueRecord).filter(QueueRecord.id == item_id).first()
            return QueueItem.model_validate(record) if record else None

    def list_all(self) -> List[QueueItem]:
        """All items, newest first"""
        with self._session() as db:
            records = db.query(QueueRecord).order_by(QueueRecord.added_at.desc()).all()
            return [QueueItem.model_validate(r) for r in records]

    def list_gallery(self) -> List[QueueItem]:
        """Archived (encoded) items, newest first"""
        with self._session() as db:
            records = db.query(QueueRecord).filter(
                QueueRecord.status == QueueStatus.ENCODED
            ).order_by(QueueRecord.updated_at.desc()).all()
            return [QueueItem.model_validate(r) for r in records]

    def get_next_queued(self) -> Optional[QueueItem]:
        """Oldest queued item (FIFO by submission time)"""
        with self._session() as db:
            record = db.query(QueueRecord).filter(
                QueueRecord.status == QueueStatus.QUEUED
            ).order_by(
                QueueRecord.added_at.asc(),
                QueueRecord.id.asc(),
            ).first()
            return QueueItem.model_validate(record) if record else None

    def is_any_in_status(self, statuses: Iterable) -> bool:
        statuses = _status_values(statuses)
        if not statuses:
            return False
        with self._session() as db:
            return db.query(QueueRecord.id).filter(
                QueueRecord.status.in_(statuses)
            ).first() is not None

    def get_by_status_for_check(self) -> List[Tuple[str, str, str]]:
        """
        Items waiting on remote encoding as (id, filecode, api_key).
        Empty when no Filemoon API key is configured.
        """
        api_key = self.get_settings().filemoon_api_key
        if not api_key:
            return []
        with self._session() as db:
            rows = db.query(QueueRecord.id, QueueRecord.filemoon_url).filter(
                QueueRecord.status.in_(AWAITING_ENCODING_STATUSES),
                QueueRecord.filemoon_url.isnot(None),
                QueueRecord.filemoon_url != "",
            ).order_by(QueueRecord.updated_at.asc()).all()
            return [(item_id, filecode, api_key) for item_id, filecode in rows]

    def update_status(
        self,
        item_id: str,
        status,
        message: Optional[str] = None,
        *,
        when_status=None,
    ) -> bool:
        """
        Set status and message. With `when_status`, the write only happens if the
        item is still in that status (returns False otherwise), so a concurrent
        cancel is never overwritten.
        """
        with self._session() as db:
            record = self._get_record(db, item_id)
            if not _status_matches(record.status, when_status):
                return False
            record.status = QueueStatus(status)
            record.message = message
            record.updated_at = _now_utc()
            return True

    def update_message(self, item_id: str, message: Optional[str], *, when_status=None) -> bool:
        """Progress text only; status is left as is."""
        with self._session() as db:
            record = self._get_record(db, item_id)
            if not _status_matches(record.status, when_status):
                return False
            record.message = message
            record.updated_at = _now_utc()
            return True

    def update_after_download(
        self,
        item_id: str,
        status,
        title: Optional[str] = None,
        local_path: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        message: Optional[str] = None,
        *,
        when_status=None,
    ) -> bool:
        with self._session() as db:
            record = self._get_record(db, item_id)
            if not _status_matches(record.status, when_status):
                return False
            record.status = QueueStatus(status)
            # Keep a title we already had if the sidecar did not provide one
            record.title = title or record.title
            record.local_path = local_path
            record.thumbnail_url = thumbnail_url
            record.message = message
            record.updated_at = _now_utc()
            return True

    def update_encoding(
        self,
        item_id: str,
        status,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        *,
        when_status=None,
    ) -> bool:
        with self._session() as db:
            record = self._get_record(db, item_id)
            if not _status_matches(record.status, when_status):
                return False
            record.status = QueueStatus(status)
            record.encoding_progress = progress
            record.message = message
            record.updated_at = _now_utc()
            return True

    def set_provider_ref(
        self,
        item_id: str,
        *,
        filemoon_url: Optional[str] = None,
        files_vc_url: Optional[str] = None,
    ) -> None:
        with self._session() as db:
            record = self._get_record(db, item_id)
            if filemoon_url is not None:
                record.filemoon_url = filemoon_url
            if files_vc_url is not None:
                record.files_vc_url = files_vc_url
            record.updated_at = _now_utc()

    def update_full(self, item: QueueItem) -> None:
        """Overwrite every mutable field of an existing item."""
        if not item.id:
            raise ValueError("update_full requires an item id")
        with self._session() as db:
            record = self._get_record(db, item.id)
            if item.url != record.url:
                clash = db.query(QueueRecord.status).filter(
                    QueueRecord.url == item.url, QueueRecord.id != item.id
                ).first()
                if clash is not None:
                    raise DuplicateUrlError(item.url, clash[0])
            record.url = item.url
            record.status = item.status
            record.message = item.message
            record.title = item.title
            record.thumbnail_url = item.thumbnail_url
            record.local_path = item.local_path
            record.filemoon_url = item.filemoon_url
            record.files_vc_url = item.files_vc_url
            record.encoding_progress = item.encoding_progress
            record.updated_at = _now_utc()

    def delete_by_status(self, statuses: Iterable) -> int:
        statuses = _status_values(statuses)
        if not statuses:
            return 0
        with self._session() as db:
            count = db.query(QueueRecord).filter(
                QueueRecord.status.in_(statuses)
            ).delete(synchronize_session=False)
            logger.info(f"Cleared {count} item(s) with status in {[s.value for s in statuses]}")
            return count

    def recover_interrupted(self) -> int:
        """
        Fail items a previous process left holding the transfer slot.
        Nothing else can clear them, and they would block the scheduler forever.
        """
        with self._session() as db:
            records = db.query(QueueRecord).filter(
                QueueRecord.status.in_([QueueStatus.DOWNLOADING, QueueStatus.UPLOADING])
            ).all()
            for record in records:
                previous = record.status.value
                record.status = QueueStatus.FAILED
                record.message = f"Interrupted while {previous}; retry manually."
                record.updated_at = _now_utc()
            return len(records)

    # --- Settings ---

    def get_settings(self) -> AppSettings:
        with self._session() as db:
            row = db.query(SettingRecord).filter(SettingRecord.key == SETTINGS_KEY).first()
            if row is None or not row.value:
                return AppSettings()
            try:
                data = json.loads(row.value)
            except ValueError:
                logger.warning("Stored settings are not valid JSON, using defaults")
                return AppSettings()
            if not isinstance(data, dict):
                return AppSettings()
            # Drop nulls so the model defaults apply
            return AppSettings(**{k: v for k, v in data.items() if v is not None})

    def save_settings(self, app_settings: AppSettings) -> None:
        with self._session() as db:
            row = db.query(SettingRecord).filter(SettingRecord.key == SETTINGS_KEY).first()
            value = app_settings.model_dump_json()
            if row is None:
                db.add(SettingRecord(key=SETTINGS_KEY, value=value))
            else:
                row.value = value
