"""Pydantic models shared by the repository, services and routers"""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from permavid.models.database import QueueStatus


UploadTarget = Literal["filemoon", "files_vc", "both"]


class QueueItem(BaseModel):
    """Snapshot of a queue row, detached from any session"""
    id: Optional[str] = None
    url: str
    status: QueueStatus = QueueStatus.QUEUED
    message: Optional[str] = None
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    local_path: Optional[str] = None
    filemoon_url: Optional[str] = None
    files_vc_url: Optional[str] = None
    encoding_progress: Optional[int] = Field(default=None, ge=0, le=100)
    added_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def has_provider_ref(self) -> bool:
        return bool(self.filemoon_url) or bool(self.files_vc_url)


class AppSettings(BaseModel):
    """User-editable settings, saved as a whole"""
    filemoon_api_key: Optional[str] = None
    files_vc_api_key: Optional[str] = None
    download_directory: Optional[str] = None
    delete_after_upload: bool = False
    auto_upload: bool = False
    upload_target: UploadTarget = "filemoon"


class ApiResponse(BaseModel):
    """Envelope every API route answers with"""
    success: bool
    message: str
    data: Optional[Any] = None
