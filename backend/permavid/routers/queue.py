"""Queue routes"""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from typing import List, Optional
import logging

from permavid.database import SessionLocal
from permavid.models.database import QueueStatus
from permavid.models.schemas import ApiResponse, QueueItem
from permavid.repository import DuplicateUrlError, QueueRepository, RepositoryError
from permavid.services.extractor import ProcessRegistry, process_registry
from permavid.services.uploader import UploadError, restart_encoding, upload_item

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["queue"])


def get_repository() -> QueueRepository:
    return QueueRepository(SessionLocal)


def get_process_registry() -> ProcessRegistry:
    return process_registry


class EnqueueRequest(BaseModel):
    url: str
    title: Optional[str] = None

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("URL must not be empty")
        return v


class ItemUpdateRequest(BaseModel):
    url: Optional[str] = None
    status: Optional[QueueStatus] = None
    message: Optional[str] = None
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    local_path: Optional[str] = None
    filemoon_url: Optional[str] = None
    files_vc_url: Optional[str] = None
    encoding_progress: Optional[int] = None


class StatusUpdateRequest(BaseModel):
    status: QueueStatus
    message: Optional[str] = None


def not_found(item_id: str) -> JSONResponse:
    body = ApiResponse(success=False, message=f"Item {item_id} not found.")
    return JSONResponse(status_code=404, content=body.model_dump())


def storage_error(e: Exception) -> ApiResponse:
    logger.error(f"Database error: {e}")
    return ApiResponse(success=False, message=f"Database error: {e}")


@router.post("/queue", response_model=ApiResponse)
async def enqueue(request: EnqueueRequest, repo: QueueRepository = Depends(get_repository)):
    """Add a URL to the download queue"""
    try:
        item_id = repo.add(QueueItem(url=request.url, title=request.title))
    except DuplicateUrlError as e:
        logger.info(f"Rejected duplicate URL: {e}")
        return ApiResponse(success=False, message=str(e))
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Item added to queue", data={"id": item_id})


@router.get("/queue", response_model=ApiResponse)
async def list_queue(repo: QueueRepository = Depends(get_repository)):
    try:
        items = repo.list_all()
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Queue items retrieved", data=[i.model_dump(mode="json") for i in items])


@router.get("/gallery", response_model=ApiResponse)
async def gallery(repo: QueueRepository = Depends(get_repository)):
    """Archived items"""
    try:
        items = repo.list_gallery()
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Gallery items retrieved", data=[i.model_dump(mode="json") for i in items])


@router.put("/queue/{item_id}", response_model=ApiResponse)
async def update_item(
    item_id: str,
    request: ItemUpdateRequest,
    repo: QueueRepository = Depends(get_repository),
):
    """Edit an item; fields left out of the body keep their value"""
    try:
        item = repo.get(item_id)
        if item is None:
            return not_found(item_id)
        changes = request.model_dump(exclude_unset=True)
        updated = item.model_copy(update=changes)
        repo.update_full(QueueItem.model_validate(updated.model_dump()))
        item = repo.get(item_id)
    except DuplicateUrlError as e:
        return ApiResponse(success=False, message=str(e))
    except ValueError as e:
        return ApiResponse(success=False, message=f"Invalid item: {e}")
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Item updated", data=item.model_dump(mode="json"))


@router.put("/queue/{item_id}/status", response_model=ApiResponse)
async def set_status(
    item_id: str,
    request: StatusUpdateRequest,
    repo: QueueRepository = Depends(get_repository),
):
    try:
        if repo.get(item_id) is None:
            return not_found(item_id)
        repo.update_status(item_id, request.status, request.message)
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message=f"Status set to {request.status.value}")


@router.delete("/queue", response_model=ApiResponse)
async def clear_items(
    status: List[QueueStatus] = Query(default=[]),
    repo: QueueRepository = Depends(get_repository),
):
    """Delete every item whose status is in the `status` query list"""
    if not status:
        return ApiResponse(success=False, message="At least one status is required")
    try:
        count = repo.delete_by_status(status)
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Items cleared successfully", data={"count": count})


@router.post("/queue/{item_id}/retry", response_model=ApiResponse)
async def retry_item(item_id: str, repo: QueueRepository = Depends(get_repository)):
    """Re-queue a failed item that never reached a provider"""
    try:
        item = repo.get(item_id)
        if item is None:
            return not_found(item_id)
        if item.status != QueueStatus.FAILED or item.has_provider_ref:
            return ApiResponse(
                success=False,
                message=f"Item {item_id} cannot be retried (status: {item.status.value}). "
                        f"Only failed items without an upload can be retried.",
            )
        repo.update_status(item_id, QueueStatus.QUEUED, "Retrying...", when_status=QueueStatus.FAILED)
    except RepositoryError as e:
        return storage_error(e)
    logger.info(f"Item {item_id} queued for retry")
    return ApiResponse(success=True, message="Item queued for retry")


@router.post("/queue/{item_id}/cancel", response_model=ApiResponse)
async def cancel_item(
    item_id: str,
    repo: QueueRepository = Depends(get_repository),
    registry: ProcessRegistry = Depends(get_process_registry),
):
    try:
        if repo.get(item_id) is None:
            return not_found(item_id)
        repo.update_status(item_id, QueueStatus.CANCELLED, "Cancelled by user")
    except RepositoryError as e:
        return storage_error(e)
    terminated = registry.terminate(item_id)
    logger.info(f"Item {item_id} cancelled (process terminated: {terminated})")
    return ApiResponse(success=True, message="Item cancelled", data={"terminated": terminated})


@router.post("/queue/{item_id}/upload", response_model=ApiResponse)
async def trigger_upload(item_id: str, repo: QueueRepository = Depends(get_repository)):
    try:
        if repo.get(item_id) is None:
            return not_found(item_id)
        result = await upload_item(repo, item_id)
    except UploadError as e:
        return ApiResponse(success=False, message=str(e))
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=result.success, message=result.message, data={"provider_ref": result.provider_ref})


@router.post("/queue/{item_id}/restart-encoding", response_model=ApiResponse)
async def restart_item_encoding(item_id: str, repo: QueueRepository = Depends(get_repository)):
    try:
        if repo.get(item_id) is None:
            return not_found(item_id)
        result = await restart_encoding(repo, item_id)
    except UploadError as e:
        return ApiResponse(success=False, message=str(e))
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=result.success, message=result.message, data={"provider_ref": result.provider_ref})
