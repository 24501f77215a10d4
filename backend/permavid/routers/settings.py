"""Settings routes"""
from fastapi import APIRouter, Depends
import logging

from permavid.config import settings
from permavid.models.schemas import ApiResponse, AppSettings
from permavid.repository import QueueRepository, RepositoryError
from permavid.routers.queue import get_repository, storage_error
from permavid.services.filenames import resolve_download_dir

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("", response_model=ApiResponse)
async def get_settings(repo: QueueRepository = Depends(get_repository)):
    try:
        app_settings = repo.get_settings()
    except RepositoryError as e:
        return storage_error(e)
    return ApiResponse(success=True, message="Settings retrieved successfully", data=app_settings.model_dump())


@router.put("", response_model=ApiResponse)
async def save_settings(app_settings: AppSettings, repo: QueueRepository = Depends(get_repository)):
    try:
        repo.save_settings(app_settings)
    except RepositoryError as e:
        return storage_error(e)
    logger.info("Settings saved")
    return ApiResponse(success=True, message="Settings saved successfully", data=app_settings.model_dump())


@router.get("/download-directory", response_model=ApiResponse)
async def download_directory():
    """Directory used when the user has not picked one"""
    path = resolve_download_dir(None, settings.default_download_dir)
    return ApiResponse(success=True, message="Default download directory", data=str(path))
