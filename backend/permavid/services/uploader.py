"""Upload orchestration: push a downloaded file to the configured provider(s)"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging

import httpx

from permavid.models.database import ACTIVE_TRANSFER_STATUSES, UPLOADABLE_STATUSES, QueueStatus
from permavid.models.schemas import AppSettings
from permavid.repository import QueueRepository, RepositoryError
from permavid.services.filemoon import FilemoonClient, ProviderError
from permavid.services.files_vc import FilesVcClient
from permavid.services.filenames import sanitize_filename

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Upload could not be started (missing item, wrong status, ...)."""


@dataclass
class UploadResult:
    success: bool
    message: str
    provider_ref: Optional[str] = None


def _fail(repo: QueueRepository, item_id: str, message: str) -> UploadResult:
    logger.error(f"Item {item_id}: {message}")
    if not repo.update_status(item_id, QueueStatus.FAILED, message, when_status=QueueStatus.UPLOADING):
        logger.info(f"Item {item_id}: no longer uploading, failure not recorded")
    return UploadResult(success=False, message=message)


def _upload_filename(item, local_path: Path) -> str:
    # Keep the real extension; providers use it to detect the container
    stem = item.title or local_path.stem
    return sanitize_filename(f"{stem}{local_path.suffix}")


async def upload_item(
    repo: QueueRepository,
    item_id: str,
    app_settings: Optional[AppSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> UploadResult:
    """
    Upload a `completed` (or re-upload an `encoded`) item.

    Raises UploadError before touching the item when it does not exist, is
    in a status that cannot be uploaded, or another download/upload holds the
    transfer slot. Every later failure is written to the item as `failed` and
    returned as an unsuccessful UploadResult.
    """
    item = repo.get(item_id)
    if item is None:
        raise UploadError(f"Upload failed: Item {item_id} not found.")
    if item.status not in UPLOADABLE_STATUSES:
        raise UploadError(
            f"Item {item_id} cannot be uploaded while {item.status.value}; "
            f"it must be completed or encoded."
        )
    if repo.is_any_in_status(ACTIVE_TRANSFER_STATUSES):
        raise UploadError("Another download or upload is in progress; try again when it finishes.")
    app_settings = app_settings or repo.get_settings()

    if not item.local_path:
        message = "Local file path not found for item"
        repo.update_status(item_id, QueueStatus.FAILED, message)
        logger.error(f"Item {item_id}: {message}")
        return UploadResult(success=False, message=message)

    repo.update_status(item_id, QueueStatus.UPLOADING, "Starting upload...")
    # The item now holds the transfer slot; any error must release it
    try:
        return await _transfer(repo, item, app_settings, transport)
    except Exception as e:
        logger.error(f"Item {item_id}: unexpected upload error: {e}", exc_info=True)
        message = f"Upload failed: {e}"
        try:
            repo.update_status(item_id, QueueStatus.FAILED, message, when_status=QueueStatus.UPLOADING)
        except RepositoryError as db_error:
            logger.error(f"Item {item_id}: could not record failure: {db_error}")
        return UploadResult(success=False, message=message)


async def _transfer(repo, item, app_settings, transport) -> UploadResult:
    item_id = item.id
    local_path = Path(item.local_path)
    if not local_path.is_file():
        return _fail(repo, item_id, f"Local file not found at: {local_path}")

    filename = _upload_filename(item, local_path)
    target = app_settings.upload_target
    result: Optional[UploadResult] = None

    if target in ("filemoon", "both"):
        result = await _upload_to_filemoon(repo, item_id, local_path, filename, app_settings, transport)
        if not result.success:
            if target == "filemoon":
                return result
            fallback = f"{result.message}. Trying Files.vc..."
            if not repo.update_status(item_id, QueueStatus.UPLOADING, fallback, when_status=QueueStatus.FAILED):
                return result

    if target == "files_vc" or (target == "both" and not result.success):
        result = await _upload_to_files_vc(repo, item_id, local_path, filename, app_settings, transport)

    if result.success and app_settings.delete_after_upload:
        try:
            local_path.unlink()
            logger.info(f"Deleted local file after upload: {local_path}")
        except OSError as e:
            logger.error(f"Failed to delete local file {local_path}: {e}")
    return result


async def _upload_to_filemoon(repo, item_id, local_path, filename, app_settings, transport) -> UploadResult:
    if not app_settings.filemoon_api_key:
        return _fail(repo, item_id, "Filemoon API key not configured")
    logger.info(f"Item {item_id}: uploading {local_path} to Filemoon as {filename}")
    client = FilemoonClient(app_settings.filemoon_api_key, transport=transport)
    try:
        filecode = await client.upload_file(local_path, filename)
    except ProviderError as e:
        return _fail(repo, item_id, str(e))

    repo.set_provider_ref(item_id, filemoon_url=filecode)
    repo.update_status(
        item_id,
        QueueStatus.TRANSFERRING,
        f"Filemoon: {filecode}. Awaiting encoding...",
        when_status=QueueStatus.UPLOADING,
    )
    logger.info(f"Item {item_id}: Filemoon upload successful (filecode {filecode})")
    return UploadResult(
        success=True,
        message=f"Upload to Filemoon successful (Filecode: {filecode}). Awaiting encoding.",
        provider_ref=filecode,
    )


async def _upload_to_files_vc(repo, item_id, local_path, filename, app_settings, transport) -> UploadResult:
    if not app_settings.files_vc_api_key:
        return _fail(repo, item_id, "Files.vc API key not configured")
    logger.info(f"Item {item_id}: uploading {local_path} to Files.vc as {filename}")
    client = FilesVcClient(app_settings.files_vc_api_key, transport=transport)
    try:
        file_url = await client.upload_file(local_path, filename)
    except ProviderError as e:
        return _fail(repo, item_id, str(e))

    repo.set_provider_ref(item_id, files_vc_url=file_url)
    # Files.vc serves the file as uploaded, there is no encoding step to wait for
    repo.update_status(
        item_id,
        QueueStatus.ENCODED,
        f"Files.vc: {file_url}",
        when_status=QueueStatus.UPLOADING,
    )
    return UploadResult(
        success=True,
        message=f"Upload to Files.vc successful (URL: {file_url}).",
        provider_ref=file_url,
    )


async def restart_encoding(
    repo: QueueRepository,
    item_id: str,
    app_settings: Optional[AppSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> UploadResult:
    """Ask Filemoon to re-run encoding for an item it already holds."""
    item = repo.get(item_id)
    if item is None:
        raise UploadError(f"Restart encoding failed: Item {item_id} not found.")
    if not item.filemoon_url:
        raise UploadError("Restart encoding failed: Filemoon filecode not found for item.")
    app_settings = app_settings or repo.get_settings()
    if not app_settings.filemoon_api_key:
        raise UploadError("Restart encoding failed: Filemoon API key not configured.")

    filecode = item.filemoon_url
    logger.info(f"Item {item_id}: requesting encoding restart for filecode {filecode}")
    client = FilemoonClient(app_settings.filemoon_api_key, transport=transport)
    try:
        await client.restart_encoding(filecode)
    except ProviderError as e:
        message = str(e)
        logger.error(f"Item {item_id}: {message}")
        repo.update_status(item_id, QueueStatus.FAILED, message)
        return UploadResult(success=False, message=message)

    repo.update_encoding(item_id, QueueStatus.ENCODING, progress=None, message="Restarted encoding")
    return UploadResult(
        success=True,
        message=f"Successfully requested encoding restart for filecode {filecode}",
        provider_ref=filecode,
    )
