"""Queue scheduler: drives downloads, auto-uploads and readiness polling"""
import asyncio
import logging
from typing import Optional, Set

import httpx

from permavid.config import settings
from permavid.models.database import ACTIVE_TRANSFER_STATUSES, QueueStatus
from permavid.repository import QueueRepository, RepositoryError
from permavid.services.extractor import ProcessRegistry, download_item, process_registry
from permavid.services.filemoon import FilemoonClient
from permavid.services.filenames import ensure_directory, resolve_download_dir
from permavid.services.readiness import check_readiness
from permavid.services.uploader import UploadError, upload_item

logger = logging.getLogger(__name__)


class QueueScheduler:
    """
    One iteration:
    1. a download or upload is running -> nothing to do (one transfer at a time),
    2. otherwise download the oldest queued item inline,
    3. otherwise check every item waiting on remote encoding, in one bounded pass.
    Sleeps `busy_interval` after work, `idle_interval` when there was none.
    """

    def __init__(
        self,
        repo: QueueRepository,
        *,
        busy_interval: Optional[float] = None,
        idle_interval: Optional[float] = None,
        poll_concurrency: Optional[int] = None,
        registry: Optional[ProcessRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.repo = repo
        self.busy_interval = busy_interval if busy_interval is not None else settings.busy_interval_seconds
        self.idle_interval = idle_interval if idle_interval is not None else settings.idle_interval_seconds
        self.poll_concurrency = max(1, poll_concurrency or settings.poll_concurrency)
        self.registry = registry or process_registry
        self.transport = transport
        self._upload_tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def upload_tasks(self) -> Set[asyncio.Task]:
        return self._upload_tasks

    def recover(self) -> int:
        """Fail items left `downloading`/`uploading` by a previous process."""
        try:
            count = self.repo.recover_interrupted()
        except RepositoryError as e:
            logger.error(f"Could not recover interrupted items: {e}")
            return 0
        if count:
            logger.warning(f"Marked {count} interrupted item(s) as failed")
        return count

    async def run_once(self) -> bool:
        """Run one scheduling iteration. Returns True if there was work."""
        try:
            if self.repo.is_any_in_status(ACTIVE_TRANSFER_STATUSES):
                logger.debug("A transfer is in progress, waiting")
                return True

            item = self.repo.get_next_queued()
            if item is not None:
                await self._download(item)
                return True

            checks = self.repo.get_by_status_for_check()
            if checks:
                await self._poll(checks)
                return True
            return False
        except RepositoryError as e:
            logger.error(f"Database error in scheduler: {e}")
            return False
        except Exception as e:
            logger.error(f"Error in scheduler iteration: {e}", exc_info=True)
            return False

    def _mark_failed(self, item_id: str, message: str, when_status: QueueStatus) -> None:
        """Release the transfer slot held by an item whose step blew up."""
        try:
            if not self.repo.update_status(item_id, QueueStatus.FAILED, message, when_status=when_status):
                logger.info(f"Item {item_id}: no longer {when_status.value}, failure not recorded")
        except RepositoryError as e:
            logger.error(f"Item {item_id}: could not record failure: {e}")

    async def _download(self, item) -> None:
        item_id = item.id
        if not self.repo.update_status(
            item_id, QueueStatus.DOWNLOADING, "Download starting...", when_status=QueueStatus.QUEUED
        ):
            logger.info(f"Item {item_id} left the queue before its download started")
            return

        # From here on the item holds the transfer slot; any error must fail it
        try:
            ok = await self._run_download(item)
        except Exception as e:
            logger.error(f"Unexpected error downloading {item_id}: {e}", exc_info=True)
            self._mark_failed(item_id, f"Download failed: {e}", QueueStatus.DOWNLOADING)
            return
        if not ok:
            return

        # Read settings again: auto_upload may have been toggled during a long download
        if self.repo.get_settings().auto_upload:
            logger.info(f"Auto-upload enabled, triggering upload for {item_id}")
            self.start_upload(item_id)

    async def _run_download(self, item) -> bool:
        item_id = item.id
        app_settings = self.repo.get_settings()
        download_dir = resolve_download_dir(app_settings.download_directory, settings.default_download_dir)
        try:
            ensure_directory(download_dir)
        except OSError as e:
            message = f"Failed to create download directory {download_dir}: {e}"
            logger.error(f"Item {item_id}: {message}")
            self.repo.update_status(item_id, QueueStatus.FAILED, message, when_status=QueueStatus.DOWNLOADING)
            return False

        logger.info(f"Processing download for item {item_id}: {item.url}")
        return await download_item(self.repo, item_id, item.url, download_dir, registry=self.registry)

    def start_upload(self, item_id: str) -> asyncio.Task:
        """Run an upload in the background; the task is kept until it finishes."""
        task = asyncio.create_task(self._upload(item_id))
        self._upload_tasks.add(task)
        task.add_done_callback(self._upload_tasks.discard)
        return task

    async def _upload(self, item_id: str) -> None:
        try:
            result = await upload_item(self.repo, item_id, transport=self.transport)
        except UploadError as e:
            logger.error(f"Auto-upload failed for {item_id}: {e}")
            return
        except Exception as e:
            logger.error(f"Unexpected error uploading {item_id}: {e}", exc_info=True)
            self._mark_failed(item_id, f"Upload failed: {e}", QueueStatus.UPLOADING)
            return
        if not result.success:
            logger.error(f"Auto-upload failed for {item_id}: {result.message}")

    async def _poll(self, checks) -> None:
        semaphore = asyncio.Semaphore(self.poll_concurrency)

        async def _check(item_id: str, filecode: str, api_key: str) -> None:
            async with semaphore:
                client = FilemoonClient(api_key, transport=self.transport)
                try:
                    await check_readiness(self.repo, client, item_id, filecode)
                except Exception as e:
                    logger.error(f"Readiness check failed for {item_id}: {e}", exc_info=True)

        logger.info(f"Checking readiness of {len(checks)} item(s)")
        await asyncio.gather(*(_check(*c) for c in checks))

    async def run(self) -> None:
        logger.info("Queue scheduler started")
        self.recover()
        while not self._stopping.is_set():
            had_work = await self.run_once()
            delay = self.busy_interval if had_work else self.idle_interval
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def shutdown(self) -> None:
        """Stop the loop and wait for in-flight uploads."""
        self.stop()
        if self._upload_tasks:
            logger.info(f"Waiting for {len(self._upload_tasks)} upload(s) to finish")
            await asyncio.gather(*list(self._upload_tasks), return_exceptions=True)


async def main():
    """Run the scheduler as a standalone service"""
    from permavid.database import SessionLocal, init_db

    logging.basicConfig(level=settings.log_level)
    init_db()
    scheduler = QueueScheduler(QueueRepository(SessionLocal))
    try:
        await scheduler.run()
    finally:
        await scheduler.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Queue worker interrupted")
