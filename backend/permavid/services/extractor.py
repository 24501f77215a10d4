"""Download executor: runs yt-dlp as a subprocess for one queue item"""
import asyncio
import logging
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional

from permavid.config import settings
from permavid.models.database import QueueStatus
from permavid.repository import QueueRepository, RepositoryError
from permavid.services.artifact_resolver import resolve_artifacts

logger = logging.getLogger(__name__)

# yt-dlp prints "[download]  42.3% of ..." with --newline
PROGRESS_RE = re.compile(r"\[download\]\s+(\d{1,3}(?:\.\d+)?)%")
OUTPUT_TEMPLATE = "%(id)s.%(ext)s"
STDERR_TAIL_LINES = 50


class DownloadError(Exception):
    """yt-dlp could not be started or exited unsuccessfully."""

    def __init__(self, message: str, *, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ProcessRegistry:
    """Running extractor processes keyed by item id, so a cancel can stop them."""

    def __init__(self):
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    def register(self, item_id: str, process) -> None:
        self._processes[item_id] = process

    def unregister(self, item_id: str, process=None) -> None:
        current = self._processes.get(item_id)
        if current is not None and (process is None or current is process):
            del self._processes[item_id]

    def get(self, item_id: str):
        return self._processes.get(item_id)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._processes

    def terminate(self, item_id: str) -> bool:
        """Terminate the item's process if it is still running."""
        process = self._processes.get(item_id)
        if process is None or process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        logger.info(f"Terminated extractor process for item {item_id} (pid {process.pid})")
        return True


process_registry = ProcessRegistry()


def extractor_base_command(ytdlp_path: Optional[str] = None) -> List[str]:
    """Configured yt-dlp executable, else the installed yt_dlp module."""
    path = ytdlp_path if ytdlp_path is not None else settings.ytdlp_path
    if path and path.strip():
        return [path.strip()]
    return [sys.executable, "-m", "yt_dlp"]


def build_command(url: str, download_dir, ytdlp_path: Optional[str] = None) -> List[str]:
    output = str(Path(download_dir) / OUTPUT_TEMPLATE)
    return extractor_base_command(ytdlp_path) + [
        url,
        "--write-info-json",
        "--output", output,
        "--no-simulate",
        "--progress",
        "--newline",
        "--no-warnings",
    ]


def parse_progress(line: str) -> Optional[float]:
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


async def _pump_stdout(stream, repo: QueueRepository, item_id: str) -> None:
    last_message = None
    while True:
        try:
            raw = await stream.readline()
        except ValueError as e:
            # Line longer than the stream limit; it has been dropped from the buffer
            logger.warning(f"Item {item_id}: skipped oversized yt-dlp output line: {e}")
            continue
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        logger.debug(f"[yt-dlp {item_id}] {line}")
        pct = parse_progress(line)
        if pct is None:
            continue
        message = f"Downloading: {pct:.1f}%"
        if message == last_message:
            continue
        last_message = message
        try:
            repo.update_message(item_id, message, when_status=QueueStatus.DOWNLOADING)
        except RepositoryError as e:
            logger.warning(f"Item {item_id}: failed to publish progress: {e}")


async def _collect_stderr(stream, lines: List[str], item_id: str) -> None:
    while True:
        try:
            raw = await stream.readline()
        except ValueError as e:
            # Line longer than the stream limit; it has been dropped from the buffer
            logger.warning(f"Item {item_id}: skipped oversized yt-dlp output line: {e}")
            continue
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            logger.debug(f"[yt-dlp {item_id} stderr] {line}")
            lines.append(line)
            if len(lines) > STDERR_TAIL_LINES:
                del lines[0]


async def _watch_for_cancel(repo: QueueRepository, item_id: str, process, interval: float) -> None:
    while process.returncode is None:
        await asyncio.sleep(interval)
        try:
            item = repo.get(item_id)
        except RepositoryError as e:
            logger.debug(f"Item {item_id}: cancel check failed: {e}")
            continue
        if item is None or item.status == QueueStatus.CANCELLED:
            if process.returncode is None:
                logger.info(f"Item {item_id} was cancelled, stopping download")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
            return


async def run_extractor(
    repo: QueueRepository,
    item_id: str,
    cmd: List[str],
    *,
    registry: Optional[ProcessRegistry] = None,
    cancel_check_interval: Optional[float] = None,
) -> None:
    """Run the extractor command, streaming progress into the item. Raises DownloadError."""
    registry = registry or process_registry
    interval = cancel_check_interval if cancel_check_interval is not None else settings.cancel_check_interval_seconds
    logger.info(f"Item {item_id}: running {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise DownloadError(f"Failed to spawn yt-dlp command: {e}") from e

    registry.register(item_id, process)
    stderr_lines: List[str] = []
    watcher = asyncio.create_task(_watch_for_cancel(repo, item_id, process, interval))
    try:
        await asyncio.gather(
            _pump_stdout(process.stdout, repo, item_id),
            _collect_stderr(process.stderr, stderr_lines, item_id),
        )
        returncode = await process.wait()
    finally:
        watcher.cancel()
        registry.unregister(item_id, process)
        if process.returncode is None:
            # Unwinding (e.g. the scheduler task was cancelled) with yt-dlp still running
            try:
                process.kill()
            except ProcessLookupError:
                pass

    if returncode != 0:
        stderr_text = "\n".join(stderr_lines).strip() or "None"
        raise DownloadError(
            f"yt-dlp exited with code {returncode}. Stderr: {stderr_text}",
            returncode=returncode,
        )


async def download_item(
    repo: QueueRepository,
    item_id: str,
    url: str,
    download_dir,
    *,
    registry: Optional[ProcessRegistry] = None,
    ytdlp_path: Optional[str] = None,
    cancel_check_interval: Optional[float] = None,
) -> bool:
    """
    Download one item into `download_dir` and record the outcome on the item.

    The item must already be `downloading`. On success it becomes `completed`
    with title/thumbnail/local_path from the matched sidecar; on failure it
    becomes `failed` with the error text. If the item is cancelled meanwhile it
    is left untouched. Returns True only when the item ended up `completed`.
    """
    cmd = build_command(url, download_dir, ytdlp_path)
    try:
        await run_extractor(
            repo, item_id, cmd,
            registry=registry,
            cancel_check_interval=cancel_check_interval,
        )
    except DownloadError as e:
        logger.error(f"Item {item_id}: download failed: {e}")
        if not repo.update_status(item_id, QueueStatus.FAILED, str(e), when_status=QueueStatus.DOWNLOADING):
            logger.info(f"Item {item_id}: no longer downloading, failure not recorded")
        return False

    artifacts = resolve_artifacts(download_dir, url, item_id)
    updated = repo.update_after_download(
        item_id,
        QueueStatus.COMPLETED,
        title=artifacts.title,
        local_path=artifacts.local_path,
        thumbnail_url=artifacts.thumbnail_url,
        message="Download complete",
        when_status=QueueStatus.DOWNLOADING,
    )
    if not updated:
        logger.info(f"Item {item_id}: no longer downloading, result discarded")
        return False
    logger.info(f"Item {item_id}: download complete ({artifacts.local_path or 'no local file found'})")
    return True
