"""Readiness checks for items waiting on Filemoon encoding.

Two tiers: the file info endpoint is authoritative when it says a file can
play; otherwise the encoding status endpoint reports progress. Neither tier
retries; the scheduler's next sweep does.
"""
from typing import Optional
import logging

from permavid.models.database import AWAITING_ENCODING_STATUSES, QueueStatus
from permavid.repository import QueueRepository
from permavid.services.filemoon import FilemoonClient, ProviderError

logger = logging.getLogger(__name__)

ENCODING_STATE_MAP = {
    "ENCODING": QueueStatus.ENCODING,
    "PENDING": QueueStatus.ENCODING,
    "FINISHED": QueueStatus.ENCODED,
    "ACTIVE": QueueStatus.ENCODED,
    "ERROR": QueueStatus.FAILED,
}


def map_encoding_state(state: str) -> QueueStatus:
    """Provider encoding state to item status; unknown states keep the item transferring."""
    return ENCODING_STATE_MAP.get((state or "").upper(), QueueStatus.TRANSFERRING)


def parse_progress(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        progress = int(float(str(value).strip().rstrip("%")))
    except (ValueError, OverflowError):
        return None
    return min(max(progress, 0), 100)


async def check_file_info(repo: QueueRepository, client: FilemoonClient, item_id: str, filecode: str) -> bool:
    """
    Tier 1. Marks the item `encoded` and returns True when Filemoon reports the
    file as playable; False when not ready yet or the answer is unusable.
    """
    try:
        results = await client.file_info(filecode)
    except ProviderError as e:
        logger.warning(f"Item {item_id}: file info check failed: {e}")
        return False

    info = next((r for r in results if str(r.get("file_code")) == filecode), None)
    if info is None:
        logger.warning(f"Item {item_id}: file info has no entry for filecode {filecode}")
        return False

    if info.get("status") == 200 and parse_progress(info.get("canplay")) == 1:
        logger.info(f"Item {item_id}: file info shows canplay=1, marking encoded")
        recorded = repo.update_encoding(
            item_id, QueueStatus.ENCODED, progress=100, message="Filemoon status: Ready (canplay=1)",
            when_status=AWAITING_ENCODING_STATUSES,
        )
        if not recorded:
            logger.info(f"Item {item_id}: no longer awaiting encoding, result discarded")
        return True

    logger.info(f"Item {item_id}: not playable yet (status={info.get('status')}, canplay={info.get('canplay')})")
    return False


async def check_encoding_status(repo: QueueRepository, client: FilemoonClient, item_id: str, filecode: str) -> Optional[QueueStatus]:
    """Tier 2. Records the reported encoding state; returns the new status or None."""
    try:
        result = await client.encoding_status(filecode)
    except ProviderError as e:
        logger.warning(f"Item {item_id}: encoding status check failed: {e}")
        return None

    state = str(result.get("status", "")).upper()
    progress = parse_progress(result.get("progress"))
    new_status = map_encoding_state(state)
    message = f"Filemoon status: {state}"
    if progress is not None:
        message += f" ({progress}%)"
    logger.info(f"Item {item_id}: encoding status {state} -> {new_status.value} (progress={progress})")
    if not repo.update_encoding(
        item_id, new_status, progress=progress, message=message, when_status=AWAITING_ENCODING_STATUSES
    ):
        logger.info(f"Item {item_id}: no longer awaiting encoding, result discarded")
        return None
    return new_status


async def check_readiness(repo: QueueRepository, client: FilemoonClient, item_id: str, filecode: str) -> None:
    if await check_file_info(repo, client, item_id, filecode):
        return
    await check_encoding_status(repo, client, item_id, filecode)
