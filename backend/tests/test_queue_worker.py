"""Unit tests for the queue scheduler"""
import asyncio
from datetime import datetime, timedelta

import pytest

from permavid import queue_worker
from permavid.models.database import QueueStatus
from permavid.models.schemas import AppSettings, QueueItem
from permavid.queue_worker import QueueScheduler
from permavid.repository import RepositoryError
from permavid.services import extractor
from permavid.services.uploader import UploadResult


@pytest.fixture
def scheduler(repo, registry):
    return QueueScheduler(repo, busy_interval=0.01, idle_interval=0.01, poll_concurrency=2, registry=registry)


@pytest.fixture
def fake_download(monkeypatch):
    """Replace the extractor run: record the call and complete the item"""
    calls = []

    async def _download(repo, item_id, url, download_dir, **kwargs):
        calls.append({"item_id": item_id, "url": url, "status": repo.get(item_id).status, "dir": download_dir})
        repo.update_after_download(item_id, QueueStatus.COMPLETED, local_path="/tmp/x.mp4", message="Download complete")
        return True

    monkeypatch.setattr(queue_worker, "download_item", _download)
    return calls


@pytest.mark.asyncio
async def test_idle_iteration_returns_false(scheduler, fake_download):
    assert await scheduler.run_once() is False
    assert fake_download == []


@pytest.mark.asyncio
async def test_no_download_while_a_transfer_is_active(repo, scheduler, fake_download):
    busy = repo.add(QueueItem(url="https://example.com/busy"))
    repo.update_status(busy, QueueStatus.UPLOADING, "Starting upload...")
    waiting = repo.add(QueueItem(url="https://example.com/waiting"))

    assert await scheduler.run_once() is True

    assert fake_download == []
    assert repo.get(waiting).status == QueueStatus.QUEUED


@pytest.mark.asyncio
async def test_downloads_oldest_queued_first(repo, scheduler, fake_download, tmp_path):
    repo.save_settings(AppSettings(download_directory=str(tmp_path / "dl")))
    base = datetime(2024, 5, 1, 8, 0, 0)
    newer = repo.add(QueueItem(url="https://example.com/newer", added_at=base + timedelta(minutes=1)))
    older = repo.add(QueueItem(url="https://example.com/older", added_at=base))

    await scheduler.run_once()
    await scheduler.run_once()

    assert [c["item_id"] for c in fake_download] == [older, newer]
    assert all(c["status"] == QueueStatus.DOWNLOADING for c in fake_download)
    assert (tmp_path / "dl").is_dir()
    assert fake_download[0]["dir"] == tmp_path / "dl"


@pytest.mark.asyncio
async def test_download_dir_creation_failure_fails_item(repo, scheduler, fake_download, tmp_path):
    blocker = tmp_path / "a-file"
    blocker.write_text("x")
    repo.save_settings(AppSettings(download_directory=str(blocker / "sub")))
    item_id = repo.add(QueueItem(url="https://example.com/nodir"))

    await scheduler.run_once()

    item = repo.get(item_id)
    assert item.status == QueueStatus.FAILED
    assert item.message.startswith("Failed to create download directory")
    assert fake_download == []


@pytest.mark.asyncio
async def test_auto_upload_runs_in_background(repo, scheduler, fake_download, tmp_path, monkeypatch):
    repo.save_settings(AppSettings(download_directory=str(tmp_path), auto_upload=True, filemoon_api_key="k"))
    item_id = repo.add(QueueItem(url="https://example.com/auto"))
    uploaded = []

    async def _upload(repo_, upload_id, app_settings=None, **kwargs):
        uploaded.append(upload_id)
        return UploadResult(success=True, message="ok", provider_ref="fm1")

    monkeypatch.setattr(queue_worker, "upload_item", _upload)

    await scheduler.run_once()
    assert len(scheduler.upload_tasks) == 1
    await scheduler.shutdown()

    assert uploaded == [item_id]
    assert scheduler.upload_tasks == set()


@pytest.mark.asyncio
async def test_no_auto_upload_when_disabled(repo, scheduler, fake_download, tmp_path):
    repo.save_settings(AppSettings(download_directory=str(tmp_path)))
    repo.add(QueueItem(url="https://example.com/manual"))

    await scheduler.run_once()

    assert scheduler.upload_tasks == set()


@pytest.mark.asyncio
async def test_poll_pass_checks_waiting_items_with_bounded_concurrency(repo, scheduler, fake_download, monkeypatch):
    repo.save_settings(AppSettings(filemoon_api_key="k"))
    ids = []
    for n in range(5):
        item_id = repo.add(QueueItem(url=f"https://example.com/enc{n}"))
        repo.set_provider_ref(item_id, filemoon_url=f"code{n}")
        repo.update_status(item_id, QueueStatus.TRANSFERRING)
        ids.append(item_id)

    checked = []
    active = 0
    peak = 0

    async def _check(repo_, client, item_id, filecode):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        checked.append((item_id, filecode, client.api_key))
        active -= 1

    monkeypatch.setattr(queue_worker, "check_readiness", _check)

    assert await scheduler.run_once() is True

    assert sorted(checked) == sorted((i, f"code{n}", "k") for n, i in enumerate(ids))
    assert peak <= 2


@pytest.mark.asyncio
async def test_failing_readiness_check_does_not_break_the_pass(repo, scheduler, monkeypatch):
    repo.save_settings(AppSettings(filemoon_api_key="k"))
    for n in range(2):
        item_id = repo.add(QueueItem(url=f"https://example.com/p{n}"))
        repo.set_provider_ref(item_id, filemoon_url=f"c{n}")
        repo.update_status(item_id, QueueStatus.ENCODING)
    seen = []

    async def _check(repo_, client, item_id, filecode):
        seen.append(filecode)
        if filecode == "c0":
            raise RuntimeError("boom")

    monkeypatch.setattr(queue_worker, "check_readiness", _check)

    assert await scheduler.run_once() is True
    assert sorted(seen) == ["c0", "c1"]


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(repo, scheduler, monkeypatch):
    def _boom():
        raise RuntimeError("database went away")

    monkeypatch.setattr(repo, "get_next_queued", _boom)
    assert await scheduler.run_once() is False


@pytest.mark.asyncio
async def test_run_recovers_and_stops(repo, scheduler, fake_download, tmp_path):
    repo.save_settings(AppSettings(download_directory=str(tmp_path)))
    stuck = repo.add(QueueItem(url="https://example.com/stuck"))
    repo.update_status(stuck, QueueStatus.DOWNLOADING)
    queued = repo.add(QueueItem(url="https://example.com/next"))

    task = asyncio.create_task(scheduler.run())
    for _ in range(200):
        if fake_download:
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=5)

    assert repo.get(stuck).status == QueueStatus.FAILED
    assert [c["item_id"] for c in fake_download] == [queued]
    assert repo.get(queued).status == QueueStatus.COMPLETED


@pytest.mark.asyncio
async def test_storage_error_after_download_fails_item_and_frees_the_slot(repo, scheduler, tmp_path, monkeypatch):
    repo.save_settings(AppSettings(download_directory=str(tmp_path)))
    base = datetime(2024, 5, 1, 8, 0, 0)
    first = repo.add(QueueItem(url="https://example.com/first", added_at=base))
    second = repo.add(QueueItem(url="https://example.com/second", added_at=base + timedelta(minutes=1)))

    async def _run_extractor(repo_, item_id, cmd, **kwargs):
        return None

    monkeypatch.setattr(extractor, "run_extractor", _run_extractor)
    real_update = repo.update_after_download
    failures = []

    def _update_after_download(*args, **kwargs):
        if not failures:
            failures.append(args[0])
            raise RepositoryError("database is locked")
        return real_update(*args, **kwargs)

    monkeypatch.setattr(repo, "update_after_download", _update_after_download)

    await scheduler.run_once()

    item = repo.get(first)
    assert item.status == QueueStatus.FAILED
    assert item.message == "Download failed: database is locked"

    await scheduler.run_once()

    assert failures == [first]
    assert repo.get(second).status == QueueStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_upload_error_fails_item(repo, scheduler, monkeypatch):
    item_id = repo.add(QueueItem(url="https://example.com/up"))
    repo.update_after_download(item_id, QueueStatus.COMPLETED, local_path="/tmp/x.mp4", message="Download complete")

    async def _upload(repo_, upload_id, app_settings=None, **kwargs):
        repo_.update_status(upload_id, QueueStatus.UPLOADING, "Starting upload...")
        raise RuntimeError("socket closed")

    monkeypatch.setattr(queue_worker, "upload_item", _upload)

    await scheduler.start_upload(item_id)

    item = repo.get(item_id)
    assert item.status == QueueStatus.FAILED
    assert item.message == "Upload failed: socket closed"
    assert not repo.is_any_in_status([QueueStatus.DOWNLOADING, QueueStatus.UPLOADING])
