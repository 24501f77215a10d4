"""Tests for the queue repository"""
from datetime import datetime, timedelta

import pytest

from permavid.models.database import QueueRecord, QueueStatus, SettingRecord
from permavid.models.schemas import AppSettings, QueueItem
from permavid.repository import SETTINGS_KEY, DuplicateUrlError, ItemNotFoundError


def _add(repo, url, status=QueueStatus.QUEUED, **fields):
    item_id = repo.add(QueueItem(url=url, **fields))
    if status != QueueStatus.QUEUED:
        repo.update_status(item_id, status)
    return item_id


def test_add_assigns_id_and_defaults(repo):
    item_id = repo.add(QueueItem(url="https://www.youtube.com/watch?v=dQw4w9WgXcQ"))
    assert item_id

    item = repo.get(item_id)
    assert item.status == QueueStatus.QUEUED
    assert item.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert item.added_at is not None
    assert item.filemoon_url is None and item.files_vc_url is None


def test_add_rejects_duplicate_in_active_queue(repo):
    url = "https://vimeo.com/123456"
    item_id = _add(repo, url)
    repo.update_status(item_id, QueueStatus.DOWNLOADING)

    with pytest.raises(DuplicateUrlError) as exc:
        repo.add(QueueItem(url=url))
    assert not exc.value.archived
    assert "active queue" in str(exc.value)
    assert "downloading" in str(exc.value)


def test_add_rejects_already_archived_url(repo):
    url = "https://vimeo.com/987654"
    _add(repo, url, status=QueueStatus.ENCODED)

    with pytest.raises(DuplicateUrlError) as exc:
        repo.add(QueueItem(url=url))
    assert exc.value.archived
    assert str(exc.value) == f"URL '{url}' has already been archived."


def test_get_next_queued_is_fifo(repo, db):
    base = datetime(2024, 1, 1, 12, 0, 0)
    first = repo.add(QueueItem(url="https://example.com/a", added_at=base))
    second = repo.add(QueueItem(url="https://example.com/b", added_at=base + timedelta(seconds=1)))
    repo.add(QueueItem(url="https://example.com/c", added_at=base - timedelta(seconds=1)))
    oldest = repo.get_next_queued()
    assert oldest.url == "https://example.com/c"

    repo.update_status(oldest.id, QueueStatus.DOWNLOADING)
    assert repo.get_next_queued().id == first
    repo.update_status(first, QueueStatus.COMPLETED)
    assert repo.get_next_queued().id == second


def test_get_next_queued_none_when_empty(repo):
    assert repo.get_next_queued() is None


def test_is_any_in_status(repo):
    item_id = _add(repo, "https://example.com/x")
    assert not repo.is_any_in_status([QueueStatus.DOWNLOADING, QueueStatus.UPLOADING])
    repo.update_status(item_id, QueueStatus.UPLOADING)
    assert repo.is_any_in_status([QueueStatus.DOWNLOADING, QueueStatus.UPLOADING])
    assert not repo.is_any_in_status([])


def test_update_status_missing_item_raises(repo):
    with pytest.raises(ItemNotFoundError):
        repo.update_status("nope", QueueStatus.FAILED, "x")


def test_conditional_update_does_not_overwrite_cancel(repo):
    item_id = _add(repo, "https://example.com/cancel-me", status=QueueStatus.CANCELLED)

    assert repo.update_status(
        item_id, QueueStatus.FAILED, "boom", when_status=QueueStatus.DOWNLOADING
    ) is False
    assert repo.update_message(item_id, "Downloading: 50.0%", when_status=QueueStatus.DOWNLOADING) is False

    item = repo.get(item_id)
    assert item.status == QueueStatus.CANCELLED


def test_update_encoding_guard_accepts_several_statuses(repo):
    item_id = _add(repo, "https://example.com/enc-guard", status=QueueStatus.ENCODING)
    waiting = (QueueStatus.TRANSFERRING, QueueStatus.ENCODING)

    assert repo.update_encoding(item_id, QueueStatus.ENCODING, progress=40, when_status=waiting) is True
    assert repo.get(item_id).encoding_progress == 40

    repo.update_status(item_id, QueueStatus.CANCELLED, "Cancelled by user")
    assert repo.update_encoding(item_id, QueueStatus.ENCODED, progress=100, when_status=waiting) is False
    assert repo.get(item_id).status == QueueStatus.CANCELLED


def test_update_after_download_keeps_existing_title(repo):
    item_id = _add(repo, "https://example.com/t", title="Given title")
    repo.update_after_download(
        item_id, QueueStatus.COMPLETED,
        title=None, local_path="/tmp/v.mp4", thumbnail_url="https://img/t.jpg",
        message="Download complete",
    )
    item = repo.get(item_id)
    assert item.status == QueueStatus.COMPLETED
    assert item.title == "Given title"
    assert item.local_path == "/tmp/v.mp4"
    assert item.thumbnail_url == "https://img/t.jpg"


def test_get_by_status_for_check_requires_key(repo):
    item_id = _add(repo, "https://example.com/enc", status=QueueStatus.TRANSFERRING)
    repo.set_provider_ref(item_id, filemoon_url="abc123")

    assert repo.get_by_status_for_check() == []

    repo.save_settings(AppSettings(filemoon_api_key="k"))
    assert repo.get_by_status_for_check() == [(item_id, "abc123", "k")]


def test_get_by_status_for_check_skips_items_without_filecode(repo):
    repo.save_settings(AppSettings(filemoon_api_key="k"))
    _add(repo, "https://example.com/no-code", status=QueueStatus.ENCODING)
    done = _add(repo, "https://example.com/done", status=QueueStatus.ENCODED)
    repo.set_provider_ref(done, filemoon_url="zzz")
    assert repo.get_by_status_for_check() == []


def test_list_gallery_only_encoded(repo):
    _add(repo, "https://example.com/1", status=QueueStatus.COMPLETED)
    archived = _add(repo, "https://example.com/2", status=QueueStatus.ENCODED)
    gallery = repo.list_gallery()
    assert [i.id for i in gallery] == [archived]


def test_update_full_rejects_url_clash(repo):
    _add(repo, "https://example.com/one")
    other = _add(repo, "https://example.com/two")
    item = repo.get(other)
    item.url = "https://example.com/one"
    with pytest.raises(DuplicateUrlError):
        repo.update_full(item)


def test_delete_by_status(repo):
    _add(repo, "https://example.com/f1", status=QueueStatus.FAILED)
    _add(repo, "https://example.com/f2", status=QueueStatus.FAILED)
    _add(repo, "https://example.com/c1", status=QueueStatus.CANCELLED)
    kept = _add(repo, "https://example.com/q1")

    assert repo.delete_by_status([QueueStatus.FAILED, QueueStatus.CANCELLED]) == 3
    assert [i.id for i in repo.list_all()] == [kept]


def test_recover_interrupted(repo):
    downloading = _add(repo, "https://example.com/d", status=QueueStatus.DOWNLOADING)
    uploading = _add(repo, "https://example.com/u", status=QueueStatus.UPLOADING)
    queued = _add(repo, "https://example.com/q")

    assert repo.recover_interrupted() == 2
    assert repo.get(downloading).status == QueueStatus.FAILED
    assert "Interrupted while downloading" in repo.get(downloading).message
    assert repo.get(uploading).status == QueueStatus.FAILED
    assert repo.get(queued).status == QueueStatus.QUEUED


def test_settings_defaults_and_roundtrip(repo):
    assert repo.get_settings() == AppSettings()

    saved = AppSettings(
        filemoon_api_key="fm",
        download_directory="/data/videos",
        auto_upload=True,
        upload_target="both",
    )
    repo.save_settings(saved)
    assert repo.get_settings() == saved


def test_settings_invalid_json_falls_back_to_defaults(repo, db):
    db.add(SettingRecord(key=SETTINGS_KEY, value="{not json"))
    db.commit()
    assert repo.get_settings() == AppSettings()


def test_settings_null_values_use_defaults(repo, db):
    db.add(SettingRecord(key=SETTINGS_KEY, value='{"auto_upload": null, "filemoon_api_key": "k"}'))
    db.commit()
    loaded = repo.get_settings()
    assert loaded.auto_upload is False
    assert loaded.filemoon_api_key == "k"


def test_records_are_visible_from_other_sessions(repo, db):
    item_id = _add(repo, "https://example.com/visible")
    record = db.query(QueueRecord).filter(QueueRecord.id == item_id).first()
    assert record is not None
    assert record.status == QueueStatus.QUEUED
