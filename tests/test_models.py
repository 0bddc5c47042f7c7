from datetime import datetime, timedelta, timezone

from chunkrelay.models import (
    DownloadInfo,
    DownloadRegistry,
    UploadInfo,
    UploadRegistry,
    count_completed_chunks,
)


def _upload(file_id="u1", chunks=4):
    return UploadInfo(
        file_id=file_id,
        file_name="data.bin",
        total_chunks=chunks,
        total_size=chunks * 10,
        chunk_size=10,
    )


def _download(file_id="d1", created_at=None):
    kwargs = {}
    if created_at is not None:
        kwargs["created_at"] = created_at
    return DownloadInfo(
        file_id=file_id,
        file_name="data.bin",
        file_path="uploads/data.bin",
        total_size=30,
        chunk_size=10,
        total_chunks=3,
        **kwargs,
    )


def test_count_completed_chunks():
    assert count_completed_chunks([True, False, True]) == 2
    assert count_completed_chunks([]) == 0
    assert count_completed_chunks([False] * 5) == 0


def test_upload_info_starts_with_no_chunks_done():
    info = _upload(chunks=4)
    assert info.completed == [False, False, False, False]
    assert info.completed_count() == 0
    assert info.chunk_hashes == {}


def test_upload_info_counts_marked_chunks():
    info = _upload(chunks=3)
    info.completed[0] = True
    info.completed[2] = True
    assert info.completed_count() == 2


def test_upload_registry_round_trip():
    registry = UploadRegistry()
    info = _upload("abc")
    registry.save(info)
    assert registry.get("abc") is info
    assert "abc" in registry
    assert len(registry) == 1
    registry.remove("abc")
    assert registry.get("abc") is None
    assert len(registry) == 0


def test_upload_registry_remove_unknown_is_ignored():
    registry = UploadRegistry()
    registry.save(_upload("keep"))
    registry.remove("missing")
    assert len(registry) == 1


def test_download_hash_count():
    info = _download()
    assert info.hash_count() == 0
    info.chunk_hashes[0] = "x"
    info.chunk_hashes[1] = "y"
    assert info.hash_count() == 2


def test_download_registry_round_trip():
    registry = DownloadRegistry()
    info = _download("d9")
    registry.save(info)
    assert registry.get("d9") is info
    registry.remove("d9")
    assert registry.get("d9") is None
    assert "d9" not in registry


def test_download_registry_save_replaces():
    registry = DownloadRegistry()
    first = _download("same")
    second = _download("same")
    registry.save(first)
    registry.save(second)
    assert registry.get("same") is second
    assert len(registry) == 1


def test_cleanup_expired_drops_only_old_entries():
    registry = DownloadRegistry()
    old = _download("old", created_at=datetime.now(timezone.utc) - timedelta(hours=2))
    fresh = _download("fresh")
    registry.save(old)
    registry.save(fresh)
    removed = registry.cleanup_expired(timedelta(hours=1))
    assert removed == ["old"]
    assert registry.get("old") is None
    assert registry.get("fresh") is fresh


def test_cleanup_expired_accepts_seconds():
    registry = DownloadRegistry()
    registry.save(
        _download("old", created_at=datetime.now(timezone.utc) - timedelta(seconds=120))
    )
    assert registry.cleanup_expired(60) == ["old"]
    assert len(registry) == 0