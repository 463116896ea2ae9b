import hashlib
import json
import os
import threading
from datetime import datetime, timezone

import pytest
from fastapi import BackgroundTasks

from sharevault import finalizer as finalizer_module
from sharevault.exceptions import ForbiddenError, NotFoundError, PersistenceError, StorageIOError
from sharevault.finalizer import Finalizer, parse_finalize_params
from sharevault.persistence import InMemoryFileRepository


class FailingSaveRepository(InMemoryFileRepository):
    def save_file_record(self, record):
        raise PersistenceError("database is locked")


class FailingQuotaRepository(InMemoryFileRepository):
    def update_owner_storage_usage(self, owner_id, storage_used_mb):
        raise PersistenceError("database is locked")


class FailingAuditRepository(InMemoryFileRepository):
    def log_audit_entry(self, entry):
        raise RuntimeError("audit table missing")


def start_upload(receiver, user, data: bytes, metadata=None) -> str:
    upload_id = receiver.init_upload(user, "movie.mp4", len(data), metadata)
    receiver.write_chunk(upload_id, user, 0, data)
    return upload_id


def test_complete_persists_record(receiver, finalizer, repository, store, settings, clock, alice):
    data = os.urandom(1000)
    upload_id = start_upload(receiver, alice, data, {"filetype": "video/mp4", "file_comment": "hi"})

    file_id = finalizer.complete(upload_id, alice)

    assert file_id == upload_id
    assert store.get(upload_id) is None
    final_path = os.path.join(settings.PERM_UPLOAD_DIR, upload_id)
    assert not os.path.exists(os.path.join(settings.TEMP_UPLOAD_DIR, upload_id))
    with open(final_path, "rb") as f:
        assert f.read() == data

    record = repository.get_file_record(file_id)
    assert record.size_bytes == 1000
    assert record.size == "1000 B"
    assert record.sha1 == hashlib.sha1(data).hexdigest()
    assert record.name == "movie.mp4"
    assert record.user_id == "alice"
    assert record.content_type == "video/mp4"
    assert record.comment == "hi"
    assert record.downloads_remaining == 10
    assert record.download_count == 0
    assert record.upload_date == int(clock.now.timestamp())


def test_second_complete_is_not_found(receiver, finalizer, alice):
    upload_id = start_upload(receiver, alice, b"x" * 10)
    finalizer.complete(upload_id, alice)

    with pytest.raises(NotFoundError):
        finalizer.complete(upload_id, alice)


def test_concurrent_completes_finalize_once(receiver, finalizer, repository, alice):
    upload_id = start_upload(receiver, alice, b"x" * 4096)
    barrier = threading.Barrier(6)
    outcomes = []

    def complete():
        barrier.wait()
        try:
            outcomes.append(finalizer.complete(upload_id, alice))
        except NotFoundError:
            outcomes.append("not found")

    threads = [threading.Thread(target=complete) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(upload_id) == 1
    assert outcomes.count("not found") == 5
    assert len(repository.list_files()) == 1


def test_complete_by_other_user_discards_session(receiver, finalizer, repository, store, settings, alice, bob):
    upload_id = start_upload(receiver, alice, b"x" * 10)
    spool_path = store.get(upload_id).spool_path

    with pytest.raises(ForbiddenError):
        finalizer.complete(upload_id, bob)

    assert store.get(upload_id) is None
    assert not os.path.exists(spool_path)
    assert not os.path.exists(os.path.join(settings.PERM_UPLOAD_DIR, upload_id))
    assert repository.list_files() == []
    with pytest.raises(NotFoundError):
        finalizer.complete(upload_id, alice)


def test_persistence_failure_removes_stored_file(receiver, store, notifier, settings, clock, alice):
    repository = FailingSaveRepository()
    finalizer = Finalizer(store, repository, notifier, settings, clock)
    upload_id = start_upload(receiver, alice, b"x" * 10)

    with pytest.raises(PersistenceError):
        finalizer.complete(upload_id, alice)

    assert not os.path.exists(os.path.join(settings.PERM_UPLOAD_DIR, upload_id))
    assert not os.path.exists(os.path.join(settings.TEMP_UPLOAD_DIR, upload_id))
    assert repository.get_storage_used_mb("alice") == 0
    assert repository.audit_log() == []


def test_hash_failure_persists_empty_hash(receiver, finalizer, repository, monkeypatch, alice):
    def broken_sha1(path):
        raise OSError("read error")

    monkeypatch.setattr(finalizer_module, "file_sha1", broken_sha1)
    upload_id = start_upload(receiver, alice, b"x" * 10)

    finalizer.complete(upload_id, alice)

    assert repository.get_file_record(upload_id).sha1 == ""


def test_storage_usage_accumulates(receiver, finalizer, repository, alice):
    repository.update_owner_storage_usage("alice", 7)
    upload_id = start_upload(receiver, alice, b"x" * (3 * 1024 * 1024 + 10))

    finalizer.complete(upload_id, alice)

    assert repository.get_storage_used_mb("alice") == 10


def test_quota_failure_is_not_fatal(receiver, store, notifier, settings, clock, alice):
    repository = FailingQuotaRepository()
    finalizer = Finalizer(store, repository, notifier, settings, clock)
    upload_id = start_upload(receiver, alice, b"x" * 10)

    assert finalizer.complete(upload_id, alice) == upload_id
    assert repository.get_file_record(upload_id) is not None


def test_audit_entry_written(receiver, finalizer, repository, alice):
    upload_id = start_upload(receiver, alice, b"x" * 10)

    finalizer.complete(upload_id, alice, ip_address="10.0.0.1", user_agent="pytest")

    [entry] = repository.audit_log()
    assert entry.action == "FILE_UPLOADED_CHUNKED"
    assert entry.entity_type == "File"
    assert entry.entity_id == upload_id
    assert entry.user_email == "alice@example.com"
    assert entry.ip_address == "10.0.0.1"
    assert json.loads(entry.details) == {"file_name": "movie.mp4", "size": 10, "chunked": True}


def test_audit_failure_is_not_fatal(receiver, store, notifier, settings, clock, alice):
    repository = FailingAuditRepository()
    finalizer = Finalizer(store, repository, notifier, settings, clock)
    upload_id = start_upload(receiver, alice, b"x" * 10)

    assert finalizer.complete(upload_id, alice) == upload_id


def test_large_upload_schedules_notification(receiver, finalizer, notifier, settings, alice):
    settings.LARGE_FILE_NOTIFY_BYTES = 100
    upload_id = start_upload(receiver, alice, b"x" * 101)
    background_tasks = BackgroundTasks()

    finalizer.complete(upload_id, alice, background_tasks=background_tasks)

    assert notifier.calls == []
    [task] = background_tasks.tasks
    task.func(*task.args, **task.kwargs)
    assert notifier.calls == [("alice", "movie.mp4", 101, upload_id, hashlib.sha1(b"x" * 101).hexdigest())]


def test_small_upload_skips_notification(receiver, finalizer, settings, alice):
    settings.LARGE_FILE_NOTIFY_BYTES = 100
    upload_id = start_upload(receiver, alice, b"x" * 100)
    background_tasks = BackgroundTasks()

    finalizer.complete(upload_id, alice, background_tasks=background_tasks)

    assert background_tasks.tasks == []


def test_metadata_parsing():
    params = parse_finalize_params({
        "expire_date": "2025-03-14",
        "downloads_limit": "25",
        "require_auth": "true",
        "unlimited_time": "false",
        "unlimited_downloads": "true",
        "file_password": "hunter2",
        "file_comment": "quarterly numbers",
        "filetype": "application/pdf",
    })

    expected = datetime(2025, 3, 14, 23, 59, 59, tzinfo=timezone.utc)
    assert params.expire_at == int(expected.timestamp())
    assert params.expire_at_string == "2025-03-14 23:59"
    assert params.downloads_limit == 25
    assert params.require_auth is True
    assert params.unlimited_time is False
    assert params.unlimited_downloads is True
    assert params.file_password == "hunter2"
    assert params.comment == "quarterly numbers"
    assert params.content_type == "application/pdf"


def test_metadata_defaults_for_missing_or_invalid_values():
    params = parse_finalize_params({"expire_date": "next week", "downloads_limit": "lots"}, 10)

    assert params.expire_at == 0
    assert params.expire_at_string == ""
    assert params.downloads_limit == 10
    assert params.file_password is None
    assert params.require_auth is False


def test_large_upload_without_background_tasks_still_notifies(receiver, finalizer, notifier, settings, alice):
    settings.LARGE_FILE_NOTIFY_BYTES = 100
    upload_id = start_upload(receiver, alice, b"x" * 101)

    finalizer.complete(upload_id, alice)

    assert notifier.called.wait(timeout=5)
    assert [call[3] for call in notifier.calls] == [upload_id]


def test_move_failure_removes_spool(receiver, finalizer, repository, store, settings, monkeypatch, alice):
    upload_id = start_upload(receiver, alice, b"x" * 10)
    spool_path = store.get(upload_id).spool_path

    def broken_replace(src, dst):
        raise OSError("cross-device link")

    monkeypatch.setattr(finalizer_module.os, "replace", broken_replace)

    with pytest.raises(StorageIOError) as exc_info:
        finalizer.complete(upload_id, alice)

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "Failed to finalize upload"
    assert store.get(upload_id) is None
    assert not os.path.exists(spool_path)
    assert not os.path.exists(os.path.join(settings.PERM_UPLOAD_DIR, upload_id))
    assert repository.list_files() == []
