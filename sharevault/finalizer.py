"""Promotes a finished upload session to a stored file.

If the record cannot be saved the moved file is deleted again. Quota, audit
and notification failures are logged and never fail the completion.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import BackgroundTasks

from .config import Settings
from .exceptions import ForbiddenError, NotFoundError, PersistenceError, StorageIOError
from .models import SessionStore, UploadSession
from .notifications import Notifier
from .persistence import AuditLogEntry, FileRecord, FileRepository
from .schemas import User
from .utils import file_sha1, format_file_size

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass
class FinalizeParams:
    expire_at: int = 0
    expire_at_string: str = ""
    downloads_limit: int = 10
    require_auth: bool = False
    unlimited_time: bool = False
    unlimited_downloads: bool = False
    file_password: Optional[str] = None
    comment: str = ""
    content_type: str = ""


def parse_finalize_params(metadata: Dict[str, str], default_downloads_limit: int = 10) -> FinalizeParams:
    """Turn the string metadata captured at init into typed file settings.

    ``expire_date`` is a ``YYYY-MM-DD`` date and expires at the end of that
    day (UTC). Unparsable values fall back to the defaults.
    """
    params = FinalizeParams(downloads_limit=default_downloads_limit)

    expire_date = metadata.get("expire_date", "")
    if expire_date:
        try:
            expire_time = datetime.strptime(expire_date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Ignoring invalid expire_date {expire_date!r}")
        else:
            expire_time += timedelta(hours=23, minutes=59, seconds=59)
            params.expire_at = int(expire_time.timestamp())
            params.expire_at_string = expire_time.strftime("%Y-%m-%d %H:%M")

    limit = metadata.get("downloads_limit", "")
    if limit:
        try:
            params.downloads_limit = int(limit)
        except ValueError:
            logger.warning(f"Ignoring invalid downloads_limit {limit!r}")

    params.require_auth = metadata.get("require_auth") == "true"
    params.unlimited_time = metadata.get("unlimited_time") == "true"
    params.unlimited_downloads = metadata.get("unlimited_downloads") == "true"
    params.file_password = metadata.get("file_password") or None
    params.comment = metadata.get("file_comment", "")
    params.content_type = metadata.get("filetype", "")
    return params


class Finalizer:
    def __init__(
        self,
        store: SessionStore,
        repository: FileRepository,
        notifier: Notifier,
        config: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.repository = repository
        self.notifier = notifier
        self.config = config
        self.clock = clock
        self.perm_dir = Path(config.PERM_UPLOAD_DIR)

    def complete(
        self,
        upload_id: str,
        user: User,
        background_tasks: Optional[BackgroundTasks] = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> str:
        # Removing first makes a second Complete, or a racing reaper sweep, see nothing
        session = self.store.take_and_remove(upload_id)
        if session is None:
            raise NotFoundError()

        if session.owner_id != user.username:
            logger.warning(
                f"User {user.username} tried to complete upload {upload_id} owned by {session.owner_id}; discarding session"
            )
            self._discard(session)
            raise ForbiddenError()

        with session.lock:
            size = session.bytes_received
            try:
                session.close_spool()
            except OSError as e:
                logger.error(f"Failed to close spool for upload {upload_id}: {e}")
                self._remove_file(session.spool_path, upload_id)
                raise StorageIOError("Failed to finalize upload")

        final_path = self.perm_dir / upload_id
        try:
            self.perm_dir.mkdir(parents=True, exist_ok=True)
            os.replace(session.spool_path, final_path)
        except OSError as e:
            logger.error(f"Failed to move upload {upload_id} into storage: {e}")
            self._remove_file(session.spool_path, upload_id)
            raise StorageIOError("Failed to finalize upload")

        try:
            sha1 = file_sha1(final_path)
        except OSError as e:
            logger.warning(f"Failed to calculate SHA1 for {upload_id}: {e}")
            sha1 = ""

        params = parse_finalize_params(session.metadata, self.config.DEFAULT_DOWNLOADS_LIMIT)
        record = FileRecord(
            id=upload_id,
            name=session.filename,
            size=format_file_size(size),
            size_bytes=size,
            sha1=sha1,
            file_password_plain=params.file_password,
            content_type=params.content_type,
            expire_at=params.expire_at,
            expire_at_string=params.expire_at_string,
            upload_date=int(self.clock().timestamp()),
            downloads_remaining=params.downloads_limit,
            user_id=user.username,
            comment=params.comment,
            unlimited_downloads=params.unlimited_downloads,
            unlimited_time=params.unlimited_time,
            require_auth=params.require_auth,
        )

        try:
            self.repository.save_file_record(record)
        except Exception as e:
            logger.error(f"Failed to save file metadata for {upload_id}: {e}")
            self._remove_file(final_path, upload_id)
            raise PersistenceError("Failed to save file metadata")

        self._update_storage(user, size)
        self._audit(user, session, size, ip_address, user_agent)

        if size > self.config.LARGE_FILE_NOTIFY_BYTES:
            args = (user, session.filename, size, upload_id, sha1)
            if background_tasks is not None:
                background_tasks.add_task(self.notifier.notify_large_upload_safely, *args)
            else:
                threading.Thread(
                    target=self.notifier.notify_large_upload_safely, args=args, daemon=True
                ).start()

        logger.info(f"Chunked upload completed: {session.filename} ({format_file_size(size)}) by {user.username}")
        return upload_id

    def _discard(self, session: UploadSession) -> None:
        with session.lock:
            try:
                session.close_spool()
            except OSError as e:
                logger.warning(f"Failed to close spool for upload {session.id}: {e}")
        self._remove_file(session.spool_path, session.id)

    def _remove_file(self, path, upload_id: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Cleanup of {upload_id} failed, file may be orphaned: {e}")

    def _update_storage(self, user: User, size: int) -> None:
        try:
            used = self.repository.get_storage_used_mb(user.username)
            self.repository.update_owner_storage_usage(user.username, used + size // BYTES_PER_MB)
        except Exception as e:
            logger.warning(f"Could not update storage usage for {user.username}: {e}")

    def _audit(self, user: User, session: UploadSession, size: int, ip_address: str, user_agent: str) -> None:
        entry = AuditLogEntry(
            user_id=user.username,
            user_email=user.email or "",
            action="FILE_UPLOADED_CHUNKED",
            entity_type="File",
            entity_id=session.id,
            details=json.dumps({"file_name": session.filename, "size": size, "chunked": True}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.repository.log_audit_entry(entry)
        except Exception as e:
            logger.warning(f"Failed to write audit entry for upload {session.id}: {e}")
