"""Opening upload sessions and appending chunks to their spool files."""

import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import Settings
from .exceptions import ForbiddenError, NotFoundError, StorageIOError, ValidationError
from .models import SessionStore, UploadSession
from .schemas import ChunkResponse, UploadStatusResponse, User

logger = logging.getLogger(__name__)


def generate_upload_id() -> str:
    return secrets.token_hex(20)


class ChunkReceiver:
    def __init__(
        self,
        store: SessionStore,
        config: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.temp_dir = Path(config.TEMP_UPLOAD_DIR)

    def init_upload(
        self,
        user: User,
        filename: str,
        total_size: int,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        if not filename or not filename.strip():
            raise ValidationError("Missing filename")
        if total_size < 0:
            raise ValidationError("Invalid total_size")

        upload_id = generate_upload_id()
        spool_path = self.temp_dir / upload_id
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            spool = open(spool_path, "xb")
        except OSError as e:
            logger.error(f"Failed to create spool file for {filename}: {e}")
            raise StorageIOError("Server error")

        now = self.clock()
        session = UploadSession(
            id=upload_id,
            owner_id=user.username,
            filename=filename,
            total_size=total_size,
            spool=spool,
            spool_path=str(spool_path),
            metadata=dict(metadata or {}),
            created_at=now,
            last_activity=now,
        )
        self.store.create(session)

        logger.info(f"Chunked upload initialized: {upload_id} ({filename}, {total_size} bytes) by {user.username}")
        return upload_id

    def _owned_session(self, upload_id: str, user: User) -> UploadSession:
        session = self.store.get(upload_id)
        if session is None:
            raise NotFoundError()
        if session.owner_id != user.username:
            logger.warning(f"User {user.username} denied access to upload {upload_id}")
            raise ForbiddenError()
        return session

    def write_chunk(self, upload_id: str, user: User, chunk_index: int, data: bytes) -> ChunkResponse:
        session = self._owned_session(upload_id, user)

        with session.lock:
            # Complete or the reaper may have claimed the session while we waited
            if session.closed:
                raise NotFoundError()

            if self.config.ENFORCE_CHUNK_ORDER and chunk_index != session.chunks_received:
                raise ValidationError(
                    f"Unexpected chunk_index {chunk_index}, expected {session.chunks_received}"
                )

            try:
                if session.spool.closed:
                    self._reopen_spool(session)
                session.spool.write(data)
                session.spool.flush()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to write chunk {chunk_index} for upload {upload_id}: {e}")
                self._discard_buffered(session)
                raise StorageIOError("Failed to write chunk")

            session.bytes_received += len(data)
            session.chunks_received += 1
            session.last_activity = self.clock()

            logger.debug(
                f"Chunk {chunk_index} received for upload {upload_id} "
                f"({session.bytes_received}/{session.total_size} bytes)"
            )
            return ChunkResponse(
                bytes_received=session.bytes_received,
                total_size=session.total_size,
                complete=session.complete,
            )

    def _discard_buffered(self, session: UploadSession) -> None:
        # Bytes of the failed chunk may still sit in the writer's buffer
        try:
            session.spool.close()
        except OSError:
            pass
        try:
            self._reopen_spool(session)
        except OSError as e:
            logger.warning(f"Could not reopen spool for upload {session.id}, will retry on next chunk: {e}")

    def _reopen_spool(self, session: UploadSession) -> None:
        spool = open(session.spool_path, "r+b")
        try:
            spool.truncate(session.bytes_received)
            spool.seek(session.bytes_received)
        except OSError:
            spool.close()
            raise
        session.spool = spool

    def get_status(self, upload_id: str, user: User) -> UploadStatusResponse:
        session = self._owned_session(upload_id, user)
        with session.lock:
            progress = (
                session.bytes_received / session.total_size * 100
                if session.total_size > 0 else 100.0
            )
            return UploadStatusResponse(
                upload_id=session.id,
                filename=session.filename,
                bytes_received=session.bytes_received,
                total_size=session.total_size,
                chunks_received=session.chunks_received,
                progress_percent=round(min(progress, 100.0), 2),
                last_activity=session.last_activity.isoformat(),
            )
