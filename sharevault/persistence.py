"""File metadata persistence used by the upload finalizer.

The real application stores these in its relational database; the
in-memory repository here backs the service in development and tests.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)


class FileRecord(BaseModel):
    id: str
    name: str
    size: str
    size_bytes: int
    sha1: str = ""
    file_password_plain: Optional[str] = None
    content_type: str = ""
    expire_at: int = 0
    expire_at_string: str = ""
    upload_date: int
    downloads_remaining: int
    download_count: int = 0
    user_id: str
    comment: str = ""
    unlimited_downloads: bool = False
    unlimited_time: bool = False
    require_auth: bool = False


class AuditLogEntry(BaseModel):
    timestamp: int = Field(default_factory=lambda: int(datetime.now().timestamp()))
    user_id: str
    user_email: str = ""
    action: str
    entity_type: str
    entity_id: str
    details: str = ""
    ip_address: str = ""
    user_agent: str = ""
    success: bool = True
    error_msg: str = ""


class FileRepository:
    """Contract the finalizer depends on.

    Implementations raise PersistenceError when a write cannot be completed.
    """

    def save_file_record(self, record: FileRecord) -> None:
        raise NotImplementedError

    def get_storage_used_mb(self, owner_id: str) -> int:
        raise NotImplementedError

    def update_owner_storage_usage(self, owner_id: str, storage_used_mb: int) -> None:
        raise NotImplementedError

    def log_audit_entry(self, entry: AuditLogEntry) -> None:
        raise NotImplementedError


class InMemoryFileRepository(FileRepository):
    def __init__(self):
        self._files: Dict[str, FileRecord] = {}
        self._storage_used_mb: Dict[str, int] = {}
        self._audit_log: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def save_file_record(self, record: FileRecord) -> None:
        with self._lock:
            if record.id in self._files:
                raise PersistenceError(f"File {record.id} already exists")
            self._files[record.id] = record

    def get_file_record(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            return self._files.get(file_id)

    def list_files(self, owner_id: Optional[str] = None) -> List[FileRecord]:
        with self._lock:
            return [
                record for record in self._files.values()
                if owner_id is None or record.user_id == owner_id
            ]

    def get_storage_used_mb(self, owner_id: str) -> int:
        with self._lock:
            return self._storage_used_mb.get(owner_id, 0)

    def update_owner_storage_usage(self, owner_id: str, storage_used_mb: int) -> None:
        with self._lock:
            self._storage_used_mb[owner_id] = storage_used_mb

    def log_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._audit_log.append(entry)
        logger.debug(f"Audit: {entry.action} {entry.entity_type}={entry.entity_id} by {entry.user_id}")

    def audit_log(self) -> List[AuditLogEntry]:
        with self._lock:
            return list(self._audit_log)
