import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Dict, List, Optional


@dataclass
class UploadSession:
    """One in-progress chunked transfer.

    ``spool`` is owned by the session for its whole lifetime; writes to it and
    closing it happen only while ``lock`` is held.
    """

    id: str
    owner_id: str
    filename: str
    total_size: int
    spool: BinaryIO
    spool_path: str
    metadata: Dict[str, str] = field(default_factory=dict)
    bytes_received: int = 0
    chunks_received: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def complete(self) -> bool:
        return self.bytes_received >= self.total_size

    def close_spool(self) -> None:
        """Close the spool handle. Caller must hold ``lock``."""
        self.closed = True
        if not self.spool.closed:
            self.spool.close()


class SessionStore:
    """Registry of in-flight upload sessions.

    The store lock only guards the mapping itself; spool I/O is serialised by
    each session's own lock so unrelated uploads never contend here.
    """

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def create(self, session: UploadSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                # IDs carry 160 bits of entropy, a clash means the generator is broken
                raise RuntimeError(f"Upload ID collision: {session.id}")
            self._sessions[session.id] = session

    def get(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.get(upload_id)

    def take_and_remove(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.pop(upload_id, None)

    def evict_stale(self, cutoff: datetime) -> List[UploadSession]:
        """Remove and return every session idle since before ``cutoff``.

        A session whose lock is held is mid-write and therefore not idle. The
        evicted ones are marked closed so a writer that already holds a
        reference gets NotFound; closing the handle is left to the caller.
        """
        stale = []
        with self._lock:
            for session in list(self._sessions.values()):
                if session.last_activity >= cutoff:
                    continue
                if not session.lock.acquire(blocking=False):
                    continue
                try:
                    if session.last_activity < cutoff:
                        session.closed = True
                        del self._sessions[session.id]
                        stale.append(session)
                finally:
                    session.lock.release()
        return stale
