import logging

from .schemas import User
from .utils import format_file_size

logger = logging.getLogger(__name__)


class Notifier:
    """Sends out-of-band notices about finished uploads.

    The default implementation only logs; deployments plug in their mail
    provider by overriding ``notify_large_upload``.
    """

    def notify_large_upload(self, user: User, filename: str, size: int, file_id: str, sha1: str) -> None:
        logger.info(
            f"Large upload by {user.email or user.username}: {filename} "
            f"({format_file_size(size)}, id={file_id}, sha1={sha1 or 'n/a'})"
        )

    def notify_large_upload_safely(self, user: User, filename: str, size: int, file_id: str, sha1: str) -> None:
        """Background-task entry point; failures are logged, never raised."""
        try:
            self.notify_large_upload(user, filename, size, file_id, sha1)
        except Exception as e:
            logger.warning(f"Large upload notification for {file_id} failed: {e}")
