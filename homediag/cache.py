import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .config import PENDING_IMAGE_TTL_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class PendingImage:
    conversation_id: str
    data_url: str
    file_name: str = ""
    stored_at: float = field(default_factory=time.monotonic)


class PendingImageCache:
    """
    Holds the freshly uploaded image until the conversation is persisted.

    Entries expire after ``ttl`` seconds and the session clears the cache as
    soon as its conversation has at least one stored message.
    """

    def __init__(self, ttl: float = PENDING_IMAGE_TTL_SECONDS):
        self.ttl = ttl
        self._entry: Optional[PendingImage] = None

    def put(self, conversation_id: str, data_url: str, file_name: str = "") -> None:
        self._entry = PendingImage(conversation_id, data_url, file_name)

    def get(self, conversation_id: str) -> Optional[PendingImage]:
        entry = self._entry
        if entry is None:
            return None
        if time.monotonic() - entry.stored_at > self.ttl:
            logger.debug("cache: pending image for %s expired", entry.conversation_id)
            self._entry = None
            return None
        if entry.conversation_id != conversation_id:
            return None
        return entry

    def clear(self) -> None:
        self._entry = None
