"""
In-memory store for binary resources (images, covers) extracted from books.

Handles are opaque strings that the reader service can serve directly, e.g.
'/resources/3f2a...'. They live until released; the caller owns the release.
"""

import mimetypes
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

HANDLE_PREFIX = "/resources/"


@dataclass(frozen=True)
class Resource:
    """Bytes plus the media type they should be served with."""
    data: bytes
    media_type: str


def guess_media_type(name: str) -> str:
    media_type, _ = mimetypes.guess_type(name)
    return media_type or "application/octet-stream"


def token_from_handle(handle: str) -> str:
    if handle.startswith(HANDLE_PREFIX):
        return handle[len(HANDLE_PREFIX):]
    return handle


class ResourceStore:
    """
    Process-lifetime registry of resources keyed by handle.

    Extraction runs in worker threads, so every access goes through a lock.
    """

    def __init__(self):
        self._resources: Dict[str, Resource] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes, media_type: str) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._resources[token] = Resource(data=data, media_type=media_type)
        return HANDLE_PREFIX + token

    def get(self, handle: str) -> Optional[Resource]:
        with self._lock:
            return self._resources.get(token_from_handle(handle))

    def release(self, handle: str) -> bool:
        """Drop a handle. Returns False if it was unknown or already released."""
        with self._lock:
            return self._resources.pop(token_from_handle(handle), None) is not None

    def release_all(self, handles: Iterable[str]) -> int:
        released = 0
        for handle in handles:
            if self.release(handle):
                released += 1
        return released

    def __contains__(self, handle: str) -> bool:
        with self._lock:
            return token_from_handle(handle) in self._resources

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)


# Shared by the extractor and the reader service unless a store is passed in.
default_store = ResourceStore()
