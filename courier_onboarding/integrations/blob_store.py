"""
Document blob storage.

Port: ``BlobStore`` — durable byte storage keyed by an opaque storage
reference.  ``LocalBlobStore`` keeps blobs on the filesystem, fanned out
into two-level directories so no single directory grows unbounded.
"""

import logging
import os
import uuid
from abc import ABC, abstractmethod

from courier_onboarding.core.exceptions import IntegrationError, NotFoundError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Byte storage used for uploaded verification documents."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store ``data`` and return its storage reference."""

    @abstractmethod
    def get(self, storage_ref: str) -> bytes:
        """Return the bytes stored under ``storage_ref``."""

    @abstractmethod
    def delete(self, storage_ref: str) -> None:
        """Remove the blob.  Deleting an absent blob is not an error."""


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store rooted at ``root``."""

    def __init__(self, root: str) -> None:
        self.root = root

    def _path(self, storage_ref: str) -> str:
        if not storage_ref or any(c in storage_ref for c in "/\\.") or len(storage_ref) < 4:
            raise NotFoundError("Blob", storage_ref)
        return os.path.join(self.root, storage_ref[:2], storage_ref[2:4], storage_ref)

    def put(self, data: bytes) -> str:
        storage_ref = uuid.uuid4().hex
        path = self._path(storage_ref)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise IntegrationError("blob_store", "put", storage_ref, exc) from exc
        logger.debug("Stored blob %s (%d bytes)", storage_ref, len(data))
        return storage_ref

    def get(self, storage_ref: str) -> bytes:
        path = self._path(storage_ref)
        if not os.path.exists(path):
            raise NotFoundError("Blob", storage_ref)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise IntegrationError("blob_store", "get", storage_ref, exc) from exc

    def delete(self, storage_ref: str) -> None:
        path = self._path(storage_ref)
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.debug("Blob %s already absent", storage_ref)
        except OSError as exc:
            raise IntegrationError("blob_store", "delete", storage_ref, exc) from exc
