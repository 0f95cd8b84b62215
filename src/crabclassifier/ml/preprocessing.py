"""Upload validation and in-memory image references.

Uploaded bytes are kept in an ``ImageStore`` and addressed by an opaque
``blob:`` reference. The inference core only ever sees the reference; the
bytes are never decoded here.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass

from crabclassifier.ml.errors import ImageNotFoundError, InvalidImageError

logger = logging.getLogger(__name__)

BLOB_PREFIX = "blob:"


@dataclass(frozen=True)
class UploadedImage:
    """Reference to an uploaded image held in the store."""

    ref: str
    content_type: str
    size: int


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size // (1024 * 1024)}MB"
    return f"{size // 1024}KB"


def validate_image(data: bytes, content_type: str | None, min_size: int, max_size: int) -> None:
    """Check an upload before it is stored.

    Raises:
        InvalidImageError: If the content type is not an image or the size is
            outside ``[min_size, max_size]``.
    """
    if not content_type or not content_type.startswith("image/"):
        raise InvalidImageError("Please upload an image file (JPG, PNG, WebP, etc.)")
    if len(data) > max_size:
        raise InvalidImageError(f"Image must be smaller than {_format_size(max_size)}")
    if len(data) < min_size:
        raise InvalidImageError("Image file appears to be corrupted or too small")


class ImageStore:
    """Holds uploaded image bytes until their reference is revoked."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, bytes] = {}

    def add(self, data: bytes, content_type: str) -> UploadedImage:
        ref = f"{BLOB_PREFIX}{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[ref] = data
        logger.info("Stored image %s (%s, %d bytes)", ref, content_type, len(data))
        return UploadedImage(ref=ref, content_type=content_type, size=len(data))

    def resolve(self, ref: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[ref]
            except KeyError:
                raise ImageNotFoundError(f"Unknown image reference: {ref}") from None

    def revoke(self, ref: str) -> None:
        """Forget an image. Revoking an unknown reference is a no-op."""
        with self._lock:
            if self._blobs.pop(ref, None) is not None:
                logger.info("Revoked image %s", ref)

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return ref in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
