from __future__ import annotations

from pathlib import PurePosixPath
from typing import Protocol

from ..errors import InvalidImage
from ..id_provider import IdProvider
from .domain import ImageUpload

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})


class MediaStorage(Protocol):
    def store(self, tenant_id: str, return_request_id: str, upload: ImageUpload) -> str: ...


class PrefixMediaStorage:
    """Hands out storage keys; the bytes themselves go to the upload capability."""

    def __init__(self, prefix: str, ids: IdProvider, max_bytes: int) -> None:
        self._prefix = prefix.strip("/")
        self._ids = ids
        self._max_bytes = max_bytes

    def store(self, tenant_id: str, return_request_id: str, upload: ImageUpload) -> str:
        validate_image(upload, self._max_bytes)
        extension = PurePosixPath(upload.filename).suffix.lower()
        name = f"{upload.image_type.value}_{self._ids.new_id()}{extension}"
        return f"{self._prefix}/{tenant_id}/{return_request_id}/{name}"


def validate_image(upload: ImageUpload, max_bytes: int) -> None:
    if upload.content_type.lower() not in ALLOWED_IMAGE_TYPES:
        raise InvalidImage(f"Unsupported image type {upload.content_type} for {upload.filename}")
    if not upload.content:
        raise InvalidImage(f"Image {upload.filename} is empty")
    if len(upload.content) > max_bytes:
        raise InvalidImage(f"Image {upload.filename} exceeds {max_bytes} bytes")
