"""
Media storage for image/video messages.

The gateway only needs ``store(fileobj, filename, kind) -> durable_url``.
Cloudinary is used when CLOUDINARY_URL is configured, otherwise files are
written under MEDIA_ROOT and served by the app at MEDIA_URL.
"""
import logging
import os
import shutil
import uuid

import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

import settings
from errors import UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)


def media_kind(content_type) -> str:
    content_type = content_type or ""
    if content_type.startswith("image"):
        return "image"
    if content_type.startswith("video"):
        return "video"
    raise ValidationError("Only images and videos are allowed")


class MediaStore:
    """Interface: persist an uploaded file and return its durable URL."""

    def store(self, fileobj, filename: str, kind: str) -> str:
        raise NotImplementedError


class LocalMediaStore(MediaStore):
    def __init__(self, root: str = settings.MEDIA_ROOT, base_url: str = settings.MEDIA_URL):
        self.root = root
        self.base_url = base_url.rstrip("/")

    def store(self, fileobj, filename: str, kind: str) -> str:
        _, ext = os.path.splitext(filename or "")
        name = f"{uuid.uuid4().hex}{ext.lower()}"
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(os.path.join(self.root, name), "wb") as out:
                shutil.copyfileobj(fileobj, out)
        except OSError:
            logger.exception("Could not write %s media to %s", kind, self.root)
            raise UpstreamFailure("Failed to upload media")
        return f"{self.base_url}/{name}"


class CloudinaryMediaStore(MediaStore):
    def store(self, fileobj, filename: str, kind: str) -> str:
        uploader = cloudinary.uploader.upload_large if kind == "video" else cloudinary.uploader.upload
        try:
            result = uploader(fileobj, resource_type=kind)
        except CloudinaryError:
            logger.exception("Cloudinary rejected %s upload", kind)
            raise UpstreamFailure("Failed to upload media")
        url = (result or {}).get("secure_url")
        if not url:
            raise UpstreamFailure("Failed to upload media")
        return url


def default_media_store() -> MediaStore:
    # The SDK reads CLOUDINARY_URL from the environment itself
    if settings.CLOUDINARY_URL:
        return CloudinaryMediaStore()
    return LocalMediaStore()
