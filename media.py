"""Uploads to the Cloudinary media host."""

import io
import logging
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from fastapi import UploadFile

from config import settings
from errors import UploadFailed, ValidationFailed

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class UploadPolicy:
    max_bytes: int
    mime_types: FrozenSet[str]
    extensions: Tuple[str, ...] = ()
    rejection: str = "File type not allowed"


@dataclass(frozen=True)
class MediaUpload:
    secure_url: str
    public_id: str


IMAGE_OR_PDF = UploadPolicy(
    max_bytes=10 * MB,
    mime_types=frozenset({"image/jpeg", "image/png", "image/webp", "application/pdf"}),
    rejection="Only JPEG, PNG, WEBP and PDF files are allowed",
)

SUBMISSION = UploadPolicy(
    max_bytes=50 * MB,
    mime_types=frozenset({
        "application/zip",
        "application/x-zip",
        "application/x-zip-compressed",
        "application/octet-stream",
        "image/jpeg",
        "image/png",
        "image/webp",
        "application/pdf",
    }),
    extensions=(".zip", ".tar.gz", ".rar", ".7z"),
    rejection="Only ZIP archives, images, and PDF files are allowed for submissions",
)


async def read_upload(file: Optional[UploadFile], policy: UploadPolicy) -> bytes:
    if file is None:
        raise ValidationFailed("No file provided")
    name = (file.filename or "").lower()
    if file.content_type not in policy.mime_types and not name.endswith(policy.extensions):
        raise ValidationFailed(policy.rejection)
    data = await file.read()
    if not data:
        raise ValidationFailed("No file provided")
    if len(data) > policy.max_bytes:
        raise ValidationFailed(f"File exceeds the {policy.max_bytes // MB} MB limit")
    return data


def _configure() -> None:
    cloudinary.config(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        secure=True,
    )


def upload_media(data: bytes, folder: str, resource_type: str = "auto", public_id: Optional[str] = None) -> MediaUpload:
    _configure()
    options = {"folder": folder, "resource_type": resource_type}
    if public_id:
        options["public_id"] = public_id
    try:
        result = cloudinary.uploader.upload(io.BytesIO(data), **options)
    except CloudinaryError as exc:
        logger.error("Cloudinary upload to %s failed: %s", folder, exc)
        raise UploadFailed() from exc
    return MediaUpload(secure_url=result["secure_url"], public_id=result["public_id"])
