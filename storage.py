"""
Local disk storage for uploaded images (profile pictures and pickup photos).

Files are written under UPLOAD_DIR and referenced as `/uploads/<folder>/<name>`,
which is the path main.py serves them from.
"""
import logging
import os
import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile

from errors import ValidationError

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
MAX_REQUEST_PHOTOS = 5

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".webp"}

PICKUP_PHOTOS = "pickup-photos"
PROFILE_PICTURES = "profile-pictures"


def _check_image(upload: UploadFile) -> str:
    ext = Path(upload.filename or "").suffix.lower()
    if not (upload.content_type or "").startswith("image/") or ext not in ALLOWED_EXTENSIONS:
        raise ValidationError("Only image files are allowed", {"filename": upload.filename})
    return ext


def save_upload(upload: UploadFile, folder: str, prefix: str) -> str:
    ext = _check_image(upload)
    data = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("File too large (max 5MB)", {"filename": upload.filename})

    target_dir = UPLOAD_DIR / folder
    target_dir.mkdir(parents=True, exist_ok=True)
    name = f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}{ext}"
    (target_dir / name).write_bytes(data)
    return f"/uploads/{folder}/{name}"


def save_photos(uploads: Optional[List[UploadFile]], prefix: str = "pickup") -> List[str]:
    """Store 1-5 request photos; anything stored is removed again if a later one fails."""
    uploads = [u for u in (uploads or []) if u is not None and u.filename]
    if not uploads:
        raise ValidationError("At least one photo is required")
    if len(uploads) > MAX_REQUEST_PHOTOS:
        raise ValidationError("Maximum 5 photos allowed")

    stored: List[str] = []
    try:
        for upload in uploads:
            stored.append(save_upload(upload, PICKUP_PHOTOS, prefix))
    except ValidationError:
        delete_all(stored)
        raise
    return stored


def _path_for(reference: str) -> Path:
    relative = reference.removeprefix("/uploads/")
    return UPLOAD_DIR / relative


def delete(reference: str) -> None:
    try:
        _path_for(reference).unlink(missing_ok=True)
    except OSError as e:
        logger.error("Failed to delete file %s: %s", reference, e)


def delete_all(references: List[str]) -> None:
    for ref in references:
        delete(ref)
