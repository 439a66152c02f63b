"""File upload utilities for user profile photos"""
import logging
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from config import settings
from errors import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
ALLOWED_MIME_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp"}
MAX_PHOTO_SIZE = 5 * 1024 * 1024  # 5MB


def photo_dir() -> Path:
    return Path(settings.UPLOAD_DIR) / "photos"


def ensure_upload_dir() -> Path:
    """Create the photo directory if it doesn't exist"""
    directory = photo_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def validate_image_file(file: UploadFile) -> None:
    """Validate uploaded file is a valid image"""
    file_ext = Path(file.filename or "").suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        raise ValidationFailed(f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}")

    if file.content_type not in ALLOWED_MIME_TYPES:
        raise ValidationFailed("Invalid content type. Must be an image.")


def photo_filename(user_id: int, extension: str, timestamp: Optional[int] = None) -> str:
    return f"user_{user_id}_{timestamp or int(time.time())}{extension}"


async def save_photo(file: UploadFile, user_id: int, old_filename: Optional[str] = None) -> str:
    """
    Save an uploaded photo and return its generated filename.

    Args:
        file: UploadFile from FastAPI
        user_id: Owner of the photo, part of the filename
        old_filename: Previous photo to delete (optional)
    """
    validate_image_file(file)

    content = await file.read()
    if len(content) > MAX_PHOTO_SIZE:
        raise ValidationFailed(f"File too large. Maximum size: {MAX_PHOTO_SIZE / (1024 * 1024):.1f}MB")

    filename = photo_filename(user_id, Path(file.filename).suffix.lower())
    (ensure_upload_dir() / filename).write_bytes(content)
    logger.info(f"Saved photo {filename} for user {user_id}")

    if old_filename and old_filename != filename:
        delete_photo(old_filename)

    return filename


def photo_path(filename: str) -> Optional[Path]:
    """Path of a stored photo, or None if it is missing or escapes the photo directory"""
    directory = photo_dir().resolve()
    path = (directory / filename).resolve()
    if path.parent != directory or not path.is_file():
        return None
    return path


def delete_photo(filename: str) -> None:
    """Delete photo file from filesystem"""
    path = photo_path(filename)
    if path is None:
        return
    try:
        path.unlink()
        logger.info(f"Deleted photo {filename}")
    except OSError as e:
        logger.warning(f"Failed to delete photo {filename}: {e}")
