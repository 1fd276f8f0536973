"""
Path helpers for uploaded student media.
"""
import os
from typing import Tuple

from ..core.config import settings


def get_upload_paths() -> Tuple[str, str]:
    """
    Returns the base directory and the relative uploads directory.

    Returns:
        Tuple[str, str]: (base_dir, relative_path)
        - base_dir: absolute base directory (/app inside Docker)
        - relative_path: prefix stored in the database (uploads/...)
    """
    return settings.upload_base_dir, "uploads"


def get_full_upload_path(relative_path: str) -> str:
    base_dir, _ = get_upload_paths()
    return os.path.join(base_dir, relative_path)


def get_relative_upload_path(file_type: str, filename: str) -> str:
    _, uploads_dir = get_upload_paths()
    return os.path.join(uploads_dir, file_type, filename)


def ensure_upload_directory(file_type: str) -> str:
    """Creates the directory for a media type and returns its absolute path."""
    base_dir, uploads_dir = get_upload_paths()
    full_dir = os.path.join(base_dir, uploads_dir, file_type)
    os.makedirs(full_dir, exist_ok=True)
    return full_dir


class FileTypes:
    STUDENT_MEDIA = "student_media"
