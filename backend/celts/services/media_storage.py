"""
Storage for student speaking media.

Files go to MinIO/S3 when an endpoint is configured and to the local uploads
directory otherwise. The stored path is either ``s3://<bucket>/<key>`` or a
path relative to the upload base dir.
"""
import asyncio
import logging
import os
import uuid
from io import BytesIO
from typing import Optional

import aiofiles
from minio import Minio
from minio.error import S3Error

from ..core.config import settings
from ..utils.file_paths import FileTypes, ensure_upload_directory, get_full_upload_path, get_relative_upload_path

logger = logging.getLogger(__name__)

ALLOWED_MEDIA_PREFIXES = ("audio/", "video/")
ALLOWED_MEDIA_TYPES = {"application/octet-stream"}


def is_allowed_media_type(content_type: Optional[str]) -> bool:
    content_type = content_type or ""
    return content_type.startswith(ALLOWED_MEDIA_PREFIXES) or content_type in ALLOWED_MEDIA_TYPES


def media_filename(original_name: Optional[str]) -> str:
    ext = os.path.splitext(original_name or "")[1] or ".webm"
    return f"{uuid.uuid4().hex}{ext.lower()}"


class MediaStorage:
    def __init__(self):
        self.bucket = settings.minio_bucket
        self.client: Optional[Minio] = None
        if settings.minio_endpoint:
            self.client = Minio(
                settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                secure=settings.minio_use_ssl,
            )
            logger.info(f"Media storage using MinIO at {settings.minio_endpoint}")
        else:
            logger.info("MinIO not configured, media stored on local disk")

    @staticmethod
    def owner_prefix(student_id: int) -> str:
        return f"{FileTypes.STUDENT_MEDIA}/{student_id}/"

    def belongs_to(self, media_path: str, student_id: int) -> bool:
        """True only for a path that resolves inside the student's own media area."""
        if not media_path:
            return False
        if media_path.startswith("s3://"):
            bucket, key = self._split_s3_path(media_path)
            return (
                bucket == self.bucket
                and key.startswith(self.owner_prefix(student_id))
                and ".." not in key.split("/")
            )
        owner_dir = os.path.realpath(
            get_full_upload_path(get_relative_upload_path(FileTypes.STUDENT_MEDIA, str(student_id)))
        )
        resolved = os.path.realpath(get_full_upload_path(media_path))
        return resolved.startswith(owner_dir + os.sep)

    def _ensure_bucket(self):
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket {self.bucket}")

    async def save(self, data: bytes, student_id: int, original_name: Optional[str], content_type: str) -> str:
        filename = media_filename(original_name)
        if self.client is not None:
            key = f"{self.owner_prefix(student_id)}{filename}"
            await asyncio.to_thread(self._put_object, key, data, content_type)
            return f"s3://{self.bucket}/{key}"

        ensure_upload_directory(os.path.join(FileTypes.STUDENT_MEDIA, str(student_id)))
        relative_path = get_relative_upload_path(os.path.join(FileTypes.STUDENT_MEDIA, str(student_id)), filename)
        async with aiofiles.open(get_full_upload_path(relative_path), "wb") as f:
            await f.write(data)
        return relative_path

    def _put_object(self, key: str, data: bytes, content_type: str):
        self._ensure_bucket()
        self.client.put_object(self.bucket, key, BytesIO(data), length=len(data), content_type=content_type)
        logger.info(f"Uploaded s3://{self.bucket}/{key} ({len(data)} bytes)")

    def _split_s3_path(self, media_path: str):
        bucket, _, key = media_path[len("s3://"):].partition("/")
        return bucket, key

    async def read(self, media_path: str) -> bytes:
        if media_path.startswith("s3://"):
            bucket, key = self._split_s3_path(media_path)
            return await asyncio.to_thread(self._get_object, bucket, key)
        async with aiofiles.open(get_full_upload_path(media_path), "rb") as f:
            return await f.read()

    def _get_object(self, bucket: str, key: str) -> bytes:
        response = self.client.get_object(bucket, key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, media_path: Optional[str]):
        if not media_path:
            return
        try:
            if media_path.startswith("s3://"):
                bucket, key = self._split_s3_path(media_path)
                self.client.remove_object(bucket, key)
            else:
                os.remove(get_full_upload_path(media_path))
            logger.info(f"Deleted media file {media_path}")
        except (OSError, S3Error) as e:
            logger.error(f"Failed to delete media file {media_path}: {e}")


media_storage = MediaStorage()
