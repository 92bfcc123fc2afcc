"""Per-user upload store for materialized email content (local disk or S3)."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

import boto3
from botocore.exceptions import ClientError

from ..models import User

logger = logging.getLogger(__name__)


def unsorted_file_path(file_id: str, filename: str) -> str:
    """Relative path for a new upload awaiting review.

    Format: unsorted/{id[0:2]}/{id[2:4]}/{id}{ext}
    """
    ext = PurePosixPath(filename).suffix.lower()
    return f"unsorted/{file_id[:2]}/{file_id[2:4]}/{file_id}{ext}"


def safe_path_join(base: Path, *parts: str) -> Path:
    """Join parts under base, refusing anything that escapes it.

    Raises:
        ValueError: If the resulting path is outside base
    """
    base = Path(base).resolve()
    candidate = base.joinpath(*parts).resolve()
    if candidate != base and base not in candidate.parents:
        raise ValueError(f"Path {candidate} escapes upload directory {base}")
    return candidate


class UploadStore(ABC):
    """Abstract interface for storing uploaded files."""

    @abstractmethod
    def save(self, user: User, relative_path: str, data: bytes, content_type: str) -> str:
        """Store data and return its location (path or object key).

        Args:
            user: Owner of the upload
            relative_path: Path relative to the user's upload root
            data: File data as bytes
            content_type: MIME content type
        """
        pass


class LocalUploadStore(UploadStore):
    """Store uploads on the local filesystem under {base_dir}/{user email}/."""

    def __init__(self, base_dir: Path):
        """Initialize filesystem storage.

        Args:
            base_dir: Root directory shared by all users
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def user_directory(self, user: User) -> Path:
        return safe_path_join(self.base_dir, user.email)

    def save(self, user: User, relative_path: str, data: bytes, content_type: str) -> str:
        user_dir = self.user_directory(user)
        file_path = safe_path_join(user_dir, relative_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "wb") as f:
            f.write(data)

        logger.debug(f"Wrote {file_path} ({len(data)} bytes, {content_type})")
        return str(file_path)


class S3UploadStore(UploadStore):
    """S3-compatible upload store (supports Cloudflare R2)."""

    def __init__(
        self,
        endpoint_url: str,
        bucket_name: str,
        access_key_id: str,
        secret_access_key: str,
    ):
        """Initialize S3 client.

        Args:
            endpoint_url: S3 endpoint URL (for R2: https://<account>.r2.cloudflarestorage.com)
            bucket_name: S3 bucket name
            access_key_id: AWS access key ID
            secret_access_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )
        logger.info(f"S3 upload store initialized for bucket: {bucket_name}")

    @staticmethod
    def object_key(user: User, relative_path: str) -> str:
        """Format: {user_id}/{relative_path}"""
        parts = PurePosixPath(relative_path).parts
        if PurePosixPath(relative_path).is_absolute() or ".." in parts:
            raise ValueError(f"Invalid upload path: {relative_path}")
        return f"{user.id}/{relative_path}"

    def save(self, user: User, relative_path: str, data: bytes, content_type: str) -> str:
        key = self.object_key(user, relative_path)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            logger.debug(f"Uploaded {key} ({len(data)} bytes)")
        except ClientError as e:
            logger.error(f"Error uploading {key}: {e}")
            raise
        return key
