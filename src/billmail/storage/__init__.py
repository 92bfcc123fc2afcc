"""Storage layer for database and upload operations."""

from .database import DatabaseClient
from .uploads import LocalUploadStore, S3UploadStore, UploadStore, safe_path_join, unsorted_file_path

__all__ = [
    "DatabaseClient",
    "UploadStore",
    "LocalUploadStore",
    "S3UploadStore",
    "safe_path_join",
    "unsorted_file_path",
]
