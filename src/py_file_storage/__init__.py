"""Uniform access to object storage platforms (S3-compatible services, local disk)."""

from py_file_storage.exceptions import (
    BackendError,
    FileStorageError,
    InvalidStateError,
    NotFoundError,
    PlatformNotFoundError,
    UnsupportedOperationError,
)
from py_file_storage.models import FileInfo, FilePartInfo, MultipartUploadStatus
from py_file_storage.multipart import (
    CompleteMultipartUploadRequest,
    InitiateMultipartUploadRequest,
    MultipartUploader,
    UploadPartRequest,
)
from py_file_storage.progress import (
    CallbackProgressListener,
    ProgressInputStream,
    ProgressListener,
)
from py_file_storage.service import FileStorageService, UploadRequest

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "CallbackProgressListener",
    "CompleteMultipartUploadRequest",
    "FileInfo",
    "FilePartInfo",
    "FileStorageError",
    "FileStorageService",
    "InitiateMultipartUploadRequest",
    "InvalidStateError",
    "MultipartUploadStatus",
    "MultipartUploader",
    "NotFoundError",
    "PlatformNotFoundError",
    "ProgressInputStream",
    "ProgressListener",
    "UnsupportedOperationError",
    "UploadPartRequest",
    "UploadRequest",
]
