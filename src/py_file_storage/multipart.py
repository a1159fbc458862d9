"""
Externally driven multipart uploads.

A session moves through ``INITIATED -> PARTS_UPLOADING -> COMPLETED`` or ends
in ``ABORTED``; both end states are terminal. The status is kept on the
``FileInfo`` so a session can be resumed from a persisted record.

Sessions are independent of each other. Parts of one session are not
serialised: callers may upload distinct part numbers concurrently and the
backend stays authoritative for duplicates and ordering constraints. Part
lists handed to the backend on completion are always sorted by ascending part
number.
"""

import io
import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from py_file_storage.exceptions import InvalidStateError, UnsupportedOperationError
from py_file_storage.models import FileInfo, FilePartInfo, MultipartUploadStatus
from py_file_storage.progress import ProgressInputStream, ProgressListener
from py_file_storage.storage.interfaces import IFileStorage

logger = logging.getLogger(__name__)

_ACTIVE = (MultipartUploadStatus.INITIATED, MultipartUploadStatus.PARTS_UPLOADING)


class InitiateMultipartUploadRequest(BaseModel):
    """Describes the object a multipart session will produce."""

    platform: Optional[str] = None
    path: str = ""
    save_filename: Optional[str] = None
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    object_id: Optional[str] = None
    object_type: Optional[str] = None
    attr: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)
    user_metadata: Dict[str, str] = Field(default_factory=dict)
    file_acl: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class UploadPartRequest(BaseModel):
    """One part to upload. ``data`` is either bytes or a binary stream."""

    file_info: FileInfo
    part_number: int = Field(..., ge=1)
    data: Any
    size: Optional[int] = None
    progress_listener: Optional[Any] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class CompleteMultipartUploadRequest(BaseModel):
    """Completes a session; parts are listed from the backend when omitted."""

    file_info: FileInfo
    parts: Optional[List[FilePartInfo]] = None

    model_config = ConfigDict(frozen=True)


def generate_filename(original_filename: Optional[str]) -> str:
    """A random filename keeping the extension of ``original_filename``."""
    ext = ""
    if original_filename and "." in original_filename:
        ext = original_filename.rsplit(".", 1)[-1]
    name = uuid.uuid4().hex
    return f"{name}.{ext}" if ext else name


class MultipartUploader:
    """Drives the multipart protocol against one storage adapter."""

    def __init__(self, storage: IFileStorage):
        self.storage = storage

    def _require_multipart(self) -> None:
        if not self.storage.is_support_multipart_upload():
            raise UnsupportedOperationError(
                f"Platform '{self.storage.platform}' does not support multipart upload"
            )

    @staticmethod
    def _status(file_info: FileInfo) -> MultipartUploadStatus:
        if not file_info.upload_id:
            raise InvalidStateError(
                f"File '{file_info.filename}' has no multipart upload session"
            )
        # A record carrying only an upload id is treated as freshly initiated
        return file_info.upload_status or MultipartUploadStatus.INITIATED

    def initiate(self, request: InitiateMultipartUploadRequest) -> FileInfo:
        """
        Creates the ``FileInfo`` and opens a backend session for it.

        Raises:
            UnsupportedOperationError: If the adapter lacks multipart support.
        """
        self._require_multipart()
        filename = request.save_filename or generate_filename(request.original_filename)
        file_info = FileInfo(
            platform=self.storage.platform,
            path=request.path,
            filename=filename,
            original_filename=request.original_filename,
            ext=filename.rsplit(".", 1)[-1] if "." in filename else None,
            content_type=request.content_type,
            size=request.size,
            object_id=request.object_id,
            object_type=request.object_type,
            attr=dict(request.attr),
            metadata=dict(request.metadata),
            user_metadata=dict(request.user_metadata),
            file_acl=request.file_acl,
        )
        file_info.upload_id = self.storage.initiate_multipart_upload(file_info)
        file_info.upload_status = MultipartUploadStatus.INITIATED
        return file_info

    def upload_part(self, request: UploadPartRequest) -> FilePartInfo:
        """
        Uploads one part through a ``ProgressInputStream``.

        A failure leaves the session and its earlier parts untouched; the
        caller decides whether to retry the part or abort.
        """
        self._require_multipart()
        file_info = request.file_info
        status = self._status(file_info)
        if status not in _ACTIVE:
            raise InvalidStateError(
                f"Cannot upload part {request.part_number}: upload "
                f"{file_info.upload_id} is {status.value}"
            )

        data = request.data
        owns_data = isinstance(data, (bytes, bytearray, memoryview))
        if owns_data:
            data = io.BytesIO(bytes(data))
        size = request.size
        if size is None and owns_data:
            size = len(request.data)

        stream = ProgressInputStream(
            data, request.progress_listener, size, owns_raw=owns_data
        )
        with stream:
            part = self.storage.upload_part(file_info, request.part_number, stream, size)

        file_info.upload_status = MultipartUploadStatus.PARTS_UPLOADING
        logger.debug(
            f"Uploaded part {part.part_number} ({part.size} bytes) of upload "
            f"{file_info.upload_id}"
        )
        return part

    def list_parts(self, file_info: FileInfo) -> List[FilePartInfo]:
        """
        Parts committed so far, ascending by part number.

        An aborted session has no parts left and yields an empty list.
        """
        self._require_multipart()
        status = self._status(file_info)
        if status is MultipartUploadStatus.ABORTED:
            return []
        if status is MultipartUploadStatus.COMPLETED:
            raise InvalidStateError(
                f"Cannot list parts: upload {file_info.upload_id} is completed"
            )
        parts = self.storage.list_parts(file_info)
        return sorted(parts, key=lambda p: p.part_number)

    def complete(self, request: CompleteMultipartUploadRequest) -> FileInfo:
        """
        Commits the object from its parts in ascending part-number order.

        A backend failure does not abort the session; call ``abort``
        explicitly to discard it.
        """
        self._require_multipart()
        file_info = request.file_info
        status = self._status(file_info)
        if status not in _ACTIVE:
            raise InvalidStateError(
                f"Cannot complete: upload {file_info.upload_id} is {status.value}"
            )

        parts = request.parts
        if parts is None:
            parts = self.list_parts(file_info)
        parts = sorted(parts, key=lambda p: p.part_number)

        self.storage.complete_multipart_upload(file_info, parts)

        if file_info.size is None:
            file_info.size = sum(part.size for part in parts)
        file_info.upload_status = MultipartUploadStatus.COMPLETED
        logger.info(
            f"Completed multipart upload {file_info.upload_id} with {len(parts)} "
            f"parts ({file_info.size} bytes)"
        )
        return file_info

    def abort(self, file_info: FileInfo) -> None:
        """Discards the session and its parts. Aborting twice is a no-op."""
        self._require_multipart()
        status = self._status(file_info)
        if status is MultipartUploadStatus.ABORTED:
            return
        if status is MultipartUploadStatus.COMPLETED:
            raise InvalidStateError(
                f"Cannot abort: upload {file_info.upload_id} is completed"
            )
        self.storage.abort_multipart_upload(file_info)
        file_info.upload_status = MultipartUploadStatus.ABORTED
        logger.info(f"Aborted multipart upload {file_info.upload_id}")
