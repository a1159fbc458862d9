import datetime
import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class MultipartUploadStatus(str, enum.Enum):
    """Lifecycle of one externally driven multipart upload session."""

    INITIATED = "initiated"
    PARTS_UPLOADING = "parts_uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (MultipartUploadStatus.COMPLETED, MultipartUploadStatus.ABORTED)


class FileInfo(BaseModel):
    """
    Identity and metadata for one logical stored object.

    Adapters fill in ``base_path``, ``url`` and, when it was not known up
    front, ``size`` while saving. ``upload_id`` and ``upload_status`` are only
    set for objects created through the multipart protocol.
    """

    platform: str
    base_path: str = ""
    path: str = ""
    filename: str
    original_filename: Optional[str] = None
    ext: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None

    # Thumbnail
    th_filename: Optional[str] = None
    th_url: Optional[str] = None
    th_content_type: Optional[str] = None
    th_size: Optional[int] = None
    th_metadata: Dict[str, str] = Field(default_factory=dict)
    th_user_metadata: Dict[str, str] = Field(default_factory=dict)
    th_file_acl: Optional[str] = None

    # Caller-defined correlation keys
    object_id: Optional[str] = None
    object_type: Optional[str] = None
    attr: Dict[str, Any] = Field(default_factory=dict)

    metadata: Dict[str, str] = Field(default_factory=dict)
    user_metadata: Dict[str, str] = Field(default_factory=dict)
    file_acl: Optional[str] = None

    # Multipart session
    upload_id: Optional[str] = None
    upload_status: Optional[MultipartUploadStatus] = None

    create_time: datetime.datetime = Field(default_factory=_utcnow)

    @property
    def has_thumbnail(self) -> bool:
        return bool(self.th_filename)


class FilePartInfo(BaseModel):
    """One committed chunk of a multipart upload."""

    upload_id: str
    part_number: int = Field(..., ge=1)
    size: int
    etag: Optional[str] = None
    last_modified: Optional[datetime.datetime] = None

    model_config = ConfigDict(frozen=True)
