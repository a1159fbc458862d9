import datetime
from abc import ABC, abstractmethod
from typing import IO, Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict

from py_file_storage.constants import MAX_PRESIGNED_EXPIRY_SECONDS
from py_file_storage.exceptions import UnsupportedOperationError
from py_file_storage.models import FileInfo, FilePartInfo
from py_file_storage.progress import ProgressInputStream

# Receives the backend stream; the stream is closed once the consumer returns.
StreamConsumer = Callable[[IO[bytes]], Any]


class StorageCapabilities(BaseModel):
    """Capability flags an adapter declares for the registry to check."""

    metadata: bool = False
    acl: bool = False
    presigned_url: bool = False
    multipart_upload: bool = False

    model_config = ConfigDict(frozen=True)


def expiry_seconds(expiration: datetime.datetime) -> int:
    """
    Seconds between now and ``expiration``, floored to whole seconds and
    clamped to what presigned URLs accept.

    The result always lies in ``[1, MAX_PRESIGNED_EXPIRY_SECONDS]``: an
    expiration that is already in the past yields a URL valid for one second,
    and one more than seven days away is cut to seven days. A naive
    ``expiration`` is compared against local time.
    """
    if expiration.tzinfo is None:
        now = datetime.datetime.now()
    else:
        now = datetime.datetime.now(datetime.timezone.utc)
    seconds = int((expiration - now).total_seconds())
    return max(1, min(seconds, MAX_PRESIGNED_EXPIRY_SECONDS))


class IFileStorage(ABC):
    """
    Interface (Port) for a storage platform.

    Every adapter implements the basic object operations. Optional features
    (presigned URLs, multipart upload) default to raising
    ``UnsupportedOperationError`` and must be advertised through
    ``capabilities`` when an adapter implements them.

    Adapters hold no per-call state, so one instance may serve concurrent
    operations.
    """

    capabilities: StorageCapabilities = StorageCapabilities()

    def __init__(self, platform: str, base_path: str = "", domain: str = ""):
        self.platform = platform
        self.base_path = base_path
        self.domain = domain

    # Keys

    def get_file_key(self, file_info: FileInfo) -> str:
        return f"{file_info.base_path}{file_info.path}{file_info.filename}"

    def get_thumbnail_key(self, file_info: FileInfo) -> Optional[str]:
        if not file_info.th_filename:
            return None
        return f"{file_info.base_path}{file_info.path}{file_info.th_filename}"

    # Capabilities

    def is_support_metadata(self) -> bool:
        return self.capabilities.metadata

    def is_support_acl(self) -> bool:
        return self.capabilities.acl

    def is_support_presigned_url(self) -> bool:
        return self.capabilities.presigned_url

    def is_support_multipart_upload(self) -> bool:
        return self.capabilities.multipart_upload

    # Object operations

    @abstractmethod
    def save(
        self,
        file_info: FileInfo,
        stream: ProgressInputStream,
        thumbnail: Optional[bytes] = None,
    ) -> FileInfo:
        """
        Uploads the content of ``stream`` (and optional thumbnail bytes).

        Fills in ``base_path``, ``url`` and, if it was unknown, ``size`` on
        ``file_info``. On failure the partially written object is removed on a
        best-effort basis before ``BackendError`` is raised.
        """
        pass

    @abstractmethod
    def delete(self, file_info: FileInfo) -> bool:
        """Deletes the object and its thumbnail. Missing objects are not errors."""
        pass

    @abstractmethod
    def exists(self, file_info: FileInfo) -> bool:
        """Returns whether the object exists."""
        pass

    @abstractmethod
    def download(self, file_info: FileInfo, consumer: StreamConsumer) -> None:
        """Streams the object to ``consumer``, closing the stream afterwards."""
        pass

    @abstractmethod
    def download_thumbnail(self, file_info: FileInfo, consumer: StreamConsumer) -> None:
        """
        Streams the thumbnail to ``consumer``.

        Raises:
            NotFoundError: If no thumbnail was recorded on ``file_info``.
        """
        pass

    def generate_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> str:
        """
        A time-limited GET URL for the object.

        The lifetime is ``expiry_seconds(expiration)``, so an expiration in
        the past still yields a URL valid for one second.
        """
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support presigned URLs"
        )

    def generate_thumbnail_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> Optional[str]:
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support presigned URLs"
        )

    # Multipart upload

    def initiate_multipart_upload(self, file_info: FileInfo) -> str:
        """Opens a multipart session for ``file_info`` and returns its id."""
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support multipart upload"
        )

    def upload_part(
        self,
        file_info: FileInfo,
        part_number: int,
        stream: ProgressInputStream,
        size: Optional[int] = None,
    ) -> FilePartInfo:
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support multipart upload"
        )

    def list_parts(self, file_info: FileInfo) -> List[FilePartInfo]:
        """Returns the committed parts ordered by ascending part number."""
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support multipart upload"
        )

    def complete_multipart_upload(
        self, file_info: FileInfo, parts: List[FilePartInfo]
    ) -> None:
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support multipart upload"
        )

    def abort_multipart_upload(self, file_info: FileInfo) -> None:
        """Discards the session and its parts. A missing session is not an error."""
        raise UnsupportedOperationError(
            f"Platform '{self.platform}' does not support multipart upload"
        )

    # Lifecycle

    @abstractmethod
    def close(self) -> None:
        """Releases the client handle. Safe to call more than once."""
        pass
