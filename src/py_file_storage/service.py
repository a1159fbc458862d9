import datetime
import io
import logging
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from py_file_storage.config import Settings, StorageSettings
from py_file_storage.exceptions import (
    PlatformNotFoundError,
    UnsupportedOperationError,
)
from py_file_storage.models import FileInfo, FilePartInfo
from py_file_storage.multipart import (
    CompleteMultipartUploadRequest,
    InitiateMultipartUploadRequest,
    MultipartUploader,
    UploadPartRequest,
    generate_filename,
)
from py_file_storage.progress import ProgressInputStream, ProgressListener
from py_file_storage.sources import guess_content_type, open_source
from py_file_storage.storage.factory import StorageFactory
from py_file_storage.storage.interfaces import IFileStorage, StreamConsumer

logger = logging.getLogger(__name__)


class UploadRequest(BaseModel):
    """
    A single-shot upload.

    ``content`` may be bytes, a ``pathlib.Path``, an ``http(s)://`` URL or a
    binary file-like object. ``thumbnail`` holds already generated thumbnail
    bytes, stored next to the file.
    """

    content: Any
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

    thumbnail: Optional[bytes] = None
    th_save_filename: Optional[str] = None
    th_content_type: Optional[str] = None
    th_metadata: Dict[str, str] = Field(default_factory=dict)
    th_user_metadata: Dict[str, str] = Field(default_factory=dict)
    th_file_acl: Optional[str] = None

    progress_listener: Optional[Any] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class FileStorageService:
    """
    Routes every file operation to the adapter registered for a platform.

    Platform names come from ``FileInfo.platform`` or the request; when none is
    given the default platform is used. Capability flags are checked here,
    before any adapter is called.
    """

    def __init__(
        self,
        storages: Iterable[IFileStorage],
        default_platform: str,
        not_support_acl_throw_exception: bool = False,
        not_support_metadata_throw_exception: bool = False,
        thumbnail_suffix: str = ".min.jpg",
    ):
        self._storages: Dict[str, IFileStorage] = {}
        for storage in storages:
            if storage.platform in self._storages:
                raise ValueError(f"Duplicate storage platform: '{storage.platform}'")
            self._storages[storage.platform] = storage
        self.default_platform = default_platform
        self.not_support_acl_throw_exception = not_support_acl_throw_exception
        self.not_support_metadata_throw_exception = not_support_metadata_throw_exception
        self.thumbnail_suffix = thumbnail_suffix

    @classmethod
    def from_settings(cls, settings: Settings | StorageSettings) -> "FileStorageService":
        storage_settings = settings.storage if isinstance(settings, Settings) else settings
        return cls(
            StorageFactory(storage_settings).get_storages(),
            default_platform=storage_settings.default_platform,
            not_support_acl_throw_exception=storage_settings.not_support_acl_throw_exception,
            not_support_metadata_throw_exception=(
                storage_settings.not_support_metadata_throw_exception
            ),
            thumbnail_suffix=storage_settings.thumbnail_suffix,
        )

    @property
    def platforms(self) -> List[str]:
        return list(self._storages)

    def get_storage(self, platform: Optional[str] = None) -> IFileStorage:
        """
        Resolves a platform name to its adapter.

        Raises:
            PlatformNotFoundError: If nothing is registered under the name.
        """
        name = platform or self.default_platform
        storage = self._storages.get(name)
        if storage is None:
            raise PlatformNotFoundError(name)
        return storage

    # Capabilities

    def is_support_metadata(self, platform: Optional[str] = None) -> bool:
        return self.get_storage(platform).is_support_metadata()

    def is_support_acl(self, platform: Optional[str] = None) -> bool:
        return self.get_storage(platform).is_support_acl()

    def is_support_presigned_url(self, platform: Optional[str] = None) -> bool:
        return self.get_storage(platform).is_support_presigned_url()

    def is_support_multipart_upload(self, platform: Optional[str] = None) -> bool:
        return self.get_storage(platform).is_support_multipart_upload()

    def _check_acl(self, storage: IFileStorage, *acls: Optional[str]) -> bool:
        """Whether ACLs may be passed on; raises in strict mode."""
        if storage.is_support_acl() or not any(acls):
            return True
        if self.not_support_acl_throw_exception:
            raise UnsupportedOperationError(
                f"Platform '{storage.platform}' does not support ACL"
            )
        logger.warning(f"Platform '{storage.platform}' does not support ACL, ignoring it")
        return False

    def _check_metadata(self, storage: IFileStorage, *metadata: Dict[str, str]) -> bool:
        """Whether metadata may be passed on; raises in strict mode."""
        if storage.is_support_metadata() or not any(metadata):
            return True
        if self.not_support_metadata_throw_exception:
            raise UnsupportedOperationError(
                f"Platform '{storage.platform}' does not support metadata"
            )
        logger.warning(
            f"Platform '{storage.platform}' does not support metadata, ignoring it"
        )
        return False

    # Upload

    def upload(self, request: UploadRequest) -> FileInfo:
        """
        Uploads ``request.content`` and returns the resulting ``FileInfo``.

        Raises:
            PlatformNotFoundError: Unknown platform.
            UnsupportedOperationError: ACL or metadata given in strict mode for
                a platform that cannot store them.
            BackendError: The backend rejected the upload.
        """
        storage = self.get_storage(request.platform)
        keep_acl = self._check_acl(storage, request.file_acl, request.th_file_acl)
        keep_metadata = self._check_metadata(
            storage,
            request.metadata,
            request.user_metadata,
            request.th_metadata,
            request.th_user_metadata,
        )

        source = open_source(request.content)
        original_filename = request.original_filename or source.filename
        filename = request.save_filename or generate_filename(original_filename)
        file_info = FileInfo(
            platform=storage.platform,
            path=request.path,
            filename=filename,
            original_filename=original_filename,
            ext=filename.rsplit(".", 1)[-1] if "." in filename else None,
            content_type=(
                request.content_type
                or source.content_type
                or guess_content_type(original_filename or filename)
            ),
            size=request.size if request.size is not None else source.size,
            object_id=request.object_id,
            object_type=request.object_type,
            attr=dict(request.attr),
            metadata=dict(request.metadata) if keep_metadata else {},
            user_metadata=dict(request.user_metadata) if keep_metadata else {},
            file_acl=request.file_acl if keep_acl else None,
        )
        if request.thumbnail is not None:
            file_info.th_filename = request.th_save_filename or f"{filename}{self.thumbnail_suffix}"
            file_info.th_content_type = request.th_content_type or guess_content_type(
                file_info.th_filename
            )
            file_info.th_metadata = dict(request.th_metadata) if keep_metadata else {}
            file_info.th_user_metadata = (
                dict(request.th_user_metadata) if keep_metadata else {}
            )
            file_info.th_file_acl = request.th_file_acl if keep_acl else None

        stream = ProgressInputStream(
            source.stream, request.progress_listener, file_info.size, owns_raw=source.owned
        )
        with stream:
            storage.save(file_info, stream, request.thumbnail)
        logger.info(
            f"Uploaded '{file_info.filename}' ({file_info.size} bytes) to platform "
            f"'{storage.platform}'"
        )
        return file_info

    # Object operations

    def delete(self, file_info: FileInfo) -> bool:
        return self.get_storage(file_info.platform).delete(file_info)

    def exists(self, file_info: FileInfo) -> bool:
        return self.get_storage(file_info.platform).exists(file_info)

    def download(
        self,
        file_info: FileInfo,
        consumer: StreamConsumer,
        progress_listener: Optional[ProgressListener] = None,
    ) -> None:
        """Streams the object to ``consumer``, optionally reporting progress."""
        storage = self.get_storage(file_info.platform)
        storage.download(
            file_info, self._with_progress(consumer, progress_listener, file_info.size)
        )

    def download_thumbnail(
        self,
        file_info: FileInfo,
        consumer: StreamConsumer,
        progress_listener: Optional[ProgressListener] = None,
    ) -> None:
        storage = self.get_storage(file_info.platform)
        storage.download_thumbnail(
            file_info, self._with_progress(consumer, progress_listener, file_info.th_size)
        )

    def download_bytes(
        self,
        file_info: FileInfo,
        progress_listener: Optional[ProgressListener] = None,
    ) -> bytes:
        buffer = io.BytesIO()
        self.download(file_info, lambda s: _copy(s, buffer), progress_listener)
        return buffer.getvalue()

    def download_thumbnail_bytes(
        self,
        file_info: FileInfo,
        progress_listener: Optional[ProgressListener] = None,
    ) -> bytes:
        buffer = io.BytesIO()
        self.download_thumbnail(file_info, lambda s: _copy(s, buffer), progress_listener)
        return buffer.getvalue()

    def download_to_file(
        self,
        file_info: FileInfo,
        destination: str | Path,
        progress_listener: Optional[ProgressListener] = None,
    ) -> Path:
        destination_path = Path(destination)
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(destination_path, "wb") as f:
                self.download(file_info, lambda s: _copy(s, f), progress_listener)
        except BaseException:
            try:
                destination_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(
                    f"Failed to remove partially downloaded file {destination_path}: {e}"
                )
            raise
        return destination_path

    @staticmethod
    def _with_progress(
        consumer: StreamConsumer,
        listener: Optional[ProgressListener],
        total_size: Optional[int],
    ) -> StreamConsumer:
        if listener is None:
            return consumer

        def wrapped(stream: IO[bytes]) -> Any:
            # The adapter closes the backend stream itself
            return consumer(ProgressInputStream(stream, listener, total_size, owns_raw=False))

        return wrapped

    def generate_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> str:
        storage = self._presigning_storage(file_info)
        return storage.generate_presigned_url(file_info, expiration)

    def generate_thumbnail_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> Optional[str]:
        storage = self._presigning_storage(file_info)
        return storage.generate_thumbnail_presigned_url(file_info, expiration)

    def _presigning_storage(self, file_info: FileInfo) -> IFileStorage:
        storage = self.get_storage(file_info.platform)
        if not storage.is_support_presigned_url():
            raise UnsupportedOperationError(
                f"Platform '{storage.platform}' does not support presigned URLs"
            )
        return storage

    # Multipart upload

    def _multipart(self, platform: Optional[str]) -> MultipartUploader:
        storage = self.get_storage(platform)
        if not storage.is_support_multipart_upload():
            raise UnsupportedOperationError(
                f"Platform '{storage.platform}' does not support multipart upload"
            )
        return MultipartUploader(storage)

    def initiate_multipart_upload(self, request: InitiateMultipartUploadRequest) -> FileInfo:
        uploader = self._multipart(request.platform)
        keep_acl = self._check_acl(uploader.storage, request.file_acl)
        keep_metadata = self._check_metadata(
            uploader.storage, request.metadata, request.user_metadata
        )
        if not (keep_acl and keep_metadata):
            updates: Dict[str, Any] = {}
            if not keep_acl:
                updates["file_acl"] = None
            if not keep_metadata:
                updates.update(metadata={}, user_metadata={})
            request = request.model_copy(update=updates)
        return uploader.initiate(request)

    def upload_part(self, request: UploadPartRequest) -> FilePartInfo:
        return self._multipart(request.file_info.platform).upload_part(request)

    def list_parts(self, file_info: FileInfo) -> List[FilePartInfo]:
        return self._multipart(file_info.platform).list_parts(file_info)

    def complete_multipart_upload(
        self, file_info: FileInfo, parts: Optional[List[FilePartInfo]] = None
    ) -> FileInfo:
        request = CompleteMultipartUploadRequest(file_info=file_info, parts=parts)
        return self._multipart(file_info.platform).complete(request)

    def abort_multipart_upload(self, file_info: FileInfo) -> None:
        self._multipart(file_info.platform).abort(file_info)

    # Lifecycle

    def close(self) -> None:
        for storage in self._storages.values():
            storage.close()

    def __enter__(self) -> "FileStorageService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _copy(source: IO[bytes], target: IO[bytes]) -> None:
    for chunk in iter(lambda: source.read(64 * 1024), b""):
        target.write(chunk)
