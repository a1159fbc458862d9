import datetime
import io
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from py_file_storage.config import LocalStorageSettings, S3StorageSettings, StorageSettings
from py_file_storage.constants import ACL, MIB
from py_file_storage.exceptions import (
    BackendError,
    NotFoundError,
    PlatformNotFoundError,
    UnsupportedOperationError,
)
from py_file_storage.models import FileInfo, MultipartUploadStatus
from py_file_storage.multipart import InitiateMultipartUploadRequest, UploadPartRequest
from py_file_storage.service import FileStorageService, UploadRequest
from py_file_storage.storage.interfaces import IFileStorage, StorageCapabilities
from py_file_storage.storage.local import LocalFileStorage
from py_file_storage.storage.s3 import S3FileStorage


class NonSeekableStream(io.RawIOBase):
    """A stream whose length cannot be determined up front."""

    def __init__(self, data: bytes):
        self._data = io.BytesIO(data)

    def readable(self):
        return True

    def readinto(self, buffer):
        chunk = self._data.read(len(buffer))
        buffer[: len(chunk)] = chunk
        return len(chunk)


@pytest.fixture
def service(local_storage: LocalFileStorage) -> FileStorageService:
    return FileStorageService([local_storage], default_platform="local")


@pytest.fixture
def mock_storage() -> MagicMock:
    storage = MagicMock(spec=IFileStorage)
    storage.platform = "mock"
    storage.is_support_acl.return_value = False
    storage.is_support_metadata.return_value = False
    storage.is_support_presigned_url.return_value = False
    storage.is_support_multipart_upload.return_value = False
    return storage


def test_get_storage_uses_default_platform(service, local_storage):
    assert service.get_storage() is local_storage
    assert service.get_storage("local") is local_storage
    assert service.platforms == ["local"]


def test_get_storage_unknown_platform(service):
    with pytest.raises(PlatformNotFoundError, match="'ftp'") as exc_info:
        service.get_storage("ftp")

    assert exc_info.value.platform == "ftp"


def test_duplicate_platforms_are_rejected(local_storage):
    with pytest.raises(ValueError, match="Duplicate storage platform"):
        FileStorageService([local_storage, local_storage], default_platform="local")


def test_upload_bytes(service, local_storage):
    file_info = service.upload(
        UploadRequest(content=b"hello", path="docs/", original_filename="greeting.txt")
    )

    assert file_info.platform == "local"
    assert file_info.size == 5
    assert file_info.content_type == "text/plain"
    assert file_info.filename.endswith(".txt")
    assert file_info.original_filename == "greeting.txt"
    stored = local_storage.storage_path / f"base/docs/{file_info.filename}"
    assert stored.read_bytes() == b"hello"


def test_upload_with_explicit_filename(service):
    file_info = service.upload(UploadRequest(content=b"x", save_filename="fixed.bin"))

    assert file_info.filename == "fixed.bin"
    assert file_info.ext == "bin"


def test_upload_path_source(service, tmp_path: Path):
    source = tmp_path / "report.pdf"
    source.write_bytes(b"%PDF-1.4")

    file_info = service.upload(UploadRequest(content=source))

    assert file_info.original_filename == "report.pdf"
    assert file_info.content_type == "application/pdf"
    assert file_info.size == 8


def test_upload_unknown_size_stream_fills_size(service, listener):
    content = b"z" * 70_000

    file_info = service.upload(
        UploadRequest(
            content=NonSeekableStream(content),
            save_filename="stream.bin",
            progress_listener=listener,
        )
    )

    assert file_info.size == len(content)
    assert listener.names()[0] == "start"
    assert listener.names()[-1] == "finish"
    assert listener.events[-2] == ("progress", len(content), None)


def test_upload_caller_stream_is_left_open(service):
    source = io.BytesIO(b"caller owned")

    service.upload(UploadRequest(content=source, save_filename="c.txt"))

    assert not source.closed


def test_upload_with_thumbnail(service, local_storage):
    file_info = service.upload(
        UploadRequest(content=b"image", save_filename="photo.png", thumbnail=b"thumb")
    )

    assert file_info.th_filename == "photo.png.min.jpg"
    assert file_info.th_content_type == "image/jpeg"
    assert service.download_thumbnail_bytes(file_info) == b"thumb"


def test_upload_acl_strict_mode_rejects_before_saving(mock_storage):
    service = FileStorageService(
        [mock_storage], default_platform="mock", not_support_acl_throw_exception=True
    )

    with pytest.raises(UnsupportedOperationError, match="does not support ACL"):
        service.upload(UploadRequest(content=b"x", file_acl=ACL.PUBLIC_READ))

    mock_storage.save.assert_not_called()


def test_upload_acl_lenient_mode_drops_acl(service):
    file_info = service.upload(UploadRequest(content=b"x", file_acl=ACL.PUBLIC_READ))

    assert file_info.file_acl is None


def test_upload_metadata_strict_mode(local_storage):
    service = FileStorageService(
        [local_storage], default_platform="local", not_support_metadata_throw_exception=True
    )

    with pytest.raises(UnsupportedOperationError, match="does not support metadata"):
        service.upload(UploadRequest(content=b"x", user_metadata={"role": "666"}))


def test_upload_metadata_lenient_mode_drops_metadata(service):
    file_info = service.upload(UploadRequest(content=b"x", user_metadata={"role": "666"}))

    assert file_info.user_metadata == {}


def test_exists_for_never_created_object(service):
    file_info = FileInfo(platform="local", base_path="base/", path="nowhere/", filename="ghost.bin")

    assert service.exists(file_info) is False


def test_exists_and_delete(service):
    file_info = service.upload(UploadRequest(content=b"abc"))
    assert service.exists(file_info) is True

    assert service.delete(file_info) is True

    assert service.exists(file_info) is False


def test_download_helpers(service, tmp_path: Path, listener):
    file_info = service.upload(UploadRequest(content=b"payload"))

    assert service.download_bytes(file_info) == b"payload"
    target = service.download_to_file(file_info, tmp_path / "out" / "copy.bin")
    assert target.read_bytes() == b"payload"

    service.download_bytes(file_info, progress_listener=listener)
    assert listener.events == [("start",), ("progress", 7, 7), ("finish",)]


def test_download_thumbnail_without_thumbnail(service):
    file_info = service.upload(UploadRequest(content=b"abc"))

    with pytest.raises(NotFoundError):
        service.download_thumbnail_bytes(file_info)


def test_presigned_url_rejected_for_unsupported_platform(service, mock_storage):
    file_info = service.upload(UploadRequest(content=b"abc"))
    expiration = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)

    with pytest.raises(UnsupportedOperationError, match="presigned"):
        service.generate_presigned_url(file_info, expiration)
    with pytest.raises(UnsupportedOperationError):
        service.generate_thumbnail_presigned_url(file_info, expiration)


def test_multipart_rejected_for_unsupported_platform(mock_storage):
    service = FileStorageService([mock_storage], default_platform="mock")

    assert service.is_support_multipart_upload() is False
    with pytest.raises(UnsupportedOperationError, match="multipart"):
        service.initiate_multipart_upload(InitiateMultipartUploadRequest(save_filename="a.bin"))

    mock_storage.initiate_multipart_upload.assert_not_called()


def test_multipart_strict_acl_on_local(local_storage):
    service = FileStorageService(
        [local_storage], default_platform="local", not_support_acl_throw_exception=True
    )

    with pytest.raises(UnsupportedOperationError):
        service.initiate_multipart_upload(
            InitiateMultipartUploadRequest(save_filename="a.bin", file_acl=ACL.PRIVATE)
        )


def test_multipart_lenient_metadata_on_local(service):
    file_info = service.initiate_multipart_upload(
        InitiateMultipartUploadRequest(save_filename="a.bin", metadata={"Cache-Control": "no-cache"})
    )

    assert file_info.metadata == {}
    service.abort_multipart_upload(file_info)


def test_multipart_through_service_on_s3(s3_storage: S3FileStorage, s3_client, listener_factory):
    service = FileStorageService([s3_storage], default_platform="s3")
    file_info = service.initiate_multipart_upload(
        InitiateMultipartUploadRequest(
            path="t/",
            save_filename="a.bin",
            user_metadata={"role": "666"},
            file_acl=ACL.PRIVATE,
        )
    )
    listeners = [listener_factory(), listener_factory()]

    service.upload_part(
        UploadPartRequest(
            file_info=file_info,
            part_number=2,
            data=b"\x00" * (2 * MIB),
            progress_listener=listeners[1],
        )
    )
    service.upload_part(
        UploadPartRequest(
            file_info=file_info,
            part_number=1,
            data=b"\x00" * (5 * MIB),
            progress_listener=listeners[0],
        )
    )
    parts = service.list_parts(file_info)
    completed = service.complete_multipart_upload(file_info)

    assert [p.part_number for p in parts] == [1, 2]
    assert completed.size == 7 * MIB
    assert completed.upload_status is MultipartUploadStatus.COMPLETED
    head = s3_client.head_object(Bucket=s3_storage.bucket_name, Key="base/t/a.bin")
    assert head["ContentLength"] == 7 * MIB
    assert head["Metadata"] == {"role": "666"}
    for part_listener in listeners:
        assert part_listener.names() == ["start", "progress", "finish"]


def test_abort_through_service_on_s3(s3_storage: S3FileStorage):
    service = FileStorageService([s3_storage], default_platform="s3")
    file_info = service.initiate_multipart_upload(
        InitiateMultipartUploadRequest(path="t/", save_filename="a.bin")
    )
    service.upload_part(
        UploadPartRequest(file_info=file_info, part_number=1, data=b"\x00" * (5 * MIB))
    )

    service.abort_multipart_upload(file_info)
    service.abort_multipart_upload(file_info)

    assert service.list_parts(file_info) == []


def test_s3_upload_of_unknown_size_above_threshold(s3_storage: S3FileStorage, s3_client):
    service = FileStorageService([s3_storage], default_platform="s3")
    content = b"\x07" * (11 * MIB)

    file_info = service.upload(
        UploadRequest(content=NonSeekableStream(content), path="big/", save_filename="blob.bin")
    )

    assert file_info.size == len(content)
    head = s3_client.head_object(Bucket=s3_storage.bucket_name, Key="base/big/blob.bin")
    assert head["ContentLength"] == len(content)


def test_s3_presigned_url_through_service(s3_storage: S3FileStorage):
    service = FileStorageService([s3_storage], default_platform="s3")
    file_info = service.upload(UploadRequest(content=b"abc", save_filename="a.txt"))
    expiration = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=10)

    assert service.is_support_presigned_url() is True
    assert "base/a.txt" in service.generate_presigned_url(file_info, expiration)
    assert service.generate_thumbnail_presigned_url(file_info, expiration) is None


def test_from_settings(tmp_path: Path):
    settings = StorageSettings(
        default_platform="local-2",
        local=[
            LocalStorageSettings(platform="local-1", storage_path=str(tmp_path / "one")),
            LocalStorageSettings(platform="local-2", storage_path=str(tmp_path / "two")),
            LocalStorageSettings(platform="local-3", enabled=False),
        ],
        s3=[S3StorageSettings(platform="minio-1", bucket_name="bucket")],
    )

    service = FileStorageService.from_settings(settings)

    assert service.platforms == ["local-1", "local-2", "minio-1"]
    assert service.get_storage().platform == "local-2"
    assert service.is_support_acl("minio-1") is True
    assert service.is_support_acl("local-1") is False


def test_close_closes_every_adapter(mock_storage):
    other = MagicMock(spec=IFileStorage)
    other.platform = "other"

    with FileStorageService([mock_storage, other], default_platform="mock"):
        pass

    mock_storage.close.assert_called_once()
    other.close.assert_called_once()


def test_capability_predicates_follow_adapter_flags(service):
    assert service.is_support_multipart_upload() is True
    assert service.is_support_metadata() is False
    assert service.is_support_presigned_url("local") is False
    assert LocalFileStorage.capabilities == StorageCapabilities(multipart_upload=True)


def test_download_to_file_removes_partial_file_on_failure(service, tmp_path: Path, mocker):
    file_info = service.upload(UploadRequest(content=b"payload"))
    target = tmp_path / "out" / "copy.bin"

    def broken_copy(source, destination):
        destination.write(source.read(3))
        raise OSError("No space left on device")

    mocker.patch("py_file_storage.service._copy", side_effect=broken_copy)

    with pytest.raises(BackendError, match="File download failed"):
        service.download_to_file(file_info, target)

    assert not target.exists()


def test_download_to_file_missing_object_leaves_no_file(service, tmp_path: Path):
    file_info = FileInfo(platform="local", base_path="base/", filename="ghost.bin")
    target = tmp_path / "ghost.bin"

    with pytest.raises(NotFoundError):
        service.download_to_file(file_info, target)

    assert not target.exists()
