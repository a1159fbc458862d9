import datetime
import hashlib
import logging
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from py_file_storage.exceptions import BackendError, NotFoundError
from py_file_storage.models import FileInfo, FilePartInfo
from py_file_storage.progress import ProgressInputStream
from py_file_storage.storage.interfaces import (
    IFileStorage,
    StorageCapabilities,
    StreamConsumer,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_MULTIPART_DIR = ".multipart"


class LocalFileStorage(IFileStorage):
    """
    An adapter for storing files on the local filesystem.

    Multipart sessions are staged under ``<storage_path>/.multipart/<upload_id>/``
    with one file per part, and concatenated in part-number order on completion.
    """

    capabilities = StorageCapabilities(multipart_upload=True)

    def __init__(
        self,
        storage_path: str | Path,
        platform: str = "local",
        base_path: str = "",
        domain: str = "",
    ):
        super().__init__(platform=platform, base_path=base_path, domain=domain)
        self.storage_path = Path(storage_path)
        self._create_base_directory()

    def _create_base_directory(self) -> None:
        """Ensures the base storage directory exists."""
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Ensured local storage directory exists at: {self.storage_path}")
        except OSError as e:
            logger.error(f"Failed to create local storage directory at {self.storage_path}: {e}")
            raise

    def _resolve(self, key: str) -> Path:
        return self.storage_path / key

    def _session_dir(self, upload_id: Optional[str]) -> Path:
        return self.storage_path / _MULTIPART_DIR / str(upload_id)

    def save(
        self,
        file_info: FileInfo,
        stream: ProgressInputStream,
        thumbnail: Optional[bytes] = None,
    ) -> FileInfo:
        """
        Writes the stream to a file on the local filesystem.

        Args:
            file_info: Describes the target; ``base_path``, ``url`` and ``size``
                are filled in.
            stream: The content to write.
            thumbnail: Optional thumbnail bytes stored next to the file.

        Returns:
            The updated ``file_info``.
        """
        file_info.base_path = self.base_path
        key = self.get_file_key(file_info)
        file_info.url = f"{self.domain}{key}"
        destination_path = self._resolve(key)
        logger.info(f"Attempting to save file to local path: {destination_path}")

        try:
            # Ensure the parent directory of the destination file exists
            destination_path.parent.mkdir(parents=True, exist_ok=True)
            with open(destination_path, "wb") as f:
                shutil.copyfileobj(stream, f, _CHUNK_SIZE)
            if file_info.size is None:
                file_info.size = stream.progress_size

            if thumbnail is not None:
                self._save_thumbnail(file_info, thumbnail)
        except OSError as e:
            logger.error(f"Failed to write to file {destination_path}: {e}")
            self._remove_quietly(destination_path)
            raise BackendError(
                "File upload failed",
                operation="save",
                platform=self.platform,
                key=key,
                cause=e,
            ) from e
        except Exception:
            self._remove_quietly(destination_path)
            raise

        logger.info(f"Successfully saved file to {destination_path}")
        return file_info

    def _save_thumbnail(self, file_info: FileInfo, thumbnail: bytes) -> None:
        th_key = self.get_thumbnail_key(file_info)
        if th_key is None:
            logger.warning(
                f"Thumbnail bytes given for '{file_info.filename}' without a "
                "thumbnail filename, skipping"
            )
            return
        file_info.th_url = f"{self.domain}{th_key}"
        file_info.th_size = len(thumbnail)
        self._resolve(th_key).write_bytes(thumbnail)

    def _remove_quietly(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove partially written file {path}: {e}")

    def delete(self, file_info: FileInfo) -> bool:
        key = self.get_file_key(file_info)
        try:
            th_key = self.get_thumbnail_key(file_info)
            if th_key is not None:
                self._resolve(th_key).unlink(missing_ok=True)
            self._resolve(key).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete local file {key}: {e}")
            raise BackendError(
                "File delete failed",
                operation="delete",
                platform=self.platform,
                key=key,
                cause=e,
            ) from e
        return True

    def exists(self, file_info: FileInfo) -> bool:
        key = self.get_file_key(file_info)
        try:
            return self._resolve(key).is_file()
        except OSError as e:
            logger.error(f"Failed to check local file existence {key}: {e}")
            raise BackendError(
                "Failed to check object existence",
                operation="exists",
                platform=self.platform,
                key=key,
                cause=e,
            ) from e

    def download(self, file_info: FileInfo, consumer: StreamConsumer) -> None:
        self._download_key(self.get_file_key(file_info), consumer, "download")

    def download_thumbnail(self, file_info: FileInfo, consumer: StreamConsumer) -> None:
        th_key = self.get_thumbnail_key(file_info)
        if th_key is None:
            raise NotFoundError(
                f"No thumbnail recorded for '{file_info.filename}' on platform "
                f"'{self.platform}'"
            )
        self._download_key(th_key, consumer, "download_thumbnail")

    def _download_key(self, key: str, consumer: StreamConsumer, operation: str) -> None:
        path = self._resolve(key)
        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"Local file does not exist: {key}") from e
        except OSError as e:
            raise BackendError(
                "File download failed",
                operation=operation,
                platform=self.platform,
                key=key,
                cause=e,
            ) from e
        with f:
            try:
                consumer(f)
            except OSError as e:
                logger.error(f"Failed to read local file {key}: {e}")
                raise BackendError(
                    "File download failed",
                    operation=operation,
                    platform=self.platform,
                    key=key,
                    cause=e,
                ) from e

    # Multipart upload

    def initiate_multipart_upload(self, file_info: FileInfo) -> str:
        file_info.base_path = self.base_path
        key = self.get_file_key(file_info)
        file_info.url = f"{self.domain}{key}"
        upload_id = uuid.uuid4().hex
        try:
            self._session_dir(upload_id).mkdir(parents=True)
        except OSError as e:
            raise BackendError(
                "Failed to initiate multipart upload",
                operation="initiate_multipart_upload",
                platform=self.platform,
                key=key,
                cause=e,
            ) from e
        logger.info(f"Initiated local multipart upload {upload_id} for {key}")
        return upload_id

    def upload_part(
        self,
        file_info: FileInfo,
        part_number: int,
        stream: ProgressInputStream,
        size: Optional[int] = None,
    ) -> FilePartInfo:
        key = self.get_file_key(file_info)
        session_dir = self._session_dir(file_info.upload_id)
        part_path = session_dir / f"{part_number}.part"
        # Only fully written parts carry the ".part" suffix that list_parts sees
        temp_path = session_dir / f"{part_number}.part.tmp"
        hasher = hashlib.md5()
        written = 0
        try:
            if not session_dir.is_dir():
                raise FileNotFoundError(f"No such upload: {file_info.upload_id}")
            try:
                with open(temp_path, "wb") as f:
                    for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                        hasher.update(chunk)
                        f.write(chunk)
                        written += len(chunk)
                temp_path.replace(part_path)
            except BaseException:
                self._remove_quietly(temp_path)
                raise
        except OSError as e:
            logger.error(f"Failed to write part {part_number} of {key}: {e}")
            raise BackendError(
                f"Failed to upload part {part_number}",
                operation="upload_part",
                platform=self.platform,
                key=key,
                upload_id=file_info.upload_id,
                cause=e,
            ) from e

        return FilePartInfo(
            upload_id=str(file_info.upload_id),
            part_number=part_number,
            size=written,
            etag=hasher.hexdigest(),
            last_modified=datetime.datetime.now(datetime.timezone.utc),
        )

    def list_parts(self, file_info: FileInfo) -> List[FilePartInfo]:
        session_dir = self._session_dir(file_info.upload_id)
        try:
            if not session_dir.is_dir():
                raise FileNotFoundError(f"No such upload: {file_info.upload_id}")
            parts = [self._read_part_info(file_info, p) for p in session_dir.glob("*.part")]
        except OSError as e:
            raise BackendError(
                "Failed to list parts",
                operation="list_parts",
                platform=self.platform,
                key=self.get_file_key(file_info),
                upload_id=file_info.upload_id,
                cause=e,
            ) from e
        return sorted(parts, key=lambda p: p.part_number)

    def _read_part_info(self, file_info: FileInfo, part_path: Path) -> FilePartInfo:
        hasher = hashlib.md5()
        with open(part_path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
        stat = part_path.stat()
        return FilePartInfo(
            upload_id=str(file_info.upload_id),
            part_number=int(part_path.stem),
            size=stat.st_size,
            etag=hasher.hexdigest(),
            last_modified=datetime.datetime.fromtimestamp(
                stat.st_mtime, tz=datetime.timezone.utc
            ),
        )

    def complete_multipart_upload(
        self, file_info: FileInfo, parts: List[FilePartInfo]
    ) -> None:
        key = self.get_file_key(file_info)
        session_dir = self._session_dir(file_info.upload_id)
        destination_path = self._resolve(key)
        try:
            if not session_dir.is_dir():
                raise FileNotFoundError(f"No such upload: {file_info.upload_id}")
            destination_path.parent.mkdir(parents=True, exist_ok=True)
            # The final key only ever receives a fully assembled object
            staging_path = session_dir / "assembled"
            with open(staging_path, "wb") as out:
                for part in sorted(parts, key=lambda p: p.part_number):
                    with open(session_dir / f"{part.part_number}.part", "rb") as f:
                        shutil.copyfileobj(f, out, _CHUNK_SIZE)
            staging_path.replace(destination_path)
            shutil.rmtree(session_dir)
        except OSError as e:
            logger.error(f"Failed to complete multipart upload for {key}: {e}")
            raise BackendError(
                "Failed to complete multipart upload",
                operation="complete_multipart_upload",
                platform=self.platform,
                key=key,
                upload_id=file_info.upload_id,
                cause=e,
            ) from e
        logger.info(f"Completed local multipart upload {file_info.upload_id} for {key}")

    def abort_multipart_upload(self, file_info: FileInfo) -> None:
        session_dir = self._session_dir(file_info.upload_id)
        try:
            shutil.rmtree(session_dir)
        except FileNotFoundError:
            logger.debug(f"Multipart upload {file_info.upload_id} already gone")
        except OSError as e:
            raise BackendError(
                "Failed to abort multipart upload",
                operation="abort_multipart_upload",
                platform=self.platform,
                key=self.get_file_key(file_info),
                upload_id=file_info.upload_id,
                cause=e,
            ) from e

    def close(self) -> None:
        pass
