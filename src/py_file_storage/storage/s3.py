import datetime
import logging
import threading
from contextlib import closing, contextmanager
from typing import Any, Dict, Iterator, List, Optional

import boto3
from boto3.exceptions import Boto3Error
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from py_file_storage.constants import MIB
from py_file_storage.exceptions import BackendError, NotFoundError
from py_file_storage.models import FileInfo, FilePartInfo
from py_file_storage.progress import ProgressInputStream
from py_file_storage.storage.interfaces import (
    IFileStorage,
    StorageCapabilities,
    StreamConsumer,
    expiry_seconds,
)

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (BotoCoreError, ClientError, Boto3Error)
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

# Header names accepted in FileInfo.metadata and their boto3 argument names
_METADATA_ARGS = {
    "content-type": "ContentType",
    "content-disposition": "ContentDisposition",
    "cache-control": "CacheControl",
    "content-encoding": "ContentEncoding",
    "content-language": "ContentLanguage",
}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3ClientFactory:
    """
    Lazily creates and caches one boto3 S3 client.

    boto3 clients are thread-safe, so the cached handle is shared by every
    operation of the adapter that owns this factory.
    """

    def __init__(
        self,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
    ):
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self._client: Any = None
        self._lock = threading.Lock()

    def get_client(self) -> Any:
        with self._lock:
            if self._client is None:
                # MinIO and most self-hosted services need path-style addressing
                config = Config(s3={"addressing_style": "path"}) if self.endpoint_url else None
                self._client = boto3.client(
                    "s3",
                    region_name=self.region_name,
                    endpoint_url=self.endpoint_url,
                    aws_access_key_id=self.access_key,
                    aws_secret_access_key=self.secret_key,
                    config=config,
                )
                logger.info(
                    f"Created S3 client for region '{self.region_name or 'default'}'"
                    f" and endpoint '{self.endpoint_url or 'default'}'."
                )
            return self._client

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()


class S3FileStorage(IFileStorage):
    """
    An adapter for storing files in an S3-compatible bucket.

    ``save`` sends objects below ``multipart_threshold`` with one PUT and lets
    the SDK chunk everything else (including streams of unknown size) into
    ``multipart_part_size`` pieces. The externally driven multipart protocol
    maps one-to-one onto the S3 multipart API.
    """

    capabilities = StorageCapabilities(
        metadata=True, acl=True, presigned_url=True, multipart_upload=True
    )

    def __init__(
        self,
        bucket_name: str,
        client_factory: Optional[S3ClientFactory] = None,
        platform: str = "s3",
        base_path: str = "",
        domain: str = "",
        multipart_threshold: int = 128 * MIB,
        multipart_part_size: int = 32 * MIB,
    ):
        if not bucket_name:
            raise ValueError("S3 bucket name must be provided.")
        super().__init__(platform=platform, base_path=base_path, domain=domain)
        self.bucket_name = bucket_name
        self.client_factory = client_factory or S3ClientFactory()
        self.multipart_threshold = multipart_threshold
        self.multipart_part_size = multipart_part_size
        logger.info(f"Initialized S3FileStorage '{platform}' for bucket '{bucket_name}'.")

    @property
    def client(self) -> Any:
        return self.client_factory.get_client()

    def close(self) -> None:
        self.client_factory.close()

    @contextmanager
    def _backend_call(
        self, operation: str, message: str, key: str, upload_id: Optional[str] = None
    ) -> Iterator[None]:
        try:
            yield
        except _BACKEND_ERRORS as e:
            logger.error(f"{message} for s3://{self.bucket_name}/{key}: {e}")
            raise BackendError(
                message,
                operation=operation,
                platform=self.platform,
                key=key,
                upload_id=upload_id,
                cause=e,
            ) from e

    def _build_extra_args(
        self,
        content_type: Optional[str],
        metadata: Dict[str, str],
        user_metadata: Dict[str, str],
        acl: Optional[str],
    ) -> Dict[str, Any]:
        extra_args: Dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        for name, value in metadata.items():
            arg = _METADATA_ARGS.get(name.lower())
            if arg is None:
                logger.warning(f"Ignoring metadata header not supported by S3: '{name}'")
                continue
            extra_args[arg] = value
        if user_metadata:
            extra_args["Metadata"] = dict(user_metadata)
        if acl:
            extra_args["ACL"] = acl
        return extra_args

    def _transfer_config(self) -> TransferConfig:
        return TransferConfig(
            multipart_threshold=self.multipart_threshold,
            multipart_chunksize=self.multipart_part_size,
            use_threads=False,
        )

    def save(
        self,
        file_info: FileInfo,
        stream: ProgressInputStream,
        thumbnail: Optional[bytes] = None,
    ) -> FileInfo:
        file_info.base_path = self.base_path
        key = self.get_file_key(file_info)
        file_info.url = f"{self.domain}{key}"
        extra_args = self._build_extra_args(
            file_info.content_type,
            file_info.metadata,
            file_info.user_metadata,
            file_info.file_acl,
        )
        client = self.client
        logger.info(f"Attempting to upload to S3: s3://{self.bucket_name}/{key}")

        try:
            with self._backend_call("save", "File upload failed", key):
                if file_info.size is not None and file_info.size < self.multipart_threshold:
                    client.put_object(
                        Bucket=self.bucket_name, Key=key, Body=stream.read(), **extra_args
                    )
                else:
                    client.upload_fileobj(
                        stream,
                        self.bucket_name,
                        key,
                        ExtraArgs=extra_args or None,
                        Config=self._transfer_config(),
                    )
                if file_info.size is None:
                    file_info.size = stream.progress_size

                if thumbnail is not None:
                    self._save_thumbnail(client, file_info, thumbnail)
        except Exception:
            self._remove_quietly(client, key)
            raise

        logger.info(f"Successfully uploaded to s3://{self.bucket_name}/{key}")
        return file_info

    def _save_thumbnail(self, client: Any, file_info: FileInfo, thumbnail: bytes) -> None:
        th_key = self.get_thumbnail_key(file_info)
        if th_key is None:
            logger.warning(
                f"Thumbnail bytes given for '{file_info.filename}' without a "
                "thumbnail filename, skipping"
            )
            return
        file_info.th_url = f"{self.domain}{th_key}"
        file_info.th_size = len(thumbnail)
        client.put_object(
            Bucket=self.bucket_name,
            Key=th_key,
            Body=thumbnail,
            **self._build_extra_args(
                file_info.th_content_type,
                file_info.th_metadata,
                file_info.th_user_metadata,
                file_info.th_file_acl,
            ),
        )

    def _remove_quietly(self, client: Any, key: str) -> None:
        try:
            client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as e:
            logger.warning(
                f"Failed to remove partially uploaded object s3://{self.bucket_name}/{key}: {e}"
            )

    def delete(self, file_info: FileInfo) -> bool:
        key = self.get_file_key(file_info)
        client = self.client
        with self._backend_call("delete", "File delete failed", key):
            th_key = self.get_thumbnail_key(file_info)
            if th_key is not None:
                client.delete_object(Bucket=self.bucket_name, Key=th_key)
            client.delete_object(Bucket=self.bucket_name, Key=key)
        return True

    def exists(self, file_info: FileInfo) -> bool:
        key = self.get_file_key(file_info)
        with self._backend_call("exists", "Failed to check object existence", key):
            try:
                self.client.head_object(Bucket=self.bucket_name, Key=key)
            except ClientError as e:
                if _error_code(e) in _NOT_FOUND_CODES:
                    return False
                raise
        return True

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
        with self._backend_call(operation, "File download failed", key):
            try:
                response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            except ClientError as e:
                if _error_code(e) in _NOT_FOUND_CODES:
                    raise NotFoundError(
                        f"Object does not exist: s3://{self.bucket_name}/{key}"
                    ) from e
                raise
            with closing(response["Body"]) as body:
                consumer(body)

    def generate_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> str:
        key = self.get_file_key(file_info)
        return self._presign(key, expiration, "generate_presigned_url")

    def generate_thumbnail_presigned_url(
        self, file_info: FileInfo, expiration: datetime.datetime
    ) -> Optional[str]:
        th_key = self.get_thumbnail_key(file_info)
        if th_key is None:
            return None
        return self._presign(th_key, expiration, "generate_thumbnail_presigned_url")

    def _presign(self, key: str, expiration: datetime.datetime, operation: str) -> str:
        with self._backend_call(operation, "Failed to generate presigned URL", key):
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expiry_seconds(expiration),
            )
        return str(url)

    # Multipart upload

    def initiate_multipart_upload(self, file_info: FileInfo) -> str:
        file_info.base_path = self.base_path
        key = self.get_file_key(file_info)
        file_info.url = f"{self.domain}{key}"
        extra_args = self._build_extra_args(
            file_info.content_type,
            file_info.metadata,
            file_info.user_metadata,
            file_info.file_acl,
        )
        with self._backend_call(
            "initiate_multipart_upload", "Failed to create multipart upload", key
        ):
            response = self.client.create_multipart_upload(
                Bucket=self.bucket_name, Key=key, **extra_args
            )
        upload_id = str(response["UploadId"])
        logger.info(f"Initiated multipart upload {upload_id} for s3://{self.bucket_name}/{key}")
        return upload_id

    def upload_part(
        self,
        file_info: FileInfo,
        part_number: int,
        stream: ProgressInputStream,
        size: Optional[int] = None,
    ) -> FilePartInfo:
        key = self.get_file_key(file_info)
        upload_id = str(file_info.upload_id)
        body = stream.read()
        with self._backend_call(
            "upload_part", f"Failed to upload part {part_number}", key, upload_id
        ):
            response = self.client.upload_part(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                PartNumber=int(part_number),
                Body=body,
            )
        logger.debug(f"Uploaded part {part_number} ({len(body)} bytes) of upload {upload_id}")
        return FilePartInfo(
            upload_id=upload_id,
            part_number=part_number,
            size=len(body),
            etag=response.get("ETag"),
            last_modified=datetime.datetime.now(datetime.timezone.utc),
        )

    def list_parts(self, file_info: FileInfo) -> List[FilePartInfo]:
        key = self.get_file_key(file_info)
        upload_id = str(file_info.upload_id)
        parts: List[FilePartInfo] = []
        with self._backend_call("list_parts", "Failed to list parts", key, upload_id):
            paginator = self.client.get_paginator("list_parts")
            for page in paginator.paginate(
                Bucket=self.bucket_name, Key=key, UploadId=upload_id
            ):
                for part in page.get("Parts", []):
                    parts.append(
                        FilePartInfo(
                            upload_id=upload_id,
                            part_number=part["PartNumber"],
                            size=part["Size"],
                            etag=part.get("ETag"),
                            last_modified=part.get("LastModified"),
                        )
                    )
        return sorted(parts, key=lambda p: p.part_number)

    def complete_multipart_upload(
        self, file_info: FileInfo, parts: List[FilePartInfo]
    ) -> None:
        key = self.get_file_key(file_info)
        upload_id = str(file_info.upload_id)
        multipart_payload = {
            "Parts": [
                {"ETag": part.etag, "PartNumber": int(part.part_number)}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }
        with self._backend_call(
            "complete_multipart_upload", "Failed to complete multipart upload", key, upload_id
        ):
            self.client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload=multipart_payload,
            )
        logger.info(f"Completed multipart upload {upload_id} for s3://{self.bucket_name}/{key}")

    def abort_multipart_upload(self, file_info: FileInfo) -> None:
        key = self.get_file_key(file_info)
        upload_id = str(file_info.upload_id)
        with self._backend_call(
            "abort_multipart_upload", "Failed to abort multipart upload", key, upload_id
        ):
            try:
                self.client.abort_multipart_upload(
                    Bucket=self.bucket_name, Key=key, UploadId=upload_id
                )
            except ClientError as e:
                if _error_code(e) != "NoSuchUpload":
                    raise
                logger.debug(f"Multipart upload {upload_id} already gone")
