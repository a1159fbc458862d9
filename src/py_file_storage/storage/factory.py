import logging
from typing import List

from py_file_storage.config import (
    LocalStorageSettings,
    S3StorageSettings,
    StorageSettings,
)
from py_file_storage.storage.interfaces import IFileStorage
from py_file_storage.storage.local import LocalFileStorage
from py_file_storage.storage.s3 import S3ClientFactory, S3FileStorage

logger = logging.getLogger(__name__)


class StorageFactory:
    """
    Factory for creating storage adapter instances based on configuration.
    """

    def __init__(self, settings: StorageSettings):
        self.settings = settings

    def get_storages(self) -> List[IFileStorage]:
        """
        Instantiates one adapter per enabled platform entry.

        Returns:
            Adapters in configuration order, local platforms first.

        Raises:
            ValueError: If two entries share a platform name.
        """
        storages: List[IFileStorage] = []
        for local_settings in self.settings.local:
            if local_settings.enabled:
                storages.append(self.create_local_storage(local_settings))
        for s3_settings in self.settings.s3:
            if s3_settings.enabled:
                storages.append(self.create_s3_storage(s3_settings))

        seen = set()
        for storage in storages:
            if storage.platform in seen:
                raise ValueError(f"Duplicate storage platform: '{storage.platform}'")
            seen.add(storage.platform)
        return storages

    @staticmethod
    def create_local_storage(settings: LocalStorageSettings) -> LocalFileStorage:
        logger.info(f"Creating local storage adapter for platform: '{settings.platform}'")
        return LocalFileStorage(
            storage_path=settings.storage_path,
            platform=settings.platform,
            base_path=settings.base_path,
            domain=settings.domain,
        )

    @staticmethod
    def create_s3_storage(settings: S3StorageSettings) -> S3FileStorage:
        logger.info(f"Creating S3 storage adapter for platform: '{settings.platform}'")
        client_factory = S3ClientFactory(
            region_name=settings.region,
            endpoint_url=settings.endpoint_url,
            access_key=settings.access_key,
            secret_key=(
                settings.secret_key.get_secret_value() if settings.secret_key else None
            ),
        )
        return S3FileStorage(
            bucket_name=settings.bucket_name,
            client_factory=client_factory,
            platform=settings.platform,
            base_path=settings.base_path,
            domain=settings.domain,
            multipart_threshold=settings.multipart_threshold,
            multipart_part_size=settings.multipart_part_size,
        )
