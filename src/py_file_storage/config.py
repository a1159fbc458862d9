import os
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from py_file_storage.constants import MIB

CONFIG_PATH_ENV_VAR = "PY_FILE_STORAGE_CONFIG_PATH"


class LocalStorageSettings(BaseModel):
    """Settings for one local-disk storage platform."""

    platform: str = "local"
    enabled: bool = True
    base_path: str = ""
    # Directory on disk that acts as the "bucket"
    storage_path: str = "file_storage"
    # Prefix used to build public URLs, e.g. "http://127.0.0.1:8030/files/"
    domain: str = ""


class S3StorageSettings(BaseModel):
    """Settings for one S3-compatible storage platform (AWS S3, MinIO, ...)."""

    platform: str = "s3"
    enabled: bool = True
    bucket_name: str = ""
    domain: str = ""
    base_path: str = ""
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[SecretStr] = None
    # Uploads of unknown size, or at least this many bytes, are chunked by
    # the SDK instead of being sent with a single PUT.
    multipart_threshold: int = Field(default=128 * MIB, gt=0)
    multipart_part_size: int = Field(default=32 * MIB, ge=5 * MIB)


class StorageSettings(BaseSettings):
    """Models the set of configured storage platforms."""

    default_platform: str = "local"
    not_support_acl_throw_exception: bool = False
    not_support_metadata_throw_exception: bool = False
    thumbnail_suffix: str = ".min.jpg"
    local: List[LocalStorageSettings] = Field(
        default_factory=lambda: [LocalStorageSettings()]
    )
    s3: List[S3StorageSettings] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="PY_FILE_STORAGE_")


class Settings(BaseSettings):
    """Main settings container."""

    storage: StorageSettings = Field(default_factory=StorageSettings)

    # Optional path to a YAML config file
    config_path: Optional[str] = None

    def __init__(self, config_path: Optional[str] = None, **values: Any):
        super().__init__(**values)
        if config_path:
            self.config_path = config_path
        elif os.environ.get(CONFIG_PATH_ENV_VAR):
            self.config_path = os.environ.get(CONFIG_PATH_ENV_VAR)

        if self.config_path and os.path.exists(self.config_path):
            self._load_from_yaml()

    def _load_from_yaml(self) -> None:
        """Loads and merges settings from a YAML file."""
        if not self.config_path:
            return

        with open(self.config_path, "r") as f:
            yaml_config = yaml.safe_load(f)

        if not yaml_config:
            return

        # Validate the merged section so nested platform lists become models
        if "storage" in yaml_config:
            merged = self.storage.model_dump()
            merged.update(yaml_config["storage"] or {})
            self.storage = StorageSettings.model_validate(merged)

    model_config = SettingsConfigDict(env_nested_delimiter="__")


def get_settings(config_path: Optional[str] = None) -> Settings:
    """Factory function to get the settings."""
    return Settings(config_path=config_path)
