import os
from pathlib import Path
from typing import List, Optional, Tuple

import boto3
import pytest
from moto import mock_aws

from py_file_storage.storage.local import LocalFileStorage
from py_file_storage.storage.s3 import S3ClientFactory, S3FileStorage

TEST_BUCKET = "test-file-storage-bucket"
TEST_REGION = "us-east-1"


class RecordingListener:
    """A progress listener that records every callback in order."""

    def __init__(self):
        self.events: List[Tuple] = []

    def start(self) -> None:
        self.events.append(("start",))

    def progress(self, progress_size: int, total_size: Optional[int]) -> None:
        self.events.append(("progress", progress_size, total_size))

    def finish(self) -> None:
        self.events.append(("finish",))

    def names(self) -> List[str]:
        return [event[0] for event in self.events]

    def count(self, name: str) -> int:
        return self.names().count(name)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so no test can ever reach a real AWS account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    # Keep stray settings from the environment out of the config tests
    for name in list(os.environ):
        if name.startswith(("PY_FILE_STORAGE_", "STORAGE__")):
            monkeypatch.delenv(name)


@pytest.fixture
def local_storage(tmp_path: Path) -> LocalFileStorage:
    return LocalFileStorage(
        storage_path=tmp_path / "storage",
        platform="local",
        base_path="base/",
        domain="http://localhost:8030/files/",
    )


@pytest.fixture
def s3_client():
    """A boto3 client against a mocked S3 with the test bucket created."""
    with mock_aws():
        client = boto3.client("s3", region_name=TEST_REGION)
        client.create_bucket(Bucket=TEST_BUCKET)
        yield client


@pytest.fixture
def s3_storage(s3_client) -> S3FileStorage:
    storage = S3FileStorage(
        bucket_name=TEST_BUCKET,
        client_factory=S3ClientFactory(region_name=TEST_REGION),
        platform="s3",
        base_path="base/",
        domain=f"https://{TEST_BUCKET}.s3.amazonaws.com/",
        multipart_threshold=5 * 1024 * 1024,
        multipart_part_size=5 * 1024 * 1024,
    )
    yield storage
    storage.close()


@pytest.fixture
def listener_factory():
    """Creates independent listeners, e.g. one per uploaded part."""
    return RecordingListener
