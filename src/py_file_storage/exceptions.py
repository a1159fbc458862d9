from typing import Optional


class FileStorageError(Exception):
    """Base class for every error raised by the file storage layer."""


class UnsupportedOperationError(FileStorageError):
    """The target platform does not support the requested operation."""


class InvalidStateError(FileStorageError):
    """A multipart operation was attempted outside its valid states."""


class PlatformNotFoundError(FileStorageError):
    """No storage adapter is registered under the requested platform name."""

    def __init__(self, platform: str):
        super().__init__(f"No storage platform registered as '{platform}'")
        self.platform = platform


class NotFoundError(FileStorageError):
    """The requested object (or its thumbnail) does not exist."""


class BackendError(FileStorageError):
    """
    Wraps a native backend failure (network, auth, server side).

    The original exception is chained as ``__cause__`` and also kept on
    ``cause`` together with the operation name and the identifying context.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        platform: Optional[str] = None,
        key: Optional[str] = None,
        upload_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        context = [f"operation={operation}"]
        if platform:
            context.append(f"platform={platform}")
        if key:
            context.append(f"key={key}")
        if upload_id:
            context.append(f"upload_id={upload_id}")
        super().__init__(f"{message} ({', '.join(context)})")
        self.operation = operation
        self.platform = platform
        self.key = key
        self.upload_id = upload_id
        self.cause = cause
