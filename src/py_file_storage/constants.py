class Metadata:
    """Standard metadata header names understood by the adapters."""

    CONTENT_DISPOSITION = "Content-Disposition"
    CACHE_CONTROL = "Cache-Control"
    CONTENT_ENCODING = "Content-Encoding"
    CONTENT_LANGUAGE = "Content-Language"


class ACL:
    """Canned access control levels."""

    PRIVATE = "private"
    PUBLIC_READ = "public-read"
    PUBLIC_READ_WRITE = "public-read-write"
    AUTHENTICATED_READ = "authenticated-read"


MIB = 1024 * 1024

# S3 rejects presigned URLs valid for more than seven days.
MAX_PRESIGNED_EXPIRY_SECONDS = 7 * 24 * 60 * 60
