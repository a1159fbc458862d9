"""
Resolution of upload content into a readable stream plus what can be learned
about it up front (size, filename, content type).

Supported sources: ``bytes``/``bytearray``, ``pathlib.Path`` (or a plain path
string), ``http(s)://`` URL strings and binary file-like objects.
"""

import io
import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

import requests
from pydantic import BaseModel, ConfigDict
from tenacity import retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class ContentSource(BaseModel):
    """An opened upload source."""

    stream: Any
    size: Optional[int] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None
    # Whether the stream was opened here and must be closed after the upload
    owned: bool = True

    model_config = ConfigDict(arbitrary_types_allowed=True)


def guess_content_type(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    content_type, _ = mimetypes.guess_type(filename)
    return content_type


def open_source(source: Any) -> ContentSource:
    """
    Opens ``source`` for reading.

    Raises:
        TypeError: If the source type is not supported.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        return ContentSource(stream=io.BytesIO(data), size=len(data))

    if isinstance(source, str) and source.startswith(("http://", "https://")):
        return _open_url(source)

    if isinstance(source, (str, Path)):
        path = Path(source)
        return ContentSource(
            stream=open(path, "rb"),
            size=path.stat().st_size,
            filename=path.name,
            content_type=guess_content_type(path.name),
        )

    if hasattr(source, "read"):
        name = getattr(source, "name", None)
        filename = os.path.basename(name) if isinstance(name, str) else None
        return ContentSource(
            stream=source,
            size=_remaining_size(source),
            filename=filename,
            content_type=guess_content_type(filename),
            owned=False,
        )

    raise TypeError(f"Unsupported upload source type: {type(source).__name__}")


def _remaining_size(stream: Any) -> Optional[int]:
    """Bytes left in a seekable stream, or None when it cannot be known."""
    try:
        if not stream.seekable():
            return None
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
        return end - position
    except (AttributeError, OSError, ValueError):
        return None


@retry(
    wait=wait_exponential(multiplier=1, min=1, max=4),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _request_url(url: str) -> requests.Response:
    """Opens a streaming GET request with retry logic."""
    logger.info(f"Opening remote content from: {url}")
    try:
        response = requests.get(url, stream=True, timeout=60)
        response.raise_for_status()
        return response
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to open remote content from {url}: {e}")
        raise


def _open_url(url: str) -> ContentSource:
    response = _request_url(url)
    response.raw.decode_content = True

    size = None
    content_length = response.headers.get("Content-Length")
    # A compressed transfer's length says nothing about the decoded size
    if content_length and not response.headers.get("Content-Encoding"):
        size = int(content_length)

    filename = unquote(urlparse(url).path.rsplit("/", 1)[-1]) or None
    content_type = response.headers.get("Content-Type")
    if content_type:
        content_type = content_type.split(";", 1)[0].strip()
    else:
        content_type = guess_content_type(filename)

    return ContentSource(
        stream=response.raw,
        size=size,
        filename=filename,
        content_type=content_type,
    )
