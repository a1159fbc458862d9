"""
Progress reporting for byte streams.

``ProgressInputStream`` wraps any object with a ``read(n)`` method and passes
the bytes through unchanged while notifying a ``ProgressListener``:

* ``start()`` once, on the first read that returns (data or end of stream);
* ``progress(progress_size, total_size)`` after every read that returned data;
* ``finish()`` once, when a read hits the end of the stream.

Reads performed between ``mark()`` and the matching ``reset()`` are treated as
speculative and never reported. A consumer that stops reading before the end
of the stream never triggers ``finish()``.

A stream instance must only be read by one logical reader at a time; the
counters are not synchronised.
"""

import io
import logging
from typing import Any, Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

_SKIP_BUFFER_SIZE = 64 * 1024


class ProgressListener(Protocol):
    """Receives lifecycle notifications from a ``ProgressInputStream``."""

    def start(self) -> None:
        ...

    def progress(self, progress_size: int, total_size: Optional[int]) -> None:
        ...

    def finish(self) -> None:
        ...


class CallbackProgressListener:
    """
    Adapts plain callables to the ``ProgressListener`` protocol.

    Any callback may be omitted.
    """

    def __init__(
        self,
        on_start: Optional[Callable[[], None]] = None,
        on_progress: Optional[Callable[[int, Optional[int]], None]] = None,
        on_finish: Optional[Callable[[], None]] = None,
    ):
        self._on_start = on_start
        self._on_progress = on_progress
        self._on_finish = on_finish

    def start(self) -> None:
        if self._on_start:
            self._on_start()

    def progress(self, progress_size: int, total_size: Optional[int]) -> None:
        if self._on_progress:
            self._on_progress(progress_size, total_size)

    def finish(self) -> None:
        if self._on_finish:
            self._on_finish()


class ProgressInputStream(io.RawIOBase):
    """
    A read-only stream decorator that reports read progress to a listener.

    Args:
        raw: The underlying byte source. Only ``read(n)`` is required;
            ``mark``/``reset`` additionally need ``tell``/``seek``.
        listener: Optional listener to notify.
        total_size: Total number of bytes expected, or None when unknown.
        owns_raw: Whether closing this stream also closes ``raw``.
    """

    def __init__(
        self,
        raw: Any,
        listener: Optional[ProgressListener] = None,
        total_size: Optional[int] = None,
        owns_raw: bool = True,
    ):
        super().__init__()
        self._raw = raw
        self.listener = listener
        self.total_size = total_size
        self._owns_raw = owns_raw
        self._progress_size = 0
        self._started = False
        self._finished = False
        self._marks: List[int] = []

    @property
    def progress_size(self) -> int:
        """Number of bytes reported as consumed so far."""
        return self._progress_size

    @property
    def mark_depth(self) -> int:
        return len(self._marks)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def finished(self) -> bool:
        return self._finished

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def mark_supported(self) -> bool:
        """Always False: mark/reset is not a rewind capability for consumers."""
        return False

    def readinto(self, buffer) -> Optional[int]:
        view = memoryview(buffer).cast("B")
        requested = len(view)
        if requested == 0:
            return 0
        data = self._raw.read(requested)
        if data is None:
            # Non-blocking source with nothing available yet
            return None
        n = len(data)
        if n:
            view[:n] = data
        self._on_start()
        self._on_progress(n if n else -1)
        return n

    def skip(self, n: int) -> int:
        """Discard up to ``n`` bytes and report them as progress."""
        skipped = 0
        while skipped < n:
            chunk = self._raw.read(min(n - skipped, _SKIP_BUFFER_SIZE))
            if not chunk:
                break
            skipped += len(chunk)
        if skipped:
            self._on_start()
        self._on_progress(skipped)
        return skipped

    def mark(self, readlimit: int = -1) -> None:
        self._marks.append(self._raw.tell())

    def reset(self) -> None:
        if not self._marks:
            raise OSError("reset() called without a matching mark()")
        self._raw.seek(self._marks[-1])
        self._marks.pop()

    def close(self) -> None:
        if not self.closed and self._owns_raw:
            close = getattr(self._raw, "close", None)
            if close is not None:
                close()
        super().close()

    def _on_start(self) -> None:
        if self._marks or self._started:
            return
        self._started = True
        if self.listener is not None:
            self.listener.start()

    def _on_progress(self, size: int) -> None:
        if self._marks:
            return
        if size > 0:
            self._progress_size += size
            if self.listener is not None:
                self.listener.progress(self._progress_size, self.total_size)
        elif size < 0:
            self._on_finish()

    def _on_finish(self) -> None:
        if self._marks or self._finished:
            return
        self._finished = True
        logger.debug(f"Stream fully consumed after {self._progress_size} bytes")
        if self.listener is not None:
            self.listener.finish()
