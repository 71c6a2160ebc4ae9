"""Per-stream output reader with incremental UTF-8 decoding.

Each OutputReader owns one pipe (stdout or stderr) and a daemon thread that
keeps exactly one read in flight at a time. Every chunk is delivered twice:
once as raw bytes and once as decoded text. The UTF-8 decoder persists across
reads, so a multi-byte character split between two reads is only emitted once
it is complete.
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from collections.abc import Callable
from typing import BinaryIO

from .errors import InvalidOperationError, OutputReadError

__all__ = [
    "ChunkedBuffer",
    "OutputReader",
]

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 64 * 1024


class ChunkedBuffer:
    """Append-only byte buffer stored as a list of fixed-size blocks.

    Appending never reallocates previously stored data, which keeps capture
    of large outputs cheap. ``getvalue()`` concatenates on demand.
    """

    def __init__(self, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self._block_size = block_size
        self._blocks: list[bytearray] = []
        self._length = 0

    def append(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            if not self._blocks or len(self._blocks[-1]) >= self._block_size:
                self._blocks.append(bytearray())
            block = self._blocks[-1]
            room = self._block_size - len(block)
            block += view[:room]
            view = view[room:]
        self._length += len(data)

    @property
    def block_count(self) -> int:
        return len(self._blocks)

    def __len__(self) -> int:
        return self._length

    def getvalue(self) -> bytes:
        return b"".join(self._blocks)


class OutputReader:
    """Asynchronously drains one output stream.

    For each completed read the reader:

    1. calls ``on_data`` with exactly the new bytes;
    2. feeds the bytes to a persistent UTF-8 decoder and calls ``on_text``
       with whatever text is complete, carrying an incomplete trailing
       sequence over to the next read;
    3. appends the bytes to the capture buffer if capture is enabled.

    A zero-byte read marks the end of the stream: the decoder residue is
    flushed and ``ended`` becomes true. A stream that ends in the middle of a
    character is logged, flagged via ``truncated_at_end`` and flushed as
    U+FFFD rather than dropped.

    Output is coalesced: after a short read the reader waits out the rest of
    ``coalesce_interval`` before reading again, so a program writing many
    small pieces produces roughly one notification per interval. A read that
    fills the whole buffer is followed immediately by the next one.

    I/O errors are not retried. The error is stored, the reader ends, and the
    error is raised again from ``check_error()`` and ``get_entire_output()``.

    Example:
        ```python
        reader = OutputReader(proc.stdout, "stdout", on_text=print, capture=True)
        reader.start()
        reader.wait()
        data = reader.get_entire_output()
        ```
    """

    def __init__(
        self,
        stream: BinaryIO,
        name: str,
        *,
        on_data: Callable[[bytes], None] | None = None,
        on_text: Callable[[str], None] | None = None,
        capture: bool = False,
        coalesce_interval: float = 0.05,
        read_size: int = 64 * 1024,
    ) -> None:
        self.name = name
        self._stream = stream
        self._on_data = on_data
        self._on_text = on_text
        self._capture = ChunkedBuffer() if capture else None
        self._coalesce_interval = coalesce_interval
        self._read_size = read_size
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._ended = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_emit = 0.0
        self.bytes_read = 0
        self.truncated_at_end = False
        self.error: BaseException | None = None

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    @property
    def capturing(self) -> bool:
        return self._capture is not None

    def start(self) -> None:
        """Start the background read loop."""
        if self._thread is not None:
            raise InvalidOperationError(f"{self.name} reader already started")
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"procctl-{self.name}-reader",
        )
        self._thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the stream has ended. Returns False on timeout."""
        return self._ended.wait(timeout)

    def get_entire_output(self) -> bytes:
        """Return every byte read from the stream.

        Raises:
            InvalidOperationError: If capture is disabled or the stream has
                not ended yet
            OutputReadError: If reading failed part-way
        """
        if not self.capturing:
            raise InvalidOperationError(f"Capture of {self.name} was not enabled")
        if not self.ended:
            raise InvalidOperationError(f"{self.name} has not ended yet")
        self.check_error()
        return self._capture.getvalue()

    def check_error(self) -> None:
        """Raise OutputReadError if reading failed part-way, capture or not."""
        if self.error is not None:
            raise OutputReadError(self.name, str(self.error)) from self.error

    def _run(self) -> None:
        try:
            while True:
                data = self._stream.read(self._read_size)
                if not data:
                    break
                self._handle_chunk(data)
                if len(data) < self._read_size:
                    self._coalesce()
        except (OSError, ValueError) as e:
            self.error = e
            logger.warning(f"Error reading {self.name}, output is incomplete: {e}")
        finally:
            try:
                self._stream.close()
            except OSError as e:
                logger.debug(f"Error closing {self.name}: {e}")
            self._handle_end()

    def _coalesce(self) -> None:
        remaining = self._coalesce_interval - (time.monotonic() - self._last_emit)
        if remaining > 0:
            time.sleep(remaining)

    def _handle_chunk(self, data: bytes) -> None:
        self.bytes_read += len(data)
        self._last_emit = time.monotonic()

        if self._capture is not None:
            self._capture.append(data)

        if self._on_data is not None:
            self._on_data(data)

        text = self._decoder.decode(data)
        if text and self._on_text is not None:
            self._on_text(text)

    def _handle_end(self) -> None:
        residue, _ = self._decoder.getstate()
        text = self._decoder.decode(b"", final=True)
        if residue:
            self.truncated_at_end = True
            logger.warning(
                f"{self.name} ended in the middle of a UTF-8 sequence "
                f"({len(residue)} byte(s) left undecoded)"
            )
        try:
            if text and self._on_text is not None:
                self._on_text(text)
        finally:
            logger.debug(f"{self.name} reader ended after {self.bytes_read} byte(s)")
            self._ended.set()
