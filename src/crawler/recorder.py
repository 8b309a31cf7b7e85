"""
Byte recorder for a single fetch attempt.

Captures the reconstructed request and the raw response (header block plus
body) exactly as recorded, decodes the entity incrementally into a content
layer, and digests the content as it streams in. Size, time and throughput
limits are enforced chunk by chunk during the read.

Replay views, all over the same capture:
- raw: response header block and body as recorded
- message body: bytes after the header block
- entity: message body with any chunked transfer coding removed
- content: entity with Content-Encoding removed (digested)
"""

import asyncio
import base64
import codecs
import hashlib
import io
import tempfile
import time
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, BinaryIO

from src.crawler.content_decoding import (
    ContentDecoder,
    ContentDecodingError,
    IdentityDecoder,
    get_decoder,
)
from src.utils.config import RecorderConfig
from src.utils.logging import get_logger

if TYPE_CHECKING:
    from src.utils.config import FetchConfig

logger = get_logger(__name__)

DEFAULT_CHARSET = "iso-8859-1"


class RecorderStateError(RuntimeError):
    """Recorder used out of order, or replayed after release."""


class RecordingStatus(Enum):
    """Terminal status of a body read."""

    COMPLETED = "completed"
    LENGTH_EXCEEDED = "length_exceeded"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class RecordingLimits:
    """Limits enforced while reading. 0 means unlimited."""

    max_length_bytes: int = 0
    timeout_seconds: float = 0
    max_fetch_kb_sec: int = 0

    @classmethod
    def from_config(cls, config: "FetchConfig") -> "RecordingLimits":
        return cls(
            max_length_bytes=config.max_length_bytes,
            timeout_seconds=config.timeout_seconds,
            max_fetch_kb_sec=config.max_fetch_kb_sec,
        )


def dechunk(data: bytes) -> bytes:
    """Remove chunked transfer coding. Stops quietly at the first malformed chunk."""
    out = bytearray()
    pos = 0
    while pos < len(data):
        eol = data.find(b"\r\n", pos)
        if eol < 0:
            break
        size_field = data[pos:eol].split(b";", 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError:
            break
        if size == 0:
            break
        start = eol + 2
        out += data[start : start + size]
        pos = start + size + 2
    return bytes(out)


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None


class ByteRecorder:
    """Per-attempt capture of request and response bytes.

    Never shared between attempts. Lifecycle:
    begin() -> write_request() -> write_response_header() -> read_body()
    -> close() -> replay... -> release().
    """

    def __init__(self, config: RecorderConfig | None = None):
        self.config = config or RecorderConfig()
        self.limits = RecordingLimits()
        self.digest_algorithm: str | None = None
        self.content_encoding: str | None = None
        self.charset = DEFAULT_CHARSET
        self.status: RecordingStatus | None = None
        self.decode_error: ContentDecodingError | None = None

        self._request: BinaryIO | None = None
        self._response: BinaryIO | None = None
        self._content: BinaryIO | None = None
        self._decoder: ContentDecoder = IdentityDecoder()
        self._digest = None
        self._digest_value: bytes | None = None
        self._request_size = 0
        self._raw_size = 0
        self._content_size = 0
        self._body_offset: int | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._recording = False
        self._released = False

    # -- recording --------------------------------------------------------

    def begin(self, limits: RecordingLimits | None = None, digest_algorithm: str | None = None) -> None:
        """Reset state and arm enforcement for a new capture."""
        self._close_files()
        self.limits = limits or RecordingLimits()
        self.digest_algorithm = digest_algorithm
        self.content_encoding = None
        self.charset = DEFAULT_CHARSET
        self.status = None
        self.decode_error = None

        self._request = self._spool()
        self._response = self._spool()
        self._content = self._spool()
        self._decoder = IdentityDecoder()
        self._digest = hashlib.new(digest_algorithm) if digest_algorithm else None
        self._digest_value = None
        self._request_size = 0
        self._raw_size = 0
        self._content_size = 0
        self._body_offset = None
        self._started_at = None
        self._finished_at = None
        self._recording = True
        self._released = False

    def _spool(self) -> BinaryIO:
        return tempfile.SpooledTemporaryFile(max_size=self.config.in_memory_bytes)

    def _require_recording(self) -> None:
        if not self._recording:
            raise RecorderStateError("recorder is not recording; call begin() first")

    @property
    def is_recording(self) -> bool:
        return self._recording

    def write_request(self, data: bytes) -> None:
        self._require_recording()
        self._request.write(data)
        self._request_size += len(data)

    def write_response_header(self, data: bytes) -> None:
        """Record the response header block and start the read clock."""
        self._require_recording()
        if self._body_offset is not None:
            raise RecorderStateError("response header already recorded")
        self._response.write(data)
        self._raw_size += len(data)
        self._body_offset = self._raw_size
        self._started_at = time.monotonic()

    def set_content_encoding(self, content_encoding: str) -> None:
        """Select the decoder for the content layer.

        Raises:
            UnsupportedContentEncodingError: If a listed coding is unknown.
        """
        self._decoder = get_decoder(content_encoding)
        self.content_encoding = content_encoding

    def set_charset(self, charset: str) -> None:
        """Set the charset used for string replay.

        Raises:
            LookupError: If Python knows no codec by that name.
        """
        codecs.lookup(charset)
        self.charset = charset

    async def read_body(self, stream: AsyncIterable[bytes]) -> RecordingStatus:
        """Stream the response body into the capture.

        Length, time and throughput limits are checked on every chunk. Whatever
        was consumed before a limit tripped stays in the capture and the digest.
        """
        self._require_recording()
        if self._body_offset is None:
            raise RecorderStateError("response header must be recorded before the body")

        limits = self.limits
        deadline = None
        if limits.timeout_seconds > 0:
            deadline = self._started_at + limits.timeout_seconds

        iterator = aiter(stream)
        body_bytes = 0
        status = RecordingStatus.COMPLETED
        try:
            while True:
                if deadline is None:
                    chunk = await _next_chunk(iterator)
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        status = RecordingStatus.TIMEOUT
                        break
                    try:
                        chunk = await asyncio.wait_for(_next_chunk(iterator), remaining)
                    except TimeoutError:
                        status = RecordingStatus.TIMEOUT
                        break
                if chunk is None:
                    break
                if not chunk:
                    continue

                if limits.max_length_bytes:
                    allowed = max(0, limits.max_length_bytes - self._raw_size)
                    if len(chunk) > allowed:
                        self._record_body(chunk[:allowed])
                        status = RecordingStatus.LENGTH_EXCEEDED
                        break

                self._record_body(chunk)
                body_bytes += len(chunk)
                logger.debug("recorder_chunk", size=len(chunk), total=self._raw_size)

                if limits.max_fetch_kb_sec and await self._pace(body_bytes, deadline):
                    status = RecordingStatus.TIMEOUT
                    break
        finally:
            self._flush_decoder()

        self.status = status
        return status

    async def _pace(self, body_bytes: int, deadline: float | None) -> bool:
        """Sleep until the average rate is back under the cap.

        Returns True if the deadline was reached while pacing.
        """
        min_duration = body_bytes / (self.limits.max_fetch_kb_sec * 1024)
        now = time.monotonic()
        delay = min_duration - (now - self._started_at)
        if delay <= 0:
            return False
        if deadline is not None and now + delay >= deadline:
            await asyncio.sleep(max(0.0, deadline - now))
            return True
        await asyncio.sleep(delay)
        return False

    def _record_body(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._response.write(chunk)
        self._raw_size += len(chunk)
        if self.decode_error is not None:
            return
        try:
            decoded = self._decoder.decompress(chunk)
        except ContentDecodingError as e:
            self.decode_error = e
            return
        self._write_content(decoded)

    def _flush_decoder(self) -> None:
        if self.decode_error is not None:
            return
        try:
            self._write_content(self._decoder.flush())
        except ContentDecodingError as e:
            self.decode_error = e

    def _write_content(self, data: bytes) -> None:
        if not data:
            return
        self._content.write(data)
        self._content_size += len(data)
        if self._digest is not None:
            self._digest.update(data)

    def close(self) -> None:
        """Stop recording. The capture stays available for replay until release()."""
        if not self._recording:
            return
        self._recording = False
        self._finished_at = time.monotonic()
        if self._digest is not None:
            self._digest_value = self._digest.digest()

    def release(self) -> None:
        """Free the capture storage."""
        self.close()
        self._close_files()
        self._released = True

    def _close_files(self) -> None:
        for spool in (self._request, self._response, self._content):
            if spool is not None:
                spool.close()
        self._request = self._response = self._content = None

    # -- sizes and digest -------------------------------------------------

    @property
    def recorded_size(self) -> int:
        """Raw response bytes recorded, header block included."""
        return self._raw_size

    @property
    def request_size(self) -> int:
        return self._request_size

    @property
    def message_body_size(self) -> int:
        if self._body_offset is None:
            return 0
        return self._raw_size - self._body_offset

    @property
    def content_size(self) -> int:
        """Decoded content bytes."""
        return self._content_size

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return end - self._started_at

    @property
    def digest_value(self) -> bytes | None:
        if self._digest_value is not None:
            return self._digest_value
        if self._digest is not None:
            return self._digest.digest()
        return None

    @property
    def content_digest_scheme_string(self) -> str | None:
        value = self.digest_value
        if value is None:
            return None
        return f"{self.digest_algorithm}:{base64.b32encode(value).decode('ascii')}"

    # -- replay -----------------------------------------------------------

    def _read(self, spool: BinaryIO | None, start: int = 0) -> bytes:
        if self._released or spool is None:
            raise RecorderStateError("capture has been released or never begun")
        spool.seek(start)
        data = spool.read()
        spool.seek(0, io.SEEK_END)
        return data

    def _header_block(self) -> bytes:
        if self._body_offset is None:
            return b""
        return self._read(self._response)[: self._body_offset]

    def _declares_chunked(self) -> bool:
        for line in self._header_block().decode("iso-8859-1").split("\r\n")[1:]:
            name, sep, value = line.partition(":")
            if sep and name.strip().lower() == "transfer-encoding":
                if "chunked" in value.lower():
                    return True
        return False

    def get_request_replay_stream(self) -> BinaryIO:
        return io.BytesIO(self._read(self._request))

    def get_replay_stream(self) -> BinaryIO:
        """Raw response bytes: header block followed by the body as received."""
        return io.BytesIO(self._read(self._response))

    def get_message_body_replay_stream(self) -> BinaryIO:
        return io.BytesIO(self._read(self._response, self._body_offset or 0))

    def get_entity_replay_stream(self) -> BinaryIO:
        body = self._read(self._response, self._body_offset or 0)
        if self._declares_chunked():
            body = dechunk(body)
        return io.BytesIO(body)

    def get_content_replay_stream(self) -> BinaryIO:
        return io.BytesIO(self._read(self._content))

    def get_content_replay_text(self, charset: str | None = None) -> str:
        return self._read(self._content).decode(charset or self.charset, errors="replace")

    def get_content_replay_prefix_string(self, size: int, charset: str | None = None) -> str:
        """Decode at most `size` characters from the start of the content layer."""
        if size <= 0:
            return ""
        decoder = codecs.getincrementaldecoder(charset or self.charset)(errors="replace")
        stream = self.get_content_replay_stream()
        parts: list[str] = []
        length = 0
        while length < size:
            block = stream.read(self.config.read_chunk_bytes)
            if not block:
                parts.append(decoder.decode(b"", final=True))
                break
            text = decoder.decode(block)
            parts.append(text)
            length += len(text)
        return "".join(parts)[:size]
