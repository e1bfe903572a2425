"""
Streaming multipart ingestion for image uploads.

The upload body reaches us either fully buffered (some hosts read the request
before the view runs) or as a live stream. Both are exposed as a byte source
yielding chunks, and a single pass of werkzeug's sans-IO multipart decoder
turns those chunks into the accepted files, in arrival order.

Any validation failure is terminal: the first one is raised, the rest of the
transport is drained without decoding so nothing else gets reported.
"""
import logging
from dataclasses import dataclass
from typing import IO, Iterator, List, Optional, Union

from werkzeug.http import parse_options_header
from werkzeug.sansio.multipart import (
    Data, Epilogue, Field, File, MultipartDecoder, NeedData
)

from .exceptions import (
    FileTooLarge, InvalidMediaType, MalformedMultipart, TooManyFiles, UploadValidationError
)
from .models import UploadedFile

logger = logging.getLogger(__name__)

IMAGE_MEDIA_PREFIX = 'image/'
# RFC 7578: a part without Content-Type is text/plain
DEFAULT_PART_MEDIA_TYPE = 'text/plain'
DEFAULT_CHUNK_SIZE = 64 * 1024


class BufferedBody:
    """Upload body that has already been received in full"""

    def __init__(self, data: bytes):
        self.data = data

    def chunks(self) -> Iterator[bytes]:
        # Handed to the decoder as-is; nothing is re-read from the socket
        if self.data:
            yield bytes(self.data)


class StreamedBody:
    """Upload body read incrementally from a file-like stream"""

    def __init__(self, stream: IO[bytes], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.stream = stream
        self.chunk_size = chunk_size

    def chunks(self) -> Iterator[bytes]:
        while True:
            data = self.stream.read(self.chunk_size)
            if not data:
                break
            yield data


ByteSource = Union[BufferedBody, StreamedBody]


@dataclass(frozen=True)
class IngestLimits:
    max_file_bytes: int
    max_files: int

    @classmethod
    def from_config(cls, cfg) -> "IngestLimits":
        return cls(max_file_bytes=cfg.max_file_size, max_files=cfg.max_files)


def _format_size(num_bytes: int) -> str:
    if num_bytes % (1024 * 1024) == 0:
        return f"{num_bytes // (1024 * 1024)} MB"
    return f"{num_bytes} bytes"


def parse_boundary(content_type: Optional[str]) -> bytes:
    """Extract the multipart boundary declared in a Content-Type header"""
    mimetype, options = parse_options_header(content_type or '')
    if mimetype.lower() != 'multipart/form-data':
        raise MalformedMultipart(
            f"Expected multipart/form-data, got '{mimetype or 'no content type'}'")
    boundary = options.get('boundary')
    if not boundary:
        raise MalformedMultipart("Multipart boundary not found in Content-Type")
    return boundary.encode('latin-1')


class _PendingFile:
    """File part whose body is still arriving"""

    def __init__(self, field_name: str, original_name: str, media_type: str):
        self.field_name = field_name
        self.original_name = original_name
        self.media_type = media_type
        self._chunks: List[bytes] = []
        self._size = 0

    def write(self, data: bytes, max_bytes: int):
        self._size += len(data)
        if self._size > max_bytes:
            raise FileTooLarge(
                f"File too large (max {_format_size(max_bytes)}): '{self.original_name}'")
        self._chunks.append(data)

    def close(self) -> UploadedFile:
        return UploadedFile(
            field_name=self.field_name,
            original_name=self.original_name,
            media_type=self.media_type,
            content=b''.join(self._chunks),
        )


def _terminated(chunks: Iterator[bytes]) -> Iterator[Optional[bytes]]:
    """Chunks followed by None, the decoder's end-of-input marker"""
    for chunk in chunks:
        yield chunk
    yield None


def _drain(chunks: Iterator[bytes]) -> int:
    drained = 0
    for chunk in chunks:
        drained += len(chunk)
    return drained


class StreamIngester:
    """Turns a multipart upload into the accepted image files"""

    def __init__(self, limits: IngestLimits):
        self.limits = limits

    def ingest(self, source: ByteSource, content_type: str) -> List[UploadedFile]:
        """Decode ``source`` in a single pass.

        Returns the accepted files in the order their parts arrived (possibly
        an empty list). Raises an UploadValidationError subclass on the first
        invalid part, oversized part, excess part or malformed body.
        """
        decoder = MultipartDecoder(parse_boundary(content_type))
        chunks = iter(source.chunks())
        files: List[UploadedFile] = []
        pending: Optional[_PendingFile] = None

        try:
            for data in _terminated(chunks):
                decoder.receive_data(data)
                event = decoder.next_event()
                while not isinstance(event, (Epilogue, NeedData)):
                    if isinstance(event, File):
                        pending = self._open_part(event, accepted=len(files))
                    elif isinstance(event, Field):
                        # Plain form fields are not uploads
                        pending = None
                    elif isinstance(event, Data) and pending is not None:
                        pending.write(event.data, self.limits.max_file_bytes)
                        if not event.more_data:
                            files.append(pending.close())
                            pending = None
                    event = decoder.next_event()
        except UploadValidationError as e:
            drained = _drain(chunks)
            logger.warning(
                f"Upload rejected ({type(e).__name__}): {e} - drained {drained} remaining bytes")
            raise
        except ValueError as e:
            _drain(chunks)
            logger.warning(f"Malformed multipart body: {e}")
            raise MalformedMultipart(f"Unexpected end of form or invalid multipart data: {e}") from e

        logger.debug(f"Ingested {len(files)} file(s) totalling {sum(f.size for f in files)} bytes")
        return files

    def _open_part(self, event: File, accepted: int) -> _PendingFile:
        declared = event.headers.get('content-type', DEFAULT_PART_MEDIA_TYPE)
        media_type = parse_options_header(declared)[0].lower()

        if not media_type.startswith(IMAGE_MEDIA_PREFIX):
            raise InvalidMediaType(
                f"Only image files are allowed: part '{event.name}' declared '{media_type}'")

        if accepted >= self.limits.max_files:
            raise TooManyFiles(
                f"Too many files (max {self.limits.max_files} per request)")

        return _PendingFile(
            field_name=event.name,
            original_name=event.filename or event.name,
            media_type=media_type,
        )


def ingest(source: ByteSource, content_type: str, limits: IngestLimits) -> List[UploadedFile]:
    """Module-level shortcut for ``StreamIngester(limits).ingest(...)``"""
    return StreamIngester(limits).ingest(source, content_type)
