"""
Range Transfer Protocol

Design Decision: Transfer Protocol
===================================

Options Considered:
1. Custom TCP framing (length prefix + JSON header)
   - Full control, but every client needs our codec

2. Plain HTTP with Range / Content-Range
   - Standard partial-content semantics
   - Works through proxies, debuggable with curl
   - Compression negotiated with Accept-Encoding

3. Whole-file download with HTTP resume on failure
   - Simple, but one request holds the connection for the whole file

Decision: HTTP ranges, one explicit range per request
- HEAD returns the total size (Content-Length), nothing else
- GET must carry ``Range: bytes=<start>-<end>``; no Range is an error,
  unlike generic servers that fall back to the whole file
- Ranges are inclusive and absolute: 0 <= start <= end < total
- Body is either the raw slice (with Content-Length) or the slice
  gzip-compressed (no Content-Length, the compressed size is unknown)

Wire Format:
```
HEAD /download/report.txt              -> 200  Content-Length: 1500000

GET /download/report.txt
Range: bytes=0-524287
Accept-Encoding: gzip                  -> 206  Content-Range: bytes 0-524287/1500000
                                               Content-Encoding: gzip
```

Resume State:
The only checkpoint is the size of the partially written local file.
Nothing else is persisted by either side.
"""

import re
from dataclasses import dataclass
from typing import Iterator, Optional

from ..file.content_type import is_compressible
from .errors import InvalidIdentifier, InvalidRange, RangeNotSatisfiable, RangeRequired

# Fetcher chunk size: 512KB
DEFAULT_CHUNK_SIZE = 512 * 1024

# Fetcher write buffer: 64KB
WRITE_BUFFER_SIZE = 64 * 1024

# Server read/stream window: 32KB
STREAM_BUFFER_SIZE = 32 * 1024

# Chunks below 8KB are never compressed
MIN_COMPRESSION_SIZE = 8 * 1024

GZIP = "gzip"

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d+)$")
_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+)$")


@dataclass(frozen=True)
class ByteRange:
    """An inclusive [start, end] span of absolute file offsets."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def validate(self, total_size: int) -> "ByteRange":
        """Raise RangeNotSatisfiable unless 0 <= start <= end < total_size."""
        if self.start < 0 or self.end < self.start or self.end >= total_size:
            raise RangeNotSatisfiable(
                f"Range {self.start}-{self.end} not satisfiable for size {total_size}"
            )
        return self

    def to_header(self) -> str:
        """Value for a ``Range`` request header."""
        return f"bytes={self.start}-{self.end}"

    def content_range(self, total_size: int) -> str:
        """Value for a ``Content-Range`` response header."""
        return f"bytes {self.start}-{self.end}/{total_size}"

    def __str__(self) -> str:
        return f"[{self.start}, {self.end}]"


def validate_identifier(file_name: str) -> str:
    """
    Reject names that could escape the root directory.

    Any occurrence of ``..`` is refused, as is an empty name or one
    containing a path separator or NUL byte.
    """
    if not file_name or ".." in file_name:
        raise InvalidIdentifier(f"Invalid file name: {file_name!r}")
    if "/" in file_name or "\\" in file_name or "\x00" in file_name:
        raise InvalidIdentifier(f"Invalid file name: {file_name!r}")
    return file_name


def parse_range_header(header: Optional[str]) -> ByteRange:
    """
    Parse a ``bytes=<start>-<end>`` header.

    Open-ended (``bytes=10-``), suffix (``bytes=-10``) and multi-range
    forms are not part of the protocol and are rejected.
    """
    if header is None or not header.strip():
        raise RangeRequired("Range header required")

    match = _RANGE_RE.match(header.strip())
    if match is None:
        raise InvalidRange(f"Invalid range format: {header!r}")

    return ByteRange(int(match.group(1)), int(match.group(2)))


def parse_content_range(header: str) -> Optional[tuple]:
    """Parse ``bytes <start>-<end>/<total>``; returns None when malformed."""
    match = _CONTENT_RANGE_RE.match(header.strip())
    if match is None:
        return None
    start, end, total = (int(g) for g in match.groups())
    return ByteRange(start, end), total


def accepts_gzip(accept_encoding: Optional[str]) -> bool:
    """
    Whether an Accept-Encoding header allows a gzip response.

    An explicit ``gzip;q=0`` refusal wins over a ``*`` wildcard.
    """
    if not accept_encoding:
        return False

    allowed = set()
    refused = set()
    for item in accept_encoding.split(","):
        coding, _, params = item.strip().partition(";")
        coding = coding.strip().lower()
        if coding not in (GZIP, "x-gzip", "*"):
            continue

        quality = 1.0
        for param in params.split(";"):
            name, _, value = param.strip().partition("=")
            if name.strip().lower() == "q":
                try:
                    quality = float(value.strip())
                except ValueError:
                    quality = 0.0

        (refused if quality == 0 else allowed).add(coding)

    if allowed & {GZIP, "x-gzip"}:
        return True
    return "*" in allowed and not refused & {GZIP, "x-gzip"}


def should_compress(accepts: bool, content_type: str, chunk_size: int,
                    min_size: int = MIN_COMPRESSION_SIZE) -> bool:
    """
    Decide whether one chunk is worth compressing.

    Pure function of client capability, content classification and
    chunk size. Evaluated per chunk, never cached.
    """
    return accepts and is_compressible(content_type) and chunk_size >= min_size


def iter_windows(resume_point: int, total_size: int,
                 chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[ByteRange]:
    """
    Yield the ranges still missing between resume_point and total_size.

    Example with total_size=1_500_000 and the default chunk size:
        [0, 524287], [524288, 1048575], [1048576, 1499999]
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    cursor = resume_point
    while cursor < total_size:
        end = min(cursor + chunk_size, total_size) - 1
        yield ByteRange(cursor, end)
        cursor += chunk_size
