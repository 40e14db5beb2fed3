"""
Range Server

Serves byte-range slices of files under a fixed root directory.

Request lifecycle:
    Received -> Validated -> TypeClassified -> DecisionMade
             -> Streaming -> Completed | AbortedMidStream

Every request opens its own file handle, so concurrent reads of the
same file never share a position. Nothing survives a request except
the statistics counters.
"""

import logging
import os
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiofiles
import aiofiles.os

from ..file.content_type import classify
from .errors import NotFound, TransferIOError
from .protocol import (
    ByteRange, GZIP, MIN_COMPRESSION_SIZE, STREAM_BUFFER_SIZE,
    accepts_gzip, parse_range_header, should_compress, validate_identifier,
)

logger = logging.getLogger(__name__)


@dataclass
class ServerStats:
    """Counters across all requests served."""
    probes: int = 0
    chunks_served: int = 0
    compressed_chunks: int = 0
    bytes_served: int = 0
    aborted_streams: int = 0

    def to_dict(self) -> dict:
        return {
            'probes': self.probes,
            'chunks_served': self.chunks_served,
            'compressed_chunks': self.compressed_chunks,
            'bytes_served': self.bytes_served,
            'aborted_streams': self.aborted_streams,
        }


@dataclass
class ChunkStream:
    """
    A validated range request, ready to be streamed.

    Owns the open file handle; the handle is closed when ``body()``
    finishes, fails or is abandoned by the transport.
    """
    file_name: str
    byte_range: ByteRange
    total_size: int
    content_type: str
    compressed: bool
    handle: object = field(repr=False)
    buffer_size: int = STREAM_BUFFER_SIZE
    stats: Optional[ServerStats] = field(default=None, repr=False)

    @property
    def headers(self) -> Dict[str, str]:
        """Framing headers for a 206 response."""
        headers = {
            'Content-Type': self.content_type,
            'Content-Range': self.byte_range.content_range(self.total_size),
        }
        if self.compressed:
            # Compressed size is unknown up front, so no Content-Length
            headers['Content-Encoding'] = GZIP
        else:
            headers['Content-Length'] = str(self.byte_range.length)
        return headers

    async def body(self) -> AsyncIterator[bytes]:
        """
        Stream the range, reading at most ``buffer_size`` bytes at a time.

        Headers are already committed by the time this runs, so a failure
        here is logged and re-raised to abort the connection.
        """
        remaining = self.byte_range.length
        compressor = None
        if self.compressed:
            # wbits=16+MAX_WBITS selects the gzip container, level 1 is fastest
            compressor = zlib.compressobj(1, zlib.DEFLATED, 16 + zlib.MAX_WBITS)

        try:
            while remaining > 0:
                data = await self.handle.read(min(self.buffer_size, remaining))
                if not data:
                    raise TransferIOError(
                        f"{self.file_name} ended {remaining} bytes early"
                    )
                remaining -= len(data)

                if compressor is not None:
                    out = compressor.compress(data)
                    if remaining == 0:
                        out += compressor.flush()
                        self._record_served()
                    if out:
                        yield out
                else:
                    if remaining == 0:
                        self._record_served()
                    yield data

        except (OSError, TransferIOError) as e:
            if self.stats:
                self.stats.aborted_streams += 1
            logger.error(f"Error streaming {self.file_name} {self.byte_range}: {e}")
            raise
        finally:
            await self.handle.close()

    def _record_served(self):
        # Counted once the whole range is read, before the last bytes go out
        if self.stats:
            self.stats.chunks_served += 1
            self.stats.bytes_served += self.byte_range.length
            if self.compressed:
                self.stats.compressed_chunks += 1
        logger.debug(f"Served {self.file_name} {self.byte_range} "
                     f"({'gzip' if self.compressed else 'raw'})")


class RangeServer:
    """
    Resolves transfer targets under ``root`` and answers size probes
    and range requests for them.

    Transport-agnostic: the HTTP layer in ``api.rest`` turns the results
    into responses.
    """

    def __init__(self, root: Path,
                 stream_buffer_size: int = STREAM_BUFFER_SIZE,
                 min_compression_size: int = MIN_COMPRESSION_SIZE):
        self.root = Path(root).resolve()
        self.stream_buffer_size = stream_buffer_size
        self.min_compression_size = min_compression_size
        self.stats = ServerStats()

    def resolve(self, file_name: str) -> Path:
        """Absolute path of a transfer target under the serving root."""
        validate_identifier(file_name)
        return self.root / file_name

    async def _open(self, file_name: str):
        path = self.resolve(file_name)
        try:
            return await aiofiles.open(path, 'rb')
        except FileNotFoundError:
            raise NotFound(f"open {path}: no such file")
        except IsADirectoryError:
            raise NotFound(f"open {path}: is a directory")
        except OSError as e:
            raise TransferIOError(f"open {path}: {e}")

    async def _stat_size(self, handle, file_name: str) -> int:
        try:
            stat = await aiofiles.os.stat(handle.fileno())
        except OSError as e:
            raise TransferIOError(f"stat {file_name}: {e}")
        return stat.st_size

    async def probe(self, file_name: str) -> int:
        """
        Total size of a transfer target.

        Opens the file to prove it is readable but never reads content.
        """
        handle = await self._open(file_name)
        try:
            size = await self._stat_size(handle, file_name)
        finally:
            await handle.close()

        self.stats.probes += 1
        logger.debug(f"Probe {file_name}: {size:,} bytes")
        return size

    async def open_chunk(self, file_name: str, range_header: Optional[str],
                         accept_encoding: Optional[str] = None) -> ChunkStream:
        """
        Validate a range request and prepare its stream.

        All validation happens here, before any byte is sent, so every
        failure can still become a clean error response.
        """
        handle = await self._open(file_name)
        try:
            total_size = await self._stat_size(handle, file_name)
            byte_range = parse_range_header(range_header).validate(total_size)

            content_type = await classify(file_name, handle)
            compressed = should_compress(
                accepts_gzip(accept_encoding),
                content_type,
                byte_range.length,
                self.min_compression_size,
            )

            await handle.seek(byte_range.start, os.SEEK_SET)
        except OSError as e:
            await handle.close()
            raise TransferIOError(f"read {file_name}: {e}")
        except BaseException:
            await handle.close()
            raise

        return ChunkStream(
            file_name=file_name,
            byte_range=byte_range,
            total_size=total_size,
            content_type=content_type,
            compressed=compressed,
            handle=handle,
            buffer_size=self.stream_buffer_size,
            stats=self.stats,
        )

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            **self.stats.to_dict(),
            'root': str(self.root),
        }
