"""
Resumable Fetcher

Design Decision: Download Strategy
===================================

Options Considered:
1. Sequential ranges from one server, resume from local file size
   - One integer of state, and it lives on disk
   - Crash-safe: a restarted fetch re-measures what it already has

2. Parallel ranges into a preallocated file
   - Faster on high-latency links
   - Needs a ledger of completed ranges to resume without gaps

3. Sidecar metadata file with per-chunk status
   - Flexible, but two sources of truth that can disagree

Decision: Sequential ranges
- Chunk N+1 is requested only after chunk N is written
- The size of the local file IS the resume point
- Every chunk is checked against the requested window; the server is
  never trusted to return "roughly" what was asked

Fetch Flow:
1. Validate the name, open/create the local file (no truncation)
2. Stat it -> L
3. HEAD the server -> T
4. L >= T: done, no range requests
5. Seek to L, GET [cursor, min(cursor + chunk, T) - 1] until cursor >= T
6. Flush the write buffer, whatever happened
"""

import asyncio
import logging
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import aiofiles
import aiofiles.os
import aiohttp

from .errors import (
    ProtocolViolation, TransferError, TransferIOError, TransportError, UpstreamError,
)
from .protocol import (
    ByteRange, DEFAULT_CHUNK_SIZE, GZIP, STREAM_BUFFER_SIZE, WRITE_BUFFER_SIZE,
    iter_windows, parse_content_range, validate_identifier,
)

logger = logging.getLogger(__name__)


@dataclass
class ChunkReceipt:
    """One range that was requested and written."""
    byte_range: ByteRange
    compressed: bool
    bytes_written: int


@dataclass
class FetchProgress:
    """Track progress of one fetch attempt."""
    file_name: str
    total_size: int = 0
    resume_point: int = 0
    bytes_written: int = 0
    chunks_fetched: int = 0
    phase: str = 'probing'  # 'probing', 'resuming', 'fetching', 'complete', 'already_complete', 'aborted'
    current_range: Optional[ByteRange] = None
    start_time: float = field(default_factory=time.time)

    @property
    def local_size(self) -> int:
        return self.resume_point + self.bytes_written

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_size == 0:
            return 1.0
        return min(self.local_size / self.total_size, 1.0)

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_written / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'file_name': self.file_name,
            'phase': self.phase,
            'total_size': self.total_size,
            'resume_point': self.resume_point,
            'bytes_written': self.bytes_written,
            'local_size': self.local_size,
            'chunks_fetched': self.chunks_fetched,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'current_range': (
                [self.current_range.start, self.current_range.end]
                if self.current_range else None
            ),
        }


@dataclass
class FetchResult:
    """Outcome of a successful fetch attempt."""
    path: Path
    total_size: int
    resume_point: int
    bytes_written: int = 0
    chunks: List[ChunkReceipt] = field(default_factory=list)
    already_complete: bool = False
    elapsed_seconds: float = 0.0

    @property
    def message(self) -> str:
        return "File already downloaded" if self.already_complete else "Download complete"


# Progress callback type
ProgressCallback = Callable[[FetchProgress], None]


class ResumableFetcher:
    """
    Downloads one named file from a Range Server into ``download_dir``.

    Use as an async context manager, or call ``start()``/``close()``.
    A session passed in by the caller is used as-is and not closed.
    """

    def __init__(self, server_url: str, download_dir: Path,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 write_buffer_size: int = WRITE_BUFFER_SIZE,
                 accept_gzip: bool = True,
                 connect_timeout: float = 10.0,
                 read_timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.server_url = server_url.rstrip('/')
        self.download_dir = Path(download_dir)
        self.chunk_size = chunk_size
        self.write_buffer_size = write_buffer_size
        self.accept_gzip = accept_gzip
        self.timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=read_timeout
        )

        self.session = session
        self._owns_session = session is None

        # Statistics
        self.files_fetched = 0
        self.total_bytes = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> 'ResumableFetcher':
        """Build a fetcher from a ``Config``."""
        return cls(
            server_url=config.server_url,
            download_dir=config.download_dir,
            chunk_size=config.chunk_size,
            write_buffer_size=config.write_buffer_size,
            accept_gzip=config.accept_gzip,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            **kwargs,
        )

    async def start(self):
        if self.session is None:
            # Decompression is done by hand so byte counts can be checked
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                auto_decompress=False,
                headers={'User-Agent': 'rangefetch/1.0'},
            )
            self._owns_session = True

    async def close(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> 'ResumableFetcher':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def url_for(self, file_name: str) -> str:
        return f"{self.server_url}/download/{file_name}"

    def local_path(self, file_name: str) -> Path:
        return self.download_dir / validate_identifier(file_name)

    # === Protocol operations ===

    async def probe(self, file_name: str) -> int:
        """HEAD the server for the total size of ``file_name``."""
        validate_identifier(file_name)
        await self.start()

        try:
            async with self.session.head(self.url_for(file_name)) as response:
                if response.status != 200:
                    body = await response.text(errors='replace')
                    raise UpstreamError(response.status, body, response.reason)

                if response.content_length is None:
                    raise ProtocolViolation("Size probe response has no Content-Length")
                return response.content_length

        except aiohttp.ClientError as e:
            raise TransportError(f"HEAD {file_name}: {e}")
        except asyncio.TimeoutError:
            raise TransportError(f"HEAD {file_name}: timed out")

    async def fetch_range(self, file_name: str, byte_range: ByteRange, out,
                          total_size: Optional[int] = None) -> ChunkReceipt:
        """
        GET one range and write it to ``out`` at its current position.

        Raises ProtocolViolation when the server answers with a different
        range, a different total size (when ``total_size`` is given) or a
        different number of bytes than requested. Bytes that
        arrived before a failure stay written.
        """
        headers = {'Range': byte_range.to_header()}
        headers['Accept-Encoding'] = GZIP if self.accept_gzip else 'identity'

        written = 0
        try:
            async with self.session.get(self.url_for(file_name), headers=headers) as response:
                if response.status >= 400:
                    body = await response.text(errors='replace')
                    raise UpstreamError(response.status, body, response.reason)
                if response.status != 206:
                    raise ProtocolViolation(
                        f"Expected 206 for {byte_range}, got {response.status}"
                    )

                self._check_content_range(response, byte_range, total_size)

                encoding = response.headers.get('Content-Encoding', '').strip().lower()
                if encoding not in ('', 'identity', GZIP):
                    raise ProtocolViolation(f"Unsupported Content-Encoding {encoding!r}")
                compressed = encoding == GZIP
                decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS) if compressed else None

                async for piece in response.content.iter_chunked(STREAM_BUFFER_SIZE):
                    if decompressor is not None:
                        # Bounded so a small body cannot inflate past the range
                        piece = decompressor.decompress(piece, byte_range.length - written + 1)
                    if written + len(piece) > byte_range.length:
                        raise ProtocolViolation(
                            f"Server sent more than {byte_range.length} bytes for {byte_range}"
                        )
                    await self._write(out, piece)
                    written += len(piece)

                if decompressor is not None:
                    if not decompressor.eof:
                        raise TransportError(f"Truncated gzip stream for {byte_range}")
                    tail = decompressor.flush()
                    if written + len(tail) > byte_range.length:
                        raise ProtocolViolation(
                            f"Server sent more than {byte_range.length} bytes for {byte_range}"
                        )
                    await self._write(out, tail)
                    written += len(tail)

        except aiohttp.ClientPayloadError as e:
            raise TransportError(f"Truncated response for {byte_range} after {written} bytes: {e}")
        except aiohttp.ClientError as e:
            raise TransportError(f"GET {byte_range}: {e}")
        except asyncio.TimeoutError:
            raise TransportError(f"GET {byte_range}: timed out after {written} bytes")
        except zlib.error as e:
            raise ProtocolViolation(f"Corrupt gzip body for {byte_range}: {e}")

        if written != byte_range.length:
            raise ProtocolViolation(
                f"Expected {byte_range.length} bytes for {byte_range}, got {written}"
            )

        logger.debug(f"Fetched {file_name} {byte_range} ({'gzip' if compressed else 'raw'})")
        return ChunkReceipt(byte_range=byte_range, compressed=compressed, bytes_written=written)

    def _check_content_range(self, response: aiohttp.ClientResponse, byte_range: ByteRange,
                             total_size: Optional[int] = None):
        header = response.headers.get('Content-Range')
        if header is None:
            raise ProtocolViolation(f"No Content-Range in 206 response for {byte_range}")

        parsed = parse_content_range(header)
        if parsed is None or parsed[0] != byte_range:
            raise ProtocolViolation(
                f"Requested {byte_range.to_header()}, server answered {header!r}"
            )
        if total_size is not None and parsed[1] != total_size:
            raise ProtocolViolation(
                f"Remote size changed from {total_size} to {parsed[1]} during transfer"
            )

    async def _flush(self, out, path):
        try:
            await out.flush()
        except OSError as e:
            raise TransferIOError(f"flush {path}: {e}")

    async def _close_local(self, out, path, flush: bool, raise_errors: bool):
        try:
            try:
                if flush:
                    await out.flush()
            finally:
                await out.close()
        except OSError as e:
            if raise_errors:
                raise TransferIOError(f"flush {path}: {e}")
            # Already failing; keep the original error
            logger.error(f"Closing {path} failed: {e}")

    async def _write(self, out, data: bytes):
        if not data:
            return
        try:
            await out.write(data)
        except OSError as e:
            raise TransferIOError(f"write: {e}")

    # === Main entry point ===

    async def fetch(self, file_name: str,
                    progress_callback: ProgressCallback = None) -> FetchResult:
        """
        Run one fetch attempt for ``file_name``.

        Resumes from the current size of the local file. Any failure
        aborts the attempt; whatever was written stays on disk and is
        where the next attempt resumes.
        """
        path = self.local_path(file_name)
        await self.start()

        progress = FetchProgress(file_name=file_name)
        flushed = completed = False

        try:
            # Create without truncating, then reopen for positioned writes
            async with aiofiles.open(path, 'ab'):
                pass
            out = await aiofiles.open(path, 'r+b', buffering=self.write_buffer_size)
        except OSError as e:
            raise TransferIOError(f"open {path}: {e}")

        try:
            try:
                local_size = (await aiofiles.os.stat(out.fileno())).st_size
            except OSError as e:
                raise TransferIOError(f"stat {path}: {e}")

            total_size = await self.probe(file_name)
            progress.total_size = total_size
            progress.resume_point = local_size

            if local_size >= total_size:
                logger.info(f"{file_name} already downloaded ({local_size:,} bytes)")
                progress.phase = 'already_complete'
                if progress_callback:
                    progress_callback(progress)
                completed = True
                return FetchResult(
                    path=path,
                    total_size=total_size,
                    resume_point=local_size,
                    already_complete=True,
                    elapsed_seconds=progress.elapsed_seconds,
                )

            if local_size:
                logger.info(f"Resuming {file_name} at {local_size:,}/{total_size:,} bytes")
            else:
                logger.info(f"Fetching {file_name} ({total_size:,} bytes)")
            progress.phase = 'resuming'
            if progress_callback:
                progress_callback(progress)

            try:
                await out.seek(local_size)
            except OSError as e:
                raise TransferIOError(f"seek {path}: {e}")

            result = FetchResult(path=path, total_size=total_size, resume_point=local_size)
            progress.phase = 'fetching'

            for byte_range in iter_windows(local_size, total_size, self.chunk_size):
                progress.current_range = byte_range
                receipt = await self.fetch_range(file_name, byte_range, out, total_size)

                result.chunks.append(receipt)
                result.bytes_written += receipt.bytes_written
                progress.bytes_written += receipt.bytes_written
                progress.chunks_fetched += 1
                if progress_callback:
                    progress_callback(progress)

            progress.current_range = None
            await self._flush(out, path)
            flushed = True

            progress.phase = 'complete'
            result.elapsed_seconds = progress.elapsed_seconds
            if progress_callback:
                progress_callback(progress)

            self.files_fetched += 1
            self.total_bytes += result.bytes_written
            logger.info(f"Took {result.elapsed_seconds:.2f}s to download "
                        f"{result.bytes_written:,} bytes of {file_name}")
            completed = True
            return result

        except (TransferError, asyncio.CancelledError) as e:
            progress.phase = 'aborted'
            if progress_callback:
                progress_callback(progress)
            logger.warning(f"Fetch of {file_name} aborted at "
                           f"{progress.local_size:,} bytes: {e!r}")
            raise

        finally:
            # Flush exactly once, on every path out of the loop
            await self._close_local(out, path, flush=not flushed, raise_errors=completed)

    async def fetch_with_retries(self, file_name: str, attempts: int = 0,
                                 delay: float = 1.0,
                                 progress_callback: ProgressCallback = None) -> FetchResult:
        """
        ``fetch`` plus up to ``attempts`` further attempts.

        Each retry is a fresh attempt that re-measures the local file.
        Only transport failures and 5xx upstream errors are retried;
        protocol violations are always fatal.
        """
        attempt = 0
        while True:
            try:
                return await self.fetch(file_name, progress_callback)
            except (TransportError, UpstreamError) as e:
                if attempt >= attempts or not _is_retryable(e):
                    raise
                attempt += 1
                logger.warning(f"Attempt {attempt} for {file_name} failed ({e}); "
                               f"retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

    def get_stats(self) -> dict:
        """Get fetcher statistics."""
        return {
            'files_fetched': self.files_fetched,
            'total_bytes': self.total_bytes,
            'server_url': self.server_url,
        }


def _is_retryable(error: TransferError) -> bool:
    if isinstance(error, UpstreamError):
        return error.status >= 500
    return True
