"""
Transfer Module - Range Server and Resumable Fetcher

Handles HTTP range transfers of single files between two processes.
"""

from .errors import (
    TransferError, InvalidIdentifier, NotFound, TransferIOError,
    RangeRequired, InvalidRange, RangeNotSatisfiable,
    UpstreamError, ProtocolViolation, TransportError,
)
from .protocol import (
    ByteRange, DEFAULT_CHUNK_SIZE, WRITE_BUFFER_SIZE, STREAM_BUFFER_SIZE,
    MIN_COMPRESSION_SIZE, accepts_gzip, iter_windows, parse_range_header,
    should_compress, validate_identifier,
)
from .server import RangeServer, ChunkStream
from .fetcher import ResumableFetcher, FetchProgress, FetchResult, ChunkReceipt

__all__ = [
    'TransferError',
    'InvalidIdentifier',
    'NotFound',
    'TransferIOError',
    'RangeRequired',
    'InvalidRange',
    'RangeNotSatisfiable',
    'UpstreamError',
    'ProtocolViolation',
    'TransportError',
    'ByteRange',
    'DEFAULT_CHUNK_SIZE',
    'WRITE_BUFFER_SIZE',
    'STREAM_BUFFER_SIZE',
    'MIN_COMPRESSION_SIZE',
    'accepts_gzip',
    'iter_windows',
    'parse_range_header',
    'should_compress',
    'validate_identifier',
    'RangeServer',
    'ChunkStream',
    'ResumableFetcher',
    'FetchProgress',
    'FetchResult',
    'ChunkReceipt',
]
