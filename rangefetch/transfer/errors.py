"""
Transfer Errors

Every failure the range protocol can produce, on either side.

Each exception carries the HTTP status it maps to so the API layer can
translate it without a lookup table of its own.
"""

from typing import Optional


class TransferError(Exception):
    """Base class for all range transfer failures."""
    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidIdentifier(TransferError):
    """File name tries to escape the served/download root."""
    status_code = 400


class NotFound(TransferError):
    """Transfer target does not exist."""
    # Missing files are reported as a server error, not 404
    status_code = 500


class TransferIOError(TransferError):
    """Local disk failure (open, stat, seek, read or write)."""
    status_code = 500


class RangeRequired(TransferError):
    """Content request without a Range header."""
    status_code = 400


class InvalidRange(TransferError):
    """Range header is not ``bytes=<start>-<end>``."""
    status_code = 400


class RangeNotSatisfiable(TransferError):
    """Range lies outside ``[0, total_size)``."""
    status_code = 416


class UpstreamError(TransferError):
    """
    The remote side answered with a non-success status.

    The remote status and body are kept verbatim so they can be
    propagated to whoever asked for the transfer.
    """

    def __init__(self, status: int, body: str = "", reason: Optional[str] = None):
        self.status = status
        self.body = body
        self.reason = reason
        detail = body.strip() or reason or ""
        super().__init__(f"Upstream returned {status}: {detail}" if detail
                         else f"Upstream returned {status}")

    @property
    def status_code(self) -> int:
        return self.status


class ProtocolViolation(TransferError):
    """Server returned something other than the exact range requested."""
    status_code = 502


class TransportError(TransferError):
    """Connection failure, timeout or truncated payload."""
    status_code = 502
