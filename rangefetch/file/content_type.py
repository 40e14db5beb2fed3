"""
Content Type Classification

Lookup order:
1. Standard extension table (``mimetypes``)
2. Extra extensions the standard table misses
3. Sniffing the first 512 bytes of the file
4. ``application/octet-stream``

The result drives the compression decision: only text-like types
are worth gzipping.
"""

import mimetypes
from pathlib import PurePath
from typing import Optional

# Bytes inspected when sniffing
SNIFF_LENGTH = 512

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"

EXTRA_TYPES = {
    '.md': 'text/markdown',
    '.jsx': 'application/javascript',
    '.tsx': 'application/javascript',
    '.yaml': 'application/yaml',
    '.yml': 'application/yaml',
}

COMPRESSIBLE_TYPES = (
    "text/",
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-javascript",
)

# (signature, mime type), checked in order against the head of the file
_SIGNATURES = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"BM", "image/bmp"),
    (b"OggS\x00", "application/ogg"),
    (b"\x00asm", "application/wasm"),
)

_HTML_PREFIXES = (
    b"<!doctype html", b"<html", b"<head", b"<body", b"<script",
    b"<title", b"<div", b"<table", b"<p", b"<!--",
)

# Control bytes that never appear in text (tab, LF, FF, CR and ESC excluded)
_BINARY_BYTES = frozenset(
    list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20))
)


def type_from_name(file_name: str) -> Optional[str]:
    """Content type from the file extension, or None when unknown."""
    ext = PurePath(file_name).suffix.lower()
    if not ext:
        return None

    mime_type, _ = mimetypes.guess_type(f"file{ext}", strict=False)
    if mime_type:
        # Strip parameters such as "; charset=..."
        return mime_type.split(";", 1)[0].strip()

    return EXTRA_TYPES.get(ext)


def sniff(head: bytes) -> str:
    """
    Content type from the leading bytes of a file.

    A cut-down version of the WHATWG sniffing algorithm: well-known
    binary signatures, then markup, then a text/binary check.
    """
    for signature, mime_type in _SIGNATURES:
        if head.startswith(signature):
            return mime_type

    if head.startswith(b"\xef\xbb\xbf"):
        return TEXT_PLAIN

    stripped = head.lstrip(b" \t\r\n\x0c").lower()
    if stripped.startswith(b"<?xml"):
        return "text/xml; charset=utf-8"
    for prefix in _HTML_PREFIXES:
        if stripped.startswith(prefix):
            return "text/html; charset=utf-8"
    if stripped.startswith((b"{", b"[")) and _looks_like_text(head):
        return "application/json"

    if _looks_like_text(head):
        return TEXT_PLAIN

    return OCTET_STREAM


def _looks_like_text(data: bytes) -> bool:
    return not any(b in _BINARY_BYTES for b in data)


async def classify(file_name: str, handle) -> str:
    """
    Classify an open file.

    Sniffing reads from the current position of ``handle`` (an aiofiles
    handle) and restores it afterwards.
    """
    mime_type = type_from_name(file_name)
    if mime_type:
        return mime_type

    if handle is not None:
        position = await handle.tell()
        try:
            head = await handle.read(SNIFF_LENGTH)
        finally:
            await handle.seek(position)
        return sniff(head)

    return OCTET_STREAM


def is_compressible(content_type: str) -> bool:
    """Whether a content type is text-like enough to gzip."""
    return any(t in content_type for t in COMPRESSIBLE_TYPES)
