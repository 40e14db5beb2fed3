"""
File Module - Content Classification

Decides what a served file is, which in turn decides whether its
chunks are compressed.
"""

from .content_type import (
    classify, sniff, type_from_name, is_compressible,
    OCTET_STREAM, SNIFF_LENGTH,
)

__all__ = [
    'classify',
    'sniff',
    'type_from_name',
    'is_compressible',
    'OCTET_STREAM',
    'SNIFF_LENGTH',
]
