"""
rangefetch - Resumable single-file transfer over HTTP byte ranges

A Range Server serves explicit byte ranges of files (gzip-compressed when
worthwhile); a Resumable Fetcher pulls them sequentially into a local file
whose size is the only resume checkpoint.
"""

__version__ = "1.0.0"
