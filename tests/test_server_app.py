import asyncio
import gzip
import os

import pytest
from fastapi.testclient import TestClient

from conftest import make_binary, make_text
from rangefetch.transfer import RangeServer, TransferIOError

RAW = {"Accept-Encoding": "identity"}


@pytest.fixture
def client(server_app):
    with TestClient(server_app) as c:
        yield c


@pytest.fixture
def text_file(serve_root):
    data = make_text(100_000)
    (serve_root / "notes.txt").write_bytes(data)
    return data


@pytest.fixture
def binary_file(serve_root):
    data = make_binary(50_000)
    (serve_root / "blob.bin").write_bytes(data)
    return data


def test_head_returns_size_only(client, text_file):
    response = client.head("/download/notes.txt")
    assert response.status_code == 200
    assert response.headers["content-length"] == str(len(text_file))
    assert response.content == b""
    assert client.get("/stats").json()["probes"] == 1


def test_raw_range(client, text_file):
    response = client.get("/download/notes.txt", headers={"Range": "bytes=10-1009", **RAW})
    assert response.status_code == 206
    assert response.headers["content-range"] == f"bytes 10-1009/{len(text_file)}"
    assert response.headers["content-length"] == "1000"
    assert "content-encoding" not in response.headers
    assert response.content == text_file[10:1010]


def test_compressed_range(client, text_file):
    response = client.get(
        "/download/notes.txt",
        headers={"Range": "bytes=0-65535", "Accept-Encoding": "gzip"},
    )
    assert response.status_code == 206
    assert response.headers["content-encoding"] == "gzip"
    assert response.headers["content-range"] == f"bytes 0-65535/{len(text_file)}"
    assert response.headers["content-type"].startswith("text/plain")
    # httpx decodes gzip transparently
    assert response.content == text_file[:65536]


def test_compressed_body_is_gzip_and_smaller(client, text_file):
    with client.stream(
        "GET", "/download/notes.txt",
        headers={"Range": "bytes=0-65535", "Accept-Encoding": "gzip"},
    ) as response:
        wire = b"".join(response.iter_raw())

    assert len(wire) < 65536
    assert gzip.decompress(wire) == text_file[:65536]


def test_small_range_not_compressed(client, text_file):
    response = client.get(
        "/download/notes.txt",
        headers={"Range": "bytes=0-8190", "Accept-Encoding": "gzip"},
    )
    assert response.status_code == 206
    assert "content-encoding" not in response.headers
    assert response.headers["content-length"] == "8191"
    assert response.content == text_file[:8191]


def test_binary_not_compressed(client, binary_file):
    response = client.get(
        "/download/blob.bin",
        headers={"Range": "bytes=0-49999", "Accept-Encoding": "gzip"},
    )
    assert response.status_code == 206
    assert "content-encoding" not in response.headers
    assert response.content == binary_file


def test_last_byte(client, text_file):
    last = len(text_file) - 1
    response = client.get("/download/notes.txt", headers={"Range": f"bytes={last}-{last}", **RAW})
    assert response.status_code == 206
    assert response.content == text_file[-1:]


def test_whole_file_equals_many_ranges(client, text_file):
    whole = client.get(
        "/download/notes.txt", headers={"Range": f"bytes=0-{len(text_file) - 1}"}
    ).content

    pieces = []
    for start in range(0, len(text_file), 7_000):
        end = min(start + 7_000, len(text_file)) - 1
        pieces.append(
            client.get("/download/notes.txt", headers={"Range": f"bytes={start}-{end}"}).content
        )

    assert whole == b"".join(pieces) == text_file


def test_range_required(client, text_file):
    response = client.get("/download/notes.txt")
    assert response.status_code == 400
    assert "Range header required" in response.json()["detail"]


@pytest.mark.parametrize("header", ["bytes=5-", "bytes=-5", "chars=0-5", "bytes=0-1,3-4"])
def test_invalid_range(client, text_file, header):
    response = client.get("/download/notes.txt", headers={"Range": header})
    assert response.status_code == 400


@pytest.mark.parametrize("header", ["bytes=0-100000", "bytes=50-10", "bytes=100000-100001"])
def test_range_not_satisfiable(client, text_file, header):
    response = client.get("/download/notes.txt", headers={"Range": header})
    assert response.status_code == 416


def test_missing_file(client):
    assert client.head("/download/missing.txt").status_code == 500

    response = client.get("/download/missing.txt", headers={"Range": "bytes=0-1"})
    assert response.status_code == 500
    assert "no such file" in response.json()["detail"]


def test_parent_segment_rejected(client, text_file):
    response = client.get("/download/..notes.txt", headers={"Range": "bytes=0-1"})
    assert response.status_code == 400
    assert client.head("/download/..notes.txt").status_code == 400


def test_stats_count_chunks(client, text_file):
    client.get("/download/notes.txt", headers={"Range": "bytes=0-65535", "Accept-Encoding": "gzip"})
    client.get("/download/notes.txt", headers={"Range": "bytes=0-99", **RAW})

    stats = client.get("/stats").json()
    assert stats["chunks_served"] == 2
    assert stats["compressed_chunks"] == 1
    assert stats["bytes_served"] == 65536 + 100


# === Streaming a chunk ===

class RecordingHandle:
    """Wraps an open aiofiles handle and records reads and close."""

    def __init__(self, handle):
        self.handle = handle
        self.reads = []
        self.closed = False

    async def read(self, size):
        self.reads.append(size)
        return await self.handle.read(size)

    async def close(self):
        self.closed = True
        await self.handle.close()


async def open_recorded_chunk(range_server, file_name, range_header):
    chunk = await range_server.open_chunk(file_name, range_header, "identity")
    chunk.handle = RecordingHandle(chunk.handle)
    return chunk


async def drain(chunk):
    return b"".join([piece async for piece in chunk.body()])


def test_reads_never_exceed_stream_buffer(serve_root, text_file):
    range_server = RangeServer(serve_root, stream_buffer_size=32 * 1024)

    async def run():
        chunk = await open_recorded_chunk(range_server, "notes.txt", "bytes=0-99999")
        return chunk, await drain(chunk)

    chunk, body = asyncio.run(run())

    assert body == text_file
    assert max(chunk.handle.reads) <= 32 * 1024
    assert len(chunk.handle.reads) == 4
    assert chunk.handle.closed


def test_file_shrinking_mid_stream_aborts(serve_root, text_file):
    range_server = RangeServer(serve_root)
    chunks = []

    async def run():
        chunk = await open_recorded_chunk(range_server, "notes.txt", "bytes=0-99999")
        chunks.append(chunk)
        os.truncate(serve_root / "notes.txt", 40_000)
        await drain(chunk)

    with pytest.raises(TransferIOError, match="early"):
        asyncio.run(run())

    assert chunks[0].handle.closed
    stats = range_server.get_stats()
    assert stats["aborted_streams"] == 1
    assert stats["chunks_served"] == 0
