import asyncio
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path

import pytest
import uvicorn

from rangefetch.api import create_server_app
from rangefetch.config import Config


TEXT_LINE = b"The quick brown fox jumps over the lazy dog, then naps in the sun.\n"


def make_text(size: int) -> bytes:
    """Compressible text of exactly ``size`` bytes."""
    lines = []
    n = 0
    i = 0
    while n < size:
        line = b"%06d " % i + TEXT_LINE
        lines.append(line)
        n += len(line)
        i += 1
    return b"".join(lines)[:size]


def make_binary(size: int) -> bytes:
    """Deterministic incompressible-looking bytes."""
    out = bytearray()
    state = 0x12345678
    while len(out) < size:
        state = (state * 1103515245 + 12345) & 0xFFFFFFFF
        out += state.to_bytes(4, 'little')
    return bytes(out[:size])


class _ThreadedServer(uvicorn.Server):
    """uvicorn server that can run outside the main thread."""

    def install_signal_handlers(self):
        pass


@contextmanager
def run_in_thread(app):
    """Serve ``app`` on a free localhost port; yields the base URL."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]

    config = uvicorn.Config(app, log_level="warning", lifespan="on")
    server = _ThreadedServer(config)
    thread = threading.Thread(target=server.run, kwargs={"sockets": [sock]}, daemon=True)
    thread.start()

    deadline = time.time() + 10
    while not server.started:
        if time.time() > deadline or not thread.is_alive():
            raise RuntimeError("uvicorn did not start")
        time.sleep(0.01)

    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        thread.join(timeout=10)
        sock.close()


@contextmanager
def raw_http_server(responder):
    """
    Minimal HTTP/1.1 server on a background event loop.

    ``responder(method, path, headers)`` returns the complete raw response
    as bytes, or a list of byte strings written in order; the connection
    is closed after each response.
    """
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    state = {}

    async def handle(reader, writer):
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = await reader.read(4096)
            if not chunk:
                break
            data += chunk
        head = data.split(b"\r\n\r\n", 1)[0].decode("latin-1")
        lines = head.split("\r\n")
        method, path, _ = lines[0].split(" ", 2)
        headers = {}
        for line in lines[1:]:
            key, _, value = line.partition(":")
            headers[key.strip().lower()] = value.strip()

        response = responder(method, path, headers)
        parts = response if isinstance(response, list) else [response]
        for part in parts:
            writer.write(part)
            await writer.drain()
        writer.close()

    async def start():
        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        state['server'] = server
        state['port'] = server.sockets[0].getsockname()[1]
        ready.set()

    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    asyncio.run_coroutine_threadsafe(start(), loop)
    ready.wait(timeout=10)

    try:
        yield f"http://127.0.0.1:{state['port']}"
    finally:
        async def stop():
            state['server'].close()
            await state['server'].wait_closed()
        asyncio.run_coroutine_threadsafe(stop(), loop).result(timeout=10)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=10)
        loop.close()


@pytest.fixture
def serve_root(tmp_path) -> Path:
    root = tmp_path / "files"
    root.mkdir()
    return root


@pytest.fixture
def download_dir(tmp_path) -> Path:
    out = tmp_path / "downloads"
    out.mkdir()
    return out


@pytest.fixture
def server_config(serve_root) -> Config:
    return Config(serve_root=serve_root)


@pytest.fixture
def server_app(server_config):
    return create_server_app(server_config)


@pytest.fixture
def live_server(server_app):
    """(base_url, RangeServer) for a Range Server running in a thread."""
    with run_in_thread(server_app) as url:
        yield url, server_app.state.range_server
