"""
HTTP Services

Two FastAPI applications, one per process:

Range Server app (``create_server_app``):
    HEAD /download/{file_name}   -> 200, Content-Length = total size
    GET  /download/{file_name}   -> 206, one explicit byte range
    GET  /stats                  -> request counters

Fetcher app (``create_fetcher_app``):
    GET /download/{file_name}          -> runs one fetch, plain-text outcome
    GET /download/{file_name}/stream   -> same, with SSE progress events

Both are served by uvicorn; SIGINT/SIGTERM stop accepting connections and
in-flight streams get ``shutdown_timeout`` seconds to finish.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel

from ..config import Config
from ..transfer import (
    RangeServer, ResumableFetcher, TransferError, UpstreamError, validate_identifier,
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# === Pydantic Models ===

class ServerStats(BaseModel):
    """Range server counters."""
    probes: int
    chunks_served: int
    compressed_chunks: int
    bytes_served: int
    aborted_streams: int
    root: str


class FetcherStats(BaseModel):
    """Fetcher counters."""
    files_fetched: int
    total_bytes: int
    server_url: str


# === Range Server ===

def create_server_app(config: Optional[Config] = None,
                      range_server: Optional[RangeServer] = None) -> FastAPI:
    """
    Create the Range Server application.

    Args:
        config: Server configuration (defaults if not provided)
        range_server: Use this RangeServer instead of building one from config
    """
    config = config or Config()
    server = range_server or RangeServer(
        root=config.serve_root,
        stream_buffer_size=config.stream_buffer_size,
        min_compression_size=config.min_compression_size,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info(f"Range server serving {server.root}")
        yield
        logger.info(f"Range server stopping. Stats: {server.get_stats()}")

    app = FastAPI(
        title="Range Server",
        description="Serves byte ranges of files, gzip-compressed when worthwhile",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.range_server = server

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "Range Server",
            "version": VERSION,
            "root": str(server.root),
        }

    @app.get("/stats", response_model=ServerStats, tags=["General"])
    async def get_stats():
        """Get request counters."""
        return server.get_stats()

    # HEAD and GET share one handler so the size probe and the range
    # requests always resolve the same file the same way
    @app.api_route("/download/{file_name}", methods=["GET", "HEAD"], tags=["Transfer"])
    async def download(file_name: str, request: Request):
        """Size probe (HEAD) or range fetch (GET)."""
        try:
            if request.method == "HEAD":
                size = await server.probe(file_name)
                return Response(status_code=200, headers={"Content-Length": str(size)})

            chunk = await server.open_chunk(
                file_name,
                request.headers.get("range"),
                request.headers.get("accept-encoding"),
            )
        except TransferError as e:
            logger.info(f"{request.method} {file_name} rejected: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

        return StreamingResponse(
            chunk.body(),
            status_code=206,
            headers=chunk.headers,
        )

    return app


# === Fetcher ===

def create_fetcher_app(config: Optional[Config] = None,
                       fetcher: Optional[ResumableFetcher] = None) -> FastAPI:
    """
    Create the Fetcher application.

    Each request runs one fetch attempt (plus configured retries) against
    ``config.server_url``. Requests for the same file are serialized.
    """
    config = config or Config()
    fetcher = fetcher or ResumableFetcher.from_config(config)

    # One lock per local file name
    locks: Dict[str, asyncio.Lock] = {}

    def lock_for(file_name: str) -> asyncio.Lock:
        if file_name not in locks:
            locks[file_name] = asyncio.Lock()
        return locks[file_name]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        await fetcher.start()
        logger.info(f"Fetcher writing to {fetcher.download_dir} from {fetcher.server_url}")
        yield
        await fetcher.close()
        logger.info(f"Fetcher stopping. Stats: {fetcher.get_stats()}")

    app = FastAPI(
        title="Resumable Fetcher",
        description="Downloads files from a Range Server, resuming interrupted transfers",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.fetcher = fetcher

    async def run_fetch(file_name: str, progress_callback=None):
        async with lock_for(file_name):
            return await fetcher.fetch_with_retries(
                file_name,
                attempts=config.retry_attempts,
                delay=config.retry_delay,
                progress_callback=progress_callback,
            )

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "Resumable Fetcher",
            "version": VERSION,
            "server_url": fetcher.server_url,
        }

    @app.get("/stats", response_model=FetcherStats, tags=["General"])
    async def get_stats():
        """Get fetcher statistics."""
        return fetcher.get_stats()

    @app.get("/download/{file_name}", response_class=PlainTextResponse, tags=["Transfer"])
    async def download(file_name: str):
        """Fetch a file, resuming from whatever is already on disk."""
        try:
            validate_identifier(file_name)
            result = await run_fetch(file_name)
        except UpstreamError as e:
            # Propagate the remote status and body as they were
            status = e.status if e.status >= 400 else 502
            return PlainTextResponse(e.body or e.reason or e.message, status_code=status)
        except TransferError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

        return result.message

    @app.get("/download/{file_name}/stream", tags=["Transfer"])
    async def download_stream(file_name: str):
        """
        Fetch a file with SSE streaming progress.

        Returns Server-Sent Events with one snapshot after probing and
        one after every chunk, then a final ``complete`` or ``error`` event.
        """
        try:
            validate_identifier(file_name)
        except TransferError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

        # Progress queue for SSE events
        progress_queue: asyncio.Queue = asyncio.Queue()
        fetch_done = asyncio.Event()
        fetch_result = {'message': None, 'error': None}

        def progress_callback(progress):
            """Push progress updates to SSE queue."""
            progress_queue.put_nowait(progress.to_dict())

        async def run_in_background():
            try:
                result = await run_fetch(file_name, progress_callback)
                fetch_result['message'] = result.message
            except TransferError as e:
                fetch_result['error'] = e.message
            except Exception as e:
                logger.exception(f"Fetch of {file_name} failed unexpectedly")
                fetch_result['error'] = f"{type(e).__name__}: {e}"
            finally:
                fetch_done.set()

        async def event_generator():
            """Generate SSE events."""
            task = asyncio.create_task(run_in_background())

            yield f"data: {json.dumps({'phase': 'probing', 'file_name': file_name})}\n\n"

            try:
                while not fetch_done.is_set():
                    try:
                        event_data = await asyncio.wait_for(progress_queue.get(), timeout=0.5)
                        yield f"data: {json.dumps(event_data)}\n\n"
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"

                # Drain remaining events
                while not progress_queue.empty():
                    yield f"data: {json.dumps(progress_queue.get_nowait())}\n\n"

                if fetch_result['error']:
                    yield f"data: {json.dumps({'phase': 'error', 'error': fetch_result['error']})}\n\n"
                else:
                    yield f"data: {json.dumps({'phase': 'done', 'message': fetch_result['message']})}\n\n"

            except asyncio.CancelledError:
                task.cancel()
                raise

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


async def run_api_server(app: FastAPI, host: str = "0.0.0.0", port: int = 8000,
                         shutdown_timeout: float = 30.0, log_level: str = "info"):
    """
    Run an application under uvicorn until SIGINT/SIGTERM.

    Args:
        app: Application from create_server_app or create_fetcher_app
        host: Host to bind to
        port: Port to listen on
        shutdown_timeout: Grace period for in-flight requests on shutdown
    """
    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level.lower(),
        timeout_graceful_shutdown=int(shutdown_timeout),
    )
    server = uvicorn.Server(config)
    await server.serve()
