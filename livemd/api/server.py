"""
livemd: Preview HTTP Server
===========================

Read-only view of the Artifact Store plus the reload stream.

Endpoints:
- GET /health            -> Liveness
- GET /_livemd/events    -> Server-Sent Events, one "reload" frame per signal
- GET /_livemd/status    -> Store, subscriber and pipeline state
- GET /{path}            -> Rendered artifact ("" and "dir/" mean index.html)

Usage:
    uvicorn livemd.api.server:app
"""
import logging
import mimetypes
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response, StreamingResponse

from ..contracts.base import OutputPath, InvalidPath, StoreNotFound, INDEX_OUTPUT
from ..contracts.events import ContentKind
from ..engine import LiveServer, ServerConfig
from ..rendering import DEFAULT_RELOAD_PATH
from .mapper import format_reload_event, map_status_to_dto
from .schemas import HealthResponse, StatusResponse

logger = logging.getLogger(__name__)


STATUS_PATH = "/_livemd/status"
HTML_MEDIA_TYPE = "text/html; charset=utf-8"
FALLBACK_MEDIA_TYPE = "application/octet-stream"


def _output_for(path: str) -> OutputPath:
    if path == "" or path.endswith("/"):
        path = path + INDEX_OUTPUT
    return OutputPath(path)


def _media_type(output: OutputPath, kind: ContentKind) -> str:
    if kind is ContentKind.HTML:
        return HTML_MEDIA_TYPE
    guessed, _ = mimetypes.guess_type(output.value)
    return guessed or FALLBACK_MEDIA_TYPE


def create_app(live_server: Optional[LiveServer] = None) -> FastAPI:
    """
    Build the app. Without a LiveServer one is built from LIVEMD_*
    environment variables when the lifespan starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        server = live_server or LiveServer(ServerConfig.from_env())
        app.state.live_server = server
        await server.start()
        try:
            yield
        finally:
            await server.stop()
            app.state.live_server = None

    app = FastAPI(
        title="livemd",
        version="0.1.0",
        description="Live markdown preview server",
        lifespan=lifespan,
    )
    app.state.live_server = live_server

    def _server() -> LiveServer:
        server = app.state.live_server
        if server is None:
            raise HTTPException(status_code=503, detail="Server not initialized")
        return server

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        server = _server()
        return HealthResponse(
            status="online" if server.running and not server.failed else "degraded",
            running=server.running,
            failed=server.failed,
        )

    @app.get(STATUS_PATH, response_model=StatusResponse)
    async def status():
        return map_status_to_dto(_server())

    @app.get(DEFAULT_RELOAD_PATH)
    async def reload_events():
        """
        Server-Sent Events endpoint. The subscription lives exactly as
        long as the response stream.
        """
        server = _server()
        broadcaster = server.broadcaster

        async def event_generator():
            connection = broadcaster.subscribe()
            try:
                # Lets the client know the subscription is in place
                yield ": connected\n\n"
                async for signal in connection:
                    yield format_reload_event(signal)
            finally:
                broadcaster.unsubscribe(connection)
                logger.debug("reload client %s disconnected", connection.client_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    @app.get("/{path:path}")
    async def serve_artifact(path: str):
        server = _server()
        try:
            output = _output_for(path)
        except InvalidPath as e:
            raise HTTPException(status_code=400, detail=e.message)

        try:
            artifact = server.store.require(output)
        except StoreNotFound:
            raise HTTPException(status_code=404, detail=f"Not found: {output.value}")

        return Response(
            content=artifact.body,
            media_type=_media_type(output, artifact.content_kind),
            headers={
                "Cache-Control": "no-store",
                "X-Livemd-Version": str(artifact.version),
            },
        )

    return app


app = create_app()
