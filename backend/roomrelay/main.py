"""roomrelay application.

This is the main entry point for the roomrelay service: clients join named
rooms over a WebSocket, receive the room's history on join, and exchange
messages broadcast to everyone in the room. History is kept in a JSON
snapshot file and reloaded on startup.

Modules:
    - chat.store: room history and the snapshot file
    - chat.registry: room membership of live connections
    - chat.broadcast: persist-then-fan-out write path
    - chat.session: per-connection event handling
    - chat.router: WebSocket and HTTP endpoints

Run with ``roomrelay --port 3005`` (or ``python -m roomrelay.main``).
"""
import argparse
import errno
import logging
import socket
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from roomrelay import __version__
from roomrelay.chat.router import build_engine, router as chat_router, set_engine
from roomrelay.config import ConfigError, get_config, load_config, set_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomrelay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    engine = build_engine()
    set_engine(engine)
    logger.info(
        f"Relay ready: {len(engine.store.rooms())} rooms loaded from {engine.store.path}, "
        f"echo_to_sender={engine.echo_to_sender}"
    )

    yield  # Application runs here

    # Shutdown
    set_engine(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="roomrelay",
    description="Room-based real-time chat relay with persistent history",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on *host*:*port* before the app starts.

    Raises:
        OSError: If the address cannot be bound (e.g. port already in use).
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="roomrelay", description="Run the chat relay server.")
    parser.add_argument("--settings", help="Path to roomrelay.settings.yaml")
    parser.add_argument("--host", help="Interface to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on (default 3005)")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> None:
    """Command-line entry point.

    The listening socket is bound before the app (and so the message store)
    starts. If the port is taken the process exits with status 1 without
    touching the store file.
    """
    args = _parse_args(argv)

    try:
        config = load_config(args.settings)
    except ConfigError as exc:
        logger.error(f"Could not load settings: {exc}")
        sys.exit(1)

    if args.host:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    set_config(config)

    host, port = config.server.host, config.server.port
    try:
        sock = bind_socket(host, port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            logger.error(f"Port {port} is already in use. Close the previous process.")
        else:
            logger.error(f"Could not listen on {host}:{port}: {exc}")
        sys.exit(1)

    logger.info(f"Server listening on http://{host}:{port}")
    server = uvicorn.Server(uvicorn.Config(app, log_level=config.logging.level.lower()))
    server.run(sockets=[sock])


if __name__ == "__main__":
    run()
