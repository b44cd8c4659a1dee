"""
Command line entry point.

    livemd [content_dir] [--output-dir DIR] [--host HOST] [--port PORT]
           [--debounce-ms MS] [--no-browser] [--no-index] [--log-level LEVEL]

Runs the HTTP server and the pipeline on one event loop. Exits with
status 1 when the content root can no longer be watched.
"""
import argparse
import asyncio
import logging
import sys
import webbrowser
from typing import List, Optional

import uvicorn

from .api.server import create_app
from .contracts.base import WatchSubscriptionError
from .engine import LiveServer, ServerConfig

logger = logging.getLogger("livemd")


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="livemd",
        description="Serve a markdown tree as HTML and reload browsers on change.",
    )
    parser.add_argument("content_dir", nargs="?", default=None,
                        help="directory of markdown sources (default: doc)")
    parser.add_argument("--output-dir", default=None,
                        help="also write rendered artifacts to this directory")
    parser.add_argument("--host", default=None, help="loopback address to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="port to listen on (default: 3000)")
    parser.add_argument("--debounce-ms", type=int, default=None,
                        help="quiet period before a change is rendered (default: 100)")
    parser.add_argument("--no-browser", action="store_true", help="do not open a browser window")
    parser.add_argument("--no-index", action="store_true",
                        help="do not generate index.html when the tree has none")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS, type=str.upper)
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Command line flags win over LIVEMD_* variables, which win over defaults."""
    return ServerConfig.from_env(
        content_dir=args.content_dir,
        output_dir=args.output_dir,
        host=args.host,
        port=args.port,
        debounce_ms=args.debounce_ms,
        open_browser=False if args.no_browser else None,
        generate_index=False if args.no_index else None,
    )


async def _open_browser_when_started(server: uvicorn.Server, url: str):
    while not server.started:
        if server.should_exit:
            return
        await asyncio.sleep(0.05)
    logger.info("opening %s", url)
    await asyncio.to_thread(webbrowser.open, url)


async def serve(config: ServerConfig, log_level: str = "INFO") -> int:
    live = LiveServer(config)
    try:
        await live.start()
    except WatchSubscriptionError as e:
        logger.error("%s (%s)", e.message, dict(e.context).get("root", config.content_dir))
        await live.stop()
        return 1

    server = uvicorn.Server(uvicorn.Config(
        create_app(live),
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
    ))
    logger.info("preview at %s", config.server_url)

    serve_task = asyncio.create_task(server.serve())
    fatal_task = asyncio.create_task(live.wait_fatal())
    browser_task = None
    if config.open_browser:
        browser_task = asyncio.create_task(_open_browser_when_started(server, config.server_url))

    exit_code = 0
    try:
        done, _ = await asyncio.wait({serve_task, fatal_task}, return_when=asyncio.FIRST_COMPLETED)
        if fatal_task in done and fatal_task.exception() is not None:
            logger.error("shutting down: %s", fatal_task.exception())
            exit_code = 1
            server.should_exit = True
        await serve_task
    finally:
        if not fatal_task.done():
            fatal_task.cancel()
        if browser_task is not None and not browser_task.done():
            browser_task.cancel()
        await live.stop()
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    try:
        config = config_from_args(args)
    except ValueError as e:
        logger.error("invalid configuration: %s", e)
        return 2
    try:
        return asyncio.run(serve(config, args.log_level))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
