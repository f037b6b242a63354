"""Main entry point: serve the transcoder over HTTP."""

import asyncio
import signal
import sys

from gtfs_rt_transcoder.config import load_settings
from gtfs_rt_transcoder.errors import TranscoderError
from gtfs_rt_transcoder.fetcher import create_http_client
from gtfs_rt_transcoder.logging import configure_logging, get_logger
from gtfs_rt_transcoder.runtime import initialize
from gtfs_rt_transcoder.server import TranscoderServer


async def run() -> None:
    """Initialize process state and serve until SIGTERM/SIGINT.

    Raises:
        ConfigError: If configuration or credential resolution fails.
        SchemaError: If the schema cannot be loaded.
    """
    settings = load_settings()

    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    logger.info(
        "starting",
        endpoint=str(settings.endpoint_url),
        schema_path=str(settings.schema_path),
        root_type=settings.root_type,
        port=settings.port,
    )

    runtime = await initialize(settings)

    http_client = create_http_client()
    server = TranscoderServer(runtime, http_client, port=settings.port)

    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await server.start()
        logger.info("server_started", port=settings.port)

        await shutdown_event.wait()

    finally:
        logger.info("shutting_down")

        await server.stop()
        await http_client.aclose()

        logger.info("shutdown_complete")


def main() -> None:
    """Entry point for the GTFS-RT Transcoder."""
    try:
        asyncio.run(run())
    except TranscoderError as e:
        # Fatal initialization errors: nothing can be served until fixed
        get_logger(__name__).critical("startup_failed", error_kind=e.kind, error_message=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
