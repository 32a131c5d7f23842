import asyncio
import logging
import signal
from typing import List, Optional

from .config import Settings
from .http_api import start_http_server
from .server import SignalingServer


async def _run(server: SignalingServer) -> None:
    stop = asyncio.Event()

    # Install signal handlers when supported
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows may not support SIGTERM
            pass

    await server.serve_forever(stop)
    logging.info("Signaling relay shutdown complete")


def main(argv: Optional[List[str]] = None):
    settings = Settings.from_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    server = SignalingServer(settings)

    httpd = None
    if settings.http_bind:
        httpd = start_http_server(
            settings.http_bind, server.stats, settings.ice_config(), settings.cors_origin
        )
    try:
        asyncio.run(_run(server))
    except KeyboardInterrupt:
        logging.info("Shutting down")
    finally:
        if httpd:
            httpd.shutdown()


if __name__ == "__main__":
    main()
