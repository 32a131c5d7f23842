import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Tuple, Type
from urllib.parse import urlparse

from .config import IceConfig
from .stats import StatsReporter

logger = logging.getLogger(__name__)


def make_handler(
    stats: StatsReporter, ice: IceConfig, cors_origin: str = "*"
) -> Type[BaseHTTPRequestHandler]:
    class _RelayHandler(BaseHTTPRequestHandler):
        server_version = "callrelay/1.0"

        def _send(self, code: int, body: dict) -> None:
            data = json.dumps(body, separators=(",", ":")).encode("utf-8")
            self.send_response(code)
            self.send_header("Access-Control-Allow-Origin", cors_origin)
            self.send_header("Cache-Control", "no-store")
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self):
            try:
                path = urlparse(self.path).path.rstrip("/") or "/"
                if path == "/config":
                    self._send(200, ice.document())
                elif path == "/stats":
                    self._send(200, stats.snapshot())
                elif path == "/healthz":
                    self._send(200, {"ok": True})
                else:
                    self._send(404, {"ok": False, "error": "NO_ROUTE"})
            except Exception:
                logger.exception("HTTP GET error")
                self._send(500, {"ok": False, "error": "SERVER_ERROR"})

        def do_OPTIONS(self):
            self.send_response(204)
            self.send_header("Access-Control-Allow-Origin", cors_origin)
            self.send_header("Access-Control-Allow-Methods", "GET, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, format, *args):
            logger.debug("[HTTP] %s %s", self.address_string(), format % args)

    return _RelayHandler


def start_http_server(
    bind: Tuple[str, int], stats: StatsReporter, ice: IceConfig, cors_origin: str = "*"
) -> ThreadingHTTPServer:
    httpd = ThreadingHTTPServer(bind, make_handler(stats, ice, cors_origin))
    httpd.daemon_threads = True
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    host, port = httpd.server_address[:2]
    logger.info("[HTTP] listening on http://%s:%s", host, port)
    return httpd
