import argparse
import base64
import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, hmac

from .liveness import PING_INTERVAL
from .registry import DEFAULT_MAX_USERNAME, SEND_TIMEOUT

DEFAULT_ICE_SERVERS = [{"urls": "stun:stun.l.google.com:19302"}]
DEFAULT_TURN_TTL = 86400
TURN_USER_SUFFIX = "callrelay"
MAX_MESSAGE_SIZE = 256 * 1024


def parse_bind(bind_uri: str, default_port: int = 8765) -> Tuple[str, int]:
    # Accept ws://host:port, host:port, :port or a bare port
    if bind_uri.startswith(("ws://", "wss://", "http://")):
        p = urlparse(bind_uri)
        return p.hostname or "127.0.0.1", int(p.port or default_port)
    if ":" in bind_uri:
        host, port = bind_uri.rsplit(":", 1)
        return host or "0.0.0.0", int(port)
    return "0.0.0.0", int(bind_uri)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_ice_servers(value: Optional[str]) -> List[Dict[str, Any]]:
    """Read the static ICE server list from inline JSON or a JSON file.

    Both a bare list and a ``{"iceServers": [...]}`` document are accepted.
    """
    if not value or not value.strip():
        return [dict(s) for s in DEFAULT_ICE_SERVERS]
    text = value.strip()
    if not text.startswith(("[", "{")):
        text = Path(text).read_text(encoding="utf-8")
    doc = json.loads(text)
    if isinstance(doc, dict):
        doc = doc.get("iceServers")
    if not isinstance(doc, list):
        raise ValueError("ICE servers must be a JSON list")
    for entry in doc:
        if not isinstance(entry, dict) or "urls" not in entry:
            raise ValueError(f"ICE server entry without urls: {entry!r}")
    return doc


def turn_rest_credentials(secret: str, expires_at: int, user: str = TURN_USER_SUFFIX) -> Tuple[str, str]:
    """Time-limited TURN credentials (coturn ``use-auth-secret`` format)."""
    username = f"{expires_at}:{user}"
    mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA1())
    mac.update(username.encode("utf-8"))
    return username, base64.b64encode(mac.finalize()).decode("ascii")


class IceConfig:
    """The cached ``{"iceServers": [...]}`` document served on /config.

    TURN credentials are minted once and reused until half their lifetime
    has passed. Called from HTTP worker threads.
    """

    def __init__(
        self,
        servers: List[Dict[str, Any]],
        turn_uri: Optional[str] = None,
        turn_secret: Optional[str] = None,
        turn_ttl: int = DEFAULT_TURN_TTL,
        clock=time.time,
    ):
        self.servers = servers
        self.turn_uri = turn_uri
        self.turn_secret = turn_secret
        self.turn_ttl = turn_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._doc: Optional[Dict[str, Any]] = None
        self._refresh_at = 0.0

    def document(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            if self._doc is None or (self.turn_enabled and now >= self._refresh_at):
                self._doc = self._build(now)
            return self._doc

    @property
    def turn_enabled(self) -> bool:
        return bool(self.turn_uri and self.turn_secret)

    def _build(self, now: float) -> Dict[str, Any]:
        servers = [dict(s) for s in self.servers]
        if self.turn_enabled:
            expires_at = int(now) + self.turn_ttl
            username, credential = turn_rest_credentials(self.turn_secret, expires_at)
            servers.append({"urls": self.turn_uri, "username": username, "credential": credential})
            self._refresh_at = now + self.turn_ttl / 2
        return {"iceServers": servers}


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 8765
    http_bind: Optional[Tuple[str, int]] = ("127.0.0.1", 8080)
    ping_interval: float = PING_INTERVAL
    ping_timeout: float = 2 * PING_INTERVAL
    send_timeout: float = SEND_TIMEOUT
    strict_sessions: bool = True
    max_username_length: int = DEFAULT_MAX_USERNAME
    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: load_ice_servers(None))
    turn_uri: Optional[str] = None
    turn_secret: Optional[str] = None
    turn_ttl: int = DEFAULT_TURN_TTL
    cors_origin: str = "*"
    status_interval: float = 60.0
    max_message_size: int = MAX_MESSAGE_SIZE
    log_level: str = "INFO"

    def ice_config(self) -> IceConfig:
        return IceConfig(self.ice_servers, self.turn_uri, self.turn_secret, self.turn_ttl)

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> "Settings":
        parser = build_parser()
        args = parser.parse_args(argv)

        host, port = parse_bind(args.bind)
        http_bind = None
        if args.http and args.http.lower() != "off":
            http_bind = parse_bind(args.http, default_port=8080)
        try:
            ice_servers = load_ice_servers(args.ice_servers)
        except (OSError, ValueError) as e:
            parser.error(f"--ice-servers: {e}")
        if args.turn_uri and not args.turn_secret:
            parser.error("--turn-uri needs --turn-secret")
        ping_timeout = args.ping_timeout if args.ping_timeout else 2 * args.ping_interval
        if ping_timeout <= args.ping_interval:
            parser.error("--ping-timeout must be longer than --ping-interval")
        if args.send_timeout <= 0:
            parser.error("--send-timeout must be positive")

        return cls(
            host=host,
            port=port,
            http_bind=http_bind,
            ping_interval=args.ping_interval,
            ping_timeout=ping_timeout,
            send_timeout=args.send_timeout,
            strict_sessions=not args.permissive,
            max_username_length=args.max_username,
            ice_servers=ice_servers,
            turn_uri=args.turn_uri,
            turn_secret=args.turn_secret,
            turn_ttl=args.turn_ttl,
            cors_origin=args.cors_origin,
            status_interval=args.status_interval,
            log_level=args.log_level.upper(),
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Presence and call-signaling relay")
    parser.add_argument(
        "--bind",
        default=os.getenv("BIND", "ws://127.0.0.1:8765"),
        help="WebSocket bind address ws://host:port",
    )
    parser.add_argument(
        "--http",
        default=os.getenv("HTTP_BIND", "127.0.0.1:8080"),
        help="Bind address for /config and /stats. Use host:port or 'off' to disable.",
    )
    parser.add_argument(
        "--ping-interval",
        type=float,
        default=float(os.getenv("PING_INTERVAL", PING_INTERVAL)),
        help="Seconds between liveness sweeps",
    )
    parser.add_argument(
        "--ping-timeout",
        type=float,
        default=float(os.getenv("PING_TIMEOUT", "0")) or None,
        help="Seconds without a pong before a connection is dropped (default 2x interval)",
    )
    parser.add_argument(
        "--send-timeout",
        type=float,
        default=float(os.getenv("SEND_TIMEOUT", SEND_TIMEOUT)),
        help="Seconds a client may block an outbound frame before it is dropped",
    )
    parser.add_argument(
        "--permissive",
        action="store_true",
        default=_env_flag("RELAY_PERMISSIVE"),
        help="Forward offer/answer/ice/end even without a matching call session",
    )
    parser.add_argument(
        "--max-username",
        type=int,
        default=int(os.getenv("MAX_USERNAME", DEFAULT_MAX_USERNAME)),
    )
    parser.add_argument(
        "--ice-servers",
        default=os.getenv("ICE_SERVERS"),
        help="JSON list of ICE servers, or a path to a JSON file",
    )
    parser.add_argument("--turn-uri", default=os.getenv("TURN_URI"))
    parser.add_argument(
        "--turn-secret",
        default=os.getenv("TURN_SECRET"),
        help="Shared secret for time-limited TURN credentials",
    )
    parser.add_argument(
        "--turn-ttl",
        type=int,
        default=int(os.getenv("TURN_TTL", DEFAULT_TURN_TTL)),
    )
    parser.add_argument("--cors-origin", default=os.getenv("CORS_ORIGIN", "*"))
    parser.add_argument(
        "--status-interval",
        type=float,
        default=float(os.getenv("STATUS_INTERVAL", "60")),
        help="Seconds between status log lines",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    return parser
