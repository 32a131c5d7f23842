import json
from enum import Enum
from typing import Any, Dict

from .errors import MalformedMessage


class MessageType(str, Enum):
    JOIN = "join"
    JOIN_OK = "join_ok"
    JOIN_ERROR = "join_error"
    USER_LIST = "user_list"
    CALL_REQUEST = "call_request"
    CALL_REJECT = "call_reject"
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"
    END = "end"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


# Types a client may send; everything else is dropped as unknown
CLIENT_TYPES = frozenset(
    {
        MessageType.JOIN,
        MessageType.CALL_REQUEST,
        MessageType.CALL_REJECT,
        MessageType.OFFER,
        MessageType.ANSWER,
        MessageType.ICE,
        MessageType.END,
        MessageType.PING,
    }
)


def make_envelope(msg_type: MessageType | str, **fields: Any) -> Dict[str, Any]:
    envelope = {"type": MessageType(msg_type).value}
    envelope.update(fields)
    return envelope


def encode(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, separators=(",", ":"))


def parse_envelope(raw: str | bytes) -> Dict[str, Any]:
    """Decode one frame into an envelope dict with a known client ``type``.

    Raises MalformedMessage for undecodable payloads, non-object JSON, a
    missing type, or a type clients are not allowed to send.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessage("frame is not UTF-8")
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError:
        raise MalformedMessage("frame is not JSON")
    if not isinstance(envelope, dict):
        raise MalformedMessage("frame is not a JSON object")
    typ = envelope.get("type")
    if not isinstance(typ, str) or not typ:
        raise MalformedMessage("missing type")
    try:
        msg_type = MessageType(typ)
    except ValueError:
        raise MalformedMessage(f"unknown type {typ!r}")
    if msg_type not in CLIENT_TYPES:
        raise MalformedMessage(f"type {typ!r} is server-only")
    return envelope
