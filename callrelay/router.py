import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import (
    MalformedMessage,
    NotJoined,
    SelfCall,
    SignalingError,
    TransportClosed,
    UserBusy,
    UserNotFound,
)
from .presence import PresenceBroadcaster
from .protocol import MessageType, make_envelope, parse_envelope
from .registry import Connection, ConnectionRegistry
from .sessions import CallSessionTracker

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]


class MessageRouter:
    """Dispatches client envelopes and forwards them to the named recipient.

    All registry and session mutations, and every send that depends on them,
    happen under ``self.lock``. A send only queues the frame on the
    recipient's outbox, so the lock is never held across socket writes and a
    client that stops reading cannot stall routing for anyone else.

    Outbound ``from`` is always the sender's bound username, whatever the
    client put there.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: CallSessionTracker,
        presence: PresenceBroadcaster,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.registry = registry
        self.sessions = sessions
        self.presence = presence
        self.lock = lock or asyncio.Lock()
        self._handlers: Dict[MessageType, Callable[[Connection, Envelope], Awaitable]] = {
            MessageType.JOIN: self._handle_join,
            MessageType.CALL_REQUEST: self._handle_call_request,
            MessageType.CALL_REJECT: self._handle_call_reject,
            MessageType.OFFER: self._handle_offer,
            MessageType.ANSWER: self._handle_answer,
            MessageType.ICE: self._handle_ice,
            MessageType.END: self._handle_end,
        }

    async def route(self, conn: Connection, raw: str | bytes):
        try:
            envelope = parse_envelope(raw)
        except MalformedMessage as e:
            logger.warning("Dropping frame from %s: %s", conn.label, e.reason)
            return
        msg_type = MessageType(envelope["type"])

        if msg_type is MessageType.PING:
            await self._deliver(conn, make_envelope(MessageType.PONG, ts=envelope.get("ts")))
            return

        async with self.lock:
            if not conn.alive:
                return
            if msg_type is not MessageType.JOIN and not conn.joined:
                await self._reply_error(conn, NotJoined(), envelope)
                return
            await self._handlers[msg_type](conn, envelope)

    async def _deliver(self, conn: Connection, envelope: Envelope) -> bool:
        try:
            await conn.send(envelope)
            return True
        except TransportClosed as e:
            logger.warning("Failed to send %s: %s", envelope.get("type"), e)
            return False

    async def _reply_error(self, conn: Connection, err: SignalingError, envelope: Envelope):
        logger.info("%s from %s refused: %s", envelope.get("type"), conn.label, err.reason)
        await self._deliver(
            conn,
            make_envelope(
                MessageType.ERROR,
                ref=envelope.get("type"),
                to=envelope.get("to"),
                **err.as_payload(),
            ),
        )

    async def _forward(self, sender: Connection, recipient: Connection, envelope: Envelope) -> bool:
        out = dict(envelope)
        out["from"] = sender.username
        out["to"] = recipient.username
        logger.debug("Forwarding %s %s -> %s", out["type"], sender.username, recipient.username)
        return await self._deliver(recipient, out)

    async def _handle_join(self, conn: Connection, envelope: Envelope):
        try:
            users = self.registry.join(conn.handle, envelope.get("username"))
        except SignalingError as e:
            logger.info("Join refused for %s: %s", conn.label, e.reason)
            await self._deliver(conn, make_envelope(MessageType.JOIN_ERROR, **e.as_payload()))
            return
        await self._deliver(
            conn, make_envelope(MessageType.JOIN_OK, username=conn.username, users=users)
        )
        await self.presence.broadcast_user_list()

    async def _handle_call_request(self, conn: Connection, envelope: Envelope):
        target = envelope.get("to")
        try:
            recipient = self.registry.lookup(target)
            self.sessions.request_call(conn.username, recipient.username)
        except (UserNotFound, SelfCall, UserBusy) as e:
            logger.info("Call request %s -> %s refused: %s", conn.username, target, e.reason)
            partner = self.sessions.partner_of(conn.username)
            if partner is not None and partner != target:
                # the session with the current partner stays open until an end
                logger.info(
                    "%s is still in a call with %s; the session is kept", conn.username, partner
                )
            # call_reject is what the browser client resets its call UI on
            await self._deliver(
                conn,
                make_envelope(
                    MessageType.CALL_REJECT,
                    to=conn.username,
                    **{"from": target},
                    **e.as_payload(),
                ),
            )
            return
        await self._forward(conn, recipient, envelope)

    async def _handle_offer(self, conn: Connection, envelope: Envelope):
        await self._transition(conn, envelope, self.sessions.offer)

    async def _handle_answer(self, conn: Connection, envelope: Envelope):
        await self._transition(conn, envelope, self.sessions.answer)

    async def _handle_end(self, conn: Connection, envelope: Envelope):
        await self._transition(conn, envelope, self.sessions.end)

    async def _handle_call_reject(self, conn: Connection, envelope: Envelope):
        envelope.setdefault("reason", "Call rejected")
        await self._transition(conn, envelope, self.sessions.reject)

    async def _transition(self, conn: Connection, envelope: Envelope, step: Callable):
        try:
            recipient = self.registry.lookup(envelope.get("to"))
            step(conn.username, recipient.username)
        except SignalingError as e:
            await self._reply_error(conn, e, envelope)
            return
        await self._forward(conn, recipient, envelope)

    async def _handle_ice(self, conn: Connection, envelope: Envelope):
        try:
            recipient = self.registry.lookup(envelope.get("to"))
        except UserNotFound as e:
            await self._reply_error(conn, e, envelope)
            return
        try:
            self.sessions.check_ice(conn.username, recipient.username)
        except SignalingError as e:
            logger.debug("Dropping ice %s -> %s: %s", conn.username, recipient.username, e.reason)
            return
        await self._forward(conn, recipient, envelope)

    async def disconnect(self, handle: str) -> Optional[Connection]:
        """Tear down one connection: sessions first, then presence.

        Safe to call more than once for the same handle.
        """
        async with self.lock:
            conn = self.registry.unregister(handle)
            if conn is None or conn.username is None:
                return conn
            for counterpart in self.sessions.release(conn.username):
                try:
                    peer = self.registry.lookup(counterpart)
                except UserNotFound:
                    continue
                await self._deliver(
                    peer,
                    make_envelope(MessageType.END, to=counterpart, **{"from": conn.username}),
                )
            await self.presence.broadcast_user_list()
        return conn
