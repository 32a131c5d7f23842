import logging

from .errors import TransportClosed
from .protocol import MessageType, make_envelope
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def broadcast_user_list(self) -> int:
        """Push the full joined-user list to every joined connection.

        Each client filters itself out of the list. Returns how many
        connections the list was queued for. Frames are only queued, so a slow
        reader never holds up the others.
        """
        users = self.registry.users()
        envelope = make_envelope(MessageType.USER_LIST, users=users)
        delivered = 0
        for conn in self.registry.joined():
            try:
                await conn.send(envelope)
                delivered += 1
            except TransportClosed as e:
                logger.warning("user_list not delivered: %s", e)
        logger.debug("Presence %s sent to %d connections", users, delivered)
        return delivered
