import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from .errors import NoSession, SelfCall, UserBusy

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    REQUESTED = "requested"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"


@dataclass
class CallSession:
    caller: str
    callee: str
    state: CallState = CallState.REQUESTED
    started: float = field(default_factory=time.monotonic)

    @property
    def pair(self) -> FrozenSet[str]:
        return frozenset((self.caller, self.callee))

    def other(self, username: str) -> str:
        return self.callee if username == self.caller else self.caller


class CallSessionTracker:
    """Per-pair call state; a user is in at most one session at a time.

    In strict mode offers, answers, candidates, rejects and ends are refused
    unless the pair already has a session. A pair whose session was ended may
    not restart through a bare offer until one of them sends a new call
    request. With ``strict=False`` nothing but ``request_call`` refuses.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict
        self._by_user: Dict[str, CallSession] = {}
        self._ended: Set[FrozenSet[str]] = set()

    def __len__(self) -> int:
        return len({id(s) for s in self._by_user.values()})

    def get(self, a: str, b: str) -> Optional[CallSession]:
        session = self._by_user.get(a)
        if session is not None and session.other(a) == b:
            return session
        return None

    def partner_of(self, username: str) -> Optional[str]:
        session = self._by_user.get(username)
        return session.other(username) if session else None

    def is_busy(self, username: str) -> bool:
        return username in self._by_user

    def sessions(self) -> List[CallSession]:
        return list({id(s): s for s in self._by_user.values()}.values())

    def _open(self, caller: str, callee: str, state: CallState) -> CallSession:
        session = CallSession(caller=caller, callee=callee, state=state)
        self._by_user[caller] = session
        self._by_user[callee] = session
        self._ended.discard(session.pair)
        logger.info("Call %s -> %s %s", caller, callee, state.value)
        return session

    def _close(self, session: CallSession, why: str):
        for party in session.pair:
            if self._by_user.get(party) is session:
                del self._by_user[party]
        logger.info("Call %s <-> %s %s (was %s)", session.caller, session.callee, why, session.state.value)

    def request_call(self, caller: str, callee: str) -> CallSession:
        if caller == callee:
            raise SelfCall()
        if self.is_busy(callee):
            raise UserBusy(f"{callee} is busy")
        if self.is_busy(caller):
            raise UserBusy(f"Already in a call with {self.partner_of(caller)}")
        return self._open(caller, callee, CallState.REQUESTED)

    def offer(self, sender: str, recipient: str) -> Optional[CallSession]:
        session = self.get(sender, recipient)
        if session is not None:
            if session.state is CallState.REQUESTED:
                session.state = CallState.NEGOTIATING
                logger.info("Call %s <-> %s negotiating", session.caller, session.callee)
            return session
        if sender == recipient:
            raise SelfCall()
        busy = self.is_busy(sender) or self.is_busy(recipient)
        if not self.strict:
            return None if busy else self._open(sender, recipient, CallState.NEGOTIATING)
        if frozenset((sender, recipient)) in self._ended:
            raise NoSession(f"Call with {recipient} already ended")
        if self.is_busy(recipient):
            raise UserBusy(f"{recipient} is busy")
        if self.is_busy(sender):
            raise UserBusy(f"Already in a call with {self.partner_of(sender)}")
        return self._open(sender, recipient, CallState.NEGOTIATING)

    def answer(self, sender: str, recipient: str) -> Optional[CallSession]:
        session = self.get(sender, recipient)
        if session is None:
            if self.strict:
                raise NoSession(f"No call in progress with {recipient}")
            return None
        if session.state is not CallState.ACTIVE:
            session.state = CallState.ACTIVE
            logger.info("Call %s <-> %s active", session.caller, session.callee)
        return session

    def check_ice(self, sender: str, recipient: str) -> Optional[CallSession]:
        session = self.get(sender, recipient)
        if session is None and self.strict:
            raise NoSession(f"No call in progress with {recipient}")
        return session

    def end(self, sender: str, recipient: str) -> Optional[CallSession]:
        return self._finish(sender, recipient, "ended")

    def reject(self, sender: str, recipient: str) -> Optional[CallSession]:
        return self._finish(sender, recipient, "rejected")

    def _finish(self, sender: str, recipient: str, why: str) -> Optional[CallSession]:
        session = self.get(sender, recipient)
        if session is None:
            if self.strict:
                raise NoSession(f"No call in progress with {recipient}")
            return None
        self._close(session, why)
        self._ended.add(session.pair)
        return session

    def release(self, username: str) -> List[str]:
        """Drop whatever session ``username`` is in; return the counterparts."""
        self._ended = {pair for pair in self._ended if username not in pair}
        session = self._by_user.get(username)
        if session is None:
            return []
        self._close(session, f"dropped ({username} left)")
        return [session.other(username)]
