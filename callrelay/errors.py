class SignalingError(Exception):
    """Request-scoped failure that is reported back to one connection."""

    code = "ERROR"
    default_reason = "Request failed"

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def as_payload(self) -> dict:
        return {"code": self.code, "reason": self.reason}


class DuplicateUsername(SignalingError):
    code = "DUPLICATE_USERNAME"
    default_reason = "Username already taken"


class InvalidUsername(SignalingError):
    code = "INVALID_USERNAME"
    default_reason = "Username required"


class AlreadyJoined(SignalingError):
    code = "ALREADY_JOINED"
    default_reason = "Connection already joined"


class NotJoined(SignalingError):
    code = "NOT_JOINED"
    default_reason = "Join before sending signaling messages"


class UserNotFound(SignalingError):
    code = "USER_NOT_FOUND"
    default_reason = "User not online"


class SelfCall(SignalingError):
    code = "SELF_CALL"
    default_reason = "Cannot call yourself"


class UserBusy(SignalingError):
    code = "USER_BUSY"
    default_reason = "User is busy"


class NoSession(SignalingError):
    code = "NO_SESSION"
    default_reason = "No call in progress with this user"


class MalformedMessage(SignalingError):
    code = "MALFORMED"
    default_reason = "Malformed message"


class TransportClosed(SignalingError):
    code = "TRANSPORT_CLOSED"
    default_reason = "Connection closed"
