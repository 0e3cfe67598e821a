"""Error taxonomy shared by the realtime core, the store and the REST routers.

Every error carries a stable ``code`` that is sent to clients in ``error``
events and an HTTP status used by the REST routers.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for errors reported back to the requesting client."""

    code: str = "chat_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str = "", *, client_msg_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.client_msg_id = client_msg_id

    def to_payload(self, request_type: Optional[str] = None) -> dict:
        payload = {
            "type": "error",
            "code": self.code,
            "error": self.message,
            "retryable": self.retryable,
        }
        if request_type:
            payload["requestType"] = request_type
        if self.client_msg_id:
            payload["clientMsgId"] = self.client_msg_id
        return payload


class Unauthorized(ChatError):
    """Missing, invalid or expired credential."""
    code = "unauthorized"
    status_code = 401


class Forbidden(ChatError):
    """Authenticated, but not allowed to act on the target."""
    code = "forbidden"
    status_code = 403


class NotAMember(Forbidden):
    """The user is not a member of the room."""
    code = "not_a_member"


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class MessageValidationError(ChatError):
    """Empty content, unsupported message type, malformed payload."""
    code = "validation_error"
    status_code = 422


class TransientStoreError(ChatError):
    """The persistence layer is unavailable; the client may resubmit."""
    code = "store_unavailable"
    status_code = 503
    retryable = True
