"""WebSocket message protocol definitions.

Defines Pydantic models for WebSocket message serialization/deserialization.
Messages are JSON objects discriminated by their ``type`` field.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class FindPartnerMessage(BaseModel):
    """Client → Server: Ask to be matched.

    ``peer_address`` is the id the peer-connection library assigned to this
    client; the partner dials it (or expects a call from it).
    """

    type: Literal["find_partner"] = "find_partner"
    peer_address: str = Field(..., min_length=1, description="Peer-connection address")


class CancelSearchMessage(BaseModel):
    """Client → Server: Stop waiting for a partner."""

    type: Literal["cancel_search"] = "cancel_search"


class EndSessionMessage(BaseModel):
    """Client → Server: Hang up the current pairing."""

    type: Literal["end_session"] = "end_session"


class PeerStateMessage(BaseModel):
    """Client → Server: Peer connection state reported by the client library.

    ``disconnected`` and ``closed`` end the pairing; ``failed`` means the
    connection to the partner could not be established.
    """

    type: Literal["peer_state"] = "peer_state"
    state: Literal["connected", "disconnected", "failed", "closed"] = Field(
        ..., description="Peer connection state"
    )


class SessionStartMessage(BaseModel):
    """Server → Client: Connection accepted."""

    type: Literal["session_start"] = "session_start"
    session_id: str = Field(..., description="Connection handle assigned by the broker")


class WaitingMessage(BaseModel):
    """Server → Client: No partner yet, the client occupies the waiting slot."""

    type: Literal["waiting"] = "waiting"


class PairedMessage(BaseModel):
    """Server → Client: Match found.

    The initiator dials ``partner_address``; the receiver waits for the call.
    """

    type: Literal["paired"] = "paired"
    role: Literal["initiator", "receiver"] = Field(..., description="Role in the pairing")
    partner_address: str = Field(..., description="Partner's peer-connection address")


class PartnerDisconnectedMessage(BaseModel):
    """Server → Client: The partner's connection dropped."""

    type: Literal["partner_disconnected"] = "partner_disconnected"


class SessionEndedMessage(BaseModel):
    """Server → Client: The partner ended the session."""

    type: Literal["session_ended"] = "session_ended"
    reason: str = Field(default="partner_ended", description="Reason for session end")


class CancelledMessage(BaseModel):
    """Server → Client: Search cancelled."""

    type: Literal["cancelled"] = "cancelled"


class ErrorMessage(BaseModel):
    """Server → Client: Error notification."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


# Union type for all server → client messages
ServerMessage = Annotated[
    SessionStartMessage
    | WaitingMessage
    | PairedMessage
    | PartnerDisconnectedMessage
    | SessionEndedMessage
    | CancelledMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

# Union type for all client → server messages
ClientMessage = Annotated[
    FindPartnerMessage | CancelSearchMessage | EndSessionMessage | PeerStateMessage,
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)


def parse_client_message(data: dict[str, Any]) -> ClientMessage:
    """Validate a decoded client JSON object.

    Raises:
        pydantic.ValidationError: If the type is unknown or fields are invalid
    """
    return _client_adapter.validate_python(data)


def parse_server_message(data: dict[str, Any]) -> ServerMessage:
    """Validate a decoded server JSON object (clients and the relay use this)."""
    return _server_adapter.validate_python(data)
