"""
signal_relay.schemas
~~~~~~~~~~~~~~~~~~~~
Pydantic schemas for the signaling wire protocol and the admin API.
"""
from signal_relay.schemas.api_response import ApiResponse, RoomInfoData
from signal_relay.schemas.envelopes import (
    BROADCASTER_ID,
    BroadcasterStatus,
    ErrorEnvelope,
    Joined,
    JoinRequest,
    Ping,
    Registered,
    Role,
    Signal,
    SignalRequest,
    ViewerJoined,
    ViewerLeft,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
