"""
Call state model
Client-side records of a call and the closed set of events the call
session consumes from its queue.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class CallState(str, Enum):
    LOBBY = "lobby"
    JOINING = "joining"
    IN_CALL = "in-call"
    RECONNECTING = "reconnecting"
    ENDED = "ended"


@dataclass
class RemoteParticipant:
    id: str
    display_name: str
    audio_muted: bool = False
    video_muted: bool = True
    is_screen_sharing: bool = False
    stream: Any = None
    screen_stream: Any = None
    connection_state: str = "new"
    is_speaking: bool = False

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "RemoteParticipant":
        return cls(
            id=info["id"],
            display_name=info.get("displayName") or "Guest",
            audio_muted=bool(info.get("audioMuted", False)),
            video_muted=bool(info.get("videoMuted", True)),
            is_screen_sharing=bool(info.get("isScreenSharing", False)),
        )


@dataclass
class LocalState:
    audio_muted: bool = False
    video_muted: bool = True
    is_screen_sharing: bool = False
    stream: Any = None
    screen_stream: Any = None


@dataclass
class SessionData:
    """Everything the interface needs to render one call attempt"""
    room_id: str
    display_name: str = ""
    state: CallState = CallState.LOBBY
    local_id: Optional[str] = None
    participants: Dict[str, RemoteParticipant] = field(default_factory=dict)
    local: LocalState = field(default_factory=LocalState)
    error: Optional[str] = None

    def roster(self) -> List[RemoteParticipant]:
        return list(self.participants.values())


# Events consumed by CallSession, one at a time

@dataclass
class ServerMessageReceived:
    message: Dict[str, Any]


@dataclass
class TransportClosed:
    transport: Any = None


@dataclass
class RemoteTrackReceived:
    peer_id: str
    stream: Any
    is_screen_share: bool


@dataclass
class LocalCandidateFound:
    peer_id: str
    candidate: Dict[str, Any]


@dataclass
class PeerStateChanged:
    peer_id: str
    state: str


@dataclass
class ScreenCaptureEnded:
    stream: Any


@dataclass
class SpeakingChanged:
    peer_id: str
    speaking: bool
