#!/usr/bin/env python3
"""
Signaling protocol
Message types exchanged between call clients and the relay, plus
validation of everything a client is allowed to send.
"""

import json
from typing import Any, Dict, Optional

# Client -> relay
JOIN = "join"
LEAVE = "leave"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
MUTE = "mute"
SCREEN_SHARE = "screen-share"

# Relay -> client (offer, answer and ice-candidate are relayed with the same type)
ROOM_JOINED = "room-joined"
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
MUTE_UPDATE = "mute-update"
SCREEN_SHARE_UPDATE = "screen-share-update"
ERROR = "error"

NEGOTIATION_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)


class ProtocolError(ValueError):
    """Raised for a signaling message that cannot be processed"""


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def decode(raw) -> Dict[str, Any]:
    """Decode one frame into a message dict with a string ``type``"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise ProtocolError("Message has no type")
    return data


def _require_str(data, field):
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"'{data['type']}' requires a non-empty string '{field}'")
    return value


def _optional_bool(data, field) -> Optional[bool]:
    value = data.get(field)
    if value is not None and not isinstance(value, bool):
        raise ProtocolError(f"'{data['type']}' field '{field}' must be a boolean")
    return value


def parse_client_message(raw) -> Dict[str, Any]:
    """
    Decode and validate a message sent by a call client.
    Returns a normalized copy holding only the fields the relay uses.
    """
    data = decode(raw)
    msg_type = data["type"]

    if msg_type == JOIN:
        display_name = data.get("displayName")
        if display_name is not None and not isinstance(display_name, str):
            raise ProtocolError("'join' field 'displayName' must be a string")
        return {
            "type": JOIN,
            "roomId": _require_str(data, "roomId"),
            "userId": data.get("userId"),
            "displayName": (display_name or "").strip() or "Guest",
        }

    if msg_type == LEAVE:
        return {"type": LEAVE}

    if msg_type in (OFFER, ANSWER):
        sdp = data.get("sdp")
        if not isinstance(sdp, dict) or not isinstance(sdp.get("sdp"), str):
            raise ProtocolError(f"'{msg_type}' requires an 'sdp' description")
        return {"type": msg_type, "to": _require_str(data, "to"), "sdp": sdp}

    if msg_type == ICE_CANDIDATE:
        candidate = data.get("candidate")
        if not isinstance(candidate, dict):
            raise ProtocolError("'ice-candidate' requires a 'candidate' object")
        return {"type": ICE_CANDIDATE, "to": _require_str(data, "to"), "candidate": candidate}

    if msg_type == MUTE:
        audio = _optional_bool(data, "audio")
        video = _optional_bool(data, "video")
        if audio is None and video is None:
            raise ProtocolError("'mute' requires 'audio' or 'video'")
        return {"type": MUTE, "audio": audio, "video": video}

    if msg_type == SCREEN_SHARE:
        active = data.get("active")
        if not isinstance(active, bool):
            raise ProtocolError("'screen-share' requires a boolean 'active'")
        return {"type": SCREEN_SHARE, "active": active}

    raise ProtocolError(f"Unknown message type: {msg_type}")


def error_message(text: str) -> Dict[str, Any]:
    return {"type": ERROR, "message": text}
