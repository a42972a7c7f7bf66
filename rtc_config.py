#!/usr/bin/env python3
"""
Call configuration
Relay address, NAT traversal (STUN/TURN) servers and capture devices.
Every value can be overridden through the environment.
"""

import os
import sys
from typing import List

from aiortc import RTCConfiguration, RTCIceServer

# Relay (signaling server)
SIGNALING_HOST = os.getenv("SIGNALING_HOST", "0.0.0.0")
SIGNALING_PORT = int(os.getenv("SIGNALING_PORT", "3001"))
SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{SIGNALING_PORT}")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# NAT traversal, consumed by the peer connection manager only
DEFAULT_STUN_SERVERS = "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302"
ICE_SERVER_URLS = [
    url.strip()
    for url in os.getenv("CALL_ICE_SERVERS", DEFAULT_STUN_SERVERS).split(",")
    if url.strip()
]
TURN_URL = os.getenv("CALL_TURN_URL")
TURN_USERNAME = os.getenv("CALL_TURN_USERNAME")
TURN_CREDENTIAL = os.getenv("CALL_TURN_CREDENTIAL")

# Capture devices, see aiortc.contrib.media.MediaPlayer
if sys.platform == "darwin":
    _camera_defaults = ("default:none", "avfoundation")
    _mic_defaults = ("none:default", "avfoundation")
elif sys.platform == "win32":
    _camera_defaults = ("video=Integrated Camera", "dshow")
    _mic_defaults = ("audio=Microphone", "dshow")
else:
    _camera_defaults = ("/dev/video0", "v4l2")
    _mic_defaults = ("default", "pulse")

CAMERA_DEVICE = os.getenv("CALL_CAMERA_DEVICE", _camera_defaults[0])
CAMERA_FORMAT = os.getenv("CALL_CAMERA_FORMAT", _camera_defaults[1])
MIC_DEVICE = os.getenv("CALL_MIC_DEVICE", _mic_defaults[0])
MIC_FORMAT = os.getenv("CALL_MIC_FORMAT", _mic_defaults[1])
VIDEO_SIZE = os.getenv("CALL_VIDEO_SIZE", "1280x720")
FRAMERATE = os.getenv("CALL_FRAMERATE", "30")

# Reconnect policy after the relay connection drops mid-call
RECONNECT_ATTEMPTS = int(os.getenv("CALL_RECONNECT_ATTEMPTS", "3"))
RECONNECT_DELAY = float(os.getenv("CALL_RECONNECT_DELAY", "1.0"))


def ice_servers() -> List[RTCIceServer]:
    """Build the STUN/TURN server list"""
    servers = [RTCIceServer(urls=[url]) for url in ICE_SERVER_URLS]
    if TURN_URL:
        servers.append(RTCIceServer(
            urls=[TURN_URL],
            username=TURN_USERNAME,
            credential=TURN_CREDENTIAL
        ))
    return servers


def rtc_configuration() -> RTCConfiguration:
    return RTCConfiguration(iceServers=ice_servers())
