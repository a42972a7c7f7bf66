#!/usr/bin/env python3
"""
Setup script for the workspace call signaling module

1. Start signaling server: python signaling_server.py
2. Join a call: python call_client.py --kind channel --id <channel id> --name Alice
"""

import sys

from setuptools import setup

# Check Python version
if sys.version_info < (3, 9):
    sys.exit("Error: Python 3.9 or higher is required")

requirements = [
    "aiortc>=1.6.0",
    "av>=10.0.0",
    "numpy>=1.24.3",
    "opencv-python>=4.8.1.78",
    "Pillow>=10.0.1",
    "mss>=9.0.1",
    "websockets>=11.0.3",
]

setup(
    name="workspace-call",
    version="0.1.0",
    description="Peer-to-peer mesh call signaling server and client session",
    python_requires=">=3.9",
    py_modules=[
        "call_client",
        "call_session",
        "call_state",
        "media_streams",
        "peer_connections",
        "room_registry",
        "rtc_config",
        "signaling_client",
        "signaling_protocol",
        "signaling_server",
    ],
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
)
