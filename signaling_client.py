#!/usr/bin/env python3
"""
Signaling transport
Persistent WebSocket between a call client and the relay. It carries
signaling messages only and reports everything it receives as events.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

import rtc_config
import signaling_protocol as protocol
from call_state import ServerMessageReceived, TransportClosed

logger = logging.getLogger(__name__)


class SignalingTransport:
    def __init__(self, emit: Callable[[Any], None], url: str = rtc_config.SIGNALING_URL):
        self.url = url
        self.emit = emit
        self.websocket = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and not self._closing

    async def connect(self):
        """Connect to signaling server; raises OSError or websockets errors"""
        self.websocket = await websockets.connect(self.url)
        logger.info(f"Connected to signaling server: {self.url}")
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self):
        try:
            async for raw in self.websocket:
                try:
                    message = protocol.decode(raw)
                except protocol.ProtocolError as e:
                    logger.error(f"Failed to parse signaling message: {e}")
                    continue
                self.emit(ServerMessageReceived(message))
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.error(f"Signaling error: {e}")

        if not self._closing:
            logger.info("🔌 Signaling connection closed")
            self.emit(TransportClosed(self))

    async def send(self, message: Dict[str, Any]):
        if not self.is_open:
            logger.debug(f"Signaling not open, dropping {message.get('type')}")
            return
        try:
            await self.websocket.send(protocol.encode(message))
        except ConnectionClosed:
            logger.debug(f"Signaling closed while sending {message.get('type')}")

    async def close(self):
        """Close on purpose; no TransportClosed event follows"""
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.wait([self._reader])
            self._reader = None
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except Exception as e:
                logger.error(f"Error closing websocket: {e}")
            self.websocket = None
