#!/usr/bin/env python3
"""
WebRTC Signaling Server
Introduces call participants to each other and relays the offers,
answers and ICE candidates they need to build a peer-to-peer mesh.
Media never flows through this server.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

import rtc_config
import signaling_protocol as protocol
from room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class SignalingServer:
    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()

    async def send_error(self, websocket, participant_id, text):
        """Report a bad message to its sender only"""
        message = protocol.error_message(text)
        # A joined client gets it in order with the room traffic it is owed
        if participant_id and self.registry.send_to(participant_id, message):
            return
        try:
            await websocket.send(protocol.encode(message))
        except ConnectionClosed:
            pass

    async def handle_message(self, websocket, participant_id, raw):
        """Process one client frame; returns the connection's participant id afterwards"""
        try:
            message = protocol.parse_client_message(raw)
        except protocol.ProtocolError as e:
            logger.warning(f"Rejected message from {participant_id or 'unjoined connection'}: {e}")
            await self.send_error(websocket, participant_id, str(e))
            return participant_id

        msg_type = message["type"]

        if msg_type == protocol.JOIN:
            if participant_id:
                await self.registry.leave(participant_id)
            participant, _ = await self.registry.join(
                message["roomId"], message["displayName"], websocket
            )
            return participant.id

        if not participant_id:
            await self.send_error(websocket, participant_id, f"'{msg_type}' sent before 'join'")
            return participant_id

        if msg_type == protocol.LEAVE:
            await self.registry.leave(participant_id)
            return None

        if msg_type in protocol.NEGOTIATION_TYPES:
            await self.registry.relay(participant_id, message["to"], message)
        elif msg_type == protocol.MUTE:
            await self.registry.update_mute(participant_id, message["audio"], message["video"])
        elif msg_type == protocol.SCREEN_SHARE:
            await self.registry.update_screen_share(participant_id, message["active"])
        return participant_id

    async def handle_client(self, websocket):
        """Handle one WebSocket connection until it closes"""
        participant_id = None
        try:
            async for raw in websocket:
                try:
                    participant_id = await self.handle_message(websocket, participant_id, raw)
                except Exception as e:
                    logger.error(f"Error handling message from {participant_id}: {e}")
                    await self.send_error(websocket, participant_id, "Invalid message")

        except ConnectionClosed:
            logger.info(f"Participant {participant_id} disconnected")
        finally:
            # An unexpected close counts as an explicit leave
            if participant_id:
                await self.registry.leave(participant_id)

    @asynccontextmanager
    async def serve(self, host=rtc_config.SIGNALING_HOST, port=rtc_config.SIGNALING_PORT):
        try:
            async with websockets.serve(self.handle_client, host, port) as server:
                yield server
        finally:
            await self.registry.close()

    async def start_server(self, host=rtc_config.SIGNALING_HOST, port=rtc_config.SIGNALING_PORT):
        """Start the signaling server"""
        logger.info(f"Starting signaling server on {host}:{port}")

        async with self.serve(host, port):
            logger.info(f"Signaling server listening on ws://{host}:{port}")
            await asyncio.Future()  # Run forever


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Call Signaling Server')
    parser.add_argument('--host', default=rtc_config.SIGNALING_HOST,
                        help='Interface to listen on')
    parser.add_argument('--port', type=int, default=rtc_config.SIGNALING_PORT,
                        help='Port to listen on (SIGNALING_PORT)')

    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, rtc_config.LOG_LEVEL, logging.INFO))
    server = SignalingServer()

    try:
        asyncio.run(server.start_server(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Signaling server stopped")
