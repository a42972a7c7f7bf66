#!/usr/bin/env python3
"""
Call Client - headless participant for a workspace call
Joins the room of a channel, direct conversation, grid or loop room
and is controlled from the terminal.
"""

import asyncio
import logging
import sys

from aiortc.contrib.media import MediaBlackhole

import rtc_config
from call_session import CallSession, CallStateError
from call_state import CallState

logger = logging.getLogger(__name__)

ROOM_KINDS = ("channel", "dm", "grid", "loop")

COMMANDS = "Commands: m=mute/unmute, v=camera on/off, s=share screen, q=leave"


def room_id_for(kind: str, object_id: str) -> str:
    """Room id of a workspace object; every object has at most one call room"""
    if kind not in ROOM_KINDS:
        raise ValueError(f"Unknown room kind: {kind}")
    if not object_id:
        raise ValueError(f"A {kind} call needs an id")
    return object_id


class CallClient:
    def __init__(self, signaling_server=rtc_config.SIGNALING_URL, kind="grid", object_id="default",
                 display_name="Guest", audio_only=False):
        self.room_id = room_id_for(kind, object_id)
        # Loop rooms are voice only
        self.audio_only = audio_only or kind == "loop"
        self.display_name = display_name
        self.session = CallSession(
            self.room_id,
            signaling_url=signaling_server,
            on_change=self.on_change,
            on_notice=self.on_notice,
        )
        # Inbound media has to be consumed somewhere
        self.sink = MediaBlackhole()
        self.sunk_tracks = set()

    def on_notice(self, text):
        print(f"* {text}")

    def on_change(self, data):
        new_tracks = False
        for participant in data.roster():
            for stream in (participant.stream, participant.screen_stream):
                if stream is None:
                    continue
                for track in stream.tracks:
                    if track.id not in self.sunk_tracks:
                        self.sunk_tracks.add(track.id)
                        self.sink.addTrack(track)
                        new_tracks = True
        if new_tracks:
            asyncio.ensure_future(self.sink.start())

    async def stop_sinks(self):
        await self.sink.stop()
        self.sunk_tracks.clear()

    async def report_status(self):
        """Log the call every few seconds"""
        while True:
            await asyncio.sleep(5)
            data = self.session.data
            if data.state == CallState.IN_CALL:
                states = ", ".join(f"{p.display_name}={p.connection_state}" for p in data.roster())
                logger.info(f"📺 In call '{self.room_id}' with {len(data.participants)} participant(s) {states}")
            else:
                logger.info(f"Call state: {data.state.value}")

    async def handle_command(self, command):
        if command == "m":
            await self.session.toggle_mute()
        elif command == "v":
            await self.session.toggle_video()
        elif command == "s":
            await self.session.toggle_screen_share()
        elif command:
            print(COMMANDS)

    async def run(self):
        """Join the call and process terminal commands until q or EOF"""
        logger.info(f"🚀 Joining room {self.room_id} as {self.display_name}")
        print(COMMANDS)

        status_task = asyncio.create_task(self.report_status())
        loop = asyncio.get_event_loop()
        try:
            async with self.session:
                await self.session.join(self.display_name, self.audio_only)
                if self.session.state == CallState.LOBBY:
                    return

                while self.session.state != CallState.ENDED:
                    line = await loop.run_in_executor(None, sys.stdin.readline)
                    command = line.strip().lower()
                    if not line or command == "q":
                        break
                    try:
                        await self.handle_command(command)
                    except CallStateError as e:
                        print(f"* {e}")
        finally:
            status_task.cancel()
            await self.stop_sinks()
            logger.info("Client stopped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Workspace Call Client')
    parser.add_argument('--signaling', default=rtc_config.SIGNALING_URL,
                        help='Signaling server URL')
    parser.add_argument('--kind', choices=ROOM_KINDS, default='grid',
                        help='Workspace object the call belongs to')
    parser.add_argument('--id', dest='object_id', default='default',
                        help='Channel, conversation, grid or loop tile id')
    parser.add_argument('--name', default='Guest',
                        help='Display name')
    parser.add_argument('--audio-only', action='store_true',
                        help='Join without camera')

    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, rtc_config.LOG_LEVEL, logging.INFO))
    client = CallClient(args.signaling, args.kind, args.object_id, args.name, args.audio_only)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Client stopped")
