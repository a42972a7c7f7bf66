#!/usr/bin/env python3
"""
Room Registry
Process-wide table of call rooms and their connected participants.
Operations on one room are serialized by that room's lock, different
rooms never wait on each other.

Nothing is sent while a lock is held. Every participant owns an outbox
drained by its own writer task, so a client that stops reading only
delays its own messages.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from websockets.exceptions import ConnectionClosed

import signaling_protocol as protocol

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """A connected call member. The id is per connection, not a user id."""
    id: str
    room_id: str
    display_name: str
    connection: Any
    audio_muted: bool = False
    video_muted: bool = True
    is_screen_sharing: bool = False
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)

    def to_info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "audioMuted": self.audio_muted,
            "videoMuted": self.video_muted,
            "isScreenSharing": self.is_screen_sharing,
        }

    def deliver(self, message: Dict[str, Any]):
        """Queue a message for this participant; never waits on the connection"""
        self.outbox.put_nowait(message)

    def close_outbox(self):
        # The writer stops once everything queued before this is sent
        self.outbox.put_nowait(None)

    async def write_loop(self):
        while True:
            message = await self.outbox.get()
            try:
                if message is None:
                    return
                await self.send(message)
            finally:
                self.outbox.task_done()

    async def send(self, message: Dict[str, Any]):
        try:
            await self.connection.send(protocol.encode(message))
        except ConnectionClosed:
            logger.debug(f"Dropped {message.get('type')} for closed participant {self.id}")
        except Exception as e:
            logger.error(f"Error sending {message.get('type')} to {self.id}: {e}")


@dataclass
class Room:
    room_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    def others(self, participant_id: str) -> List[Participant]:
        return [p for p in self.participants.values() if p.id != participant_id]


class RoomRegistry:
    def __init__(self):
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}
        # participant_id -> room_id
        self.participant_rooms: Dict[str, str] = {}
        # writer task -> participant, kept until the outbox is drained
        self.writers: Dict[asyncio.Task, Participant] = {}

    @staticmethod
    def new_participant_id() -> str:
        return f"p-{uuid.uuid4().hex[:12]}"

    def _start_writer(self, participant: Participant):
        task = asyncio.create_task(participant.write_loop())
        self.writers[task] = participant
        task.add_done_callback(lambda t: self.writers.pop(t, None))

    @staticmethod
    def _fan_out(targets: List[Participant], message: Dict[str, Any]):
        for participant in targets:
            participant.deliver(message)

    def _room_for(self, participant_id: str) -> Optional[Room]:
        room_id = self.participant_rooms.get(participant_id)
        if room_id is None:
            return None
        return self.rooms.get(room_id)

    async def flush(self):
        """Wait until every queued message has been handed to its connection"""
        outboxes = [p.outbox for p in self.writers.values()]
        if outboxes:
            await asyncio.gather(*(outbox.join() for outbox in outboxes))

    async def close(self):
        """Stop every writer, dropping what is still queued"""
        tasks = list(self.writers)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    async def join(self, room_id: str, display_name: str, connection) -> Tuple[Participant, List[Dict[str, Any]]]:
        """Add a new participant, answer with the roster and announce it to the room"""
        while True:
            room = self.rooms.get(room_id)
            if room is None:
                room = Room(room_id)
                self.rooms[room_id] = room
                logger.info(f"Room '{room_id}' created")

            async with room.lock:
                # The room may have emptied and been deleted while we waited
                if room.closed:
                    continue

                participant = Participant(
                    id=self.new_participant_id(),
                    room_id=room_id,
                    display_name=display_name,
                    connection=connection,
                )
                room.participants[participant.id] = participant
                self.participant_rooms[participant.id] = room_id
                self._start_writer(participant)

                roster = [p.to_info() for p in room.participants.values()]
                logger.info(f"Participant '{display_name}' ({participant.id}) joined room '{room_id}'. "
                            f"Room has {len(room.participants)} participants")

                participant.deliver({
                    "type": protocol.ROOM_JOINED,
                    "roomId": room_id,
                    "yourId": participant.id,
                    "participants": roster,
                })
                self._fan_out(room.others(participant.id), {
                    "type": protocol.PARTICIPANT_JOINED,
                    "participant": participant.to_info(),
                })
                return participant, roster

    async def leave(self, participant_id: str) -> bool:
        """Remove a participant; returns False if it was not in any room"""
        room = self._room_for(participant_id)
        if room is None:
            return False

        async with room.lock:
            participant = room.participants.pop(participant_id, None)
            if participant is None:
                return False
            self.participant_rooms.pop(participant_id, None)
            participant.close_outbox()

            if not room.participants:
                room.closed = True
                if self.rooms.get(room.room_id) is room:
                    del self.rooms[room.room_id]
                logger.info(f"Room '{room.room_id}' deleted (empty)")
                return True

            logger.info(f"Participant '{participant.display_name}' ({participant_id}) left room "
                        f"'{room.room_id}'. Room has {len(room.participants)} participants")
            self._fan_out(list(room.participants.values()), {
                "type": protocol.PARTICIPANT_LEFT,
                "id": participant_id,
            })
            return True

    async def relay(self, from_id: str, to_id: str, message: Dict[str, Any]) -> bool:
        """Forward an offer/answer/ice-candidate to a member of the sender's room"""
        room = self._room_for(from_id)
        if room is None:
            return False

        async with room.lock:
            if from_id not in room.participants:
                return False
            target = room.participants.get(to_id)
            if target is None:
                # Expected race with a leave, not an error
                logger.debug(f"Target {to_id} not in room '{room.room_id}', dropping {message['type']} from {from_id}")
                return False

            relayed = {"type": message["type"], "from": from_id}
            if message["type"] == protocol.ICE_CANDIDATE:
                relayed["candidate"] = message["candidate"]
            else:
                relayed["sdp"] = message["sdp"]
            target.deliver(relayed)
            logger.debug(f"Relayed {message['type']} from {from_id} to {to_id}")
            return True

    async def update_mute(self, participant_id: str, audio: Optional[bool] = None,
                          video: Optional[bool] = None) -> bool:
        room = self._room_for(participant_id)
        if room is None:
            return False

        async with room.lock:
            participant = room.participants.get(participant_id)
            if participant is None:
                return False
            if audio is not None:
                participant.audio_muted = audio
            if video is not None:
                participant.video_muted = video

            self._fan_out(room.others(participant_id), {
                "type": protocol.MUTE_UPDATE,
                "from": participant_id,
                "audio": participant.audio_muted,
                "video": participant.video_muted,
            })
            return True

    async def update_screen_share(self, participant_id: str, active: bool) -> bool:
        room = self._room_for(participant_id)
        if room is None:
            return False

        async with room.lock:
            participant = room.participants.get(participant_id)
            if participant is None:
                return False
            participant.is_screen_sharing = active

            self._fan_out(room.others(participant_id), {
                "type": protocol.SCREEN_SHARE_UPDATE,
                "from": participant_id,
                "active": active,
            })
            return True

    def send_to(self, participant_id: str, message: Dict[str, Any]) -> bool:
        """Queue a message for one participant behind what it is already owed"""
        participant = self.get_participant(participant_id)
        if participant is None:
            return False
        participant.deliver(message)
        return True

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        room = self._room_for(participant_id)
        if room is None:
            return None
        return room.participants.get(participant_id)

    def get_room_count(self, room_id: str) -> int:
        room = self.rooms.get(room_id)
        return len(room.participants) if room else 0

    def get_room_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "room_id": room_id,
                "participant_count": len(room.participants),
                "participants": [p.to_info() for p in room.participants.values()],
            }
            for room_id, room in self.rooms.items()
        ]
