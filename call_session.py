#!/usr/bin/env python3
"""
Call Session
Client-side state machine for one call: acquires local media, talks to
the relay, and keeps one peer connection to every other participant.

States: lobby -> joining -> in-call -> reconnecting, and ended after leave().
Every relay message, transport loss, peer callback and capture end is an
event on a single queue, handled one at a time. User actions take the same
lock, so the state is never changed by two things at once. Offers and
answers run in their own tasks so one slow peer never blocks the others.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Set

import rtc_config
import signaling_protocol as protocol
from call_state import (
    CallState, LocalCandidateFound, PeerStateChanged, RemoteParticipant,
    RemoteTrackReceived, ScreenCaptureEnded, ServerMessageReceived, SessionData,
    SpeakingChanged, TransportClosed,
)
from media_streams import DeviceError, MediaStreamController, SpeakingDetector
from peer_connections import PeerConnectionManager
from signaling_client import SignalingTransport

logger = logging.getLogger(__name__)


class CallStateError(RuntimeError):
    """A user action that is not valid in the current call state"""


class CallSession:
    def __init__(self, room_id: str, media: Optional[MediaStreamController] = None,
                 transport_factory: Optional[Callable[[Callable], Any]] = None,
                 peers_factory: Optional[Callable[[Callable], Any]] = None,
                 on_change: Optional[Callable[[SessionData], None]] = None,
                 on_notice: Optional[Callable[[str], None]] = None,
                 signaling_url: str = rtc_config.SIGNALING_URL,
                 reconnect_attempts: int = rtc_config.RECONNECT_ATTEMPTS,
                 reconnect_delay: float = rtc_config.RECONNECT_DELAY,
                 user_id: Optional[str] = None):
        self.room_id = room_id
        self.media = media or MediaStreamController()
        self.transport_factory = transport_factory or (lambda emit: SignalingTransport(emit, signaling_url))
        self.peers_factory = peers_factory or PeerConnectionManager
        self.on_change = on_change
        self.on_notice = on_notice
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"

        self.data = SessionData(room_id=room_id)
        self.audio_only = False
        self.transport = None
        self.peers = None
        self.events: asyncio.Queue = asyncio.Queue()

        self._lock = asyncio.Lock()
        self._accepting = False
        self._dispatcher: Optional[asyncio.Task] = None
        self._join_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_count = 0
        self._tasks: Set[asyncio.Task] = set()
        self._monitors: Dict[str, asyncio.Task] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.leave()

    @property
    def state(self) -> CallState:
        return self.data.state

    def emit(self, event):
        """Queue an event for the dispatch loop"""
        if self._accepting:
            self.events.put_nowait(event)

    def _changed(self):
        if self.on_change:
            self.on_change(self.data)

    def _notice(self, text):
        logger.info(text)
        if self.on_notice:
            self.on_notice(text)

    def _set_state(self, state: CallState):
        if self.data.state != state:
            logger.info(f"Call state {self.data.state.value} -> {state.value}")
            self.data.state = state
        self._changed()

    async def _send(self, message: Dict[str, Any]):
        if self.transport is not None:
            await self.transport.send(message)

    def _spawn(self, coro, label):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task, label):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"{label} failed: {task.exception()}")

    async def settle(self):
        """Wait until queued events and pending negotiations are processed"""
        while True:
            if self._dispatcher is not None and not self._dispatcher.done():
                await self.events.join()
            if not self._tasks:
                return
            await asyncio.wait(list(self._tasks))

    # === User actions ===

    async def join(self, display_name: str, audio_only: bool = False):
        """Acquire media, connect to the relay and ask to join the room"""
        async with self._lock:
            if self.data.state not in (CallState.LOBBY, CallState.ENDED):
                raise CallStateError(f"Cannot join while {self.data.state.value}")

            await self._stop_dispatcher()
            self.data = SessionData(room_id=self.room_id, display_name=display_name.strip() or "Guest")
            self.audio_only = audio_only
            self.events = asyncio.Queue()
            self.peers = self.peers_factory(self.emit)
            self._reconnect_count = 0
            self._accepting = True
            self._set_state(CallState.JOINING)
            task = self._join_task = asyncio.create_task(self._start())

        # leave() may cancel the attempt, which is not an error for the caller
        await asyncio.wait([task])

    async def _start(self):
        stream = None
        transport = None
        try:
            stream = await self.media.acquire_local(audio=True, video=not self.audio_only)
            transport = self.transport_factory(self.emit)
            await transport.connect()
        except asyncio.CancelledError:
            await self._abort_start(stream, transport)
            raise
        except Exception as e:
            await self._abort_start(stream, transport)
            message = str(e) if isinstance(e, DeviceError) else f"Failed to join: {e}"
            self._accepting = False
            self.data.error = message
            self._set_state(CallState.LOBBY)
            self._notice(message)
            return

        local = self.data.local
        local.stream = stream
        local.audio_muted = False
        local.video_muted = stream.get_video_track() is None
        self.transport = transport
        self._dispatcher = asyncio.create_task(self._dispatch())
        await self._send({
            "type": protocol.JOIN,
            "roomId": self.room_id,
            "userId": self.user_id,
            "displayName": self.data.display_name,
        })
        self._changed()

    async def _abort_start(self, stream, transport):
        self.media.release(stream)
        if transport is not None:
            await transport.close()

    async def leave(self):
        """End the call from any state; safe to call more than once"""
        for task in (self._join_task, self._reconnect_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait([task])
        self._join_task = self._reconnect_task = None

        async with self._lock:
            await self._stop_dispatcher()
            await self._send({"type": protocol.LEAVE})
            await self._teardown()
            if self.data.state != CallState.ENDED:
                self._set_state(CallState.ENDED)

    async def toggle_mute(self) -> bool:
        async with self._lock:
            local = self.data.local
            local.audio_muted = not local.audio_muted
            track = local.stream.get_audio_track() if local.stream else None
            self.media.set_track_enabled(track, not local.audio_muted)
            await self._send({"type": protocol.MUTE, "audio": local.audio_muted})
            self._changed()
            self._notice("Muted" if local.audio_muted else "Unmuted")
            return local.audio_muted

    async def toggle_video(self) -> bool:
        async with self._lock:
            local = self.data.local
            local.video_muted = not local.video_muted
            track = local.stream.get_video_track() if local.stream else None
            self.media.set_track_enabled(track, not local.video_muted)
            await self._send({"type": protocol.MUTE, "video": local.video_muted})
            self._changed()
            self._notice("Camera off" if local.video_muted else "Camera on")
            return local.video_muted

    async def toggle_screen_share(self) -> bool:
        async with self._lock:
            if self.data.local.is_screen_sharing:
                await self._stop_screen_share()
            elif self.data.state in (CallState.IN_CALL, CallState.RECONNECTING):
                await self._start_screen_share()
            else:
                raise CallStateError(f"Cannot share screen while {self.data.state.value}")
            return self.data.local.is_screen_sharing

    # === Screen share ===

    async def _start_screen_share(self):
        try:
            stream = await self.media.acquire_screen()
        except DeviceError as e:
            logger.warning(f"Screen share failed: {e}")
            self._notice("Could not share screen")
            return

        local = self.data.local
        local.screen_stream = stream
        local.is_screen_sharing = True
        self.media.on_ended(stream, lambda: self.emit(ScreenCaptureEnded(stream)))
        # Announced first, so peers tag a renegotiated video as the share
        await self._send({"type": protocol.SCREEN_SHARE, "active": True})
        await self._swap_video(stream)
        self._changed()
        self._notice("Sharing screen")

    async def _stop_screen_share(self):
        local = self.data.local
        stream = local.screen_stream
        local.screen_stream = None
        local.is_screen_sharing = False
        await self._swap_video(None)
        self.media.release(stream)
        await self._send({"type": protocol.SCREEN_SHARE, "active": False})
        self._changed()
        self._notice("Screen share stopped")

    async def _swap_video(self, screen_stream):
        if self.peers is None:
            return
        for peer_id in self.peers.peer_ids():
            try:
                if await self.peers.swap_outgoing_video(peer_id, screen_stream):
                    self._spawn(self._offer_to(peer_id), f"Offer to {peer_id}")
            except Exception as e:
                logger.warning(f"Video swap for {peer_id} failed: {e}")

    # === Negotiation ===

    def _outgoing_screen(self):
        local = self.data.local
        return local.screen_stream if local.is_screen_sharing else None

    async def _offer_to(self, peer_id):
        offer = await self.peers.create_offer(peer_id, self.data.local.stream, self._outgoing_screen())
        await self._send({"type": protocol.OFFER, "to": peer_id, "sdp": offer})

    async def _answer(self, peer_id, sdp):
        # The smaller id gives way when both sides offer at once
        polite = (self.data.local_id or "") < peer_id
        answer = await self.peers.accept_offer(
            peer_id, sdp, self.data.local.stream, self._outgoing_screen(), polite=polite
        )
        if answer is not None:
            await self._send({"type": protocol.ANSWER, "to": peer_id, "sdp": answer})

    # === Event dispatch ===

    async def _dispatch(self):
        queue = self.events
        while True:
            event = await queue.get()
            try:
                async with self._lock:
                    await self._handle(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
            finally:
                queue.task_done()

    async def _stop_dispatcher(self):
        task = self._dispatcher
        self._dispatcher = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait([task])

    async def _handle(self, event):
        if isinstance(event, ServerMessageReceived):
            await self._handle_server_message(event.message)

        elif isinstance(event, TransportClosed):
            if event.transport is self.transport:
                await self._on_transport_closed()

        elif isinstance(event, LocalCandidateFound):
            await self._send({"type": protocol.ICE_CANDIDATE, "to": event.peer_id, "candidate": event.candidate})

        elif isinstance(event, RemoteTrackReceived):
            participant = self.data.participants.get(event.peer_id)
            if participant is None:
                return
            if event.is_screen_share:
                participant.screen_stream = event.stream
            else:
                participant.stream = event.stream
                if event.stream.get_audio_track() is not None:
                    self._watch_speaking(event.peer_id)
            self._changed()

        elif isinstance(event, PeerStateChanged):
            participant = self.data.participants.get(event.peer_id)
            if participant is not None:
                participant.connection_state = event.state
                self._changed()

        elif isinstance(event, SpeakingChanged):
            participant = self.data.participants.get(event.peer_id)
            if participant is not None:
                participant.is_speaking = event.speaking
                self._changed()

        elif isinstance(event, ScreenCaptureEnded):
            # Sharing revoked outside the app, same as the user stopping it
            local = self.data.local
            if local.is_screen_sharing and event.stream is local.screen_stream:
                await self._stop_screen_share()

    async def _handle_server_message(self, message):
        msg_type = message.get("type")
        participants = self.data.participants

        if msg_type == protocol.ROOM_JOINED:
            await self._on_room_joined(message)

        elif msg_type == protocol.PARTICIPANT_JOINED:
            info = message.get("participant") or {}
            peer_id = info.get("id")
            if self.data.state != CallState.IN_CALL or not peer_id or peer_id == self.data.local_id:
                return
            participant = RemoteParticipant.from_info(info)
            participants.pop(peer_id, None)
            participants[peer_id] = participant
            self._changed()
            self._spawn(self._offer_to(peer_id), f"Offer to {peer_id}")
            self._notice(f"{participant.display_name} joined")

        elif msg_type == protocol.PARTICIPANT_LEFT:
            peer_id = message.get("id")
            participant = participants.pop(peer_id, None)
            if participant is None:
                return
            await self._drop_peer(peer_id)
            self._changed()
            self._notice(f"{participant.display_name} left")

        elif msg_type in protocol.NEGOTIATION_TYPES:
            peer_id = message.get("from")
            if self.data.state != CallState.IN_CALL or peer_id not in participants:
                logger.debug(f"Ignoring {msg_type} from unknown participant {peer_id}")
                return
            if msg_type == protocol.OFFER:
                self._spawn(self._answer(peer_id, message["sdp"]), f"Answer to {peer_id}")
            elif msg_type == protocol.ANSWER:
                self._spawn(self.peers.accept_answer(peer_id, message["sdp"]), f"Answer from {peer_id}")
            else:
                self._spawn(self.peers.add_remote_candidate(peer_id, message.get("candidate")),
                            f"Candidate from {peer_id}")

        elif msg_type == protocol.MUTE_UPDATE:
            participant = participants.get(message.get("from"))
            if participant is not None:
                participant.audio_muted = bool(message.get("audio"))
                participant.video_muted = bool(message.get("video"))
                self._changed()

        elif msg_type == protocol.SCREEN_SHARE_UPDATE:
            participant = participants.get(message.get("from"))
            if participant is not None:
                participant.is_screen_sharing = bool(message.get("active"))
                screen = self.peers.set_remote_sharing(participant.id, participant.is_screen_sharing)
                if screen is not None:
                    participant.screen_stream = screen
                elif not participant.is_screen_sharing:
                    participant.screen_stream = None
                self._changed()

        elif msg_type == protocol.ERROR:
            self.data.error = message.get("message") or "Signaling error"
            self._changed()
            self._notice(self.data.error)

        else:
            logger.info(f"Received: {msg_type}")

    async def _on_room_joined(self, message):
        if self.data.state not in (CallState.JOINING, CallState.RECONNECTING):
            logger.warning(f"Unexpected room-joined while {self.data.state.value}")
            return

        rejoined = self.data.state == CallState.RECONNECTING
        your_id = message.get("yourId")
        self.data.local_id = your_id
        self.data.participants = {
            info["id"]: RemoteParticipant.from_info(info)
            for info in message.get("participants") or []
            if info.get("id") and info["id"] != your_id
        }
        self.data.error = None
        self._reconnect_count = 0
        self._set_state(CallState.IN_CALL)

        # The relay starts everyone unmuted with video off
        local = self.data.local
        if local.audio_muted or not local.video_muted:
            await self._send({"type": protocol.MUTE, "audio": local.audio_muted, "video": local.video_muted})
        if local.is_screen_sharing:
            await self._send({"type": protocol.SCREEN_SHARE, "active": True})

        for peer_id in self.data.participants:
            self._spawn(self._offer_to(peer_id), f"Offer to {peer_id}")
        self._notice("Rejoined the call" if rejoined else "You joined the call")

    def _watch_speaking(self, peer_id):
        if peer_id in self._monitors:
            return
        track = self.peers.subscribe_remote(peer_id, "audio")
        if track is None:
            return
        detector = SpeakingDetector(track, lambda speaking: self.emit(SpeakingChanged(peer_id, speaking)))
        self._monitors[peer_id] = asyncio.create_task(detector.run())

    async def _drop_peer(self, peer_id):
        monitor = self._monitors.pop(peer_id, None)
        if monitor is not None:
            monitor.cancel()
            await asyncio.wait([monitor])
        await self.peers.destroy(peer_id)

    # === Transport loss ===

    async def _on_transport_closed(self):
        old = self.transport
        self.transport = None
        await old.close()

        if self.data.state == CallState.IN_CALL:
            self._set_state(CallState.RECONNECTING)
            self._notice("Connection lost, reconnecting")
            self._start_reconnect()
        elif self.data.state == CallState.RECONNECTING:
            self._start_reconnect()
        elif self.data.state == CallState.JOINING:
            await self._teardown()
            self.data.error = "Connection to the call server was lost"
            self._set_state(CallState.LOBBY)
            self._notice(self.data.error)

    def _start_reconnect(self):
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self):
        """Rejoin the room with a new relay connection, keeping local media"""
        async with self._lock:
            # Participant ids belong to the lost relay connection
            for peer_id in list(self._monitors):
                task = self._monitors.pop(peer_id)
                task.cancel()
            for task in list(self._tasks):
                task.cancel()
            await self.peers.destroy_all()
            self.data.participants = {}
            self.data.local_id = None
            self._changed()

        while self._reconnect_count < self.reconnect_attempts:
            delay = self.reconnect_delay * (2 ** self._reconnect_count)
            self._reconnect_count += 1
            await asyncio.sleep(delay)

            transport = self.transport_factory(self.emit)
            try:
                await transport.connect()
            except asyncio.CancelledError:
                await transport.close()
                raise
            except Exception as e:
                logger.warning(f"Reconnect attempt {self._reconnect_count}/{self.reconnect_attempts} failed: {e}")
                continue

            async with self._lock:
                if self.data.state != CallState.RECONNECTING:
                    await transport.close()
                    return
                self.transport = transport
                await self._send({
                    "type": protocol.JOIN,
                    "roomId": self.room_id,
                    "userId": self.user_id,
                    "displayName": self.data.display_name,
                })
            return

        async with self._lock:
            if self.data.state != CallState.RECONNECTING:
                return
            await self._stop_dispatcher()
            await self._teardown()
            self.data.error = "Connection lost"
            self._set_state(CallState.ENDED)
            self._notice(self.data.error)

    async def _teardown(self):
        """Release everything this call holds"""
        self._accepting = False

        pending = list(self._tasks) + list(self._monitors.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        self._tasks.clear()
        self._monitors.clear()

        if self.peers is not None:
            await self.peers.destroy_all()
        if self.transport is not None:
            await self.transport.close()
            self.transport = None

        local = self.data.local
        self.media.release(local.stream)
        self.media.release(local.screen_stream)
        local.stream = None
        local.screen_stream = None
        local.is_screen_sharing = False

        self.data.participants = {}
        self.data.local_id = None
