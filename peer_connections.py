#!/usr/bin/env python3
"""
Peer Connection Manager
Owns exactly one RTCPeerConnection per remote participant of the mesh.
Supports NAT traversal with STUN/TURN servers.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

import rtc_config
from call_state import LocalCandidateFound, PeerStateChanged, RemoteTrackReceived
from media_streams import MediaStream

logger = logging.getLogger(__name__)


def describe(description) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


class PeerConnectionManager:
    def __init__(self, emit: Callable[[Any], None], configuration: Optional[RTCConfiguration] = None):
        self.emit = emit
        self.configuration = configuration or rtc_config.rtc_configuration()
        self.relay = MediaRelay()

        self.peer_connections: Dict[str, RTCPeerConnection] = {}
        # peer_id -> {kind: RTCRtpSender}
        self.senders: Dict[str, Dict[str, Any]] = {}
        # camera/mic stream each connection was offered with, used to restore after a share
        self.local_streams: Dict[str, MediaStream] = {}
        # peer_id -> {"camera" | "screen": MediaStream}
        self.remote_streams: Dict[str, Dict[str, MediaStream]] = {}
        self.remote_tracks: Dict[str, List[MediaStreamTrack]] = {}
        # peers that announced a screen share, their next new video is the share
        self.remote_sharing: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, peer_id) -> asyncio.Lock:
        if peer_id not in self._locks:
            self._locks[peer_id] = asyncio.Lock()
        return self._locks[peer_id]

    def get(self, peer_id) -> Optional[RTCPeerConnection]:
        return self.peer_connections.get(peer_id)

    def peer_ids(self) -> List[str]:
        return list(self.peer_connections)

    def _outgoing(self, track: MediaStreamTrack) -> MediaStreamTrack:
        # Each connection gets its own relay subscription of the local track
        return self.relay.subscribe(track, buffered=(track.kind == "audio"))

    async def create_connection(self, peer_id: str) -> RTCPeerConnection:
        async with self._lock(peer_id):
            return await self._create_connection(peer_id)

    async def _create_connection(self, peer_id):
        """Create WebRTC peer connection for a remote participant"""
        if peer_id in self.peer_connections:
            logger.info(f"Replacing stale connection for {peer_id}")
            await self._close(peer_id)

        pc = RTCPeerConnection(configuration=self.configuration)
        self.peer_connections[peer_id] = pc
        self.senders[peer_id] = {}

        def current():
            return self.peer_connections.get(peer_id) is pc

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Connection state for {peer_id}: {pc.connectionState}")
            if current():
                self.emit(PeerStateChanged(peer_id, pc.connectionState))

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            if candidate and current():
                self.emit(LocalCandidateFound(peer_id, {
                    'candidate': "candidate:" + candidate_to_sdp(candidate),
                    'sdpMid': candidate.sdpMid,
                    'sdpMLineIndex': candidate.sdpMLineIndex
                }))

        @pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {peer_id}")
            if not current():
                return
            self.remote_tracks.setdefault(peer_id, []).append(track)

            streams = self.remote_streams.setdefault(peer_id, {})
            camera = streams.get("camera")
            # A second inbound video, or any video from an announced share, is the screen
            is_screen = track.kind == "video" and (
                peer_id in self.remote_sharing
                or (camera is not None and camera.get_video_track() is not None)
            )
            stream = streams.setdefault("screen" if is_screen else "camera", MediaStream())
            stream.add_track(self.relay.subscribe(track, buffered=False))
            self.emit(RemoteTrackReceived(peer_id, stream, is_screen))

        return pc

    def _attach(self, peer_id, pc, local_stream, screen_stream=None):
        if local_stream is None:
            return
        self.local_streams[peer_id] = local_stream
        senders = self.senders.setdefault(peer_id, {})

        tracks = {track.kind: track for track in local_stream.tracks}
        if screen_stream is not None and screen_stream.get_video_track() is not None:
            tracks["video"] = screen_stream.get_video_track()

        for kind, track in tracks.items():
            if kind not in senders:
                senders[kind] = pc.addTrack(self._outgoing(track))

    async def create_offer(self, peer_id: str, local_stream: Optional[MediaStream],
                           screen_stream: Optional[MediaStream] = None) -> Dict[str, str]:
        """Attach local tracks and create an offer for a peer"""
        async with self._lock(peer_id):
            pc = self.peer_connections.get(peer_id) or await self._create_connection(peer_id)
            self._attach(peer_id, pc, local_stream, screen_stream)

            # Always offer to receive both kinds, even from an audio-only client
            kinds = {t.kind for t in pc.getTransceivers()}
            for kind in ("audio", "video"):
                if kind not in kinds:
                    pc.addTransceiver(kind, direction="recvonly")

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            logger.info(f"Created offer for {peer_id} with {len(pc.getTransceivers())} transceivers")
            return describe(pc.localDescription)

    async def accept_offer(self, peer_id: str, sdp: Dict[str, str], local_stream: Optional[MediaStream],
                           screen_stream: Optional[MediaStream] = None,
                           polite: bool = True) -> Optional[Dict[str, str]]:
        """
        Apply a remote offer and return the answer.

        Both sides of a new pair offer at once. On such a collision the
        impolite side keeps its own offer and returns None, the polite
        side drops its offer and answers on a fresh connection.
        """
        async with self._lock(peer_id):
            pc = self.peer_connections.get(peer_id)
            if pc is not None and pc.signalingState != "stable":
                if not polite:
                    logger.info(f"Ignoring colliding offer from {peer_id}")
                    return None
                logger.info(f"Offer collision with {peer_id}, answering theirs")
                pc = None

            if pc is None:
                pc = await self._create_connection(peer_id)

            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type=sdp['type']))
            self._attach(peer_id, pc, local_stream, screen_stream)

            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            logger.info(f"Created answer for {peer_id}")
            return describe(pc.localDescription)

    async def accept_answer(self, peer_id: str, sdp: Dict[str, str]):
        async with self._lock(peer_id):
            pc = self.peer_connections.get(peer_id)
            if pc is None or pc.signalingState != "have-local-offer":
                logger.debug(f"Ignoring answer from {peer_id}, no offer outstanding")
                return
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type=sdp['type']))
            logger.info(f"Applied answer from {peer_id}")

    async def add_remote_candidate(self, peer_id: str, candidate: Dict[str, Any]):
        """Add a peer's ICE candidate; bad candidates are logged and skipped"""
        pc = self.peer_connections.get(peer_id)
        if pc is None:
            return
        sdp = (candidate or {}).get('candidate') or ""
        if not sdp:
            return  # end of candidates

        try:
            if sdp.startswith("candidate:"):
                sdp = sdp.split(":", 1)[1]
            ice_candidate = candidate_from_sdp(sdp)
            ice_candidate.sdpMid = candidate.get('sdpMid')
            ice_candidate.sdpMLineIndex = candidate.get('sdpMLineIndex')
            async with self._lock(peer_id):
                await pc.addIceCandidate(ice_candidate)
            logger.debug(f"Added ICE candidate from {peer_id}")
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate from {peer_id}: {e}")

    async def swap_outgoing_video(self, peer_id: str, screen_stream: Optional[MediaStream]) -> bool:
        """
        Send the screen capture instead of the camera (or the camera again
        when screen_stream is None) on the existing video sender.
        Returns True when a video sender had to be added, which needs a new offer.
        """
        async with self._lock(peer_id):
            pc = self.peer_connections.get(peer_id)
            if pc is None:
                return False

            if screen_stream is not None:
                source = screen_stream.get_video_track()
            else:
                camera = self.local_streams.get(peer_id)
                source = camera.get_video_track() if camera else None

            senders = self.senders.setdefault(peer_id, {})
            sender = senders.get("video")
            if sender is None:
                if source is None:
                    return False
                senders["video"] = pc.addTrack(self._outgoing(source))
                logger.info(f"Added video sender for {peer_id}, renegotiation needed")
                return True

            old_track = sender.track
            sender.replaceTrack(self._outgoing(source) if source else None)
            if old_track is not None:
                old_track.stop()
            logger.info(f"Outgoing video for {peer_id} is now {'screen' if screen_stream else 'camera'}")
            return False

    def set_remote_sharing(self, peer_id: str, active: bool) -> Optional[MediaStream]:
        """
        Record a peer's screen share announcement.
        Returns the screen stream already received from that peer, if any.
        """
        if not active:
            self.remote_sharing.discard(peer_id)
            return None
        self.remote_sharing.add(peer_id)
        return self.remote_streams.get(peer_id, {}).get("screen")

    def subscribe_remote(self, peer_id: str, kind: str) -> Optional[MediaStreamTrack]:
        """Independent copy of a peer's inbound track of the given kind"""
        for track in self.remote_tracks.get(peer_id, []):
            if track.kind == kind:
                return self.relay.subscribe(track, buffered=False)
        return None

    async def _close(self, peer_id):
        pc = self.peer_connections.pop(peer_id, None)
        for sender in self.senders.pop(peer_id, {}).values():
            if sender.track is not None:
                sender.track.stop()
        self.local_streams.pop(peer_id, None)
        for stream in self.remote_streams.pop(peer_id, {}).values():
            for track in stream.tracks:
                track.stop()
        self.remote_tracks.pop(peer_id, None)
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.error(f"Error closing connection for {peer_id}: {e}")

    async def destroy(self, peer_id: str):
        """Tear down the connection to one peer"""
        await self._close(peer_id)
        self._locks.pop(peer_id, None)
        self.remote_sharing.discard(peer_id)
        logger.info(f"Cleaned up connection for {peer_id}")

    async def destroy_all(self):
        peer_ids = self.peer_ids()
        if peer_ids:
            await asyncio.gather(*(self.destroy(peer_id) for peer_id in peer_ids))
