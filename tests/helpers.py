"""Fakes standing in for devices, the relay connection and peer connections."""

import asyncio
import uuid

from aiortc import AudioStreamTrack, VideoStreamTrack

from call_state import ServerMessageReceived, TransportClosed
from media_streams import DeviceError, MediaStream, MediaStreamController, SwitchableTrack


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.id = str(uuid.uuid4())
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMedia(MediaStreamController):
    def __init__(self, fail_local=False, fail_screen=False, real_tracks=False):
        super().__init__()
        self.fail_local = fail_local
        self.fail_screen = fail_screen
        # Generated aiortc tracks that can go over a real peer connection
        self.real_tracks = real_tracks
        self.acquired = []
        self.released = []
        self.ended_callbacks = {}

    async def acquire_local(self, audio=True, video=True):
        if self.fail_local:
            raise DeviceError("Permission denied")
        tracks = [self._track("audio")] if audio else []
        if video:
            tracks.append(self._track("video"))
        stream = MediaStream(tracks)
        self.acquired.append(stream)
        return stream

    async def acquire_screen(self):
        if self.fail_screen:
            raise DeviceError("Picker cancelled")
        if self.real_tracks:
            stream = MediaStream([VideoStreamTrack()])
        else:
            stream = MediaStream([FakeTrack("video")])
        self.acquired.append(stream)
        return stream

    def _track(self, kind):
        if not self.real_tracks:
            return FakeTrack(kind)
        return SwitchableTrack(AudioStreamTrack() if kind == "audio" else VideoStreamTrack())

    def on_ended(self, stream, callback):
        self.ended_callbacks[stream.id] = callback
        if self.real_tracks:
            super().on_ended(stream, callback)

    def release(self, stream):
        if stream is not None and not stream.released:
            self.released.append(stream)
        super().release(stream)


class FakeTransport:
    def __init__(self, emit, fail=False, block=False):
        self.emit = emit
        self.fail = fail
        self.gate = asyncio.Event()
        if not block:
            self.gate.set()
        self.connecting = False
        self.sent = []
        self.closed = False

    async def connect(self):
        self.connecting = True
        await self.gate.wait()
        if self.fail:
            raise OSError("Connection refused")

    async def send(self, message):
        if not self.closed:
            self.sent.append(message)

    async def close(self):
        self.closed = True

    def of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]

    def deliver(self, message):
        self.emit(ServerMessageReceived(message))

    def drop(self):
        self.closed = True
        self.emit(TransportClosed(self))


class TransportFactory:
    def __init__(self):
        self.created = []
        self.fail = False
        self.block = False

    def __call__(self, emit):
        transport = FakeTransport(emit, fail=self.fail, block=self.block)
        self.created.append(transport)
        return transport

    @property
    def latest(self):
        return self.created[-1]


class FakePeers:
    def __init__(self, emit):
        self.emit = emit
        self.connections = {}
        self.calls = []
        self.swaps = []
        self.destroyed = []
        self.destroy_all_calls = 0
        self.needs_renegotiation = False
        self.sharing = []
        # Cleared to hold offers and answers until the test releases them
        self.gate = asyncio.Event()
        self.gate.set()

    def peer_ids(self):
        return list(self.connections)

    async def create_offer(self, peer_id, local_stream, screen_stream=None):
        self.connections.setdefault(peer_id, object())
        self.calls.append(("offer", peer_id, screen_stream))
        await self.gate.wait()
        return {"type": "offer", "sdp": f"offer-to-{peer_id}"}

    async def accept_offer(self, peer_id, sdp, local_stream, screen_stream=None, polite=True):
        self.connections.setdefault(peer_id, object())
        self.calls.append(("accept_offer", peer_id, polite))
        await self.gate.wait()
        return {"type": "answer", "sdp": f"answer-to-{peer_id}"}

    async def accept_answer(self, peer_id, sdp):
        self.calls.append(("accept_answer", peer_id, sdp))

    async def add_remote_candidate(self, peer_id, candidate):
        self.calls.append(("candidate", peer_id, candidate))

    async def swap_outgoing_video(self, peer_id, screen_stream):
        self.swaps.append((peer_id, screen_stream))
        return self.needs_renegotiation

    def set_remote_sharing(self, peer_id, active):
        self.sharing.append((peer_id, active))
        return None

    def subscribe_remote(self, peer_id, kind):
        return None

    async def destroy(self, peer_id):
        self.connections.pop(peer_id, None)
        self.destroyed.append(peer_id)

    async def destroy_all(self):
        self.destroy_all_calls += 1
        for peer_id in self.peer_ids():
            await self.destroy(peer_id)
