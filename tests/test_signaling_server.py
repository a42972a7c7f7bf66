"""End-to-end tests against a running signaling server."""

import asyncio
import json

import pytest
import pytest_asyncio
import websockets
from aiortc import RTCConfiguration

from call_session import CallSession
from call_state import CallState
from helpers import FakeMedia, FakePeers, eventually
from peer_connections import PeerConnectionManager
from signaling_client import SignalingTransport
from signaling_server import SignalingServer


@pytest_asyncio.fixture
async def server():
    signaling = SignalingServer()
    async with signaling.serve("127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        signaling.url = f"ws://127.0.0.1:{port}"
        yield signaling


async def recv(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def assert_silent(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def send(ws, **fields):
    await ws.send(json.dumps(fields))


async def join(url, room_id, name):
    ws = await websockets.connect(url)
    await send(ws, type="join", roomId=room_id, userId=f"user-{name}", displayName=name)
    joined = await recv(ws)
    assert joined["type"] == "room-joined"
    return ws, joined


@pytest.mark.asyncio
async def test_two_participants_meet(server):
    x, x_joined = await join(server.url, "r1", "X")
    y, y_joined = await join(server.url, "r1", "Y")
    try:
        assert [p["displayName"] for p in x_joined["participants"]] == ["X"]

        announced = await recv(x)
        assert announced["type"] == "participant-joined"
        assert announced["participant"]["id"] == y_joined["yourId"]
        assert announced["participant"]["displayName"] == "Y"

        assert {p["id"] for p in y_joined["participants"]} == {x_joined["yourId"], y_joined["yourId"]}
    finally:
        await x.close()
        await y.close()


@pytest.mark.asyncio
async def test_negotiation_is_relayed_with_sender(server):
    x, x_joined = await join(server.url, "r1", "X")
    y, y_joined = await join(server.url, "r1", "Y")
    try:
        await recv(x)  # participant-joined
        sdp = {"type": "offer", "sdp": "v=0"}
        await send(y, type="offer", to=x_joined["yourId"], sdp=sdp)

        assert await recv(x) == {"type": "offer", "from": y_joined["yourId"], "sdp": sdp}
        await assert_silent(y)
    finally:
        await x.close()
        await y.close()


@pytest.mark.asyncio
async def test_abrupt_close_counts_as_leave(server):
    x, x_joined = await join(server.url, "r1", "X")
    y, y_joined = await join(server.url, "r1", "Y")
    try:
        await recv(x)  # participant-joined

        await x.close()
        assert await recv(y) == {"type": "participant-left", "id": x_joined["yourId"]}

        z, z_joined = await join(server.url, "r1", "Z")
        assert {p["id"] for p in z_joined["participants"]} == {y_joined["yourId"], z_joined["yourId"]}
        await z.close()
    finally:
        await y.close()


@pytest.mark.asyncio
async def test_explicit_leave_then_close_announces_once(server):
    x, x_joined = await join(server.url, "r1", "X")
    y, _ = await join(server.url, "r1", "Y")
    try:
        await recv(x)  # participant-joined
        await send(x, type="leave")
        assert await recv(y) == {"type": "participant-left", "id": x_joined["yourId"]}

        await x.close()
        await assert_silent(y)
    finally:
        await y.close()


@pytest.mark.asyncio
async def test_malformed_message_errors_to_sender_only(server):
    x, _ = await join(server.url, "r1", "X")
    y, _ = await join(server.url, "r1", "Y")
    try:
        await recv(x)  # participant-joined

        await y.send("{not json")
        error = await recv(y)
        assert error["type"] == "error"
        assert error["message"]

        await send(y, type="offer", to="p-someone")
        assert (await recv(y))["type"] == "error"

        await assert_silent(x)
    finally:
        await x.close()
        await y.close()


@pytest.mark.asyncio
async def test_messages_before_join_are_rejected(server):
    async with websockets.connect(server.url) as ws:
        await send(ws, type="mute", audio=True)
        error = await recv(ws)
        assert error["type"] == "error"
        assert server.registry.rooms == {}


@pytest.mark.asyncio
async def test_joining_again_moves_to_the_new_room(server):
    x, x_joined = await join(server.url, "r1", "X")
    y, _ = await join(server.url, "r1", "Y")
    try:
        await recv(x)  # participant-joined

        await send(x, type="join", roomId="r2", userId="user-X", displayName="X")
        moved = await recv(x)
        assert moved["roomId"] == "r2"
        assert await recv(y) == {"type": "participant-left", "id": x_joined["yourId"]}
        assert server.registry.get_room_count("r1") == 1
        assert server.registry.get_room_count("r2") == 1
    finally:
        await x.close()
        await y.close()


@pytest.mark.asyncio
async def test_session_mute_reaches_the_other_member(server):
    observer, observer_joined = await join(server.url, "r1", "Y")
    session = CallSession(
        "r1",
        media=FakeMedia(),
        transport_factory=lambda emit: SignalingTransport(emit, server.url),
        peers_factory=FakePeers,
    )
    try:
        await session.join("X", audio_only=True)
        await eventually(lambda: session.state == CallState.IN_CALL)
        announced = await recv(observer)
        assert announced["type"] == "participant-joined"
        x_id = announced["participant"]["id"]
        assert session.data.local_id == x_id
        assert list(session.data.participants) == [observer_joined["yourId"]]

        offer = await recv(observer)
        assert offer == {"type": "offer", "from": x_id, "sdp": {"type": "offer", "sdp": f"offer-to-{observer_joined['yourId']}"}}

        assert await session.toggle_mute() is True
        assert await recv(observer) == {"type": "mute-update", "from": x_id, "audio": True, "video": True}
        assert session.state == CallState.IN_CALL
    finally:
        await session.leave()
        await observer.close()


@pytest.mark.asyncio
async def test_session_sees_peers_join_and_leave(server):
    session = CallSession(
        "r1",
        media=FakeMedia(),
        transport_factory=lambda emit: SignalingTransport(emit, server.url),
        peers_factory=FakePeers,
    )
    try:
        await session.join("X")
        await eventually(lambda: session.state == CallState.IN_CALL)

        other, other_joined = await join(server.url, "r1", "Y")
        other_id = other_joined["yourId"]
        await eventually(lambda: other_id in session.data.participants)
        await session.settle()
        assert ("offer", other_id, None) in session.peers.calls

        await other.close()
        await eventually(lambda: other_id not in session.data.participants)
        await session.settle()
        assert other_id in session.peers.destroyed
    finally:
        await session.leave()


def mesh_session(server):
    return CallSession(
        "mesh",
        media=FakeMedia(real_tracks=True),
        transport_factory=lambda emit: SignalingTransport(emit, server.url),
        peers_factory=lambda emit: PeerConnectionManager(emit, RTCConfiguration(iceServers=[])),
        reconnect_delay=0,
    )


def fully_connected(session, size):
    participants = session.data.participants.values()
    return (
        session.state == CallState.IN_CALL
        and len(participants) == size - 1
        and all(p.connection_state == "connected" for p in participants)
        and sorted(session.peers.peer_ids()) == sorted(session.data.participants)
    )


@pytest.mark.asyncio
async def test_sessions_joining_at_once_form_a_full_mesh(server):
    sessions = [mesh_session(server) for _ in range(3)]
    try:
        await asyncio.gather(*(s.join(f"S{i}") for i, s in enumerate(sessions)))
        await eventually(lambda: all(fully_connected(s, 3) for s in sessions), timeout=20.0)

        sharer, *others = sessions
        connections = {peer_id: sharer.peers.get(peer_id) for peer_id in sharer.peers.peer_ids()}
        sharer_id = sharer.data.local_id

        assert await sharer.toggle_screen_share() is True
        await eventually(lambda: all(s.data.participants[sharer_id].is_screen_sharing for s in others))
        await sharer.settle()
        assert {peer_id: sharer.peers.get(peer_id) for peer_id in sharer.peers.peer_ids()} == connections

        # Capture revoked from outside the app
        sharer.data.local.screen_stream.get_video_track().stop()
        await eventually(lambda: not sharer.data.local.is_screen_sharing)
        await eventually(lambda: not any(s.data.participants[sharer_id].is_screen_sharing for s in others))
        await sharer.settle()
        assert {peer_id: sharer.peers.get(peer_id) for peer_id in sharer.peers.peer_ids()} == connections
        assert all(fully_connected(s, 3) for s in sessions)
    finally:
        await asyncio.gather(*(s.leave() for s in sessions))

    assert all(s.state == CallState.ENDED for s in sessions)
    assert all(s.media.released == s.media.acquired for s in sessions)
