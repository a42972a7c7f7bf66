"""Tests covering local media acquisition, muting and level detection."""

import fractions

import av
import numpy as np
import pytest
from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack

import media_streams
from media_streams import (
    DeviceError, MediaStream, MediaStreamController, SpeakingDetector, SwitchableTrack, audio_level,
)


def tone_frame(value, samples=960):
    frame = av.AudioFrame.from_ndarray(np.full((1, samples), value, dtype=np.int16), format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 0
    frame.time_base = fractions.Fraction(1, 48000)
    return frame


class ToneTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        return tone_frame(8000)


class FakePlayer:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


def test_audio_level_of_silence_and_tone():
    assert audio_level(tone_frame(0)) == 0.0
    assert audio_level(tone_frame(16384)) == pytest.approx(0.5, abs=1e-3)


@pytest.mark.asyncio
async def test_disabled_audio_is_silent_but_keeps_timing():
    track = SwitchableTrack(ToneTrack())
    assert audio_level(await track.recv()) > 0.2

    MediaStreamController.set_track_enabled(track, False)
    frame = await track.recv()
    assert audio_level(frame) == 0.0
    assert frame.samples == 960
    assert frame.sample_rate == 48000
    track.stop()


@pytest.mark.asyncio
async def test_disabled_video_is_black_at_the_same_size():
    source = VideoStreamTrack()
    track = SwitchableTrack(source)
    track.enabled = False

    frame = await track.recv()

    assert (frame.width, frame.height) == (640, 480)
    assert frame.to_ndarray(format="rgb24").max() == 0
    track.stop()


def test_stopping_either_side_ends_the_switchable_track():
    source = AudioStreamTrack()
    track = SwitchableTrack(source)
    track.stop()
    assert source.readyState == "ended"

    source = AudioStreamTrack()
    track = SwitchableTrack(source)
    source.stop()
    assert track.readyState == "ended"


def test_release_stops_every_track_once():
    stream = MediaStream([AudioStreamTrack(), VideoStreamTrack()])
    MediaStreamController.release(stream)
    MediaStreamController.release(stream)
    MediaStreamController.release(None)

    assert stream.released
    assert all(track.readyState == "ended" for track in stream.tracks)


def test_on_ended_fires_when_capture_stops():
    calls = []
    stream = MediaStream([VideoStreamTrack()])
    MediaStreamController.on_ended(stream, lambda: calls.append("ended"))

    stream.get_video_track().stop()

    assert calls == ["ended"]


def test_speaking_detector_holds_through_short_pauses():
    changes = []
    detector = SpeakingDetector(AudioStreamTrack(), changes.append, threshold=0.1, hold=0.5)

    detector.feed(0.3, now=0.0)
    detector.feed(0.0, now=0.2)
    detector.feed(0.4, now=0.4)
    detector.feed(0.0, now=0.8)
    assert changes == [True]

    detector.feed(0.0, now=1.0)
    assert changes == [True, False]
    assert detector.speaking is False


@pytest.mark.asyncio
async def test_acquire_local_wraps_tracks(monkeypatch):
    opened = []

    def player(device, format=None, options=None):
        opened.append((device, options))
        if options:
            return FakePlayer(video=VideoStreamTrack())
        return FakePlayer(audio=AudioStreamTrack())

    monkeypatch.setattr(media_streams, "MediaPlayer", player)
    controller = MediaStreamController(camera_device="cam", camera_format="v4l2", mic_device="mic", mic_format="pulse")

    stream = await controller.acquire_local()

    assert [device for device, _ in opened] == ["mic", "cam"]
    assert all(isinstance(track, SwitchableTrack) for track in stream.tracks)
    assert stream.get_audio_track() is not None
    assert stream.get_video_track() is not None
    controller.release(stream)


@pytest.mark.asyncio
async def test_audio_only_never_opens_the_camera(monkeypatch):
    opened = []

    def player(device, format=None, options=None):
        opened.append(device)
        return FakePlayer(audio=AudioStreamTrack())

    monkeypatch.setattr(media_streams, "MediaPlayer", player)
    controller = MediaStreamController(camera_device="cam", mic_device="mic")

    stream = await controller.acquire_local(audio=True, video=False)

    assert opened == ["mic"]
    assert stream.get_video_track() is None
    controller.release(stream)


@pytest.mark.asyncio
async def test_camera_failure_releases_the_microphone(monkeypatch):
    mic = AudioStreamTrack()

    def player(device, format=None, options=None):
        if device == "cam":
            raise OSError("Permission denied")
        return FakePlayer(audio=mic)

    monkeypatch.setattr(media_streams, "MediaPlayer", player)
    controller = MediaStreamController(camera_device="cam", mic_device="mic")

    with pytest.raises(DeviceError):
        await controller.acquire_local()

    assert mic.readyState == "ended"


@pytest.mark.asyncio
async def test_device_without_media_is_a_device_error(monkeypatch):
    monkeypatch.setattr(media_streams, "MediaPlayer", lambda device, format=None, options=None: FakePlayer())
    controller = MediaStreamController(camera_device="cam", mic_device="mic")

    with pytest.raises(DeviceError):
        await controller.acquire_local(audio=True, video=False)


@pytest.mark.asyncio
async def test_screen_capture_unavailable_is_a_device_error(monkeypatch):
    def no_display():
        raise RuntimeError("no display")

    monkeypatch.setattr(media_streams, "mss", no_display)

    with pytest.raises(DeviceError):
        await MediaStreamController().acquire_screen()
