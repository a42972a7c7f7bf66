#!/usr/bin/env python3
"""
Media Stream Controller
Acquires and releases local camera, microphone and screen capture
streams, and mutes tracks without renegotiating peer connections.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, List, Optional

import av
import cv2
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from mss import mss
from PIL import Image

import rtc_config

logger = logging.getLogger(__name__)

MAX_SCREEN_WIDTH = 1920
MAX_SCREEN_HEIGHT = 1080


class DeviceError(RuntimeError):
    """A capture device or screen capture is denied or unavailable"""


class MediaStream:
    """A group of tracks acquired together and released together"""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self.id = str(uuid.uuid4())
        self.tracks: List[MediaStreamTrack] = list(tracks or [])
        self.released = False

    def add_track(self, track: MediaStreamTrack):
        self.tracks.append(track)

    def get_audio_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == "audio"), None)

    def get_video_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == "video"), None)

    def __repr__(self):
        kinds = ",".join(t.kind for t in self.tracks)
        return f"<MediaStream {self.id[:8]} [{kinds}]>"


class SwitchableTrack(MediaStreamTrack):
    """
    Wraps a capture track so it can be muted in place.
    While disabled it keeps producing frames, silent audio or black
    video, so the remote side sees no renegotiation.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return self._silence(frame)
        return self._black(frame)

    @staticmethod
    def _silence(frame):
        silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in silent.planes:
            plane.update(bytes(plane.buffer_size))
        silent.sample_rate = frame.sample_rate
        silent.pts = frame.pts
        silent.time_base = frame.time_base
        return silent

    @staticmethod
    def _black(frame):
        black = av.VideoFrame.from_ndarray(
            np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
        )
        black.pts = frame.pts
        black.time_base = frame.time_base
        return black

    def stop(self):
        super().stop()
        self.source.stop()


class ScreenStreamTrack(VideoStreamTrack):
    """Video track that captures the primary monitor"""

    def __init__(self):
        super().__init__()
        self.frame_count = 0

        # Get monitor info
        with mss() as sct:
            self.monitor = sct.monitors[1]  # Primary monitor

        logger.info(f"Created ScreenStreamTrack - Resolution: {self.monitor['width']}x{self.monitor['height']}")

    def _grab(self):
        with mss() as sct:
            screenshot = sct.grab(self.monitor)

        img = Image.frombytes('RGB', screenshot.size, screenshot.bgra, 'raw', 'BGRX')
        img_array = np.array(img)

        height, width = img_array.shape[:2]
        scale = min(MAX_SCREEN_WIDTH / width, MAX_SCREEN_HEIGHT / height, 1.0)
        if scale < 1.0:
            img_array = cv2.resize(img_array, (int(width * scale), int(height * scale)),
                                   interpolation=cv2.INTER_AREA)
        return img_array

    async def recv(self):
        """Capture and return video frame"""
        if self.readyState != "live":
            raise MediaStreamError

        pts, time_base = await self.next_timestamp()
        try:
            img_rgb = await asyncio.get_event_loop().run_in_executor(None, self._grab)
        except Exception as e:
            # The display went away: end the track like a revoked share
            logger.error(f"Screen capture stopped: {e}")
            self.stop()
            raise MediaStreamError from e

        frame = av.VideoFrame.from_ndarray(img_rgb, format='rgb24')
        frame.pts = pts
        frame.time_base = time_base

        self.frame_count += 1
        if self.frame_count == 1 or self.frame_count % 300 == 0:
            logger.debug(f"ScreenStreamTrack generated frame #{self.frame_count}")
        return frame


def _close_player(player: MediaPlayer):
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


def audio_level(frame) -> float:
    """RMS level of an audio frame, 0.0 (silence) to 1.0 (full scale)"""
    samples = frame.to_ndarray().astype(np.float32)
    if samples.size == 0:
        return 0.0
    if frame.format.name.startswith("s16"):
        samples /= 32768.0
    elif frame.format.name.startswith("s32"):
        samples /= 2147483648.0
    return float(np.sqrt(np.mean(samples ** 2)))


class SpeakingDetector:
    """Reports when the audio level of a track crosses the speaking threshold"""

    def __init__(self, track: MediaStreamTrack, on_change: Callable[[bool], None],
                 threshold: float = 0.02, hold: float = 0.4):
        self.track = track
        self.on_change = on_change
        self.threshold = threshold
        self.hold = hold
        self.speaking = False
        self._last_voice = 0.0

    def feed(self, level: float, now: float):
        if level >= self.threshold:
            self._last_voice = now
            if not self.speaking:
                self.speaking = True
                self.on_change(True)
        elif self.speaking and now - self._last_voice > self.hold:
            self.speaking = False
            self.on_change(False)

    async def run(self):
        try:
            while True:
                frame = await self.track.recv()
                self.feed(audio_level(frame), time.monotonic())
        except MediaStreamError:
            logger.debug("Speaking detector track ended")
        finally:
            self.track.stop()
            if self.speaking:
                self.speaking = False
                self.on_change(False)


class MediaStreamController:
    def __init__(self, camera_device=rtc_config.CAMERA_DEVICE, camera_format=rtc_config.CAMERA_FORMAT,
                 mic_device=rtc_config.MIC_DEVICE, mic_format=rtc_config.MIC_FORMAT):
        self.camera_device = camera_device
        self.camera_format = camera_format
        self.mic_device = mic_device
        self.mic_format = mic_format

    async def _open_player(self, device, fmt, options):
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(None, lambda: MediaPlayer(device, format=fmt, options=options))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # The device opens anyway, release it once it does
            def _cleanup(f):
                if not f.cancelled() and f.exception() is None:
                    _close_player(f.result())
            future.add_done_callback(_cleanup)
            raise

    async def acquire_local(self, audio: bool = True, video: bool = True) -> MediaStream:
        """Open the microphone and/or camera; raises DeviceError"""
        stream = MediaStream()
        try:
            if audio:
                player = await self._open_player(self.mic_device, self.mic_format, {})
                if player.audio is None:
                    _close_player(player)
                    raise DeviceError(f"No audio on {self.mic_device}")
                stream.add_track(SwitchableTrack(player.audio))

            if video:
                options = {"video_size": rtc_config.VIDEO_SIZE, "framerate": rtc_config.FRAMERATE}
                player = await self._open_player(self.camera_device, self.camera_format, options)
                if player.video is None:
                    _close_player(player)
                    raise DeviceError(f"No video on {self.camera_device}")
                stream.add_track(SwitchableTrack(player.video))

        except asyncio.CancelledError:
            self.release(stream)
            raise
        except DeviceError:
            self.release(stream)
            raise
        except Exception as e:
            self.release(stream)
            raise DeviceError(f"Could not access camera/microphone: {e}") from e

        logger.info(f"Acquired local media {stream}")
        return stream

    async def acquire_screen(self) -> MediaStream:
        """Start capturing the primary monitor; raises DeviceError"""
        try:
            track = ScreenStreamTrack()
        except Exception as e:
            raise DeviceError(f"Could not share screen: {e}") from e
        return MediaStream([track])

    @staticmethod
    def on_ended(stream: MediaStream, callback: Callable[[], None]):
        """Call back once the stream's video ends on its own (capture revoked)"""
        track = stream.get_video_track()
        if track is not None:
            track.on("ended", callback)

    @staticmethod
    def set_track_enabled(track, enabled: bool):
        if track is not None:
            track.enabled = enabled

    @staticmethod
    def release(stream: Optional[MediaStream]):
        """Stop every track of a stream; later calls are no-ops"""
        if stream is None or stream.released:
            return
        stream.released = True
        for track in stream.tracks:
            track.stop()
        logger.info(f"Released media {stream}")
