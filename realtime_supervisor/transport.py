"""
Realtime transports.

A transport is a bidirectional channel of protocol events. Two variants exist:

* :class:`SocketTransport`: a websocket. Audio travels as base64 PCM inside
  protocol events.
* :class:`PeerTransport`: a WebRTC peer connection. Events flow over the
  ``oai-events`` data channel and audio travels as media tracks.

Both deliver raw inbound frames to ``on_message`` in arrival order and call
``on_close`` exactly once.
"""

import asyncio
import base64
import fractions
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Union

import av
import httpx
import numpy as np
from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidHandshake, InvalidURI

from .config import CONNECT_TIMEOUT, HTTP_TIMEOUT, RATE, TransportConfig
from .errors import TransportError
from .events import ProtocolEvent, encode_event, input_audio_append

Frame = Union[str, bytes]

DATA_CHANNEL_LABEL = "oai-events"


class Transport(ABC):
    """Common lifecycle for both transport variants."""

    kind = "base"

    def __init__(self, config: TransportConfig, audio=None, logger=None):
        self.config = config
        self.audio = audio
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        self.on_message: Optional[Callable[[Frame], None]] = None
        self.on_close: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None

        self._is_open = False
        self._closed = False
        self._close_notified = False
        self._muted = False
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_open(self) -> bool:
        return self._is_open and not self._closed

    async def open(self, credential: str) -> None:
        """Perform the handshake. Anything opened so far is released on failure."""
        if self._closed:
            raise TransportError("Transport was closed and cannot be reopened")
        if self._is_open:
            return
        self.logger.info(f"Opening {self.kind} transport to {self.config.endpoint}")
        try:
            await self._open(credential)
        except Exception:
            await self._teardown()
            raise
        if self._closed:
            # close() ran while the handshake was suspended
            await self._teardown()
            raise TransportError("Transport was closed during the handshake")
        self._is_open = True
        self.logger.info(f"{self.kind} transport open")

    async def close(self, reason: str = "closed by client") -> None:
        """Tear down the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._is_open = False
        self.logger.info(f"Closing {self.kind} transport: {reason}")
        await self._teardown()
        self._notify_close(reason)

    def send(self, event: ProtocolEvent) -> None:
        """Queue one event for delivery; fire-and-forget."""
        if not self.is_open:
            raise TransportError(f"Cannot send {event.get('type')}: transport is not open")
        self._send_frame(encode_event(event))

    # ------------------------------------------------------------------ #
    # Audio
    # ------------------------------------------------------------------ #

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, muted: bool) -> None:
        self._muted = muted
        self.logger.info(f"Microphone {'muted' if muted else 'unmuted'}")

    def play_audio_delta(self, audio_base64: str) -> None:
        """Play one chunk of assistant audio carried inside an event."""

    def flush_playback(self) -> None:
        """Drop any assistant audio not yet played."""

    # ------------------------------------------------------------------ #
    # Helpers for subclasses
    # ------------------------------------------------------------------ #

    def _deliver(self, frame: Frame) -> None:
        if self._closed or self.on_message is None:
            return
        self.on_message(frame)

    def _fail(self, exc: Exception) -> None:
        self.logger.error(f"{self.kind} transport error: {exc}")
        if self.on_error:
            self.on_error(exc)

    def _notify_close(self, reason: str) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        if self.on_close:
            self.on_close(reason)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.kind}-{name}")
        self._tasks.append(task)
        return task

    def _remote_closed(self, reason: str) -> None:
        if not self._closed:
            self._spawn(self.close(reason), "close")

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = [task for task in self._tasks if task is current]

    @abstractmethod
    async def _open(self, credential: str) -> None:
        ...

    @abstractmethod
    def _send_frame(self, frame: str) -> None:
        ...

    @abstractmethod
    async def _teardown(self) -> None:
        ...


# ================================================================
# Socket transport
# ================================================================


class SocketTransport(Transport):
    """Websocket transport; audio is carried inside protocol events."""

    kind = "socket"

    def __init__(self, config: TransportConfig, audio=None, logger=None):
        super().__init__(config, audio, logger)
        self.ws = None
        self._outbound: Optional[asyncio.Queue] = None
        self._playback: Optional[asyncio.Queue] = None

    async def _open(self, credential: str) -> None:
        headers = {
            "Authorization": f"Bearer {credential}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self.ws = await asyncio.wait_for(
                ws_connect(self.config.endpoint, additional_headers=headers, max_size=None),
                timeout=CONNECT_TIMEOUT,
            )
        except (InvalidHandshake, InvalidURI, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"WebSocket handshake failed: {exc}") from exc

        self._outbound = asyncio.Queue()
        self._spawn(self._reader(), "reader")
        self._spawn(self._writer(), "writer")
        if self.audio is not None:
            self._playback = asyncio.Queue()
            self._spawn(self._mic_pump(), "mic")
            self._spawn(self._speaker(), "speaker")

    def _send_frame(self, frame: str) -> None:
        self._outbound.put_nowait(frame)

    async def _reader(self) -> None:
        reason = "connection closed by server"
        try:
            async for message in self.ws:
                self._deliver(message)
        except ConnectionClosedError as exc:
            reason = f"connection lost: {exc}"
            self._fail(TransportError(reason))
        finally:
            self._remote_closed(reason)

    async def _writer(self) -> None:
        while True:
            frame = await self._outbound.get()
            try:
                await self.ws.send(frame)
            except ConnectionClosed as exc:
                self._fail(TransportError(f"Send failed: {exc}"))
                self._remote_closed(f"send failed: {exc}")
                return

    async def _mic_pump(self) -> None:
        """Stream microphone chunks as input_audio_buffer.append events."""
        while not self._closed:
            try:
                chunk = await asyncio.to_thread(self.audio.read)
            except OSError as exc:
                self._fail(TransportError(f"Microphone read failed: {exc}"))
                return
            if self._muted or not self.is_open:
                continue
            self.send(input_audio_append(base64.b64encode(chunk).decode("ascii")))

    async def _speaker(self) -> None:
        while True:
            pcm = await self._playback.get()
            await asyncio.to_thread(self.audio.write, pcm)

    def play_audio_delta(self, audio_base64: str) -> None:
        if self._playback is None or not audio_base64:
            return
        self._playback.put_nowait(base64.b64decode(audio_base64))

    def flush_playback(self) -> None:
        if self._playback is None:
            return
        while not self._playback.empty():
            self._playback.get_nowait()

    async def _teardown(self) -> None:
        await self._cancel_tasks()
        if self.ws is not None:
            await self.ws.close()
            self.ws = None


# ================================================================
# Peer transport
# ================================================================


class MicrophoneTrack(MediaStreamTrack):
    """Outbound audio track fed from the local device; silence while muted."""

    kind = "audio"

    def __init__(self, transport: "PeerTransport"):
        super().__init__()
        self.transport = transport
        self._pts = 0

    async def recv(self) -> av.AudioFrame:
        pcm = await asyncio.to_thread(self.transport.audio.read)
        samples = np.frombuffer(pcm, dtype=np.int16)
        if self.transport.muted:
            samples = np.zeros_like(samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = RATE
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, RATE)
        self._pts += samples.shape[0]
        return frame


class PeerTransport(Transport):
    """WebRTC transport; events ride the data channel, audio rides media tracks."""

    kind = "peer"

    def __init__(self, config: TransportConfig, audio=None, logger=None):
        super().__init__(config, audio, logger)
        self.pc: Optional[RTCPeerConnection] = None
        self.channel: Any = None

    async def _open(self, credential: str) -> None:
        self.pc = RTCPeerConnection()
        self.channel = self.pc.createDataChannel(DATA_CHANNEL_LABEL)
        ready = asyncio.Event()

        @self.channel.on("open")
        def on_open():
            ready.set()

        @self.channel.on("message")
        def on_message(message):
            self._deliver(message)

        @self.channel.on("close")
        def on_channel_close():
            self._remote_closed("data channel closed")

        @self.pc.on("connectionstatechange")
        async def on_state_change():
            state = self.pc.connectionState if self.pc else "closed"
            self.logger.debug(f"Peer connection state: {state}")
            if state == "failed":
                self._fail(TransportError("Peer connection failed"))
                self._remote_closed("peer connection failed")

        @self.pc.on("track")
        def on_track(track):
            if track.kind == "audio" and self.audio is not None:
                self._spawn(self._play_track(track), "speaker")

        if self.audio is not None:
            self.pc.addTrack(MicrophoneTrack(self))
        else:
            self.pc.addTransceiver("audio", direction="recvonly")

        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)

        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                response = await client.post(
                    self.config.endpoint,
                    content=self.pc.localDescription.sdp,
                    headers={
                        "Authorization": f"Bearer {credential}",
                        "Content-Type": "application/sdp",
                    },
                )
        except httpx.HTTPError as exc:
            raise TransportError(f"SDP exchange failed: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(
                f"SDP exchange rejected ({response.status_code}): {response.text[:500]}"
            )

        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=response.text, type="answer"))
        try:
            await asyncio.wait_for(ready.wait(), timeout=CONNECT_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise TransportError("Data channel did not open in time") from exc

    def _send_frame(self, frame: str) -> None:
        if self.channel is None or self.channel.readyState != "open":
            raise TransportError("Data channel is not open")
        self.channel.send(frame)

    async def _play_track(self, track) -> None:
        resampler = av.AudioResampler(format="s16", layout="mono", rate=RATE)
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                return
            for out in resampler.resample(frame):
                await asyncio.to_thread(self.audio.write, out.to_ndarray().tobytes())

    async def _teardown(self) -> None:
        await self._cancel_tasks()
        if self.pc is not None:
            pc, self.pc = self.pc, None
            await pc.close()
        self.channel = None


def create_transport(config: TransportConfig, audio=None, logger=None) -> Transport:
    if config.kind == "peer":
        return PeerTransport(config, audio, logger)
    return SocketTransport(config, audio, logger)
