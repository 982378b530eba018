"""Local microphone and speaker access through PyAudio."""

import logging

import numpy as np
import pyaudio

from .config import CHANNELS, CHUNK_SIZE, RATE

FORMAT = pyaudio.paInt16


def soft_tone(frequency: int, rate: int = RATE, duration: float = 0.12, volume: float = 0.15) -> bytes:
    """PCM16 sine wave at a soft volume."""
    t = np.linspace(0, duration, int(rate * duration), False)
    tone = (np.sin(frequency * t * 2 * np.pi) * volume * 32767).astype(np.int16)
    return tone.tobytes()


class PyAudioDevice:
    """Full-duplex PCM16 mono stream at the realtime sample rate."""

    def __init__(self, rate: int = RATE, chunk_size: int = CHUNK_SIZE, logger=None):
        self.rate = rate
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger("PyAudioDevice")
        self.audio_interface = None
        self.audio_stream = None

    @property
    def is_open(self) -> bool:
        return self.audio_stream is not None

    def open(self) -> None:
        """Initialize PyAudio for audio input/output."""
        if self.is_open:
            return
        self.logger.info("Setting up audio interface...")
        try:
            self.audio_interface = pyaudio.PyAudio()
            self.audio_stream = self.audio_interface.open(
                format=FORMAT,
                channels=CHANNELS,
                rate=self.rate,
                input=True,
                output=True,
                frames_per_buffer=self.chunk_size,
            )
            self.logger.info("Audio interface ready")
        except Exception as e:
            self.logger.error(f"Failed to setup audio: {e}")
            self.close()
            raise

    def read(self) -> bytes:
        """Blocking read of one chunk of microphone audio."""
        return self.audio_stream.read(self.chunk_size, exception_on_overflow=False)

    def write(self, pcm: bytes) -> None:
        if self.audio_stream:
            self.audio_stream.write(pcm)

    def beep(self, frequency: int = 440) -> None:
        """Play a soft beep tone; marks push-to-talk start and stop."""
        try:
            self.write(soft_tone(frequency, self.rate))
        except OSError as e:
            self.logger.debug(f"Beep playback failed: {e}")

    def close(self) -> None:
        """Clean up audio resources."""
        if self.audio_stream:
            self.audio_stream.stop_stream()
            self.audio_stream.close()
            self.audio_stream = None
        if self.audio_interface:
            self.audio_interface.terminate()
            self.audio_interface = None
        self.logger.info("Audio interface cleaned up")
